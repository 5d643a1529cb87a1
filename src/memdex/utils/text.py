"""Text helpers including line-addressed overlapping chunking."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Iterator, List, Sequence

TRUNCATION_MARK = "\n[...truncated]"


@dataclass(slots=True, frozen=True)
class TextSpan:
    """A chunk of text with its 1-based inclusive line range."""

    start_line: int
    end_line: int
    text: str


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def clamp_text(text: str, max_chars: int) -> str:
    """Cut ``text`` to ``max_chars`` characters, marking the cut."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARK


def _joined_len(lines: Sequence[str]) -> int:
    if not lines:
        return 0
    return sum(len(line) for line in lines) + len(lines) - 1


def _overlap_start(lines: Sequence[str], overlap_chars: int) -> int:
    """Index of the shortest suffix of ``lines`` holding at least ``overlap_chars``."""
    if overlap_chars <= 0:
        return len(lines)
    suffix_len = -1
    for index in range(len(lines) - 1, -1, -1):
        suffix_len += len(lines[index]) + 1
        if suffix_len >= overlap_chars:
            return index
    return 0


def iter_line_chunks(
    text: str,
    *,
    max_chars: int = 1400,
    overlap_chars: int = 200,
    max_chunks: int = 400,
) -> Iterator[TextSpan]:
    """Split text into overlapping chunks made of whole lines.

    A line longer than ``max_chars`` forms a chunk on its own and is never
    split. After each chunk the buffer is seeded with the shortest suffix of
    that chunk holding ``overlap_chars`` characters, trimmed from the front
    until the next line fits.
    """
    lines = text.replace("\r\n", "\n").split("\n")
    emitted = 0
    buffer: List[str] = []
    buffer_len = 0
    start_line = 1

    for line in lines:
        add_len = len(line) + (1 if buffer else 0)
        if buffer and buffer_len + add_len > max_chars:
            body = "\n".join(buffer).strip()
            if body:
                yield TextSpan(start_line, start_line + len(buffer) - 1, body)
                emitted += 1
                if emitted >= max_chunks:
                    return

            keep = _overlap_start(buffer, overlap_chars)
            while keep < len(buffer) and _joined_len(buffer[keep:]) + 1 + len(line) > max_chars:
                keep += 1
            start_line += keep
            buffer = buffer[keep:]
            buffer_len = _joined_len(buffer)
            add_len = len(line) + (1 if buffer else 0)

        buffer.append(line)
        buffer_len += add_len

    body = "\n".join(buffer).strip()
    if buffer and body:
        yield TextSpan(start_line, start_line + len(buffer) - 1, body)


def chunk_lines(
    text: str,
    *,
    max_chars: int = 1400,
    overlap_chars: int = 200,
    max_chunks: int = 400,
) -> List[TextSpan]:
    return list(
        iter_line_chunks(text, max_chars=max_chars, overlap_chars=overlap_chars, max_chunks=max_chunks)
    )


def tokenize(text: str) -> List[str]:
    """Lowercase alphanumeric tokens; every other character separates tokens."""
    lowered = text.lower()
    cleaned = "".join(ch if ("a" <= ch <= "z" or "0" <= ch <= "9") else " " for ch in lowered)
    return cleaned.split()
