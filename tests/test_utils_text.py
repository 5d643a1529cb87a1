"""Tests for text utility functions."""

from __future__ import annotations

import pytest

from memdex.utils.text import TRUNCATION_MARK, chunk_lines, clamp_text, sha256_text, tokenize

from conftest import numbered_lines


def _covered_lines(spans) -> set[int]:
    covered: set[int] = set()
    for span in spans:
        covered.update(range(span.start_line, span.end_line + 1))
    return covered


class TestChunkLines:
    """Test the line-addressed chunker."""

    def test_short_text_single_chunk(self) -> None:
        """Should return one chunk spanning all lines."""
        spans = chunk_lines("first\nsecond\nthird", max_chars=100, overlap_chars=10)

        assert len(spans) == 1
        assert spans[0].start_line == 1
        assert spans[0].end_line == 3
        assert spans[0].text == "first\nsecond\nthird"

    def test_empty_text(self) -> None:
        """Should produce no chunks for empty or blank text."""
        assert chunk_lines("", max_chars=100, overlap_chars=10) == []
        assert chunk_lines("   \n\n  \n", max_chars=100, overlap_chars=10) == []

    def test_three_thousand_chars_scenario(self) -> None:
        """3000 characters at 1000/100 gives about four overlapping chunks."""
        text = numbered_lines(60, width=49)
        assert len(text) == 60 * 50 - 1
        lines = text.split("\n")

        spans = chunk_lines(text, max_chars=1000, overlap_chars=100)

        assert 3 <= len(spans) <= 5
        for span in spans:
            assert len(span.text) <= 1000
        for previous, current in zip(spans, spans[1:]):
            assert current.start_line <= previous.end_line
            shared = "\n".join(lines[current.start_line - 1 : previous.end_line])
            assert len(shared) >= 100

    def test_chunks_cover_every_line(self) -> None:
        """Concatenated ranges should cover every line of the input."""
        text = numbered_lines(137, width=33)
        spans = chunk_lines(text, max_chars=250, overlap_chars=40)

        assert _covered_lines(spans) == set(range(1, 138))
        assert spans[-1].end_line == 137

    def test_line_ranges_match_text(self) -> None:
        """Chunk text should equal the lines its range addresses."""
        text = numbered_lines(40, width=30)
        lines = text.split("\n")

        for span in chunk_lines(text, max_chars=200, overlap_chars=50):
            assert span.text == "\n".join(lines[span.start_line - 1 : span.end_line]).strip()

    def test_long_line_kept_whole(self) -> None:
        """A line longer than max_chars becomes its own chunk, unsplit."""
        long_line = "y" * 500
        text = f"short one\n{long_line}\nshort two"

        spans = chunk_lines(text, max_chars=100, overlap_chars=20)

        assert any(span.text == long_line for span in spans)
        assert _covered_lines(spans) == {1, 2, 3}

    def test_overlap_dropped_when_next_line_does_not_fit(self) -> None:
        """Overlap gives way so a chunk never exceeds max_chars."""
        text = "a" * 600 + "\n" + "b" * 600

        spans = chunk_lines(text, max_chars=1000, overlap_chars=100)

        assert [(s.start_line, s.end_line) for s in spans] == [(1, 1), (2, 2)]
        assert all(len(s.text) <= 1000 for s in spans)

    def test_overlap_partially_trimmed(self) -> None:
        """Only the leading overlap lines that block the next line are dropped."""
        text = "\n".join(["x" * 90, "y" * 90, "z" * 90, "w" * 60])

        spans = chunk_lines(text, max_chars=200, overlap_chars=150)

        assert [(s.start_line, s.end_line) for s in spans] == [(1, 2), (2, 3), (3, 4)]

    def test_max_chunks_stops_early(self) -> None:
        """Should stop after max_chunks chunks even if text remains."""
        text = numbered_lines(200, width=40)
        spans = chunk_lines(text, max_chars=200, overlap_chars=20, max_chunks=3)

        assert len(spans) == 3
        assert spans[-1].end_line < 200

    def test_zero_overlap(self) -> None:
        """Without overlap consecutive chunks should not share lines."""
        text = numbered_lines(50, width=20)
        spans = chunk_lines(text, max_chars=100, overlap_chars=0)

        for previous, current in zip(spans, spans[1:]):
            assert current.start_line == previous.end_line + 1

    def test_crlf_normalized(self) -> None:
        """Windows line endings should not count toward chunk text."""
        spans = chunk_lines("a\r\nb\r\nc", max_chars=100, overlap_chars=0)
        assert spans[0].text == "a\nb\nc"

    def test_deterministic(self) -> None:
        """Same input and parameters should give identical chunks."""
        text = numbered_lines(80, width=45)
        assert chunk_lines(text, max_chars=300, overlap_chars=50) == chunk_lines(
            text, max_chars=300, overlap_chars=50
        )


class TestHelpers:
    """Test small text helpers."""

    def test_clamp_text_short(self) -> None:
        assert clamp_text("abc", 10) == "abc"

    def test_clamp_text_long(self) -> None:
        result = clamp_text("abcdefghij", 4)
        assert result == "abcd" + TRUNCATION_MARK

    def test_sha256_text(self) -> None:
        assert sha256_text("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("Hello, World!", ["hello", "world"]),
            ("auth-token_v2 OK", ["auth", "token", "v2", "ok"]),
            ("  ", []),
        ],
    )
    def test_tokenize(self, text: str, expected: list[str]) -> None:
        assert tokenize(text) == expected
