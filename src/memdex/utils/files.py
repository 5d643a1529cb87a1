"""Utility helpers for working with files."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Tuple

MAX_READ_CHARS = 2_000_000


def stat_stamp(path: Path) -> Tuple[int, float] | None:
    """Return ``(size, mtime_ms)`` for a file, or None when it is gone."""
    try:
        st = path.stat()
    except OSError:
        return None
    return st.st_size, st.st_mtime_ns / 1_000_000


def read_text(path: Path, max_chars: int = MAX_READ_CHARS) -> str:
    """Read a UTF-8 text file, keeping at most ``max_chars`` characters."""
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        return handle.read(max_chars)


def relative_posix(root: Path, path: Path) -> str:
    return Path(os.path.relpath(path, root)).as_posix()


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON to a temporary sibling, then rename it over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
