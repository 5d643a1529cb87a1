"""Enumerate the workspace documents that should be embedded."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Iterable, List

from memdex.config import memory_dir
from memdex.models import Document

LOGGER = logging.getLogger(__name__)

SINGLE_FILE_KINDS = {
    "rules": "rules.md",
    "todos": "todos.md",
    "context": "context.md",
    "handoff": "handoff.md",
    "pr": "pr.md",
}
MAX_SESSIONS = 30


def _journal_date(path: Path) -> date | None:
    try:
        return datetime.strptime(path.stem[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def iter_recent_journal(root: Path, recent_days: int, *, today: date | None = None) -> List[Path]:
    """Journal files dated within the last ``recent_days`` days, newest first.

    Files whose names carry no date fall back to their modification time.
    """
    journal = memory_dir(root) / "journal"
    if recent_days <= 0 or not journal.is_dir():
        return []
    cutoff = (today or date.today()) - timedelta(days=recent_days - 1)
    picked: List[Path] = []
    for path in journal.glob("*.md"):
        if not path.is_file():
            continue
        day = _journal_date(path)
        if day is None:
            try:
                day = date.fromtimestamp(path.stat().st_mtime)
            except OSError:
                LOGGER.info("Skipping %s: file vanished", path.name)
                continue
        if day >= cutoff:
            picked.append(path)
    return sorted(picked, key=lambda p: p.name, reverse=True)


def iter_recent_sessions(root: Path, max_sessions: int = MAX_SESSIONS) -> List[Path]:
    sessions = memory_dir(root) / "sessions"
    if not sessions.is_dir():
        return []
    ids = sorted((p.name for p in sessions.iterdir() if p.is_dir()), reverse=True)[:max_sessions]
    return [sessions / session_id / "notes.md" for session_id in ids]


def collect_documents(
    root: Path,
    kinds: Iterable[str],
    recent_days: int = 60,
    *,
    today: date | None = None,
) -> List[Document]:
    """Return documents for the requested kinds whose files exist."""
    root = Path(root)
    wanted = {str(kind).strip() for kind in kinds if str(kind).strip()}
    candidates: List[Document] = []

    for kind, name in SINGLE_FILE_KINDS.items():
        if kind in wanted:
            candidates.append(Document(kind=kind, path=memory_dir(root) / name))
    if "journal" in wanted:
        for path in iter_recent_journal(root, recent_days, today=today):
            candidates.append(Document(kind="journal", path=path))
    if "sessions" in wanted:
        for path in iter_recent_sessions(root):
            candidates.append(Document(kind="sessions", path=path))

    unknown = wanted - set(SINGLE_FILE_KINDS) - {"journal", "sessions"}
    if unknown:
        LOGGER.warning("Ignoring unknown document kinds: %s", ", ".join(sorted(unknown)))

    return [doc for doc in candidates if doc.path.is_file()]
