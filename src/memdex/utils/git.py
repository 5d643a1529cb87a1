"""Minimal git queries used for change detection.

Every path returned here is POSIX-style and relative to the workspace root
passed in, so it can be compared directly with index file names.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import List, Set

LOGGER = logging.getLogger(__name__)


def _git(root: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=root,
        capture_output=True,
        text=True,
        check=True,
    )
    return completed.stdout


def has_git() -> bool:
    return shutil.which("git") is not None


def is_git_repo(root: Path) -> bool:
    if not has_git():
        return False
    try:
        return _git(root, "rev-parse", "--is-inside-work-tree").strip() == "true"
    except (subprocess.CalledProcessError, OSError):
        return False


def git_head(root: Path) -> str:
    """Current HEAD commit, or an empty string when there is none yet."""
    try:
        return _git(root, "rev-parse", "--verify", "-q", "HEAD").strip()
    except (subprocess.CalledProcessError, OSError):
        return ""


def _prefix(root: Path) -> str:
    return _git(root, "rev-parse", "--show-prefix").strip()


def _strip_prefix(paths: List[str], prefix: str) -> Set[str]:
    out: Set[str] = set()
    for path in paths:
        if not path:
            continue
        if prefix:
            if not path.startswith(prefix):
                continue
            path = path[len(prefix):]
        out.add(path)
    return out


def tracked_files(root: Path) -> Set[str]:
    return {p for p in _git(root, "ls-files", "-z").split("\0") if p}


def dirty_files(root: Path) -> Set[str]:
    """Files with uncommitted changes, untracked files included."""
    raw = _git(root, "status", "--porcelain=v1", "-z", "--untracked-files=all", "--", ".")
    entries = raw.split("\0")
    paths: List[str] = []
    index = 0
    while index < len(entries):
        entry = entries[index]
        index += 1
        if len(entry) < 4:
            continue
        status, path = entry[:2], entry[3:]
        paths.append(path)
        if "R" in status or "C" in status:
            # Renames and copies carry the source path as the next entry.
            if index < len(entries):
                paths.append(entries[index])
            index += 1
    return _strip_prefix(paths, _prefix(root))


def changed_between(root: Path, old: str, new: str) -> Set[str]:
    """Files that differ between two revisions."""
    raw = _git(root, "diff", "--name-only", "-z", "--relative", old, new, "--", ".")
    return {p for p in raw.split("\0") if p}


class GitState:
    """Snapshot of the version-control facts a build needs."""

    def __init__(self, root: Path, previous_head: str = "") -> None:
        self.available = is_git_repo(root)
        self.head = git_head(root) if self.available else ""
        self.previous_head = previous_head
        self.tracked: Set[str] = set()
        self.dirty: Set[str] = set()
        self.changed: Set[str] = set()
        if self.comparable:
            try:
                self.tracked = tracked_files(root)
                self.dirty = dirty_files(root)
                self.changed = changed_between(root, previous_head, self.head)
            except (subprocess.CalledProcessError, OSError) as exc:
                LOGGER.warning("git change detection failed, falling back to file stamps: %s", exc)
                self.previous_head = ""
                self.tracked, self.dirty, self.changed = set(), set(), set()

    @property
    def comparable(self) -> bool:
        """True when git can tell what changed since the previous build."""
        return bool(self.available and self.previous_head and self.head and self.previous_head != self.head)

    def verdict(self, rel_path: str) -> str | None:
        """Classify a file as dirty, changed or clean; None when git cannot tell."""
        if rel_path in self.dirty:
            return "dirty"
        if rel_path in self.changed:
            return "changed"
        if rel_path in self.tracked:
            return "clean"
        return None
