"""Shared fixtures for memdex tests."""

from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from memdex.config import EmbedConfig


def numbered_lines(count: int, width: int = 49, prefix: str = "line") -> str:
    """``count`` lines of exactly ``width`` characters with distinct words."""
    lines = []
    for number in range(1, count + 1):
        head = f"{prefix} {number} alpha{number} beta{number % 7} "
        lines.append((head + "x" * width)[:width])
    return "\n".join(lines)


def write_memory(root: Path, relative: str, text: str) -> Path:
    path = root / ".repo-memory" / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A workspace with rules, todos, a journal entry and a session note."""
    root = tmp_path / "ws"
    root.mkdir()
    write_memory(root, "rules.md", "# Rules\n\n- Always run the linter before pushing.\n- Prefer small commits.\n")
    write_memory(root, "todos.md", "# Todos\n\n- [ ] Validate auth tokens in the gateway\n- [x] Ship release notes\n")
    write_memory(root, f"journal/{date.today().isoformat()}.md", "Investigated flaky websocket reconnect test.\n")
    write_memory(root, "sessions/s-001/notes.md", "Paired on the billing export pipeline.\n")
    return root


@pytest.fixture
def config() -> EmbedConfig:
    return EmbedConfig(provider="hash", dim=64, max_chars_per_chunk=400, overlap_chars=60)
