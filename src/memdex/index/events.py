"""Cancellation and progress primitives shared by builds and jobs."""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass

from memdex.errors import BuildCancelled


class CancelToken:
    """Cooperative cancellation flag handed to a build from the start."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise BuildCancelled("build canceled")


@dataclass(slots=True, frozen=True)
class BuildProgress:
    """Progress snapshot published while a build runs."""

    phase: str
    done: int
    total: int
    file: str = ""

    def to_dict(self) -> dict:
        return {"phase": self.phase, "done": self.done, "total": self.total, "file": self.file}


def publish(channel: queue.SimpleQueue | None, event: BuildProgress) -> None:
    if channel is not None:
        channel.put(event)


def latest(channel: queue.SimpleQueue, current: BuildProgress | None = None) -> BuildProgress | None:
    """Drain ``channel`` and return the most recent event (or ``current``)."""
    while True:
        try:
            current = channel.get_nowait()
        except queue.Empty:
            return current
