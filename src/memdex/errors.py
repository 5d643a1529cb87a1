"""Exception hierarchy shared by the indexing pipeline and its front ends."""

from __future__ import annotations


class MemdexError(Exception):
    """Base class for all memdex errors."""


class ConfigError(MemdexError):
    """Invalid configuration: unknown provider, missing credential, bad knob."""


class ProviderError(MemdexError):
    """The embedding provider failed or returned an unusable response.

    ``status_code`` is the HTTP status when the failure came from a remote
    endpoint that answered.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class IndexNotFoundError(MemdexError):
    """The persisted index is missing or unreadable."""

    def __init__(self, path: object, detail: str = "") -> None:
        message = f"Missing embeddings index at {path} (run `memdex build` first)"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.path = path


class BuildCancelled(MemdexError):
    """A build was aborted through its cancellation token."""
