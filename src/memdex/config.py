"""Embedding configuration defaults and workspace paths."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Sequence

from memdex.errors import ConfigError

DEFAULT_KINDS: tuple[str, ...] = ("rules", "todos", "context", "journal", "sessions")
ALL_KINDS: tuple[str, ...] = ("rules", "todos", "context", "handoff", "pr", "journal", "sessions")

DEFAULT_REMOTE_MODEL = "text-embedding-3-small"
DEFAULT_ST_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"


def memory_dir(root: Path) -> Path:
    return Path(root) / ".repo-memory"


def embeddings_dir(root: Path) -> Path:
    return memory_dir(root) / "embeddings"


def index_path(root: Path) -> Path:
    return embeddings_dir(root) / "index.json"


def meta_path(root: Path) -> Path:
    return embeddings_dir(root) / "meta.json"


def parse_kinds(value: str | Sequence[str] | None) -> tuple[str, ...]:
    """Normalize a comma separated string or a sequence into a kinds tuple."""
    if value is None:
        return ()
    items = value.split(",") if isinstance(value, str) else [str(v) for v in value]
    return tuple(item.strip() for item in items if item.strip())


@dataclass(slots=True)
class EmbedConfig:
    """Every knob that influences a build.

    Everything but ``force`` and ``api_key`` is part of the fingerprint that
    decides whether a previous index may be reused.
    """

    provider: str = "hash"
    model: str = ""
    dim: int = 128
    kinds: tuple[str, ...] = DEFAULT_KINDS
    recent_days: int = 60
    max_chunks_per_file: int = 200
    max_chars_per_chunk: int = 1400
    overlap_chars: int = 200
    max_total_chunks: int = 1200
    force: bool = False
    api_key: str = field(default="", repr=False)

    def __post_init__(self) -> None:
        self.provider = str(self.provider or "hash").strip().lower()
        if self.provider == "mock":
            self.provider = "hash"
        self.kinds = parse_kinds(self.kinds) or DEFAULT_KINDS
        if self.dim <= 0:
            raise ConfigError(f"dim must be positive, got {self.dim}")
        if self.max_chars_per_chunk <= 0:
            raise ConfigError("max_chars_per_chunk must be positive")
        if self.overlap_chars < 0:
            raise ConfigError("overlap_chars must not be negative")
        if self.max_chunks_per_file <= 0 or self.max_total_chunks <= 0:
            raise ConfigError("chunk caps must be positive")

    def with_overrides(self, **overrides: Any) -> "EmbedConfig":
        """Return a copy with every non-None override applied."""
        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **values)

    def resolve_api_key(self) -> str:
        return self.api_key or os.environ.get("OPENAI_API_KEY", "")

    def to_params(self) -> dict[str, Any]:
        """Serializable view used for job snapshots (credentials excluded)."""
        return {
            "provider": self.provider,
            "model": self.model,
            "dim": self.dim,
            "kinds": list(self.kinds),
            "recentDays": self.recent_days,
            "maxChunksPerFile": self.max_chunks_per_file,
            "maxCharsPerChunk": self.max_chars_per_chunk,
            "overlapChars": self.overlap_chars,
            "maxTotalChunks": self.max_total_chunks,
            "force": self.force,
        }

    @classmethod
    def from_meta(cls, meta: Mapping[str, Any]) -> "EmbedConfig":
        """Rebuild the configuration recorded in a persisted meta document."""
        defaults = cls()
        dim = meta.get("dim")
        return cls(
            provider=str(meta.get("provider") or defaults.provider),
            model=str(meta.get("model") or ""),
            dim=int(dim) if dim else defaults.dim,
            kinds=parse_kinds(meta.get("kinds")) or defaults.kinds,
            recent_days=int(meta.get("recentDays", defaults.recent_days)),
            max_chunks_per_file=int(meta.get("maxChunksPerFile", defaults.max_chunks_per_file)),
            max_chars_per_chunk=int(meta.get("maxCharsPerChunk", defaults.max_chars_per_chunk)),
            overlap_chars=int(meta.get("overlapChars", defaults.overlap_chars)),
            max_total_chunks=int(meta.get("maxTotalChunks", defaults.max_total_chunks)),
        )


def fingerprint(config: EmbedConfig, *, model: str, dim: int | None) -> dict[str, Any]:
    """Comparable configuration fingerprint.

    ``model`` and ``dim`` come from the resolved provider, so defaults that
    the provider fills in are part of the comparison.
    """
    return {
        "provider": config.provider,
        "model": model,
        "dim": dim,
        "kinds": list(config.kinds),
        "recentDays": config.recent_days,
        "maxChunksPerFile": config.max_chunks_per_file,
        "maxCharsPerChunk": config.max_chars_per_chunk,
        "overlapChars": config.overlap_chars,
        "maxTotalChunks": config.max_total_chunks,
    }


def same_fingerprint(previous: Mapping[str, Any] | None, wanted: Mapping[str, Any]) -> bool:
    """Compare the fingerprint keys of a stored meta document against ``wanted``."""
    if not previous:
        return False
    for key, value in wanted.items():
        if key == "kinds":
            if list(previous.get("kinds") or []) != list(value):
                return False
            continue
        stored = previous.get(key)
        if ("" if stored is None else str(stored)) != ("" if value is None else str(value)):
            return False
    return True
