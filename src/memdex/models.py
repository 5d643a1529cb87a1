"""Core memdex data models and their JSON representations."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping

INDEX_SCHEMA = 1


@dataclass(slots=True)
class Document:
    """A source file to index. Read-only input."""

    kind: str
    path: Path


@dataclass(slots=True)
class Chunk:
    """Line-addressed slice of a document."""

    kind: str
    file: str
    ordinal: int
    start_line: int
    end_line: int
    text: str
    text_hash: str

    @property
    def id(self) -> str:
        return chunk_id(self.kind, self.file, self.ordinal, self.start_line, self.end_line)


def chunk_id(kind: str, file: str, ordinal: int, start_line: int, end_line: int) -> str:
    return f"{kind}:{file}:{ordinal}:{start_line}-{end_line}"


def file_key(kind: str, file: str) -> str:
    return f"{kind}:{file}"


@dataclass(slots=True)
class IndexItem:
    """A chunk with its content hash and encoded vector."""

    id: str
    kind: str
    file: str
    start_line: int
    end_line: int
    text: str
    text_hash: str
    vector_b64: str

    @classmethod
    def from_chunk(cls, chunk: Chunk, vector_b64: str) -> "IndexItem":
        return cls(
            id=chunk.id,
            kind=chunk.kind,
            file=chunk.file,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            text=chunk.text,
            text_hash=chunk.text_hash,
            vector_b64=vector_b64,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "file": self.file,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "text": self.text,
            "textHash": self.text_hash,
            "vectorB64": self.vector_b64,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IndexItem":
        return cls(
            id=str(data["id"]),
            kind=str(data.get("kind", "")),
            file=str(data.get("file", "")),
            start_line=int(data.get("startLine", 0)),
            end_line=int(data.get("endLine", 0)),
            text=str(data.get("text", "")),
            text_hash=str(data.get("textHash", "")),
            vector_b64=str(data.get("vectorB64", "")),
        )


@dataclass(slots=True)
class FileStamp:
    """Per-file bookkeeping used for whole-file reuse."""

    kind: str
    file: str
    size: int
    mtime_ms: float
    ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "file": self.file,
            "size": self.size,
            "mtimeMs": self.mtime_ms,
            "ids": list(self.ids),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FileStamp":
        return cls(
            kind=str(data.get("kind", "")),
            file=str(data.get("file", "")),
            size=int(data.get("size", 0)),
            mtime_ms=float(data.get("mtimeMs", 0)),
            ids=[str(i) for i in data.get("ids") or []],
        )


@dataclass(slots=True)
class IndexMeta:
    """Build-level metadata; the authoritative configuration fingerprint."""

    root: str
    provider: str
    model: str
    dim: int | None
    kinds: List[str]
    recent_days: int
    max_chunks_per_file: int
    max_chars_per_chunk: int
    overlap_chars: int
    max_total_chunks: int
    item_count: int = 0
    reused_files: int = 0
    reused_items: int = 0
    embedded_items: int = 0
    reused_from_previous_index: bool = False
    git_head: str = ""
    started_at: str = ""
    finished_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": INDEX_SCHEMA,
            "root": self.root,
            "provider": self.provider,
            "model": self.model,
            "dim": self.dim,
            "kinds": list(self.kinds),
            "recentDays": self.recent_days,
            "maxChunksPerFile": self.max_chunks_per_file,
            "maxCharsPerChunk": self.max_chars_per_chunk,
            "overlapChars": self.overlap_chars,
            "maxTotalChunks": self.max_total_chunks,
            "itemCount": self.item_count,
            "reusedFiles": self.reused_files,
            "reusedItems": self.reused_items,
            "embeddedItems": self.embedded_items,
            "reusedFromPreviousIndex": self.reused_from_previous_index,
            "gitHead": self.git_head,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IndexMeta":
        dim = data.get("dim")
        return cls(
            root=str(data.get("root", "")),
            provider=str(data.get("provider", "")),
            model=str(data.get("model", "")),
            dim=int(dim) if dim is not None else None,
            kinds=[str(k) for k in data.get("kinds") or []],
            recent_days=int(data.get("recentDays", 0)),
            max_chunks_per_file=int(data.get("maxChunksPerFile", 0)),
            max_chars_per_chunk=int(data.get("maxCharsPerChunk", 0)),
            overlap_chars=int(data.get("overlapChars", 0)),
            max_total_chunks=int(data.get("maxTotalChunks", 0)),
            item_count=int(data.get("itemCount", 0)),
            reused_files=int(data.get("reusedFiles", 0)),
            reused_items=int(data.get("reusedItems", 0)),
            embedded_items=int(data.get("embeddedItems", 0)),
            reused_from_previous_index=bool(data.get("reusedFromPreviousIndex", False)),
            git_head=str(data.get("gitHead") or ""),
            started_at=str(data.get("startedAt") or ""),
            finished_at=str(data.get("finishedAt") or ""),
        )


@dataclass(slots=True)
class Index:
    """Persisted collection of file stamps and items."""

    provider: str
    model: str
    dim: int
    files: Dict[str, FileStamp] = field(default_factory=dict)
    items: List[IndexItem] = field(default_factory=list)
    generated_at: str = ""

    def items_by_id(self) -> Dict[str, IndexItem]:
        return {item.id: item for item in self.items}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": INDEX_SCHEMA,
            "generatedAt": self.generated_at,
            "provider": self.provider,
            "model": self.model,
            "dim": self.dim,
            "files": {key: stamp.to_dict() for key, stamp in self.files.items()},
            "items": [item.to_dict() for item in self.items],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Index":
        files = data.get("files")
        if not isinstance(files, Mapping):
            files = {}
        return cls(
            provider=str(data.get("provider", "")),
            model=str(data.get("model", "")),
            dim=int(data.get("dim") or 0),
            files={str(key): FileStamp.from_dict(value) for key, value in files.items()},
            items=[IndexItem.from_dict(item) for item in data.get("items") or []],
            generated_at=str(data.get("generatedAt") or ""),
        )


@dataclass(slots=True)
class SearchHit:
    """A ranked search result."""

    id: str
    kind: str
    file: str
    start_line: int
    end_line: int
    score: float
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "file": self.file,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "score": self.score,
            "text": self.text,
        }
