"""Incremental embeddings index builder."""

from __future__ import annotations

import logging
import queue
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Tuple

from memdex.config import EmbedConfig, fingerprint, same_fingerprint
from memdex.embedding.codec import encode_vector
from memdex.embedding.providers import EmbeddingProvider, provider_for_config
from memdex.errors import ProviderError
from memdex.index.events import BuildProgress, CancelToken, publish
from memdex.index.storage import IndexStore
from memdex.ingestion.collector import collect_documents
from memdex.models import Chunk, FileStamp, Index, IndexItem, IndexMeta, file_key
from memdex.utils.files import read_text, relative_posix, stat_stamp
from memdex.utils.git import GitState
from memdex.utils.text import chunk_lines, clamp_text, sha256_text

LOGGER = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True)
class BuildResult:
    meta: IndexMeta
    index: Index


@dataclass(slots=True)
class UpToDate:
    ok: bool
    reason: str = ""
    file: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "reason": self.reason or None, "file": self.file or None}


@dataclass(slots=True)
class BuildStats:
    reused_files: int = 0
    reused_items: int = 0
    embedded_items: int = 0


def classify_file(
    git: GitState,
    rel_path: str,
    previous: FileStamp | None,
    stamp: Tuple[int, float],
) -> Tuple[bool, str]:
    """Decide whether a file's previous items can be reused without reading it.

    Returns ``(reusable, reason)``. Git decides when it can compare the
    previous and current revisions; otherwise size and mtime must match.
    """
    if previous is None:
        return False, "file_not_indexed"
    if git.comparable:
        verdict = git.verdict(rel_path)
        if verdict == "dirty":
            return False, "file_dirty"
        if verdict == "changed":
            return False, "file_changed_in_git"
        if verdict == "clean":
            return True, "git_unchanged"
    size, mtime_ms = stamp
    if previous.size == size and previous.mtime_ms == mtime_ms:
        return True, "stamp_unchanged"
    return False, "file_changed"


class IndexBuilder:
    """Collects, chunks and embeds workspace documents into a fresh index.

    Items from the previous index are reused whenever the configuration
    fingerprint matches: whole files when they are known unchanged, single
    chunks when their id and text hash match.
    """

    def __init__(
        self,
        root: Path,
        config: EmbedConfig,
        *,
        provider: EmbeddingProvider | None = None,
        cancel: CancelToken | None = None,
        progress: queue.SimpleQueue | None = None,
        today: date | None = None,
    ) -> None:
        self.root = Path(root).resolve()
        self.config = config
        self._owns_provider = provider is None
        self.provider = provider or provider_for_config(config)
        self.cancel = cancel
        self.progress = progress
        self.today = today
        self.store = IndexStore(self.root)

    def close(self) -> None:
        """Close the provider if this builder created it."""
        if self._owns_provider:
            self.provider.close()

    def __enter__(self) -> "IndexBuilder":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _check_cancel(self) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()

    def _load_previous(self, wanted: Mapping[str, Any]) -> Tuple[Index | None, Dict[str, Any] | None]:
        if self.config.force:
            return None, None
        index, meta = self.store.load_pair()
        if index is None or not same_fingerprint(meta, wanted):
            if meta is not None:
                LOGGER.info("Embedding configuration changed, rebuilding from scratch")
            return None, None
        return index, meta

    def build(self) -> BuildResult:
        config = self.config
        started_at = utc_now()
        wanted = fingerprint(config, model=self.provider.model, dim=self.provider.dim)
        previous, previous_meta = self._load_previous(wanted)
        git = GitState(self.root, str((previous_meta or {}).get("gitHead") or ""))

        documents = collect_documents(self.root, config.kinds, config.recent_days, today=self.today)
        publish(self.progress, BuildProgress("collect", len(documents), len(documents)))
        LOGGER.info("Collected %d documents under %s", len(documents), self.root)

        previous_items = previous.items_by_id() if previous else {}
        previous_files = previous.files if previous else {}
        cap = config.max_total_chunks
        stats = BuildStats()
        items: List[IndexItem] = []
        files: Dict[str, FileStamp] = {}
        pending: List[Chunk] = []

        for position, document in enumerate(documents, start=1):
            self._check_cancel()
            if len(items) + len(pending) >= cap:
                LOGGER.info("Reached max_total_chunks=%d, skipping remaining documents", cap)
                break

            rel_path = relative_posix(self.root, document.path)
            key = file_key(document.kind, rel_path)
            stamp = stat_stamp(document.path)
            if stamp is None:
                LOGGER.info("Skipping %s: file vanished", rel_path)
                continue

            prev_stamp = previous_files.get(key)
            reusable, reason = classify_file(git, rel_path, prev_stamp, stamp)
            if reusable and prev_stamp is not None:
                kept = self._reuse_file(prev_stamp, previous_items, room=cap - len(items) - len(pending))
                if kept:
                    LOGGER.debug("Reusing %d items for %s (%s)", len(kept), rel_path, reason)
                    items.extend(kept)
                    files[key] = FileStamp(document.kind, rel_path, stamp[0], stamp[1], [i.id for i in kept])
                    stats.reused_files += 1
                    stats.reused_items += len(kept)
                    publish(self.progress, BuildProgress("chunk", position, len(documents), rel_path))
                    continue

            try:
                text = read_text(document.path)
            except OSError as exc:
                LOGGER.warning("Skipping %s: %s", rel_path, exc)
                continue

            ids: List[str] = []
            spans = chunk_lines(
                text,
                max_chars=config.max_chars_per_chunk,
                overlap_chars=config.overlap_chars,
                max_chunks=config.max_chunks_per_file,
            )
            for ordinal, span in enumerate(spans, start=1):
                if len(items) + len(pending) >= cap:
                    break
                chunk = Chunk(
                    kind=document.kind,
                    file=rel_path,
                    ordinal=ordinal,
                    start_line=span.start_line,
                    end_line=span.end_line,
                    text=clamp_text(span.text, config.max_chars_per_chunk),
                    text_hash=sha256_text(span.text),
                )
                ids.append(chunk.id)
                old = previous_items.get(chunk.id)
                if old is not None and old.text_hash == chunk.text_hash and old.vector_b64:
                    items.append(IndexItem.from_chunk(chunk, old.vector_b64))
                    stats.reused_items += 1
                else:
                    pending.append(chunk)
            files[key] = FileStamp(document.kind, rel_path, stamp[0], stamp[1], ids)
            publish(self.progress, BuildProgress("chunk", position, len(documents), rel_path))

        dim = self._embed_pending(pending, items)
        stats.embedded_items = len(pending)
        if dim is None:
            dim = self.provider.dim or (previous.dim if previous else 0)

        self._check_cancel()
        items.sort(key=lambda item: item.id)
        finished_at = utc_now()
        meta = IndexMeta(
            root=str(self.root),
            provider=self.provider.name,
            model=self.provider.model,
            dim=wanted["dim"],
            kinds=list(config.kinds),
            recent_days=config.recent_days,
            max_chunks_per_file=config.max_chunks_per_file,
            max_chars_per_chunk=config.max_chars_per_chunk,
            overlap_chars=config.overlap_chars,
            max_total_chunks=config.max_total_chunks,
            item_count=len(items),
            reused_files=stats.reused_files,
            reused_items=stats.reused_items,
            embedded_items=stats.embedded_items,
            reused_from_previous_index=previous is not None,
            git_head=git.head,
            started_at=started_at,
            finished_at=finished_at,
        )
        index = Index(
            provider=self.provider.name,
            model=self.provider.model,
            dim=int(dim or 0),
            files=files,
            items=items,
            generated_at=finished_at,
        )
        publish(self.progress, BuildProgress("write", 0, 1))
        self.store.write(index, meta)
        publish(self.progress, BuildProgress("write", 1, 1))
        LOGGER.info(
            "Index built: %d items (%d reused, %d embedded, %d files reused)",
            meta.item_count,
            meta.reused_items,
            meta.embedded_items,
            meta.reused_files,
        )
        return BuildResult(meta=meta, index=index)

    @staticmethod
    def _reuse_file(stamp: FileStamp, previous_items: Mapping[str, IndexItem], room: int) -> List[IndexItem]:
        """Previous items of a file, or an empty list if any of them is unusable."""
        kept: List[IndexItem] = []
        for item_id in stamp.ids[: max(room, 0)]:
            item = previous_items.get(item_id)
            if item is None or not item.vector_b64 or not item.text_hash:
                return []
            kept.append(item)
        return kept

    def _embed_pending(self, pending: List[Chunk], items: List[IndexItem]) -> int | None:
        """Embed ``pending`` chunks into ``items``; returns the vector dimension seen."""
        if not pending:
            return None
        total = len(pending)
        LOGGER.info("Embedding %d chunks with %s (%s)", total, self.provider.name, self.provider.model)
        publish(self.progress, BuildProgress("embed", 0, total))
        vectors = self.provider.embed_all(
            [chunk.text for chunk in pending],
            cancel=self.cancel,
            on_batch=lambda done, _total: publish(self.progress, BuildProgress("embed", done, total)),
        )
        dims = {len(vector) for vector in vectors}
        if len(dims) > 1:
            raise ProviderError(f"{self.provider.name} returned vectors of mixed dimensions {sorted(dims)}")
        for chunk, vector in zip(pending, vectors):
            items.append(IndexItem.from_chunk(chunk, encode_vector(vector)))
        return dims.pop()


def build_index(
    root: Path,
    config: EmbedConfig | None = None,
    *,
    provider: EmbeddingProvider | None = None,
    cancel: CancelToken | None = None,
    progress: queue.SimpleQueue | None = None,
) -> BuildResult:
    """Build (or incrementally refresh) the embeddings index of ``root``."""
    config = config or EmbedConfig()
    with IndexBuilder(root, config, provider=provider, cancel=cancel, progress=progress) as builder:
        return builder.build()


@contextmanager
def _provider_scope(config: EmbedConfig, provider: EmbeddingProvider | None) -> Iterator[EmbeddingProvider]:
    """Yield ``provider``, or one built from ``config`` and closed on exit."""
    if provider is not None:
        yield provider
        return
    with provider_for_config(config) as owned:
        yield owned


def is_up_to_date(
    root: Path,
    config: EmbedConfig | None = None,
    *,
    provider: EmbeddingProvider | None = None,
) -> UpToDate:
    """Cheap check whether a build would reuse everything; embeds nothing."""
    config = config or EmbedConfig()
    with _provider_scope(config, provider) as active:
        return _check_up_to_date(Path(root).resolve(), config, active)


def _check_up_to_date(root: Path, config: EmbedConfig, provider: EmbeddingProvider) -> UpToDate:
    wanted = fingerprint(config, model=provider.model, dim=provider.dim)

    index, meta = IndexStore(root).load_pair()
    if index is None or meta is None:
        return UpToDate(False, "missing_index_or_meta")
    if not same_fingerprint(meta, wanted):
        return UpToDate(False, "config_changed")
    if not index.files and index.items:
        return UpToDate(False, "missing_files_index")

    git = GitState(root, str(meta.get("gitHead") or ""))
    for document in collect_documents(root, config.kinds, config.recent_days):
        rel_path = relative_posix(root, document.path)
        key = file_key(document.kind, rel_path)
        stamp = stat_stamp(document.path)
        if stamp is None:
            return UpToDate(False, "file_missing", key)
        previous = index.files.get(key)
        reusable, reason = classify_file(git, rel_path, previous, stamp)
        if not reusable:
            return UpToDate(False, reason, key)
        if previous is None or (not previous.ids and previous.size > 0):
            return UpToDate(False, "file_ids_missing", key)
    return UpToDate(True)


@dataclass(slots=True)
class FilePlan:
    kind: str
    file: str
    action: str
    reason: str
    indexed_chunk_ids: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "file": self.file,
            "action": self.action,
            "reason": self.reason,
            "indexedChunkIds": self.indexed_chunk_ids,
        }


@dataclass(slots=True)
class BuildPlan:
    root: str
    up_to_date: UpToDate
    files: List[FilePlan] = field(default_factory=list)
    stale_indexed_files: List[str] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, Any]:
        reuse = sum(1 for f in self.files if f.action == "reuse")
        embed = sum(1 for f in self.files if f.action == "embed")
        return {
            "upToDate": self.up_to_date.ok,
            "totalFiles": len(self.files),
            "reuseFiles": reuse,
            "embedFiles": embed,
            "staleIndexedFiles": len(self.stale_indexed_files),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.root,
            "upToDate": self.up_to_date.to_dict(),
            "summary": self.summary,
            "files": [f.to_dict() for f in self.files],
            "staleIndexedFiles": list(self.stale_indexed_files),
        }


def plan_build(
    root: Path,
    config: EmbedConfig | None = None,
    *,
    provider: EmbeddingProvider | None = None,
) -> BuildPlan:
    """Dry run: report what a build would reuse and what it would embed."""
    config = config or EmbedConfig()
    with _provider_scope(config, provider) as active:
        return _plan(Path(root).resolve(), config, active)


def _plan(root: Path, config: EmbedConfig, provider: EmbeddingProvider) -> BuildPlan:
    wanted = fingerprint(config, model=provider.model, dim=provider.dim)
    up_to_date = _check_up_to_date(root, config, provider)

    blanket = ""
    index, meta = (None, None) if config.force else IndexStore(root).load_pair()
    if index is None or not same_fingerprint(meta, wanted):
        blanket = "force" if config.force else ("missing_index_or_meta" if index is None else "config_changed")
        index = None
    git = GitState(root, str((meta or {}).get("gitHead") or "")) if index is not None else None

    plan = BuildPlan(root=str(root), up_to_date=up_to_date)
    seen: set[str] = set()
    for document in collect_documents(root, config.kinds, config.recent_days):
        rel_path = relative_posix(root, document.path)
        key = file_key(document.kind, rel_path)
        seen.add(key)
        stamp = stat_stamp(document.path)
        previous = index.files.get(key) if index is not None else None
        if stamp is None:
            action, reason = "skip", "file_missing"
        elif index is None or git is None:
            action, reason = "embed", blanket
        else:
            reusable, reason = classify_file(git, rel_path, previous, stamp)
            action = "reuse" if reusable and previous is not None and previous.ids else "embed"
        plan.files.append(
            FilePlan(document.kind, rel_path, action, reason, len(previous.ids) if previous else 0)
        )
    if index is not None:
        plan.stale_indexed_files = sorted(key for key in index.files if key not in seen)
    return plan
