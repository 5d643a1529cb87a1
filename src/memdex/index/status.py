"""Status reporting and rebuild-if-stale for a workspace index."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from memdex.config import EmbedConfig
from memdex.errors import MemdexError
from memdex.index.builder import build_index, is_up_to_date, utc_now
from memdex.index.storage import IndexStore
from memdex.models import IndexMeta

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AutoResult:
    ok: bool
    skipped: bool
    reason: str
    file: str = ""
    meta: IndexMeta | None = None


def ensure_index(root: Path, config: EmbedConfig | None = None, *, check_only: bool = False) -> AutoResult:
    """Rebuild the index only when it is out of date."""
    config = config or EmbedConfig()
    verdict = is_up_to_date(root, config)
    if verdict.ok:
        return AutoResult(ok=True, skipped=True, reason="up_to_date")
    if check_only:
        return AutoResult(ok=False, skipped=False, reason=verdict.reason, file=verdict.file)
    LOGGER.info("Embeddings out of date (%s %s), rebuilding", verdict.reason, verdict.file)
    built = build_index(root, config)
    return AutoResult(ok=True, skipped=False, reason="rebuilt", meta=built.meta)


def _classify(has_index: bool, has_meta: bool, up_ok: bool | None, error: str | None) -> str:
    if error:
        return "error"
    if not has_index or not has_meta:
        return "missing"
    if up_ok is True:
        return "ready"
    if up_ok is False:
        return "stale"
    return "unknown"


def get_status(root: Path, config: EmbedConfig | None = None, *, check_up_to_date: bool = True) -> Dict[str, Any]:
    """Describe the persisted index pair of ``root``.

    Without ``config`` the up-to-date check uses the configuration recorded
    in the meta document.
    """
    root = Path(root).resolve()
    store = IndexStore(root)
    has_index = store.index_path.is_file()
    has_meta = store.meta_path.is_file()
    index = None
    meta: Dict[str, Any] | None = None
    errors: list[str] = []
    try:
        index = store.load_index()
        meta = store.load_meta()
    except (OSError, ValueError, KeyError, TypeError) as exc:
        errors.append(str(exc))

    up = None
    if not errors and check_up_to_date and has_index and has_meta:
        try:
            up = is_up_to_date(root, config or EmbedConfig.from_meta(meta or {}))
        except MemdexError as exc:
            errors.append(str(exc))

    meta = meta or {}
    return {
        "schema": 1,
        "generatedAt": utc_now(),
        "root": str(root),
        "status": _classify(has_index, has_meta, up.ok if up else None, errors[0] if errors else None),
        "index": {
            "exists": has_index,
            "path": str(store.index_path),
            "provider": (index.provider if index else None) or meta.get("provider"),
            "model": (index.model if index else None) or meta.get("model"),
            "dim": (index.dim if index else None) or meta.get("dim"),
            "generatedAt": (index.generated_at if index else None) or meta.get("finishedAt"),
            "itemCount": len(index.items) if index else int(meta.get("itemCount") or 0),
            "fileCount": len(index.files) if index else 0,
        },
        "meta": {
            "exists": has_meta,
            "path": str(store.meta_path),
            "gitHead": meta.get("gitHead") or None,
            "startedAt": meta.get("startedAt"),
            "finishedAt": meta.get("finishedAt"),
            "reusedItems": int(meta.get("reusedItems") or 0),
            "embeddedItems": int(meta.get("embeddedItems") or 0),
            "reusedFromPreviousIndex": bool(meta.get("reusedFromPreviousIndex")),
        },
        "upToDate": up.to_dict() if up else None,
        "errors": errors,
    }
