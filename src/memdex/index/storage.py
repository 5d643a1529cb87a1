"""JSON persistence for the paired index and meta documents."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Tuple

from memdex.config import index_path, meta_path
from memdex.errors import IndexNotFoundError
from memdex.models import Index, IndexMeta
from memdex.utils.files import write_json_atomic

LOGGER = logging.getLogger(__name__)


class IndexStore:
    """Reads and replaces the ``index.json``/``meta.json`` pair of a workspace.

    Each file is swapped in with an atomic rename, index first and meta last.
    A pair whose ``generatedAt``/``finishedAt`` stamps disagree was
    interrupted mid-write and is treated as absent.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.index_path = index_path(self.root)
        self.meta_path = meta_path(self.root)

    def exists(self) -> bool:
        return self.index_path.is_file() and self.meta_path.is_file()

    @staticmethod
    def _read_json(path: Path) -> Dict[str, Any] | None:
        if not path.is_file():
            return None
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise ValueError(f"{path} does not hold a JSON object")
        return data

    def load_meta(self) -> Dict[str, Any] | None:
        return self._read_json(self.meta_path)

    def load_index(self) -> Index | None:
        data = self._read_json(self.index_path)
        return Index.from_dict(data) if data is not None else None

    def load_pair(self) -> Tuple[Index | None, Dict[str, Any] | None]:
        """Load a consistent pair, or ``(None, None)``.

        Unreadable files are logged and treated as missing so a rebuild can
        replace them.
        """
        try:
            meta = self.load_meta()
            index = self.load_index()
        except (OSError, ValueError, KeyError, TypeError) as exc:
            LOGGER.warning("Ignoring unreadable embeddings index in %s: %s", self.root, exc)
            return None, None
        if meta is None or index is None:
            return None, None
        finished = str(meta.get("finishedAt") or "")
        if index.generated_at and finished and index.generated_at != finished:
            LOGGER.warning("Embeddings index and meta in %s are from different builds", self.root)
            return None, None
        return index, meta

    def require_index(self) -> Index:
        """Load the index for reading, raising :class:`IndexNotFoundError`."""
        try:
            index = self.load_index()
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise IndexNotFoundError(self.index_path, f"unreadable ({exc})") from exc
        if index is None:
            raise IndexNotFoundError(self.index_path)
        return index

    def write(self, index: Index, meta: IndexMeta) -> None:
        write_json_atomic(self.index_path, index.to_dict())
        write_json_atomic(self.meta_path, meta.to_dict())
        LOGGER.debug("Wrote %s and %s", self.index_path, self.meta_path)
