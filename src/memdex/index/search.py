"""Semantic search over a persisted embeddings index."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

import numpy as np

from memdex.config import EmbedConfig
from memdex.embedding.codec import decode_vector
from memdex.embedding.providers import EmbeddingProvider, provider_for_config
from memdex.index.storage import IndexStore
from memdex.models import Index, SearchHit
from memdex.utils.text import clamp_text

LOGGER = logging.getLogger(__name__)

MAX_K = 50
EXCERPT_CHARS = 600


class Searcher:
    """Brute-force cosine ranking of every item in an index."""

    def __init__(self, index: Index, provider: EmbeddingProvider, *, owns_provider: bool = False) -> None:
        self.index = index
        self.provider = provider
        self._owns_provider = owns_provider

    def close(self) -> None:
        if self._owns_provider:
            self.provider.close()

    def __enter__(self) -> "Searcher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @classmethod
    def for_root(cls, root: Path, *, api_key: str = "") -> "Searcher":
        """Load ``root``'s index and a provider matching the one that built it."""
        index = IndexStore(Path(root)).require_index()
        config = EmbedConfig(
            provider=index.provider or "hash",
            model=index.model,
            dim=index.dim or 128,
            api_key=api_key,
        )
        return cls(index, provider_for_config(config), owns_provider=True)

    def search(self, query: str, *, k: int = 8, min_score: float = 0.15) -> List[SearchHit]:
        query = query.strip()
        if not query:
            raise ValueError("Empty query")
        k = max(1, min(MAX_K, int(k)))
        if not self.index.items:
            return []

        query_vector = np.asarray(self.provider.embed_query(query), dtype="float32")
        hits: List[SearchHit] = []
        for item in self.index.items:
            if not item.vector_b64:
                continue
            vector = decode_vector(item.vector_b64)
            n = min(len(vector), len(query_vector))
            score = float(np.dot(query_vector[:n], vector[:n]))
            if score < min_score:
                continue
            hits.append(
                SearchHit(
                    id=item.id,
                    kind=item.kind,
                    file=item.file,
                    start_line=item.start_line,
                    end_line=item.end_line,
                    score=round(score, 4),
                    text=clamp_text(item.text, EXCERPT_CHARS),
                )
            )
        # sorted() is stable: equal scores keep index order.
        hits = sorted(hits, key=lambda hit: -hit.score)
        LOGGER.debug("Query %r matched %d items above %.2f", query, len(hits), min_score)
        return hits[:k]


def search(
    root: Path,
    q: str,
    *,
    k: int = 8,
    min_score: float = 0.15,
    api_key: str = "",
) -> List[SearchHit]:
    """Search ``root``'s index. Raises IndexNotFoundError when it was never built."""
    with Searcher.for_root(root, api_key=api_key) as searcher:
        return searcher.search(q, k=k, min_score=min_score)
