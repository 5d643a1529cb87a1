"""Embedding providers: text batches in, L2-normalized vector batches out."""

from __future__ import annotations

import logging
import os
from enum import Enum
from typing import Callable, List, Sequence

import httpx
import numpy as np
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from memdex.config import DEFAULT_OPENAI_BASE_URL, DEFAULT_REMOTE_MODEL, EmbedConfig
from memdex.errors import ConfigError, ProviderError
from memdex.index.events import CancelToken
from memdex.utils.text import tokenize

LOGGER = logging.getLogger(__name__)

BatchCallback = Callable[[int, int], None]


class ProviderName(str, Enum):
    HASH = "hash"
    OPENAI = "openai"
    SENTENCE_TRANSFORMERS = "sentence-transformers"

    @classmethod
    def parse(cls, value: str) -> "ProviderName":
        name = str(value or "").strip().lower()
        if name == "mock":
            return cls.HASH
        try:
            return cls(name)
        except ValueError:
            raise ConfigError(f"Unknown provider: {value}") from None


def l2_normalize(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (vectors / norms).astype("float32")


class EmbeddingProvider:
    """Interface implemented by every provider.

    Subclasses implement :meth:`embed_batch`; :meth:`embed_all` drives it
    over provider-sized batches.
    """

    name: str = ""
    model: str = ""
    batch_size: int = 32

    @property
    def dim(self) -> int | None:
        """Vector dimension when known before embedding anything."""
        return None

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        raise NotImplementedError

    def embed_query(self, text: str) -> np.ndarray:
        return self.embed_batch([text])[0]

    def close(self) -> None:
        """Release network or model resources held by the provider."""

    def __enter__(self) -> "EmbeddingProvider":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def embed_all(
        self,
        texts: Sequence[str],
        *,
        cancel: CancelToken | None = None,
        on_batch: BatchCallback | None = None,
    ) -> List[np.ndarray]:
        """Embed ``texts`` sequentially in batches, checking ``cancel`` between them."""
        vectors: List[np.ndarray] = []
        total = len(texts)
        for start in range(0, total, self.batch_size):
            if cancel is not None:
                cancel.raise_if_cancelled()
            batch = list(texts[start : start + self.batch_size])
            LOGGER.debug("Embedding batch %d-%d of %d with %s", start, start + len(batch), total, self.name)
            embedded = self.embed_batch(batch)
            if len(embedded) != len(batch):
                raise ProviderError(
                    f"{self.name} returned {len(embedded)} vectors for {len(batch)} texts"
                )
            vectors.extend(embedded)
            if on_batch is not None:
                on_batch(start + len(batch), total)
        return vectors


def fnv1a32(text: str) -> int:
    h = 0x811C9DC5
    for ch in text:
        h ^= ord(ch)
        h = (h * 0x01000193) & 0xFFFFFFFF
    return h


class HashEmbeddingProvider(EmbeddingProvider):
    """Offline, deterministic bag-of-tokens embedding.

    Similarity reflects token overlap only. Intended as the default and for
    tests.
    """

    name = ProviderName.HASH.value
    batch_size = 256

    def __init__(self, dim: int = 128) -> None:
        if dim <= 0:
            raise ConfigError(f"dim must be positive, got {dim}")
        self._dim = int(dim)
        self.model = f"hash-{self._dim}"

    @property
    def dim(self) -> int:
        return self._dim

    def embed_one(self, text: str) -> np.ndarray:
        vector = np.zeros(self._dim, dtype="float32")
        for token in tokenize(text):
            h = fnv1a32(token)
            vector[h % self._dim] += 1 + ((h >> 8) % 3)
        return vector

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self._dim), dtype="float32")
        return l2_normalize(np.vstack([self.embed_one(text) for text in texts]))


TransientHttpError = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)


def transient_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=0.5, max=8.0),
        retry=retry_if_exception_type(TransientHttpError),
    )


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI-compatible ``/embeddings`` endpoint over HTTP."""

    name = ProviderName.OPENAI.value
    batch_size = 96

    def __init__(
        self,
        api_key: str,
        model: str = "",
        *,
        base_url: str = DEFAULT_OPENAI_BASE_URL,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ConfigError("Missing OPENAI_API_KEY (or pass --api-key)")
        self.model = model or DEFAULT_REMOTE_MODEL
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    @transient_retry()
    def _post(self, texts: Sequence[str]) -> httpx.Response:
        return self._client.post("/embeddings", json={"model": self.model, "input": list(texts)})

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, 0), dtype="float32")
        try:
            response = self._post(texts)
        except httpx.HTTPError as exc:
            raise ProviderError(f"OpenAI embeddings request failed: {exc}") from exc

        if response.status_code >= 400:
            body = response.text[:500]
            raise ProviderError(
                f"OpenAI embeddings failed: {response.status_code} {response.reason_phrase}"
                + (f" - {body}" if body else ""),
                status_code=response.status_code,
            )
        try:
            payload = response.json()
            data = payload["data"]
            vectors = [item["embedding"] for item in sorted(data, key=lambda x: x.get("index", 0))]
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise ProviderError("OpenAI embeddings: bad response") from exc

        if len(vectors) != len(texts):
            raise ProviderError(
                f"OpenAI embeddings: expected {len(texts)} vectors, got {len(vectors)}"
            )
        dims = {len(vector) for vector in vectors}
        if len(dims) != 1 or 0 in dims:
            raise ProviderError("OpenAI embeddings: inconsistent dimensions")
        return l2_normalize(np.asarray(vectors, dtype="float32"))


def create_provider(
    provider: str,
    *,
    dim: int = 128,
    model: str = "",
    api_key: str = "",
    **kwargs,
) -> EmbeddingProvider:
    """Instantiate the provider named by ``provider``."""
    name = ProviderName.parse(provider)
    if name is ProviderName.HASH:
        return HashEmbeddingProvider(dim=dim)
    if name is ProviderName.OPENAI:
        return OpenAIEmbeddingProvider(api_key, model, **kwargs)
    from memdex.embedding.encoder import SentenceTransformerProvider

    return SentenceTransformerProvider(model or None, **kwargs)


def provider_for_config(config: EmbedConfig, **kwargs) -> EmbeddingProvider:
    if ProviderName.parse(config.provider) is ProviderName.OPENAI:
        kwargs.setdefault("base_url", os.environ.get("OPENAI_BASE_URL", DEFAULT_OPENAI_BASE_URL))
    return create_provider(
        config.provider,
        dim=config.dim,
        model=config.model,
        api_key=config.resolve_api_key(),
        **kwargs,
    )


def validate_config(config: EmbedConfig) -> None:
    """Raise :class:`ConfigError` for problems detectable without building a provider."""
    name = ProviderName.parse(config.provider)
    if name is ProviderName.OPENAI and not config.resolve_api_key():
        raise ConfigError("Missing OPENAI_API_KEY (or pass --api-key)")
