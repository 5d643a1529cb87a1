"""Local neural embeddings through ``sentence-transformers``.

Optional: install with ``pip install 'memdex[local-model]'``. This module is
only imported when the ``sentence-transformers`` provider is selected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from memdex.config import DEFAULT_ST_MODEL
from memdex.embedding.providers import EmbeddingProvider, ProviderName
from memdex.errors import ConfigError, ProviderError

logger = logging.getLogger(__name__)


def _detect_device() -> str | None:
    """Pick a torch device, or None to let sentence-transformers decide."""
    try:
        import torch

        if torch.cuda.is_available():
            logger.debug(f"CUDA GPU detected: {torch.cuda.get_device_name(0)}")
            return "cuda"
        if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
            logger.debug("Apple MPS GPU detected")
            return "mps"
        logger.debug("No GPU detected, will use CPU")
        return "cpu"
    except ImportError:
        logger.debug("PyTorch not available for device detection")
        return None


@dataclass(slots=True)
class EncoderConfig:
    model_name: str = DEFAULT_ST_MODEL
    batch_size: int = 32
    device: str | None = None


class SentenceTransformerProvider(EmbeddingProvider):
    """Thin wrapper around `SentenceTransformer` producing normalized vectors."""

    name = ProviderName.SENTENCE_TRANSFORMERS.value

    def __init__(self, model_name: str | None = None, *, device: str | None = None, batch_size: int = 32) -> None:
        self.config = EncoderConfig(
            model_name=model_name or DEFAULT_ST_MODEL,
            batch_size=batch_size,
            device=device or _detect_device(),
        )
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise ConfigError(
                "sentence-transformers is not installed. Install the extra with "
                "\"python -m pip install 'memdex[local-model]'\""
            ) from exc

        self.model = self.config.model_name
        self.batch_size = self.config.batch_size
        self._model = SentenceTransformer(self.config.model_name, device=self.config.device)
        self._dim = int(self._model.get_sentence_embedding_dimension())
        logger.info(f"Loaded {self.config.model_name} | Device: {self.config.device or 'auto'} | dim={self._dim}")

    @property
    def dim(self) -> int:
        return self._dim

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        try:
            embeddings = self._model.encode(
                list(texts),
                batch_size=self.config.batch_size,
                show_progress_bar=False,
                convert_to_numpy=True,
                normalize_embeddings=True,
            )
        except Exception as exc:
            raise ProviderError(f"sentence-transformers encoding failed: {exc}") from exc
        return embeddings.astype("float32", copy=False)
