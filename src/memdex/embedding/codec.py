"""Compact textual encoding for float vectors."""

from __future__ import annotations

import base64
import binascii
from typing import Sequence

import numpy as np

VECTOR_DTYPE = np.dtype("<f4")


def encode_vector(vector: Sequence[float] | np.ndarray) -> str:
    """Encode a vector as base64 of little-endian float32 values."""
    array = np.asarray(vector, dtype=VECTOR_DTYPE)
    return base64.b64encode(array.tobytes()).decode("ascii")


def decode_vector(encoded: str) -> np.ndarray:
    """Inverse of :func:`encode_vector`. Trailing partial floats are dropped."""
    try:
        raw = base64.b64decode(encoded.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError(f"Invalid encoded vector: {exc}") from exc
    usable = len(raw) - len(raw) % VECTOR_DTYPE.itemsize
    return np.frombuffer(raw[:usable], dtype=VECTOR_DTYPE).astype("float32")
