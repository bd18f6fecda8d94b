"""
Dimension reconciliation for provider output.

Every vector produced by a backend passes through reconcile_dimensionality
exactly once before it is cached, returned or persisted. The vector store
rejects anything that still has the wrong length.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np

logger = logging.getLogger(__name__)

FILLER_EPSILON = 1e-4
DEFAULT_TOLERANCE = 16


def filler_vector(dim: int, epsilon: float = FILLER_EPSILON) -> list[float]:
    """The explicit fallback embedding: `dim` copies of a small non-zero value."""
    return [epsilon] * dim


def reconcile_dimensionality(
    vector: Sequence[float] | np.ndarray,
    dim: int,
    tolerance: int = DEFAULT_TOLERANCE,
    epsilon: float = FILLER_EPSILON,
) -> list[float]:
    """
    Bring a provider vector to exactly `dim` components.

    * len == dim: unchanged
    * len == 2 * dim: keep even indices (0, 2, 4, ...)
    * dim - tolerance <= len < dim: pad with `epsilon`
    * dim < len <= dim + tolerance: truncate
    * anything else, or non-finite values: filler vector

    Never raises; a malformed response must not abort a batch.
    """
    arr = np.asarray(vector, dtype=np.float64).ravel()
    length = int(arr.size)

    if length and not np.all(np.isfinite(arr)):
        logger.warning("Embedding contains non-finite values; using filler vector")
        return filler_vector(dim, epsilon)

    if length == dim:
        return arr.tolist()

    if length == 2 * dim:
        logger.debug("Subsampling embedding from %d to %d dimensions", length, dim)
        return arr[::2].tolist()

    if dim - tolerance <= length < dim:
        logger.debug("Padding embedding from %d to %d dimensions", length, dim)
        padded = np.full(dim, epsilon, dtype=np.float64)
        padded[:length] = arr
        return padded.tolist()

    if dim < length <= dim + tolerance:
        logger.debug("Truncating embedding from %d to %d dimensions", length, dim)
        return arr[:dim].tolist()

    logger.warning(
        "Embedding dimension %d cannot be reconciled to %d; using filler vector",
        length,
        dim,
    )
    return filler_vector(dim, epsilon)


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """Compute cosine similarity between two vectors."""
    if len(vec_a) == 0 or len(vec_b) == 0 or len(vec_a) != len(vec_b):
        return 0.0

    vec_a_np = np.asarray(vec_a, dtype=np.float32)
    vec_b_np = np.asarray(vec_b, dtype=np.float32)

    mag_a = np.linalg.norm(vec_a_np)
    mag_b = np.linalg.norm(vec_b_np)
    if mag_a == 0 or mag_b == 0:
        return 0.0

    return float(np.dot(vec_a_np, vec_b_np) / (mag_a * mag_b))
