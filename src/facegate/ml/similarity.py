"""Embedding normalization, cosine similarity, and match decisions."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Union

import numpy as np
from numpy.typing import NDArray

from facegate.config import DEFAULT_MATCH_THRESHOLD
from facegate.errors import DimensionMismatchError, InvalidEmbeddingError

logger = logging.getLogger(__name__)

EmbeddingLike = Union[NDArray[np.floating], Sequence[float]]


@dataclass(frozen=True)
class MatchDecision:
    """Outcome of comparing a similarity score to a threshold."""

    is_match: bool
    score: float
    threshold: float


def _as_vector(embedding: EmbeddingLike) -> NDArray[np.float64]:
    vector = np.asarray(embedding, dtype=np.float64)
    if vector.ndim != 1:
        raise InvalidEmbeddingError(f"Embedding must be one-dimensional, got shape {vector.shape}")
    if not np.isfinite(vector).all():
        raise InvalidEmbeddingError("Embedding contains NaN or infinite values")
    return vector


def _unit(vector: NDArray[np.float64]) -> NDArray[np.float64] | None:
    """Unit vector, or ``None`` for zero norm.

    Dividing by the largest magnitude first keeps the norm from overflowing
    or underflowing for very large or very small components.
    """
    scale = float(np.max(np.abs(vector))) if vector.size else 0.0
    if scale == 0.0:
        return None
    scaled = vector / scale
    return scaled / float(np.linalg.norm(scaled))


def is_degenerate(embedding: EmbeddingLike) -> bool:
    """True when the embedding has zero norm (all components zero)."""
    return not np.any(_as_vector(embedding))


def normalize(embedding: EmbeddingLike) -> NDArray[np.float32]:
    """Scale an embedding to unit Euclidean length.

    A zero-norm embedding is returned unchanged instead of dividing by zero.
    """
    vector = _as_vector(embedding)
    unit = _unit(vector)
    if unit is None:
        return vector.astype(np.float32)
    return unit.astype(np.float32)


def similarity(a: EmbeddingLike, b: EmbeddingLike) -> float:
    """Cosine similarity of two embeddings, in [-1, 1].

    Norms are recomputed, so raw embeddings are scored correctly too. If
    either embedding has zero norm the score is 0.

    Raises:
        DimensionMismatchError: If the embeddings differ in length.
        InvalidEmbeddingError: If either embedding holds NaN or infinity.
    """
    va = _as_vector(a)
    vb = _as_vector(b)
    if va.shape[0] != vb.shape[0]:
        logger.error("Embedding size mismatch: %s vs %s", va.shape[0], vb.shape[0])
        raise DimensionMismatchError(
            f"Embedding size mismatch: {va.shape[0]} vs {vb.shape[0]}",
            details={"left": int(va.shape[0]), "right": int(vb.shape[0])},
        )

    ua = _unit(va)
    ub = _unit(vb)
    if ua is None or ub is None:
        return 0.0
    # Unit vectors keep the dot product finite; clipping only absorbs rounding.
    return float(np.clip(np.dot(ua, ub), -1.0, 1.0))


def decide(score: float, threshold: float = DEFAULT_MATCH_THRESHOLD) -> MatchDecision:
    """Accept when ``score >= threshold``. The threshold is not clamped."""
    return MatchDecision(is_match=score >= threshold, score=score, threshold=threshold)


def best_match(
    probe: EmbeddingLike,
    enrolled: Sequence[EmbeddingLike],
    threshold: float = DEFAULT_MATCH_THRESHOLD,
) -> MatchDecision:
    """Decide against the closest of several enrolled embeddings.

    Raises:
        ValueError: If ``enrolled`` is empty.
        DimensionMismatchError: If any enrolled embedding differs in length.
    """
    if len(enrolled) == 0:
        raise ValueError("At least one enrolled embedding is required")
    score = max(similarity(probe, reference) for reference in enrolled)
    return decide(score, threshold)
