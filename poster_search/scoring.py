"""
Cosine distance and deterministic ranking.

Cosine distance is undefined when either vector has zero magnitude.
Such pairs get ZERO_VECTOR_DISTANCE, which sorts after every finite
distance, so rankings never see NaN.
"""

import logging
from typing import List

import numpy as np

from .errors import DimensionMismatch, InvalidArgument
from .models import RankedEntry, identifier_sort_key

logger = logging.getLogger(__name__)

ZERO_VECTOR_DISTANCE = float("inf")

# Norms below this are treated as zero.
NORM_EPSILON = 1e-12


def cosine_distance(a: np.ndarray, b: np.ndarray) -> float:
    """
    Compute ``1 - (a . b) / (|a| |b|)``.

    Args:
        a: Feature vector.
        b: Feature vector of the same length.

    Returns:
        Distance in [0, 2], or ZERO_VECTOR_DISTANCE when either vector
        has zero magnitude.

    Raises:
        DimensionMismatch: If the vectors differ in length.
    """
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.shape != b.shape:
        raise DimensionMismatch(
            f"Vector dimension {a.shape[0]} doesn't match {b.shape[0]}"
        )

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a < NORM_EPSILON or norm_b < NORM_EPSILON:
        return ZERO_VECTOR_DISTANCE

    similarity = float(np.dot(a, b) / (norm_a * norm_b))
    # Rounding can push similarity just outside [-1, 1]
    similarity = min(1.0, max(-1.0, similarity))
    return 1.0 - similarity


def validate_top_n(top_n: int) -> int:
    if isinstance(top_n, bool) or not isinstance(top_n, (int, np.integer)):
        raise InvalidArgument(f"top_n must be an integer, got {top_n!r}")
    if top_n < 0:
        raise InvalidArgument(f"top_n must be >= 0, got {top_n}")
    return int(top_n)


def rank_results(entries: List[RankedEntry]) -> List[RankedEntry]:
    """
    Sort by distance (ascending) with catalog identifier (ascending) as
    tiebreaker, so equal distances always come out in the same order.
    """
    return sorted(
        entries,
        key=lambda e: (e.distance, identifier_sort_key(e.item.identifier))
    )


def top_n_results(entries: List[RankedEntry], top_n: int) -> List[RankedEntry]:
    """Rank and keep the first ``min(top_n, len(entries))`` entries."""
    top_n = validate_top_n(top_n)
    if top_n == 0:
        return []
    return rank_results(entries)[:top_n]
