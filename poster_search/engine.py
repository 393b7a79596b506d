"""
Poster recommendation engine.

Orchestrates the recommendation pipeline:
    1. Featurize the query cover (fetch -> normalize -> extract)
    2. Featurize the catalog concurrently (CatalogPipeline)
    3. Rank the catalog by cosine distance to the query (Recommender)

Per-item failures in step 2 and incomparable vectors in step 3 are
reported alongside the ranking; they never abort the run. A query cover
that cannot be loaded is fatal, since there is nothing to rank against.
"""

import os
import logging
import threading
from typing import Iterable, List, Optional, Sequence, Tuple

import faiss
import numpy as np

from .errors import InvalidArgument
from .models import (
    CatalogItem, ItemFailure, RankedEntry, RankedResult, RecommendationQuery,
    RecommendationReport, ScoredItem,
)
from .pipeline import (
    CatalogPipeline, check_unique_identifiers, validate_concurrency,
)
from .scoring import (
    NORM_EPSILON, cosine_distance, top_n_results, validate_top_n,
)

logger = logging.getLogger(__name__)

DEFAULT_TOP_N = int(os.environ.get("POSTER_TOP_N", "5"))

# Slack, in float32 similarity, when choosing which rows to score exactly
CANDIDATE_TOLERANCE = 1e-4


class Recommender:
    """
    Ranks featured catalog items against a query vector.

    A faiss inner-product index over L2-normalized catalog vectors picks
    the rows that can reach the top N; those rows are then scored exactly
    in float64 with scoring.cosine_distance. Zero-magnitude vectors get
    ZERO_VECTOR_DISTANCE.
    """

    def recommend(self,
                  query: np.ndarray,
                  catalog: Sequence[ScoredItem],
                  top_n: int = DEFAULT_TOP_N,
                  policy: Optional[str] = None) -> RankedResult:
        """
        Rank catalog items by cosine distance to the query.

        Args:
            query: Query feature vector.
            catalog: Featured catalog items.
            top_n: Maximum number of results; 0 yields an empty ranking.
            policy: Extraction policy the query came from. When given,
                items extracted with another policy are skipped.

        Returns:
            RankedResult sorted by distance, ties broken by ascending
            identifier. Items whose vectors are not comparable with the
            query are listed in ``skipped``.

        Raises:
            InvalidArgument: Negative top_n or empty query vector.
        """
        top_n = validate_top_n(top_n)
        query = np.asarray(query, dtype=np.float64).ravel()
        if query.size == 0:
            raise InvalidArgument("query feature vector is empty")

        comparable, skipped = self._partition(query, catalog, policy)
        if skipped:
            logger.warning(f"Skipped {len(skipped)} items with incomparable features")

        if top_n == 0 or not comparable:
            return RankedResult(entries=[], skipped=skipped)

        matrix = np.vstack([s.features for s in comparable]).astype(np.float64)
        rows = candidate_rows(query, matrix, top_n)
        distances = cosine_distances(query, matrix[rows])

        entries = [
            RankedEntry(item=comparable[row].item, distance=float(d))
            for row, d in zip(rows, distances)
        ]
        ranked = top_n_results(entries, top_n)

        logger.info(
            f"Ranked {len(comparable)} items ({len(rows)} scored) -> "
            f"returning {len(ranked)}"
        )
        return RankedResult(entries=ranked, skipped=skipped)

    @staticmethod
    def _partition(query: np.ndarray,
                   catalog: Sequence[ScoredItem],
                   policy: Optional[str]) -> Tuple[List[ScoredItem], List[ItemFailure]]:
        comparable, skipped = [], []
        for scored in catalog:
            features = np.asarray(scored.features).ravel()
            if policy is not None and scored.policy != policy:
                skipped.append(ItemFailure(
                    scored.identifier, scored.item.image_reference,
                    "policy_mismatch",
                    f"extracted with {scored.policy}, query uses {policy}",
                ))
            elif features.shape != query.shape:
                skipped.append(ItemFailure(
                    scored.identifier, scored.item.image_reference,
                    "dimension_mismatch",
                    f"vector dimension {features.shape[0]} doesn't match "
                    f"query dimension {query.shape[0]}",
                ))
            else:
                comparable.append(scored)
        return comparable, skipped


def candidate_rows(query: np.ndarray, matrix: np.ndarray, top_n: int) -> np.ndarray:
    """
    Indices of the rows that can rank within the top ``top_n``.

    faiss scores the normalized rows in float32. Every row whose float32
    similarity lies within the tolerance of the top_n-th best is kept, so
    rounding never drops a row that would rank in float64.

    Args:
        query: (d,) vector.
        matrix: (n, d) catalog vectors.
        top_n: Number of results wanted (> 0).

    Returns:
        Sorted row indices into ``matrix``.
    """
    rows = np.arange(matrix.shape[0])

    query_norm = np.linalg.norm(query)
    if query_norm < NORM_EPSILON:
        return rows

    norms = np.linalg.norm(matrix, axis=1)
    valid = np.flatnonzero(norms >= NORM_EPSILON)
    # Zero rows only make the cut when there aren't enough others
    if valid.size <= top_n:
        return rows

    normalized = (matrix[valid] / norms[valid, None]).astype(np.float32)
    index = faiss.IndexFlatIP(matrix.shape[1])
    index.add(np.ascontiguousarray(normalized))

    q = np.ascontiguousarray((query / query_norm).astype(np.float32).reshape(1, -1))
    similarities, _ = index.search(q, top_n)

    tolerance = max(CANDIDATE_TOLERANCE,
                    4 * matrix.shape[1] * float(np.finfo(np.float32).eps))
    threshold = float(similarities[0, -1]) - tolerance
    _, _, found = index.range_search(q, threshold)
    return np.sort(valid[found])


def cosine_distances(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """
    Float64 cosine distance between a query and every row of a matrix.

    Returns:
        (n,) distances; ZERO_VECTOR_DISTANCE where either side has zero
        magnitude.
    """
    return np.array([cosine_distance(query, row) for row in matrix],
                    dtype=np.float64)


class RecommendationEngine:
    """End-to-end driver: query cover + raw catalog -> recommendation report."""

    def __init__(self,
                 pipeline: CatalogPipeline = None,
                 recommender: Recommender = None):
        self.pipeline = pipeline or CatalogPipeline()
        self.recommender = recommender or Recommender()

    def recommend(self,
                  query: RecommendationQuery,
                  items: Iterable[CatalogItem],
                  top_n: int = DEFAULT_TOP_N,
                  concurrency_limit: int = None,
                  cancel_event: Optional[threading.Event] = None) -> RecommendationReport:
        """
        Featurize the query and the catalog, then rank.

        Arguments are checked before any fetch. The query cover is then
        fetched first so a broken query link fails before any catalog
        traffic.

        Raises:
            InvalidArgument: Bad top_n or concurrency limit, or catalog
                identifiers that are duplicated or not int/str.
            FetchError, ExtractError: The query cover could not be used.
            FetchCancelled: cancel_event was set while the query cover
                was being fetched.
        """
        top_n = validate_top_n(top_n)
        if concurrency_limit is not None:
            validate_concurrency(concurrency_limit)
        items = list(items)
        check_unique_identifiers(items)

        query_vector = self.pipeline.featurize(query.image_reference, cancel_event)
        logger.info(f"Query cover featurized: {query.title or query.image_reference}")

        result = self.pipeline.process(items, concurrency_limit, cancel_event)
        ranked = self.recommender.recommend(
            query_vector, result.scored, top_n, policy=self.pipeline.policy
        )
        if result.failures:
            logger.warning(f"{len(result.failures)} items skipped due to fetch errors")

        return RecommendationReport(
            ranked=ranked,
            failures=result.failures,
            cancelled=result.cancelled,
            query=query,
        )

    def recommend_from_features(self,
                                query: RecommendationQuery,
                                scored: Sequence[ScoredItem],
                                top_n: int = DEFAULT_TOP_N) -> RecommendationReport:
        """Rank an already featured catalog (e.g. from load_features)."""
        top_n = validate_top_n(top_n)
        query_vector = self.pipeline.featurize(query.image_reference)
        ranked = self.recommender.recommend(
            query_vector, scored, top_n, policy=self.pipeline.policy
        )
        return RecommendationReport(ranked=ranked, query=query)
