"""
Concurrent catalog featurization.

Runs fetch -> normalize -> extract for every catalog item on a bounded
thread pool. One item's failure is recorded and never aborts the run;
the result is the featured subset plus a failure list. Results are
collected by the calling thread only and sorted by identifier before
returning, so output is the same whatever order fetches finish in.

Featured catalogs can be saved to and reloaded from a compressed
``.npz`` file so a later run can skip the network entirely.
"""

import os
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Iterable, List, Optional, Sequence

import numpy as np

from .errors import (
    ExtractError, FetchCancelled, FetchError, InvalidArgument,
)
from .features import FeatureExtractor, MeanColorExtractor
from .fetcher import ImageFetcher
from .models import (
    CatalogItem, ItemFailure, PipelineResult, ScoredItem, identifier_sort_key,
    is_valid_identifier,
)

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = int(os.environ.get("POSTER_CONCURRENCY", "8"))

# Progress is logged every this many finished items
PROGRESS_INTERVAL = 500

_SCORED = "scored"
_FAILED = "failed"
_CANCELLED = "cancelled"


def validate_concurrency(concurrency_limit) -> int:
    if (isinstance(concurrency_limit, bool)
            or not isinstance(concurrency_limit, int)
            or concurrency_limit < 1):
        raise InvalidArgument(
            f"concurrency_limit must be a positive integer, got {concurrency_limit!r}"
        )
    return concurrency_limit


class CatalogPipeline:
    """
    Featurizes catalogs with a shared fetcher and extraction policy.

    The same instance also featurizes the query cover, which keeps
    query and catalog vectors on one policy.
    """

    def __init__(self,
                 fetcher: ImageFetcher = None,
                 extractor: FeatureExtractor = None,
                 concurrency_limit: int = DEFAULT_CONCURRENCY):
        """
        Args:
            fetcher: Image fetcher; a default one is built when omitted.
            extractor: Extraction policy. Defaults to MeanColorExtractor.
            concurrency_limit: Maximum fetches in flight at once.
        """
        self.concurrency_limit = validate_concurrency(concurrency_limit)
        self.fetcher = fetcher or ImageFetcher(pool_size=self.concurrency_limit)
        self.extractor = extractor or MeanColorExtractor()

    @property
    def policy(self) -> str:
        return self.extractor.name

    def featurize(self, reference: str,
                  cancel_event: Optional[threading.Event] = None) -> np.ndarray:
        """
        Fetch one cover and extract its feature vector.

        Raises:
            FetchError, ExtractError, FetchCancelled, InvalidArgument
        """
        image = self.fetcher.fetch(reference, cancel_event)
        return self.extractor.extract(image)

    def process(self,
                items: Iterable[CatalogItem],
                concurrency_limit: int = None,
                cancel_event: Optional[threading.Event] = None) -> PipelineResult:
        """
        Featurize every item of a catalog concurrently.

        A KeyboardInterrupt while collecting sets the cancel event, drops
        queued work and waits for in-flight fetches to abort. The partial
        result is returned with unfinished items listed as cancelled.

        Args:
            items: Catalog items; identifiers must be unique.
            concurrency_limit: Overrides the pipeline's limit for this run.
            cancel_event: When set, in-flight fetches abort and items not
                yet finished are reported as cancelled.

        Returns:
            PipelineResult with scored items and failures, each sorted by
            identifier.

        Raises:
            InvalidArgument: Bad concurrency limit, or identifiers that are
                duplicated or not int/str.
        """
        limit = validate_concurrency(
            self.concurrency_limit if concurrency_limit is None else concurrency_limit
        )
        items = list(items)
        check_unique_identifiers(items)

        result = PipelineResult()
        if not items:
            return result

        if cancel_event is None:
            cancel_event = threading.Event()

        logger.info(
            f"Featurizing {len(items)} covers with {self.extractor.name} "
            f"(concurrency {limit})"
        )

        collected = set()
        interrupted = False
        with ThreadPoolExecutor(max_workers=limit,
                                thread_name_prefix="poster-fetch") as executor:
            futures = {
                executor.submit(self._process_item, item, cancel_event): item
                for item in items
            }
            try:
                for done, future in enumerate(as_completed(futures), start=1):
                    _collect(result, future.result())
                    collected.add(future)
                    if done % PROGRESS_INTERVAL == 0:
                        logger.info(f"Processed {done}/{len(items)} covers")
            except KeyboardInterrupt:
                logger.warning("Interrupted; cancelling outstanding fetches")
                interrupted = True
                cancel_event.set()
                for future in futures:
                    future.cancel()

        if interrupted:
            for future, item in futures.items():
                if future in collected:
                    continue
                if future.cancelled() or future.exception() is not None:
                    result.cancelled.append(item.identifier)
                else:
                    _collect(result, future.result())

        result.scored.sort(key=lambda s: identifier_sort_key(s.identifier))
        result.failures.sort(key=lambda f: identifier_sort_key(f.identifier))
        result.cancelled.sort(key=identifier_sort_key)

        logger.info(
            f"Catalog run complete: {len(result.scored)} featured, "
            f"{len(result.failures)} failed, {len(result.cancelled)} cancelled"
        )
        return result

    def _process_item(self, item: CatalogItem,
                      cancel_event: Optional[threading.Event]):
        reference = item.image_reference
        if cancel_event is not None and cancel_event.is_set():
            return _CANCELLED, item.identifier

        try:
            features = self.featurize(reference, cancel_event)
        except FetchCancelled:
            return _CANCELLED, item.identifier
        except (FetchError, ExtractError) as e:
            logger.warning(f"Skipping item {item.identifier}: {e}")
            return _FAILED, ItemFailure(item.identifier, reference,
                                        e.kind.value, str(e))
        except InvalidArgument as e:
            logger.warning(f"Skipping item {item.identifier}: {e}")
            return _FAILED, ItemFailure(item.identifier, reference,
                                        "invalid_reference", str(e))
        except Exception as e:
            logger.exception(f"Unexpected error processing item {item.identifier}")
            return _FAILED, ItemFailure(item.identifier, reference,
                                        "error", f"{type(e).__name__}: {e}")

        return _SCORED, ScoredItem(item=item, features=features,
                                   policy=self.extractor.name)


def _collect(result: PipelineResult, outcome) -> None:
    status, payload = outcome
    if status == _SCORED:
        result.scored.append(payload)
    elif status == _FAILED:
        result.failures.append(payload)
    else:
        result.cancelled.append(payload)


def check_unique_identifiers(items: Sequence[CatalogItem]) -> None:
    """Raise InvalidArgument on a duplicated or non int/str identifier."""
    seen = set()
    for item in items:
        if not is_valid_identifier(item.identifier):
            raise InvalidArgument(
                f"Catalog identifier must be int or str, got {item.identifier!r}"
            )
        if item.identifier in seen:
            raise InvalidArgument(f"Duplicate catalog identifier: {item.identifier!r}")
        seen.add(item.identifier)


def save_features(scored: Sequence[ScoredItem], path: str) -> str:
    """
    Save featured items to a compressed ``.npz`` file.

    Stores identifiers, the vector matrix and the extraction policy name.
    All items must share one policy and dimensionality.

    Returns:
        The path written.
    """
    policies = {s.policy for s in scored}
    if len(policies) > 1:
        raise InvalidArgument(f"Cannot save mixed policies: {sorted(policies)}")

    if not path.endswith(".npz"):
        path += ".npz"
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    if scored:
        matrix = np.vstack([s.features for s in scored]).astype(np.float64)
    else:
        matrix = np.zeros((0, 0), dtype=np.float64)

    identifiers = np.array([s.identifier for s in scored], dtype=object)
    np.savez_compressed(
        path,
        identifiers=identifiers,
        features=matrix,
        policy=np.array(policies.pop() if policies else ""),
    )
    logger.info(f"Saved {len(scored)} feature vectors to {path}")
    return path


def load_features(path: str, items: Iterable[CatalogItem]) -> List[ScoredItem]:
    """
    Re-attach saved vectors to catalog items by identifier.

    Saved identifiers with no matching item are ignored; items with no
    saved vector are left out.
    """
    with np.load(path, allow_pickle=True) as data:
        identifiers = list(data["identifiers"])
        matrix = data["features"]
        policy = str(data["policy"])

    vectors = {identifier: matrix[i] for i, identifier in enumerate(identifiers)}
    scored = [
        ScoredItem(item=item, features=vectors[item.identifier], policy=policy)
        for item in items
        if item.identifier in vectors
    ]
    scored.sort(key=lambda s: identifier_sort_key(s.identifier))
    logger.info(f"Loaded {len(scored)} of {len(identifiers)} saved vectors from {path}")
    return scored
