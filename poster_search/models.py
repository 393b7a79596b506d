"""
Data model shared by the pipeline and recommender.

CatalogItem is the immutable record handed in by the catalog source.
The pipeline attaches a feature vector to it (ScoredItem) or records an
ItemFailure; the recommender pairs ScoredItems with a distance
(RankedEntry) and returns them as a RankedResult.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Union

import numpy as np

Identifier = Union[int, str]


def identifier_sort_key(identifier: Identifier):
    """Total order over mixed int/str identifiers: ints first, then strings."""
    if isinstance(identifier, str):
        return (1, 0, identifier)
    return (0, identifier, "")


def is_valid_identifier(identifier) -> bool:
    # bool is an int subclass but True == 1 would collide with id 1
    return not isinstance(identifier, bool) and isinstance(identifier, (int, str))


@dataclass(frozen=True)
class CatalogItem:
    identifier: Identifier
    title: str
    genre: str
    image_reference: str

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "CatalogItem":
        """
        Build an item from a catalog record.

        Accepts ``id`` or ``identifier`` for the key and ``poster_link``
        as an alias of ``image_reference``.

        Raises:
            KeyError: If a required field is missing.
        """
        identifier = record["id"] if "id" in record else record["identifier"]
        reference = record.get("image_reference")
        if reference is None:
            reference = record["poster_link"]
        return cls(
            identifier=identifier,
            title=str(record.get("title", "")),
            genre=str(record.get("genre", "")),
            image_reference=str(reference),
        )


@dataclass(frozen=True, eq=False)
class ScoredItem:
    """A catalog item with the feature vector extracted from its cover."""

    item: CatalogItem
    features: np.ndarray
    policy: str

    @property
    def identifier(self) -> Identifier:
        return self.item.identifier


@dataclass(frozen=True)
class ItemFailure:
    identifier: Identifier
    reference: str
    kind: str
    detail: str = ""


@dataclass
class PipelineResult:
    """Outcome of one catalog run: featured items, failures and cancellations."""

    scored: List[ScoredItem] = field(default_factory=list)
    failures: List[ItemFailure] = field(default_factory=list)
    cancelled: List[Identifier] = field(default_factory=list)

    @property
    def was_cancelled(self) -> bool:
        return bool(self.cancelled)


@dataclass(frozen=True)
class RecommendationQuery:
    image_reference: str
    title: str = ""
    genre: str = "N/A"


@dataclass(frozen=True)
class RankedEntry:
    item: CatalogItem
    distance: float

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.item.identifier,
            "title": self.item.title,
            "genre": self.item.genre,
            "image_reference": self.item.image_reference,
            "distance": self.distance,
        }


@dataclass
class RankedResult:
    """Ranked entries (most similar first) plus entries skipped as incomparable."""

    entries: List[RankedEntry] = field(default_factory=list)
    skipped: List[ItemFailure] = field(default_factory=list)

    def __iter__(self) -> Iterator[RankedEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __getitem__(self, index):
        return self.entries[index]

    def identifiers(self) -> List[Identifier]:
        return [entry.item.identifier for entry in self.entries]

    def to_records(self) -> List[Dict[str, Any]]:
        return [entry.to_record() for entry in self.entries]


@dataclass
class RecommendationReport:
    """Everything a caller needs to display one recommendation run."""

    ranked: RankedResult
    failures: List[ItemFailure] = field(default_factory=list)
    cancelled: List[Identifier] = field(default_factory=list)
    query: Optional[RecommendationQuery] = None

    @property
    def skipped_count(self) -> int:
        return len(self.failures) + len(self.ranked.skipped)
