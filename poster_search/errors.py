"""
Error taxonomy for the poster search pipeline.

Per-item errors (FetchError, ExtractError, DimensionMismatch) are caught
by the pipeline and recommender and recorded against the item. Argument
and catalog errors are fatal to the call that raised them.
"""

from enum import Enum


class PosterSearchError(Exception):
    """Base class for all poster search errors."""


class FetchErrorKind(str, Enum):
    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"
    DECODE_FAILED = "decode_failed"
    EMPTY = "empty"


class ExtractErrorKind(str, Enum):
    EMPTY_IMAGE = "empty_image"


class FetchError(PosterSearchError):
    """An image reference could not be turned into a pixel buffer."""

    def __init__(self, kind: FetchErrorKind, reference: str, detail: str = ""):
        self.kind = kind
        self.reference = reference
        self.detail = detail
        message = f"{kind.value}: {reference}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class FetchCancelled(PosterSearchError):
    """A fetch was aborted because the caller's cancellation event fired."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"cancelled: {reference}")


class ExtractError(PosterSearchError):

    def __init__(self, kind: ExtractErrorKind = ExtractErrorKind.EMPTY_IMAGE,
                 detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}{': ' + detail if detail else ''}")


class DimensionMismatch(PosterSearchError, ValueError):
    """Two feature vectors of different length (or policy) were compared."""


class InvalidArgument(PosterSearchError, ValueError):
    """A call argument is out of range; raised before any work starts."""


class CatalogError(PosterSearchError):
    """The catalog source could not be read."""
