"""
poster_search — Movie recommendations by poster similarity.

Fetches a catalog's worth of poster images concurrently, reduces each
to a small colour feature vector, and ranks the catalog by cosine
distance to a query poster.

Modules:
    engine         Recommender and end-to-end RecommendationEngine
    pipeline       Bounded concurrent catalog featurization
    fetcher        HTTP/file image retrieval with retries and timeouts
    preprocessing  Cover normalization and the empty-image sentinel
    features       Pluggable feature extraction policies
    scoring        Cosine distance and deterministic ranking
    catalog        JSON/CSV catalog source
    models         Shared data types
    errors         Error taxonomy
    cli            Console front-end
"""

from .engine import Recommender, RecommendationEngine
from .features import FeatureExtractor, HsvHistogramExtractor, MeanColorExtractor
from .fetcher import ImageFetcher
from .models import (
    CatalogItem, ItemFailure, PipelineResult, RankedEntry, RankedResult,
    RecommendationQuery, RecommendationReport, ScoredItem,
)
from .pipeline import CatalogPipeline

__version__ = "1.0.0"

__all__ = [
    "CatalogItem", "CatalogPipeline", "FeatureExtractor", "HsvHistogramExtractor",
    "ImageFetcher", "ItemFailure", "MeanColorExtractor", "PipelineResult",
    "RankedEntry", "RankedResult", "RecommendationEngine", "RecommendationQuery",
    "RecommendationReport", "Recommender", "ScoredItem",
]
