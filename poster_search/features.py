"""
Feature extraction policies.

A policy reduces a normalized cover to a fixed-length float vector.
Vectors are only comparable when they come from the same policy, so
each extractor carries a ``name`` that travels with the vectors it
produces.

Two policies ship:
    MeanColorExtractor     per-channel mean (R, G, B), 3 dimensions (default)
    HsvHistogramExtractor  Hue x Saturation histogram with CLAHE-equalized
                           Value channel, L2-normalized

Bin dimensions for the histogram are configurable via environment
variables (HSV_H_BINS, HSV_S_BINS).
"""

import os
import logging
from typing import Dict, Type

import cv2
import numpy as np

from .errors import ExtractError, ExtractErrorKind, InvalidArgument
from .preprocessing import is_empty_image, normalize_image

logger = logging.getLogger(__name__)

H_BINS = int(os.environ.get("HSV_H_BINS", "8"))
S_BINS = int(os.environ.get("HSV_S_BINS", "8"))


class FeatureExtractor:
    """
    Interface for extraction policies.

    Implementations must be pure: the same image always yields the same
    vector, and no I/O happens during extraction.
    """

    name = "base"
    dimensions = 0

    def extract(self, image_np: np.ndarray) -> np.ndarray:
        """
        Extract the feature vector of a normalized image.

        Raises:
            ExtractError: If given the empty image sentinel.
        """
        if is_empty_image(image_np):
            raise ExtractError(ExtractErrorKind.EMPTY_IMAGE)
        vector = self._extract(normalize_image(image_np))
        return np.asarray(vector, dtype=np.float64).reshape(self.dimensions)

    def _extract(self, image_np: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, dimensions={self.dimensions})"


class MeanColorExtractor(FeatureExtractor):
    """Arithmetic mean of each channel over all pixels, in R, G, B order."""

    name = "mean_rgb"
    dimensions = 3

    def _extract(self, image_np: np.ndarray) -> np.ndarray:
        return image_np.reshape(-1, 3).mean(axis=0, dtype=np.float64)


class HsvHistogramExtractor(FeatureExtractor):
    """
    L2-normalized Hue x Saturation histogram.

    Process:
        1. Convert to HSV and apply CLAHE to the V channel
        2. Compute H x S histogram with configured bin counts
        3. L2-normalize
    """

    name = "hsv_histogram"

    def __init__(self, h_bins: int = None, s_bins: int = None):
        self.h_bins = h_bins or H_BINS
        self.s_bins = s_bins or S_BINS
        self.dimensions = self.h_bins * self.s_bins

    def _extract(self, image_np: np.ndarray) -> np.ndarray:
        hsv = cv2.cvtColor(image_np, cv2.COLOR_RGB2HSV)

        # CLAHE equalization on V channel for lighting normalization
        h_ch, s_ch, v_ch = cv2.split(hsv)
        clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        hsv = cv2.merge((h_ch, s_ch, clahe.apply(v_ch)))

        # Hue (0-180) x Saturation (0-256)
        hist = cv2.calcHist([hsv], [0, 1], None,
                            [self.h_bins, self.s_bins], [0, 180, 0, 256])

        hist_flat = hist.flatten().astype(np.float64)
        norm = np.linalg.norm(hist_flat)
        if norm > 0:
            hist_flat = hist_flat / norm
        return hist_flat


EXTRACTORS: Dict[str, Type[FeatureExtractor]] = {
    MeanColorExtractor.name: MeanColorExtractor,
    HsvHistogramExtractor.name: HsvHistogramExtractor,
}


def get_extractor(name: str) -> FeatureExtractor:
    """Instantiate an extraction policy by name."""
    try:
        return EXTRACTORS[name]()
    except KeyError:
        raise InvalidArgument(
            f"Unknown extraction policy {name!r}; "
            f"choose from {sorted(EXTRACTORS)}"
        ) from None
