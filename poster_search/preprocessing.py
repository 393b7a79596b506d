"""
Cover image normalization.

Every decoded cover is brought to uint8 RGB at one fixed resolution
before feature extraction, so features computed for different posters
are comparable. An image that is missing or has no pixels normalizes to
the EMPTY_IMAGE sentinel instead of raising; extractors refuse it.
"""

import os
import logging
from typing import Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# (width, height) every cover is resized to. The legacy poster size.
TARGET_RESOLUTION = (
    int(os.environ.get("POSTER_TARGET_WIDTH", "67")),
    int(os.environ.get("POSTER_TARGET_HEIGHT", "98")),
)

# Bilinear interpolation is deterministic for identical input buffers.
RESIZE_INTERPOLATION = cv2.INTER_LINEAR

EMPTY_IMAGE = np.zeros((0, 0, 3), dtype=np.uint8)
EMPTY_IMAGE.setflags(write=False)


def is_empty_image(image_np: Optional[np.ndarray]) -> bool:
    """True for None, the EMPTY_IMAGE sentinel, or any zero-sized buffer."""
    return image_np is None or image_np.size == 0


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """Ensure image is uint8 RGB format."""
    if image_np.dtype != np.uint8:
        if image_np.max() <= 1.0:
            image_np = (image_np * 255).astype(np.uint8)
        else:
            image_np = np.clip(image_np, 0, 255).astype(np.uint8)

    if image_np.ndim == 2:
        image_np = cv2.cvtColor(image_np, cv2.COLOR_GRAY2RGB)
    elif image_np.shape[2] == 4:
        image_np = cv2.cvtColor(image_np, cv2.COLOR_RGBA2RGB)
    return image_np


def resize_cover(image_np: np.ndarray,
                 target_size: Tuple[int, int] = None) -> np.ndarray:
    """
    Resize an RGB image to the target (width, height).

    Args:
        image_np: RGB uint8 image.
        target_size: (width, height); defaults to TARGET_RESOLUTION.

    Returns:
        Image of shape (height, width, 3).
    """
    width, height = target_size or TARGET_RESOLUTION
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid target resolution {width}x{height}")
    if image_np.shape[1] == width and image_np.shape[0] == height:
        return image_np
    return cv2.resize(image_np, (width, height),
                      interpolation=RESIZE_INTERPOLATION)


def normalize_cover(image_np: Optional[np.ndarray],
                    target_size: Tuple[int, int] = None) -> np.ndarray:
    """
    Full normalization stage: dtype/channel cleanup then resize.

    Returns EMPTY_IMAGE when there is nothing to normalize.
    """
    if is_empty_image(image_np):
        logger.debug("Normalizing empty image to sentinel")
        return EMPTY_IMAGE
    return resize_cover(normalize_image(image_np), target_size)
