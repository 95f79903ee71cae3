"""Utility helpers for image inspection, validation and formatting.

Functions document the exceptions they raise so callers can handle them
consistently.
"""
from typing import Optional, Tuple
import math

import numpy as np
from PIL import Image


def get_size(path: str) -> Tuple[int, int]:
    """Return (width, height) of the image at ``path`` from its header.

    Raises:
        ValueError: when the file has no usable dimensions.
    """
    with Image.open(path) as im:
        width, height = im.size
    if not width or not height:
        raise ValueError(f'No dimensions found for file {path}.')
    return width, height


def validate_image_array(image_array: np.ndarray, min_size: int = 1, max_size: int = 20000) -> None:
    """Validate an (H, W[, C]) pixel array and raise descriptive exceptions on failure.

    Raises ValueError or TypeError with clear messages for callers to present to users.
    """
    if image_array is None:
        raise ValueError('image_array is None')

    if not hasattr(image_array, 'shape'):
        raise TypeError('image_array must be a numpy array-like with .shape')

    dims = image_array.shape
    if len(dims) not in (2, 3):
        raise ValueError(f'Invalid image dimensions: expected 2 or 3, got {len(dims)}')

    h, w = int(dims[0]), int(dims[1])
    if h <= 0 or w <= 0:
        raise ValueError('Image has non-positive dimensions')
    if h < min_size or w < min_size:
        raise ValueError(f'Image too small: minimum dimension is {min_size}px')
    if h > max_size or w > max_size:
        raise ValueError(f'Image too large: maximum dimension is {max_size}px')

    if not np.issubdtype(image_array.dtype, np.integer) and not np.issubdtype(image_array.dtype, np.floating):
        raise TypeError(f'Image dtype must be numeric, got {image_array.dtype}')

    if np.issubdtype(image_array.dtype, np.floating) and not np.isfinite(image_array).all():
        raise ValueError('Image array contains NaN or Inf values')


def format_time(seconds: Optional[float]) -> str:
    if seconds is None:
        return 'N/A'
    if seconds < 1.0:
        return f"{seconds*1000.0:.1f} ms"
    return f"{seconds:.3f} s"


def format_score(value: Optional[float], digits: int = 4) -> str:
    if value is None or math.isnan(value):
        return 'N/A'
    if math.isinf(value):
        return 'inf'
    return f"{value:.{digits}f}"
