"""Resizing and edge-kernel helpers shared by the refiner and compositor."""

from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np


def resize_map(values: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
    """Bilinear resize of a float map to (width, height); no-op when sizes match."""
    width, height = size
    if values.shape[:2] == (height, width):
        return values.astype(np.float32, copy=True)
    resized = cv2.resize(values.astype(np.float32), (width, height), interpolation=cv2.INTER_LINEAR)
    return np.clip(resized, 0.0, 1.0)


def feather_kernel_size(radius: int, shape: Tuple[int, int]) -> int:
    """Odd box size for a feather radius, capped so it never dwarfs the image."""
    radius = max(int(radius), 0)
    cap = max(shape[0], shape[1])
    radius = min(radius, cap)
    return 2 * radius + 1


def box_feather(values: np.ndarray, ksize: int) -> np.ndarray:
    """Average over a ksize x ksize window; replicate the border so edges stay solid."""
    if ksize <= 1:
        return values
    blurred = cv2.blur(values.astype(np.float32), (ksize, ksize), borderType=cv2.BORDER_REPLICATE)
    return np.clip(blurred, 0.0, 1.0)


def logistic_contrast(values: np.ndarray, gain: float) -> np.ndarray:
    """
    Steepen values around 0.5 with a logistic curve rescaled to keep 0 -> 0 and 1 -> 1.

    The curve is strictly increasing for any positive gain, so ordering between
    pixels is preserved.
    """
    if gain <= 0:
        return values
    v = values.astype(np.float64)
    lo = 1.0 / (1.0 + np.exp(gain * 0.5))
    hi = 1.0 / (1.0 + np.exp(-gain * 0.5))
    curve = 1.0 / (1.0 + np.exp(-gain * (v - 0.5)))
    out = (curve - lo) / (hi - lo)
    return np.clip(out, 0.0, 1.0).astype(np.float32)


def to_alpha_u8(values: np.ndarray) -> np.ndarray:
    # Round rather than truncate so 0.9999999 from float resampling stays opaque.
    return np.clip(np.rint(values.astype(np.float64) * 255.0), 0, 255).astype(np.uint8)
