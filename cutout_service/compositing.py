"""
Alpha compositing of the source pixels with a refined alpha channel.

Output is straight (unpremultiplied) RGBA. Fully transparent pixels have their
colour zeroed so no background colour survives into later compositing, fully
opaque pixels are copied untouched, and partially transparent edge pixels keep
the source colour unless the defringe pass is enabled.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import cv2
import numpy as np

from . import config
from .buffers import AlphaChannel, CompositeResult, PixelBuffer
from .errors import DimensionMismatchError

logger = logging.getLogger(__name__)


def _compute_reference_field(rgb: np.ndarray, mask: np.ndarray, kernel: Tuple[int, int] = (5, 5)) -> np.ndarray:
    """Compute a color reference by blurring within a mask and normalizing."""
    mask = mask.astype(np.float32)
    mask_smoothed = cv2.blur(mask, kernel)
    ref = np.zeros(rgb.shape, dtype=np.float32)
    for c in range(3):
        channel = rgb[..., c].astype(np.float32)
        weighted = cv2.blur(channel * mask, kernel)
        ref[..., c] = np.where(
            mask_smoothed > 1e-3,
            weighted / np.clip(mask_smoothed, 1e-3, None),
            channel,
        )
    return ref


def _defringe_rgb(rgb: np.ndarray, alpha: np.ndarray, blend_strength: float) -> np.ndarray:
    """Blend edge pixels toward nearby solid foreground colors to reduce color bleed."""
    band = (alpha > 0) & (alpha < 255)
    if not np.any(band) or blend_strength <= 0:
        return rgb

    fg_reference = _compute_reference_field(rgb, alpha == 255)
    rgb_f = rgb.astype(np.float32)
    rgb_f = np.where(
        band[..., None],
        rgb_f * (1.0 - blend_strength) + fg_reference * blend_strength,
        rgb_f,
    )
    return np.clip(np.rint(rgb_f), 0.0, 255.0).astype(np.uint8)


def compose_rgba(
    source: PixelBuffer,
    alpha: AlphaChannel,
    refinement: int = 0,
    defringe: Optional[bool] = None,
    settings: Optional[config.Settings] = None,
) -> CompositeResult:
    """
    Attach `alpha` to `source` and clean up colour where it is not visible.

    Raises:
        DimensionMismatchError: the alpha channel and pixel buffer differ in size.
    """
    if source.size != alpha.size:
        raise DimensionMismatchError(
            f"Alpha channel {alpha.width}x{alpha.height} does not match image {source.width}x{source.height}"
        )
    settings = settings or config.get_settings()
    defringe = settings.defringe if defringe is None else defringe

    a8 = alpha.values
    rgb = np.array(source.rgb, dtype=np.uint8)
    if defringe:
        rgb = _defringe_rgb(rgb, a8, settings.defringe_blend)
    rgb[a8 == 0] = 0

    rgba = np.dstack([rgb, a8])
    logger.debug(
        "compose: %dx%d opaque=%d clear=%d defringe=%s",
        source.width,
        source.height,
        int(np.count_nonzero(a8 == 255)),
        int(np.count_nonzero(a8 == 0)),
        defringe,
    )
    return CompositeResult(image=PixelBuffer(rgba), refinement=refinement)


def premultiply(result: CompositeResult) -> np.ndarray:
    """Return the result as premultiplied RGBA uint8 (colour scaled by alpha)."""
    pixels = result.image.pixels.astype(np.uint16)
    a = pixels[..., 3:4]
    rgb = (pixels[..., :3] * a + 127) // 255
    return np.dstack([rgb, a]).astype(np.uint8)


def flatten_over(result: CompositeResult, background: Tuple[int, int, int]) -> PixelBuffer:
    """Render the cutout over an opaque colour: out = premultiplied + bg * (1 - a)."""
    premul = premultiply(result).astype(np.uint16)
    a = premul[..., 3:4]
    bg = np.array(background, dtype=np.uint16).reshape(1, 1, 3)
    rgb = premul[..., :3] + (bg * (255 - a) + 127) // 255
    return PixelBuffer.from_rgb(np.clip(rgb, 0, 255).astype(np.uint8))
