"""Turn a segmenter's probability map into a full-resolution alpha channel."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple

import cv2
import numpy as np

from . import config
from .buffers import AlphaChannel, ProbabilityMap, clamp_refinement
from .errors import MaskShapeError
from .resampling import box_feather, feather_kernel_size, logistic_contrast, resize_map, to_alpha_u8

logger = logging.getLogger(__name__)


def validate_map_geometry(
    prob_map: ProbabilityMap,
    target_size: Tuple[int, int],
    tolerance: float,
) -> None:
    """
    Reject maps that cannot be resized onto the target without distortion.

    A map one cell off in either direction is always accepted; smaller maps
    cannot express a ratio more precisely than that.
    """
    map_w, map_h = prob_map.size
    target_w, target_h = target_size
    if map_w <= 0 or map_h <= 0:
        raise MaskShapeError(f"Probability map has zero area ({map_w}x{map_h})")
    if target_w <= 0 or target_h <= 0:
        raise MaskShapeError(f"Target size has zero area ({target_w}x{target_h})")

    map_ratio = map_w / map_h
    target_ratio = target_w / target_h
    allowed = max(tolerance, 1.0 / min(map_w, map_h))
    deviation = abs(map_ratio - target_ratio) / target_ratio
    if deviation > allowed:
        raise MaskShapeError(
            f"Probability map {map_w}x{map_h} does not match image aspect {target_w}x{target_h} "
            f"(deviation {deviation:.3f} > {allowed:.3f})"
        )


def _shape_edges(values: np.ndarray, parameter: int, settings: config.Settings) -> np.ndarray:
    if parameter < 0:
        ksize = feather_kernel_size(-parameter * settings.feather_px_per_step, values.shape)
        return box_feather(values, ksize)
    if parameter > 0:
        return logistic_contrast(values, parameter * settings.sharpen_gain_per_step)
    return values


def _maybe_dump_debug(alpha_u8: np.ndarray, debug_dir: Path) -> None:
    """Optionally write the alpha and a transition band overlay when DEBUG is enabled."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        cv2.imwrite(str(debug_dir / "alpha.png"), alpha_u8)

        band = (alpha_u8 > 0) & (alpha_u8 < 255)
        overlay = cv2.cvtColor(alpha_u8, cv2.COLOR_GRAY2BGR)
        overlay[band] = [0, 0, 255]  # band pixels in red (BGR)
        cv2.imwrite(str(debug_dir / "band_overlay.png"), overlay)
        logger.debug("refine: wrote debug outputs to %s", debug_dir)
    except Exception as exc:  # noqa: BLE001
        logger.warning("refine: failed to write debug outputs: %s", exc)


def refine_mask(
    prob_map: ProbabilityMap,
    parameter: int,
    target_size: Tuple[int, int],
    settings: Optional[config.Settings] = None,
) -> AlphaChannel:
    """
    Build the alpha channel for `target_size` (width, height).

    Negative parameters feather the edge with a box kernel whose radius grows
    with |parameter|; positive ones steepen the transition around 0.5; zero
    only resamples.

    Raises:
        MaskShapeError: zero-area inputs or an aspect ratio mismatch.
    """
    settings = settings or config.get_settings()
    parameter = clamp_refinement(parameter)
    validate_map_geometry(prob_map, target_size, settings.aspect_ratio_tolerance)

    values = resize_map(np.clip(prob_map.values, 0.0, 1.0), target_size)
    values = _shape_edges(values, parameter, settings)
    alpha_u8 = to_alpha_u8(values)

    if logger.isEnabledFor(logging.DEBUG):
        band = (alpha_u8 > 0) & (alpha_u8 < 255)
        logger.debug(
            "refine: map=%dx%d target=%dx%d parameter=%d band fraction=%.4f",
            prob_map.width,
            prob_map.height,
            target_size[0],
            target_size[1],
            parameter,
            float(np.mean(band)),
        )

    if settings.debug:
        _maybe_dump_debug(alpha_u8, Path(settings.debug_output_dir))

    return AlphaChannel(alpha_u8)
