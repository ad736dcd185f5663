"""
One-shot background removal pipeline.

`process_image_bytes` is the synchronous entry point for scripts and batch
callers: bytes in -> decode -> segment -> refine -> composite -> encoded bytes
out. The interactive path with caching and supersession lives in `session`.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from . import config
from .buffers import CompositeResult, clamp_refinement
from .compositing import compose_rgba
from .encoding import encode_result
from .errors import SegmentationError
from .preprocessing import decode_image_bytes
from .refinement import refine_mask, validate_map_geometry
from .segmentation import ModnetSegmenter, Segmenter, as_probability_map
from .session import CachedImage

logger = logging.getLogger(__name__)


def load_image(
    image_bytes: bytes,
    segmenter: Segmenter,
    declared_mime_type: Optional[str] = None,
    settings: Optional[config.Settings] = None,
) -> CachedImage:
    """Decode and segment once; the returned cache can be rendered any number of times."""
    settings = settings or config.get_settings()
    source = decode_image_bytes(image_bytes, declared_mime_type)
    try:
        raw_map = segmenter.segment(source)
    except SegmentationError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise SegmentationError(f"Segmentation failed: {exc}") from exc
    prob_map = as_probability_map(raw_map)
    validate_map_geometry(prob_map, source.size, settings.aspect_ratio_tolerance)
    return CachedImage(source=source, probability_map=prob_map)


def render(
    cached: CachedImage,
    refinement: int = 0,
    settings: Optional[config.Settings] = None,
) -> CompositeResult:
    """Pure function of the cached image and the refinement parameter."""
    settings = settings or config.get_settings()
    refinement = clamp_refinement(refinement)
    alpha = refine_mask(cached.probability_map, refinement, cached.source.size, settings=settings)
    return compose_rgba(cached.source, alpha, refinement=refinement, settings=settings)


def process_image_bytes(
    image_bytes: bytes,
    refinement: int = 0,
    segmenter: Optional[Segmenter] = None,
    quality_mode: Optional[str] = None,
    output_format: str = "PNG",
    declared_mime_type: Optional[str] = None,
    settings: Optional[config.Settings] = None,
) -> bytes:
    """
    Full pipeline from raw bytes to RGBA image bytes.

    Raises:
        CutoutError: subclasses describing which stage failed.
        ValueError: unsupported output format.
    """
    settings = settings or config.get_settings()
    segmenter = segmenter or ModnetSegmenter(quality_mode, settings=settings)

    t0 = time.perf_counter()
    cached = load_image(image_bytes, segmenter, declared_mime_type, settings=settings)
    t1 = time.perf_counter()
    result = render(cached, refinement, settings=settings)
    t2 = time.perf_counter()
    data = encode_result(result, format=output_format)
    logger.info(
        "pipeline: %dx%d refinement=%d load=%.3fs render=%.3fs encode=%.3fs",
        result.width,
        result.height,
        result.refinement,
        t1 - t0,
        t2 - t1,
        time.perf_counter() - t2,
    )
    return data
