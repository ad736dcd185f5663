"""Serialize a composite into a downloadable, lossless, alpha-preserving container."""

from __future__ import annotations

from io import BytesIO
import logging

from PIL import Image

from .buffers import CompositeResult

logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    "PNG": "image/png",
    "WEBP": "image/webp",
    "TIFF": "image/tiff",
}


def encode_result(result: CompositeResult, format: str = "PNG") -> bytes:
    """
    Encode the RGBA pixels of `result`.

    Raises:
        ValueError: the format is lossy or cannot carry alpha.
    """
    fmt = (format or "PNG").upper()
    if fmt not in MEDIA_TYPES:
        raise ValueError(f"format must be one of {', '.join(sorted(MEDIA_TYPES))}")

    out = Image.fromarray(result.image.pixels)
    buf = BytesIO()
    if fmt == "WEBP":
        out.save(buf, format=fmt, lossless=True, exact=True)
    elif fmt == "TIFF":
        out.save(buf, format=fmt, compression="tiff_deflate")
    else:
        out.save(buf, format=fmt)
    data = buf.getvalue()
    logger.debug("encode: %s %dx%d -> %d bytes", fmt, result.width, result.height, len(data))
    return data
