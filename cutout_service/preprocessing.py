"""
Image decoding and segmenter input preparation.

`decode_image_bytes` turns an upload into the RGBA `PixelBuffer` every later
stage works on. `prepare_model_input` normalizes that buffer into the matting
network's input space and resizes by the longest edge for a speed/quality
balance.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
import math
from typing import Optional, Tuple

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError
import torch

from .buffers import PixelBuffer
from .errors import UnsupportedFormatError

logger = logging.getLogger(__name__)


@dataclass
class PreprocessResult:
    tensor: torch.Tensor
    orig_size: Tuple[int, int]  # (width, height)
    resized_size: Tuple[int, int]  # network input, multiples of 32
    matte_size: Tuple[int, int]  # aspect-preserving reduced size


def decode_image_bytes(image_bytes: bytes, declared_mime_type: Optional[str] = None) -> PixelBuffer:
    """
    Decode an uploaded file into straight-alpha RGBA pixels.

    Raises:
        UnsupportedFormatError: declared type is not an image or the bytes
            cannot be decoded.
    """
    if declared_mime_type and not declared_mime_type.lower().startswith("image/"):
        raise UnsupportedFormatError(f"Unsupported file type: {declared_mime_type}")
    if not image_bytes:
        raise UnsupportedFormatError("Uploaded file is empty")

    try:
        with Image.open(BytesIO(image_bytes)) as image:
            image.load()
            image = ImageOps.exif_transpose(image)
            rgba = image.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise UnsupportedFormatError("Invalid image data") from exc

    if rgba.width == 0 or rgba.height == 0:
        raise UnsupportedFormatError("Image has no pixels")

    logger.debug("decoded image %dx%d (declared=%s)", rgba.width, rgba.height, declared_mime_type)
    return PixelBuffer(np.asarray(rgba))


def _compute_resize_dims(width: int, height: int, max_long_edge: int) -> Tuple[int, int]:
    """Preserve aspect ratio while constraining the longest edge."""
    if max_long_edge <= 0:
        return width, height
    long_edge = max(width, height)
    if long_edge <= max_long_edge:
        return width, height
    scale = max_long_edge / long_edge
    return max(1, int(round(width * scale))), max(1, int(round(height * scale)))


def _snap_to_stride(width: int, height: int, stride: int = 32) -> Tuple[int, int]:
    # Down/up sampling chains in the matting network need dimensions divisible by 32.
    return max(stride, math.ceil(width / stride) * stride), max(stride, math.ceil(height / stride) * stride)


def prepare_model_input(buffer: PixelBuffer, max_long_edge: int, device: torch.device) -> PreprocessResult:
    """
    Resize the RGB pixels for the network and normalize to [-1, 1].

    The alpha of the source is ignored; the network only sees colour.
    """
    orig_w, orig_h = buffer.size
    matte_w, matte_h = _compute_resize_dims(orig_w, orig_h, max_long_edge)
    new_w, new_h = _snap_to_stride(matte_w, matte_h)

    image = Image.fromarray(np.ascontiguousarray(buffer.rgb))
    if (new_w, new_h) != (orig_w, orig_h):
        image = image.resize((new_w, new_h), Image.BILINEAR)

    im_np = np.asarray(image).astype("float32") / 255.0
    im_np = (im_np - 0.5) / 0.5
    im_np = np.transpose(im_np, (2, 0, 1))  # HWC -> CHW

    tensor = torch.from_numpy(np.ascontiguousarray(im_np)).unsqueeze(0).to(device)

    return PreprocessResult(
        tensor=tensor,
        orig_size=(orig_w, orig_h),
        resized_size=(new_w, new_h),
        matte_size=(matte_w, matte_h),
    )
