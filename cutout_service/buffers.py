"""
Pixel containers passed between pipeline stages.

Every array held by these types is flagged read-only; a stage that needs to
change pixels builds a new array instead of writing through a shared one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
from typing import Tuple

import numpy as np

REFINEMENT_MIN = -10
REFINEMENT_MAX = 10


def _frozen(array: np.ndarray) -> np.ndarray:
    # A read-only view may still share memory with a writable base.
    array = np.array(array, order="C", copy=True)
    array.setflags(write=False)
    return array


def clamp_refinement(value) -> int:
    """Round and clamp a slider value into the supported [-10, 10] range."""
    try:
        value = int(round(float(value)))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"refinement must be a number, got {value!r}") from exc
    return max(REFINEMENT_MIN, min(REFINEMENT_MAX, value))


@dataclass(frozen=True, eq=False)
class PixelBuffer:
    """Straight-alpha RGBA pixels, shape (H, W, 4), uint8."""

    pixels: np.ndarray

    def __post_init__(self) -> None:
        pixels = self.pixels
        if pixels.ndim != 3 or pixels.shape[2] != 4:
            raise ValueError(f"Expected RGBA pixels (H,W,4), got {pixels.shape}")
        if pixels.dtype != np.uint8:
            pixels = np.clip(pixels, 0, 255).astype(np.uint8)
        object.__setattr__(self, "pixels", _frozen(pixels))

    @classmethod
    def from_rgb(cls, rgb: np.ndarray, alpha: int = 255) -> "PixelBuffer":
        if rgb.ndim != 3 or rgb.shape[2] != 3:
            raise ValueError(f"Expected RGB image (H,W,3), got {rgb.shape}")
        a = np.full(rgb.shape[:2], alpha, dtype=np.uint8)
        return cls(np.dstack([rgb.astype(np.uint8), a]))

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height), matching PIL's convention."""
        return self.width, self.height

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[..., :3]


@dataclass(frozen=True, eq=False)
class ProbabilityMap:
    """Foreground likelihood per cell, shape (h, w), float32 in [0, 1]."""

    values: np.ndarray

    def __post_init__(self) -> None:
        values = np.asarray(self.values, dtype=np.float32)
        if values.ndim == 3 and values.shape[2] == 1:
            values = values[..., 0]
        if values.ndim != 2:
            raise ValueError(f"Expected a 2-D probability map, got {values.shape}")
        # Segmenters are untrusted; NaNs count as background.
        values = np.clip(np.nan_to_num(values, nan=0.0, posinf=1.0, neginf=0.0), 0.0, 1.0)
        object.__setattr__(self, "values", _frozen(values.astype(np.float32)))

    @property
    def width(self) -> int:
        return int(self.values.shape[1])

    @property
    def height(self) -> int:
        return int(self.values.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height


@dataclass(frozen=True, eq=False)
class AlphaChannel:
    """Per-pixel opacity at source resolution, shape (H, W), uint8."""

    values: np.ndarray

    def __post_init__(self) -> None:
        values = self.values
        if values.ndim != 2:
            raise ValueError(f"Expected a 2-D alpha channel, got {values.shape}")
        if values.dtype != np.uint8:
            values = np.clip(values, 0, 255).astype(np.uint8)
        object.__setattr__(self, "values", _frozen(values))

    @property
    def width(self) -> int:
        return int(self.values.shape[1])

    @property
    def height(self) -> int:
        return int(self.values.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def transition_band(self) -> np.ndarray:
        """Boolean mask of pixels that are neither fully opaque nor fully clear."""
        return (self.values > 0) & (self.values < 255)


def content_digest(pixels: np.ndarray) -> str:
    h, w = pixels.shape[:2]
    digest = hashlib.sha256()
    digest.update(f"{w}x{h}:".encode("ascii"))
    digest.update(np.ascontiguousarray(pixels).tobytes())
    return digest.hexdigest()


@dataclass(frozen=True, eq=False)
class CompositeResult:
    image: PixelBuffer
    refinement: int = 0
    content_id: str = field(default="")

    def __post_init__(self) -> None:
        if not self.content_id:
            object.__setattr__(self, "content_id", content_digest(self.image.pixels))

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def alpha(self) -> np.ndarray:
        return self.image.pixels[..., 3]
