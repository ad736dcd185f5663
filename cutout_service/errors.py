"""Error taxonomy shared by every pipeline stage."""

from __future__ import annotations


class CutoutError(Exception):
    """Base class; `kind` is the stable identifier reported to callers."""

    kind = "internal_error"


class UnsupportedFormatError(CutoutError):
    kind = "unsupported_format"


class SegmentationError(CutoutError):
    kind = "segmentation_error"


class MaskShapeError(CutoutError):
    kind = "mask_shape"


class DimensionMismatchError(CutoutError):
    kind = "dimension_mismatch"


class CancelledError(CutoutError):
    """Raised inside a superseded request; never shown to the user."""

    kind = "cancelled"


class NoImageLoadedError(CutoutError):
    kind = "no_image"
