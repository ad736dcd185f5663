"""
Segmenter capability.

The pipeline only depends on the `Segmenter` protocol: one method that maps
pixels to a foreground-probability map. `ModnetSegmenter` binds it to a
TorchScript portrait-matting network; tests substitute deterministic fakes.
"""

from __future__ import annotations

import logging
import time
from typing import Optional, Protocol, runtime_checkable

import numpy as np
import torch
import torch.nn.functional as F

from . import config
from .buffers import PixelBuffer, ProbabilityMap
from .errors import SegmentationError
from .model_loader import get_segmentation_model
from .preprocessing import PreprocessResult, prepare_model_input

logger = logging.getLogger(__name__)


@runtime_checkable
class Segmenter(Protocol):
    def segment(self, buffer: PixelBuffer) -> ProbabilityMap:
        ...


def as_probability_map(value) -> ProbabilityMap:
    """Accept a `ProbabilityMap` or a bare 2-D array from a segmenter."""
    if isinstance(value, ProbabilityMap):
        return value
    if isinstance(value, np.ndarray):
        try:
            return ProbabilityMap(value)
        except ValueError as exc:
            raise SegmentationError(str(exc)) from exc
    raise SegmentationError(f"Segmenter returned {type(value).__name__}, expected ProbabilityMap")


def _primary_output(outputs) -> torch.Tensor:
    """Matting networks return either the matte or a tuple ending in it."""
    if isinstance(outputs, torch.Tensor):
        return outputs
    if isinstance(outputs, (list, tuple)):
        for item in reversed(outputs):
            if isinstance(item, torch.Tensor):
                return item
    raise SegmentationError(f"Segmenter returned no tensor output: {type(outputs)!r}")


class ModnetSegmenter:
    """MODNet-style TorchScript matting model behind the `Segmenter` protocol."""

    def __init__(self, quality_mode: Optional[str] = None, settings: Optional[config.Settings] = None):
        self.settings = settings or config.get_settings()
        self.quality_mode = quality_mode or self.settings.default_quality_mode
        if self.quality_mode not in config.QUALITY_MODES:
            raise ValueError("quality_mode must be one of fast | standard | high")

    def _run_inference(self, preprocessed: PreprocessResult, model: torch.nn.Module) -> np.ndarray:
        """Run the network and bring the matte to the aspect-preserving reduced size."""
        with torch.no_grad():
            pred = _primary_output(model(preprocessed.tensor, True))
        if pred.ndim == 3:
            pred = pred.unsqueeze(0)
        if pred.ndim != 4:
            raise SegmentationError(f"Unexpected matte shape: {tuple(pred.shape)}")
        matte_w, matte_h = preprocessed.matte_size
        matte = F.interpolate(
            pred[:, :1].float(),
            size=(matte_h, matte_w),
            mode="bilinear",
            align_corners=False,
        )
        return matte[0, 0].detach().cpu().numpy()

    def segment(self, buffer: PixelBuffer) -> ProbabilityMap:
        t0 = time.perf_counter()
        try:
            model, device = get_segmentation_model()
            max_edge = config.quality_to_long_edge(self.quality_mode, settings=self.settings)
            preprocessed = prepare_model_input(buffer, max_edge, device)
            matte = self._run_inference(preprocessed, model)
        except SegmentationError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Segmentation failed: %s", exc)
            raise SegmentationError("Segmentation model failed") from exc

        logger.debug(
            "segment: %dx%d -> matte %dx%d in %.3fs (mode=%s)",
            buffer.width,
            buffer.height,
            matte.shape[1],
            matte.shape[0],
            time.perf_counter() - t0,
            self.quality_mode,
        )
        return ProbabilityMap(matte)
