from __future__ import annotations

from io import BytesIO
import threading
import time
from typing import Optional

import numpy as np
import pytest
from PIL import Image

from cutout_service.buffers import PixelBuffer, ProbabilityMap
from cutout_service.config import Settings
from cutout_service.session import CutoutSession


class FakeSegmenter:
    """Returns a fixed map; optionally waits on a gate, sleeps, or raises."""

    def __init__(
        self,
        prob_map: Optional[np.ndarray] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        gate: Optional[threading.Event] = None,
    ):
        self.prob_map = prob_map
        self.delay = delay
        self.error = error
        self.gate = gate
        self.calls = 0

    def segment(self, buffer: PixelBuffer) -> ProbabilityMap:
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.prob_map is None:
            # Red-dominant pixels are foreground, sampled at quarter resolution.
            small = buffer.pixels[::4, ::4].astype(np.int16)
            return ProbabilityMap((small[..., 0] > small[..., 2]).astype(np.float32))
        return ProbabilityMap(self.prob_map)


def square_map(size: int, square: int) -> np.ndarray:
    """A size x size background with a centered square of certain foreground."""
    m = np.zeros((size, size), dtype=np.float32)
    lo = (size - square) // 2
    m[lo : lo + square, lo : lo + square] = 1.0
    return m


def square_image(size: int = 512, square: int = 256) -> np.ndarray:
    """Red square on a blue background, fully opaque RGBA."""
    rgba = np.zeros((size, size, 4), dtype=np.uint8)
    rgba[..., 2] = 200
    rgba[..., 3] = 255
    lo = (size - square) // 2
    rgba[lo : lo + square, lo : lo + square, :3] = (220, 30, 30)
    return rgba


def encode_png(rgba: np.ndarray) -> bytes:
    buf = BytesIO()
    Image.fromarray(rgba).save(buf, format="PNG")
    return buf.getvalue()


def band_width(alpha: np.ndarray) -> float:
    """Partially transparent pixels per edge along the middle row."""
    row = alpha[alpha.shape[0] // 2]
    return float(np.count_nonzero((row > 0) & (row < 255))) / 2.0


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, segmentation_timeout_seconds=5.0)


@pytest.fixture
def square_png() -> bytes:
    return encode_png(square_image())


@pytest.fixture
def square_segmenter() -> FakeSegmenter:
    # 128x128 map for a 512x512 image: a 4x upsample.
    return FakeSegmenter(square_map(128, 64))


@pytest.fixture
def make_session(settings):
    sessions = []

    def _make(segmenter, **overrides) -> CutoutSession:
        session_settings = settings.model_copy(update=overrides) if overrides else settings
        session = CutoutSession(segmenter, settings=session_settings)
        sessions.append(session)
        return session

    yield _make
    for session in sessions:
        session.close()
