import numpy as np
import pytest
import torch

from cutout_service import segmentation
from cutout_service.buffers import PixelBuffer, ProbabilityMap
from cutout_service.config import quality_to_long_edge
from cutout_service.errors import SegmentationError
from cutout_service.segmentation import ModnetSegmenter, Segmenter, as_probability_map

from conftest import FakeSegmenter, square_image


class RedMatte(torch.nn.Module):
    """Stands in for a matting network: foreground is where red beats blue."""

    def forward(self, img: torch.Tensor, inference: bool):
        matte = (img[:, 0:1] > img[:, 2:3]).float()
        return None, None, matte


class Broken(torch.nn.Module):
    def forward(self, img: torch.Tensor, inference: bool):
        raise RuntimeError("CUDA out of memory")


@pytest.fixture
def fake_model(monkeypatch):
    def install(model):
        monkeypatch.setattr(segmentation, "get_segmentation_model", lambda: (model, torch.device("cpu")))

    return install


def test_fake_segmenter_satisfies_protocol():
    assert isinstance(FakeSegmenter(), Segmenter)
    assert isinstance(ModnetSegmenter("fast"), Segmenter)


def test_modnet_segmenter_returns_reduced_map(settings, fake_model):
    fake_model(RedMatte())
    buffer = PixelBuffer(square_image(1000, 500)[:600])
    prob = ModnetSegmenter("fast", settings=settings).segment(buffer)
    assert isinstance(prob, ProbabilityMap)
    # 1000x600 scaled to a 512 long edge, not snapped to the network stride.
    assert prob.size == (512, 307)
    assert prob.values.min() >= 0.0 and prob.values.max() <= 1.0
    assert prob.values[150, 256] > 0.9
    assert prob.values[5, 5] < 0.1


def test_model_failure_becomes_segmentation_error(settings, fake_model):
    fake_model(Broken())
    with pytest.raises(SegmentationError):
        ModnetSegmenter("fast", settings=settings).segment(PixelBuffer(square_image(64, 32)))


def test_missing_checkpoint_becomes_segmentation_error(settings, monkeypatch):
    def missing():
        raise FileNotFoundError("SEGMENTER_MODEL_PATH is not configured")

    monkeypatch.setattr(segmentation, "get_segmentation_model", missing)
    with pytest.raises(SegmentationError):
        ModnetSegmenter(settings=settings).segment(PixelBuffer(square_image(64, 32)))


def test_unknown_quality_mode_is_rejected(settings):
    with pytest.raises(ValueError):
        ModnetSegmenter("ultra", settings=settings)


def test_bare_arrays_are_wrapped_and_clamped():
    prob = as_probability_map(np.array([[2.0, -1.0]]))
    assert prob.values.tolist() == [[1.0, 0.0]]


@pytest.mark.parametrize("value", [None, np.zeros((2, 2, 3)), "mask"])
def test_unusable_segmenter_output_is_rejected(value):
    with pytest.raises(SegmentationError):
        as_probability_map(value)


@pytest.mark.parametrize(
    "mode,expected",
    [("fast", 512), ("standard", 1024), ("high", 1536), ("anything-else", 1024)],
)
def test_quality_mode_picks_long_edge(settings, mode, expected):
    assert quality_to_long_edge(mode, settings) == expected
