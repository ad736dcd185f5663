"""
512x512 source with a centered 256x256 subject, segmented at quarter
resolution, pushed through decode -> segment -> refine -> composite -> PNG.
"""

import asyncio
from io import BytesIO

import numpy as np
import pytest
from PIL import Image

from cutout_service.encoding import encode_result
from cutout_service.errors import SegmentationError
from cutout_service.pipeline import load_image, process_image_bytes, render

from conftest import FakeSegmenter, band_width, square_image


@pytest.fixture
def cached(square_png, square_segmenter, settings):
    return load_image(square_png, square_segmenter, "image/png", settings=settings)


def test_neutral_refinement_cuts_out_the_square(cached, settings):
    result = render(cached, 0, settings=settings)
    alpha = result.alpha

    assert np.all(alpha[132:380, 132:380] == 255)
    assert np.all(alpha[:124] == 0)
    assert np.all(alpha[388:] == 0)
    assert np.all(alpha[:, :124] == 0)
    assert np.all(alpha[:, 388:] == 0)
    # Bilinear 4x upsample: support of two source cells is eight target pixels.
    assert 0 < band_width(alpha) <= 8

    source = square_image()
    opaque = alpha == 255
    np.testing.assert_array_equal(result.image.rgb[opaque], source[..., :3][opaque])
    assert np.all(result.image.rgb[alpha == 0] == 0)


def test_max_sharpness_does_not_widen_the_band(cached, settings):
    neutral = render(cached, 0, settings=settings).alpha
    sharp = render(cached, 10, settings=settings).alpha
    assert band_width(sharp) <= band_width(neutral)


def test_max_softness_widens_the_band(cached, settings):
    neutral = render(cached, 0, settings=settings).alpha
    soft = render(cached, -10, settings=settings).alpha
    assert band_width(soft) > band_width(neutral)


def test_session_output_encodes_to_transparent_png(make_session, square_segmenter, square_png):
    session = make_session(square_segmenter)
    result = asyncio.run(session.process_new_image(square_png, "image/png"))
    with Image.open(BytesIO(encode_result(result))) as decoded:
        assert decoded.mode == "RGBA"
        pixels = np.asarray(decoded)
    assert pixels[0, 0, 3] == 0
    assert tuple(pixels[256, 256]) == (220, 30, 30, 255)


def test_one_shot_pipeline_returns_encoded_cutout(square_png, square_segmenter, settings):
    data = process_image_bytes(square_png, refinement=-3, segmenter=square_segmenter, settings=settings)
    with Image.open(BytesIO(data)) as decoded:
        assert decoded.format == "PNG"
        pixels = np.asarray(decoded.convert("RGBA"))
    assert pixels.shape == (512, 512, 4)
    assert pixels[0, 0, 3] == 0
    assert pixels[256, 256, 3] == 255


def test_one_shot_pipeline_wraps_segmenter_failures(square_png, settings):
    segmenter = FakeSegmenter(error=RuntimeError("model exploded"))
    with pytest.raises(SegmentationError, match="model exploded"):
        load_image(square_png, segmenter, "image/png", settings=settings)
