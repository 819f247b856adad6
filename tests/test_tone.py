from __future__ import annotations

import numpy as np
import pytest

from polar_studio.services.image_ops import (
    apply_tone_adjustment,
    boost_contrast,
    enhance_blue,
    suppress_highlights,
)


def _pixel(b: int, g: int, r: int) -> np.ndarray:
    return np.array([[[b, g, r]]], dtype=np.uint8)


def _clamp_byte(value: float) -> int:
    return int(min(max(value, 0.0), 255.0))


def _reference_pixel(b: int, g: int, r: int, intensity: float) -> list[int]:
    b, g, r = (_clamp_byte((c - 128.0) * (1.0 + intensity) + 128.0) for c in (b, g, r))
    b = _clamp_byte(b * (1.0 + intensity * 0.6))
    if (r + g + b) / 3 > 200:
        factor = 1.0 - intensity * 0.4
        b, g, r = (_clamp_byte(c * factor) for c in (b, g, r))
    return [b, g, r]


@pytest.mark.parametrize("intensity", [0.0, 0.3, 0.7, 1.0])
def test_matches_per_pixel_reference(intensity):
    rng = np.random.default_rng(7)
    image = rng.integers(0, 256, size=(40, 40, 3), dtype=np.uint8)
    image[0, :, :] = np.arange(0, 256, 256 // 40, dtype=np.uint8)[:40, None]
    expected = np.array(
        [[_reference_pixel(*map(int, px), intensity) for px in row] for row in image],
        dtype=np.uint8,
    )
    out = apply_tone_adjustment(image.copy(), intensity)
    np.testing.assert_array_equal(out, expected)


@pytest.mark.parametrize(
    "pixel, intensity, expected",
    [
        ((255, 255, 255), 1.0, [153, 153, 153]),
        ((0, 0, 0), 1.0, [0, 0, 0]),
        ((255, 0, 0), 1.0, [255, 0, 0]),
        ((0, 255, 255), 1.0, [0, 255, 255]),
        ((255, 255, 255), 3.0, [0, 0, 0]),
    ],
)
def test_saturated_channels_clamp_instead_of_wrapping(pixel, intensity, expected):
    assert apply_tone_adjustment(_pixel(*pixel), intensity)[0, 0].tolist() == expected


def test_zero_intensity_is_identity(gradient_bgr):
    original = gradient_bgr.copy()
    out = apply_tone_adjustment(gradient_bgr, 0.0)
    np.testing.assert_array_equal(out, original)


def test_adjustment_writes_in_place():
    image = _pixel(220, 100, 100)
    returned = apply_tone_adjustment(image, 0.7)
    assert returned is image
    assert image[0, 0].tolist() == [255, 80, 80]


def test_contrast_is_monotonic_above_midpoint():
    image = _pixel(150, 150, 150)
    previous = 150
    for intensity in np.linspace(0.0, 1.0, 11):
        value = int(boost_contrast(image, float(intensity))[0, 0, 2])
        assert value >= previous
        previous = value


def test_contrast_matches_formula():
    out = boost_contrast(_pixel(0, 100, 200), 0.7)
    # (100 - 128) * 1.7 + 128 = 80.4, (200 - 128) * 1.7 + 128 = 250.4
    assert out[0, 0].tolist() == [0, 80, 250]


def test_blue_enhancement_only_touches_blue():
    out = enhance_blue(_pixel(100, 100, 100), 0.5)
    assert out[0, 0].tolist() == [130, 100, 100]


def test_blue_enhancement_clamps():
    out = enhance_blue(_pixel(250, 10, 10), 1.0)
    assert out[0, 0, 0] == 255


def test_highlight_suppression_threshold():
    bright = suppress_highlights(_pixel(210, 210, 210), 0.7)
    assert bright[0, 0].tolist() == [151, 151, 151]

    dim = suppress_highlights(_pixel(190, 190, 190), 0.7)
    assert dim[0, 0].tolist() == [190, 190, 190]


def test_highlight_check_uses_adjusted_channels():
    # Mid grey only crosses the glare threshold after the contrast and blue boosts.
    image = _pixel(190, 190, 190)
    apply_tone_adjustment(image, 0.7)
    # contrast -> 233, blue -> 255, brightness 240.3 > 200, then * 0.72
    assert image[0, 0].tolist() == [183, 167, 167]
