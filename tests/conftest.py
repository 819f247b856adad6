from __future__ import annotations

from io import BytesIO

import numpy as np
import pytest
from PIL import Image


def solid_rgb(width: int, height: int, rgb: tuple[int, int, int]) -> np.ndarray:
    arr = np.empty((height, width, 3), dtype=np.uint8)
    arr[:, :] = rgb
    return arr


def encode_rgb(rgb: np.ndarray, fmt: str = "PNG") -> bytes:
    buf = BytesIO()
    Image.fromarray(rgb).save(buf, format=fmt)
    return buf.getvalue()


def decode_rgb(data: bytes) -> np.ndarray:
    with Image.open(BytesIO(data)) as img:
        return np.asarray(img.convert("RGB"))


@pytest.fixture
def gradient_bgr() -> np.ndarray:
    ramp = np.arange(256, dtype=np.uint8)
    arr = np.zeros((256, 256, 3), dtype=np.uint8)
    arr[:, :, 0] = ramp[None, :]
    arr[:, :, 1] = ramp[:, None]
    arr[:, :, 2] = ramp[::-1][None, :]
    return arr


@pytest.fixture
def blue_sky_png() -> bytes:
    return encode_rgb(solid_rgb(1000, 1500, (100, 100, 220)))
