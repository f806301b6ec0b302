"""Shared fixtures: synthetic RGBA images built with numpy."""

import io

import numpy as np
import pytest
from PIL import Image


def solid(width: int, height: int, rgb, alpha: int = 255) -> np.ndarray:
    image = np.zeros((height, width, 4), dtype=np.uint8)
    image[:, :, :3] = rgb
    image[:, :, 3] = alpha
    return image


@pytest.fixture
def make_image():
    """Build an RGBA array from (x0, y0, x1, y1, rgb) rectangles over a background."""

    def build(width: int, height: int, rects, background=(0, 0, 0), alpha: int = 255) -> np.ndarray:
        image = solid(width, height, background, alpha)
        for x0, y0, x1, y1, rgb in rects:
            image[y0:y1, x0:x1, :3] = rgb
            image[y0:y1, x0:x1, 3] = 255
        return image

    return build


@pytest.fixture
def png_bytes():
    """Encode an RGBA array as PNG bytes."""

    def encode(pixels: np.ndarray) -> bytes:
        buf = io.BytesIO()
        Image.fromarray(pixels).save(buf, format='PNG')
        return buf.getvalue()

    return encode
