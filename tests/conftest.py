import numpy as np
import pytest
from PIL import Image

from pixelart_lib import PixelBuffer


def solid(width, height, color, channels=3):
    """Buffer filled with a single color (alpha 255 when channels == 4)."""
    arr = np.zeros((height, width, channels), dtype=np.uint8)
    arr[..., :3] = color
    if channels == 4:
        arr[..., 3] = 255
    return PixelBuffer(arr)


def step_gray(width=8, height=6, low=0, high=255):
    """Vertical step edge: left half `low`, right half `high`."""
    arr = np.full((height, width, 3), low, dtype=np.uint8)
    arr[:, width // 2:, :] = high
    return PixelBuffer(arr)


@pytest.fixture
def noisy_buffer():
    rng = np.random.default_rng(1234)
    return PixelBuffer(rng.integers(0, 256, size=(24, 32, 3), dtype=np.uint8))


@pytest.fixture
def rgba_buffer():
    rng = np.random.default_rng(99)
    arr = rng.integers(0, 256, size=(10, 12, 4), dtype=np.uint8)
    return PixelBuffer(arr)


@pytest.fixture
def png_file(tmp_path):
    rng = np.random.default_rng(7)
    arr = rng.integers(0, 256, size=(40, 60, 3), dtype=np.uint8)
    path = tmp_path / "input.png"
    Image.fromarray(arr).save(path)
    return path
