import numpy as np
import pytest
from PIL import Image


def make_gradient(width, height):
    """Horizontal ramp 0..255, RGB uint8."""
    row = np.linspace(0, 255, width)
    gray = np.tile(row, (height, 1)).astype(np.uint8)
    return np.stack([gray, gray, gray], axis=2)


def make_noise(width, height, seed=0):
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)


def save(array, path, **kwargs):
    Image.fromarray(array).save(path, **kwargs)
    return path


class FakeEngine:
    name = "fake"

    def __init__(self, text="HEADER\nABCDEFG12345\nFOOTER", error=None):
        self.text = text
        self.error = error
        self.calls = []

    def recognize(self, image_path):
        self.calls.append(str(image_path))
        if self.error is not None:
            raise self.error
        return self.text


@pytest.fixture
def gradient():
    return make_gradient(200, 200)


@pytest.fixture
def noise():
    return make_noise(300, 300)


@pytest.fixture
def reference_file(tmp_path, gradient):
    return save(gradient, tmp_path / "reference.png")


@pytest.fixture
def fake_engine():
    return FakeEngine()
