"""
Shared fixtures for Thermal Studio tests.

Provides synthetic source images, a fresh layer store, a controllable
clock and a worker that records requests instead of running them.
"""
import numpy as np
import pytest
from PIL import Image

from dithering_lib import DitherParams
from layer_store import LayerStore


# ── Images ──────────────────────────────────────────────────────────────

def gray_image(value, width=8, height=8, mode='RGB'):
    if mode == 'RGBA':
        return Image.new('RGBA', (width, height), (value, value, value, 255))
    return Image.new(mode, (width, height), (value, value, value) if mode == 'RGB' else value)


def gradient_image(width=64, height=32):
    """Horizontal black-to-white ramp with a little vertical variation."""
    xs = np.linspace(0, 255, width)
    ys = np.linspace(-20, 20, height)[:, None]
    gray = np.clip(xs[None, :] + ys, 0, 255).astype(np.uint8)
    rgb = np.stack([gray, gray, gray], axis=2)
    return Image.fromarray(rgb)


@pytest.fixture
def make_gray():
    return gray_image


@pytest.fixture
def gradient():
    return gradient_image()


@pytest.fixture
def store():
    return LayerStore()


@pytest.fixture
def threshold_params():
    return DitherParams(method='threshold', threshold=128)


# ── Scheduler helpers ───────────────────────────────────────────────────

class FakeClock:
    """Manually advanced clock (milliseconds in scheduler tests)."""

    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now += delta
        return self.now


class RecordingWorker:
    """Collects submitted requests without running the pipeline."""

    def __init__(self):
        self.requests = []

    def submit(self, request):
        self.requests.append(request)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recorder():
    return RecordingWorker()
