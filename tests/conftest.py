import io

import numpy as np
import pytest
from PIL import Image

from droneqa.backend import ArrayDevice, Dispatcher, ExecutionContext
from droneqa.config import EngineConfig, GpuConfig
from droneqa.loader import PixelBuffer
from droneqa.pipeline import QualityEngine


def _encode(arr: np.ndarray, fmt: str = "PNG", **save_kwargs) -> bytes:
    img = Image.fromarray(np.asarray(arr, dtype=np.uint8))
    out = io.BytesIO()
    img.save(out, format=fmt, **save_kwargs)
    return out.getvalue()


def _checkerboard(size: int = 128, square: int = 8) -> np.ndarray:
    yy, xx = np.indices((size, size))
    board = (((yy // square) + (xx // square)) % 2 * 255).astype(np.uint8)
    return np.stack([board] * 3, axis=-1)


def _textured(width: int = 160, height: int = 120, seed: int = 7) -> np.ndarray:
    rng = np.random.default_rng(seed)
    yy, xx = np.indices((height, width))
    base = 60 + 100 * xx / width + 30 * np.sin(yy / 6.0)
    img = np.stack([base, base * 0.9 + 10, base * 0.8 + 20], axis=-1)
    for _ in range(12):
        x0, y0 = rng.integers(0, width - 20), rng.integers(0, height - 20)
        img[y0:y0 + 15, x0:x0 + 15] = rng.integers(0, 255, size=3)
    img += rng.normal(0, 4, size=img.shape)
    return np.clip(img, 0, 255).astype(np.uint8)


@pytest.fixture
def encode():
    return _encode


@pytest.fixture
def gray_rgb():
    return np.full((100, 100, 3), 128, dtype=np.uint8)


@pytest.fixture
def gray_buffer(gray_rgb):
    return PixelBuffer.from_array(gray_rgb)


@pytest.fixture
def checker_buffer():
    return PixelBuffer.from_array(_checkerboard())


@pytest.fixture
def textured_rgb():
    return _textured()


@pytest.fixture
def textured_buffer(textured_rgb):
    return PixelBuffer.from_array(textured_rgb)


@pytest.fixture
def textured_png(textured_rgb):
    return _encode(textured_rgb)


@pytest.fixture
def cpu_context():
    return ExecutionContext(GpuConfig(processing_mode="cpu"))


@pytest.fixture
def cpu_dispatcher(cpu_context):
    return Dispatcher(cpu_context)


@pytest.fixture
def numpy_device():
    """Array device backed by numpy so the GPU code path runs without CUDA."""
    return ArrayDevice(np, name="numpy")


@pytest.fixture
def gpu_context(numpy_device):
    return ExecutionContext(GpuConfig(processing_mode="auto", min_pixels=0), device=numpy_device)


@pytest.fixture
def engine_config():
    return EngineConfig(gpu=GpuConfig(processing_mode="cpu"))


@pytest.fixture
def engine(engine_config):
    return QualityEngine(engine_config)
