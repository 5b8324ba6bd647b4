import numpy as np
import pytest

from droneqa.loader import PixelBuffer
from droneqa.noise import aberration_score, analyze_noise, compression_score, vignetting_score


def test_uniform_gray_is_noise_free(gray_buffer, cpu_dispatcher):
    m = analyze_noise(gray_buffer, cpu_dispatcher)
    assert m.raw_standard_deviation == 0.0
    assert m.snr == 0.0
    assert m.artifact_score == pytest.approx(0.0, abs=1e-9)
    assert m.noise_score == pytest.approx(100.0, abs=0.5)


def test_sensor_noise_lowers_the_score(gray_buffer, cpu_dispatcher):
    rng = np.random.default_rng(3)
    noisy = np.clip(128 + rng.normal(0, 25, size=(100, 100, 3)), 0, 255)
    m = analyze_noise(PixelBuffer.from_array(noisy), cpu_dispatcher)
    assert m.noise_level > 50
    assert m.noise_score < analyze_noise(gray_buffer, cpu_dispatcher).noise_score
    assert 0.0 <= m.noise_score <= 100.0


def test_blocky_image_has_compression_artifacts(cpu_dispatcher):
    rng = np.random.default_rng(5)
    blocks = rng.integers(40, 200, size=(8, 8))
    img = np.kron(blocks, np.ones((8, 8))).astype(np.uint8)
    m = analyze_noise(PixelBuffer.from_array(img), cpu_dispatcher)
    assert m.compression_artifacts > 50


def test_compression_score_continuity():
    assert compression_score(0.0, 0.0, 10.0) == 0.0
    # boundaries no rougher than the interior: only the raw term remains
    assert compression_score(2.0, 2.0, 10.0) == pytest.approx(10.0)
    assert compression_score(20.0, 0.0, 10.0) == 100.0


def test_vignetting_detects_radial_falloff():
    falling = np.linspace(200, 100, 10)
    flat = np.full(10, 150.0)
    assert vignetting_score(falling) == pytest.approx(35.0)
    assert vignetting_score(flat) == 0.0
    assert vignetting_score(np.array([np.nan, np.nan, 100.0])) == 0.0


def test_vignetting_on_a_darkened_frame(cpu_dispatcher):
    yy, xx = np.indices((120, 120))
    r = np.hypot(yy - 59.5, xx - 59.5) / np.hypot(59.5, 59.5)
    img = (200 * (1 - 0.6 * r ** 2)).astype(np.uint8)
    m = analyze_noise(PixelBuffer.from_array(img), cpu_dispatcher)
    assert m.vignetting > 20


def test_aberration_without_edges_is_zero():
    assert aberration_score(np.empty((0, 2))) == 0.0
    assert aberration_score(np.array([[0.5, 0.5]])) == pytest.approx(50.0)


def test_color_fringes_raise_aberration(cpu_dispatcher):
    img = np.zeros((40, 40, 3), dtype=np.uint8)
    img[:, 20:] = 255
    aligned = analyze_noise(PixelBuffer.from_array(img), cpu_dispatcher).chromatic_aberration
    shifted = img.copy()
    shifted[:, :, 0] = np.roll(img[:, :, 0], 3, axis=1)
    fringed = analyze_noise(PixelBuffer.from_array(shifted), cpu_dispatcher).chromatic_aberration
    assert aligned == pytest.approx(0.0, abs=1e-9)
    assert fringed > aligned
