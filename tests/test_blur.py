import numpy as np
import pytest

from droneqa.blur import analyze_blur, detect_scene
from droneqa.config import BlurConfig, SceneType
from droneqa.loader import PixelBuffer


def test_uniform_gray_has_no_sharpness(gray_buffer, cpu_dispatcher):
    metrics = analyze_blur(gray_buffer, cpu_dispatcher)
    assert metrics.score == pytest.approx(0.0, abs=1e-6)
    assert metrics.variance == pytest.approx(0.0, abs=1e-9)


def test_checkerboard_is_sharp(checker_buffer, cpu_dispatcher):
    metrics = analyze_blur(checker_buffer, cpu_dispatcher)
    assert metrics.score > 80
    assert set(metrics.scale_variances) == {"1", "0.5", "0.25"}


def test_blurred_image_scores_below_sharp_one(textured_rgb, cpu_dispatcher):
    from scipy import ndimage

    sharp = PixelBuffer.from_array(textured_rgb)
    soft = PixelBuffer.from_array(ndimage.gaussian_filter(textured_rgb.astype(float), sigma=(3, 3, 0)))
    assert analyze_blur(soft, cpu_dispatcher).score < analyze_blur(sharp, cpu_dispatcher).score


def test_tiny_buffer_scores_zero_without_raising(cpu_dispatcher):
    buf = PixelBuffer.from_array(np.array([[0, 255], [255, 0]], dtype=np.uint8))
    assert analyze_blur(buf, cpu_dispatcher).score == 0.0


def test_sky_and_ground_detection():
    sky = PixelBuffer.from_array(np.tile(np.array([100, 150, 230], np.uint8), (50, 50, 1)))
    field = PixelBuffer.from_array(np.tile(np.array([40, 90, 30], np.uint8), (50, 50, 1)))
    snow = PixelBuffer.from_array(np.full((50, 50, 3), 240, np.uint8))
    assert detect_scene(sky) is SceneType.AERIAL_SKY
    assert detect_scene(field) is SceneType.GROUND_DETAIL
    assert detect_scene(snow) is SceneType.MIXED


def test_scene_picks_normalization(checker_buffer, cpu_dispatcher):
    ground = analyze_blur(checker_buffer, cpu_dispatcher, scene=SceneType.GROUND_DETAIL)
    sky = analyze_blur(checker_buffer, cpu_dispatcher, scene=SceneType.AERIAL_SKY)
    mixed = analyze_blur(checker_buffer, cpu_dispatcher, BlurConfig(normalization_factor=3.0),
                         scene=SceneType.MIXED)
    assert (ground.normalization_factor, sky.normalization_factor) == (18.0, 12.0)
    assert mixed.normalization_factor == 3.0


def test_native_scale_only(textured_buffer, cpu_dispatcher):
    metrics = analyze_blur(textured_buffer, cpu_dispatcher, BlurConfig(scale_factors=[1.0]))
    assert list(metrics.scale_variances) == ["1"]
    assert 0.0 <= metrics.score <= 100.0
