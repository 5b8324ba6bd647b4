import numpy as np
import pytest

from droneqa.config import SceneType
from droneqa.exposure import (
    analyze_exposure,
    highlight_recovery,
    histogram_balance,
    local_contrast,
    shadow_detail,
)
from droneqa.loader import PixelBuffer


def _flat(value: int, size: int = 64) -> PixelBuffer:
    return PixelBuffer.from_array(np.full((size, size, 3), value, dtype=np.uint8))


def test_mid_gray_has_no_clipping(gray_buffer):
    m = analyze_exposure(gray_buffer)
    assert m.overexposure_percentage == 0.0
    assert m.underexposure_percentage == 0.0
    assert m.dynamic_range == 0.0
    assert m.contrast_ratio == pytest.approx(1.0)
    assert m.histogram_balance == "low-contrast"
    assert m.average_brightness == pytest.approx(128.0, abs=0.01)
    assert m.correction_factor == pytest.approx(1.0, abs=0.01)


def test_white_frame_is_overexposed(gray_buffer):
    white = analyze_exposure(_flat(255))
    assert white.overexposure_percentage == pytest.approx(100.0)
    assert white.histogram_balance == "overexposed"
    assert white.highlight_recovery == 0.0
    assert white.exposure_score < analyze_exposure(gray_buffer).exposure_score


def test_black_frame_is_underexposed():
    black = analyze_exposure(_flat(0))
    assert black.underexposure_percentage == pytest.approx(100.0)
    assert black.histogram_balance == "underexposed"
    assert black.correction_factor == 1.0
    assert black.corrected_average_brightness == 0.0
    assert black.shadow_detail == 0.0


def test_forced_scene_uses_its_clipping_bins():
    bright = _flat(247)
    assert analyze_exposure(bright).overexposure_percentage == 0.0
    assert analyze_exposure(bright, scene=SceneType.AERIAL_SKY).overexposure_percentage == 100.0


def test_scores_stay_in_range(textured_buffer, checker_buffer):
    for buf in (textured_buffer, checker_buffer):
        m = analyze_exposure(buf)
        for value in (m.basic_score, m.spatial_score, m.perceptual_score, m.exposure_score,
                      m.local_contrast, m.highlight_recovery, m.shadow_detail):
            assert 0.0 <= value <= 100.0


def test_local_contrast_sees_edges():
    y = np.zeros((30, 30))
    y[:, 15:] = 1.0
    assert local_contrast(y, 9, 3) > 0
    assert local_contrast(np.full((30, 30), 0.5), 9, 3) == 0.0
    assert local_contrast(np.zeros((5, 5)), 9, 3) == 0.0


def test_highlight_and_shadow_without_candidates_are_perfect():
    mid = np.full((10, 10), 0.5)
    assert highlight_recovery(mid) == 100.0
    assert shadow_detail(mid) == 100.0


@pytest.mark.parametrize("over,under,ratio,label", [
    (6, 0, 10, "overexposed"),
    (0, 6, 10, "underexposed"),
    (0, 0, 20, "high-contrast"),
    (0, 0, 2, "low-contrast"),
    (1, 1, 10, "balanced"),
])
def test_histogram_balance(over, under, ratio, label):
    assert histogram_balance(over, under, ratio) == label


def test_color_balance_of_neutral_gray(gray_buffer):
    cb = analyze_exposure(gray_buffer).color_balance
    assert cb.cr == pytest.approx(0.5, abs=1e-6)
    assert cb.cb == pytest.approx(0.5, abs=1e-6)
