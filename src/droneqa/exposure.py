"""
Exposure analysis on the BT.601 luma plane.

Produces three sub-scores that are blended into `exposure_score`:

* basic       - clipping percentages and 5th/95th percentile dynamic range
* spatial     - local contrast, highlight recovery and shadow detail
* perceptual  - midtone mass, clipping and global contrast

Every intermediate value is kept on `ExposureMetrics` for inspection.
"""
from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from .config import SCENE_PROFILES, ExposureConfig, SceneType
from .loader import PixelBuffer
from .models import ColorBalance, ExposureMetrics

log = logging.getLogger(__name__)

HIGHLIGHT_LEVEL, HIGHLIGHT_CLIP = 0.90, 0.98
SHADOW_LEVEL, SHADOW_CLIP = 0.10, 0.02
MIDTONE_BINS = (64, 192)
MIDTONE_TARGET_PCT = 40.0
SHADOW_CLIP_BINS, HIGHLIGHT_CLIP_BIN = 10, 245
CONTRAST_BAND = (0.3, 0.8)
CONTRAST_TARGET = 0.55
GRAY_WORLD_TARGET = 128.0


def _clamp(v: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return float(max(lo, min(hi, v)))


def _ycrcb(rgb: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    rgb = rgb.astype(np.float64) / 255.0
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
    y = 0.299 * r + 0.587 * g + 0.114 * b
    cr = (r - y) * 0.713 + 0.5
    cb = (b - y) * 0.564 + 0.5
    return y, cr, cb


def _percentile_bin(cumulative: np.ndarray, fraction: float) -> int:
    return int(np.searchsorted(cumulative, fraction * cumulative[-1], side="left"))


def histogram_balance(over_pct: float, under_pct: float, contrast_ratio: float) -> str:
    if over_pct > 5:
        return "overexposed"
    if under_pct > 5:
        return "underexposed"
    if contrast_ratio > 15:
        return "high-contrast"
    if contrast_ratio < 3:
        return "low-contrast"
    return "balanced"


# -------- spatial ---------------------------------------------------------
def local_contrast(y: np.ndarray, window: int, stride: int) -> float:
    if y.shape[0] < window or y.shape[1] < window:
        return 0.0
    patches = sliding_window_view(y, (window, window))[::stride, ::stride]
    spread = patches.max(axis=(2, 3)) - patches.min(axis=(2, 3))
    return float(spread.mean() * 100.0)


def highlight_recovery(y: np.ndarray) -> float:
    highlights = y[y > HIGHLIGHT_LEVEL]
    if highlights.size == 0:
        return 100.0
    return float(np.mean(highlights < HIGHLIGHT_CLIP) * 100.0)


def shadow_detail(y: np.ndarray) -> float:
    shadows = y[y < SHADOW_LEVEL]
    if shadows.size == 0:
        return 100.0
    return float(np.mean(shadows > SHADOW_CLIP) * 100.0)


def region_variance(y: np.ndarray, regions: int) -> float:
    """Std of per-region mean brightness over a regions x regions grid."""
    means = []
    for band in np.array_split(y, regions, axis=0):
        for cell in np.array_split(band, regions, axis=1):
            if cell.size:
                means.append(cell.mean())
    return float(np.std(means) * 255.0) if means else 0.0


# -------- perceptual ------------------------------------------------------
def perceptual_score(hist: np.ndarray, y: np.ndarray) -> float:
    total = hist.sum()
    if total == 0:
        return 0.0
    score = 100.0
    midtones = hist[MIDTONE_BINS[0]:MIDTONE_BINS[1]].sum() / total * 100.0
    if midtones < MIDTONE_TARGET_PCT:
        score -= (MIDTONE_TARGET_PCT - midtones) * 0.5

    shadow_clip = hist[:SHADOW_CLIP_BINS].sum() / total * 100.0
    highlight_clip = hist[HIGHLIGHT_CLIP_BIN:].sum() / total * 100.0
    score -= shadow_clip * 3.0 + highlight_clip * 3.0

    contrast = float(np.std(y))
    if CONTRAST_BAND[0] < contrast < CONTRAST_BAND[1]:
        score += 10.0
    else:
        score -= abs(contrast - CONTRAST_TARGET) * 20.0
    return _clamp(score)


# -------- entry point -----------------------------------------------------
def analyze_exposure(buf: PixelBuffer, config: Optional[ExposureConfig] = None,
                     scene: Optional[SceneType] = None) -> ExposureMetrics:
    """Exposure metrics for one buffer; a forced `scene` swaps in its clipping bins."""
    config = config or ExposureConfig()
    if scene is not None:
        profile = SCENE_PROFILES[scene]
        over_bin, under_bin = profile.overexposure_bin, profile.underexposure_bin
    else:
        over_bin, under_bin = config.overexposure_bin, config.underexposure_bin

    y, cr, cb = _ycrcb(buf.rgb)
    levels = np.clip(np.rint(y * 255.0), 0, 255).astype(np.int64)
    hist = np.bincount(levels.ravel(), minlength=256)
    total = float(hist.sum())

    over_pct = hist[over_bin:].sum() / total * 100.0
    under_pct = hist[:under_bin].sum() / total * 100.0
    cumulative = np.cumsum(hist)
    dynamic_range = float(_percentile_bin(cumulative, 0.95) - _percentile_bin(cumulative, 0.05))
    average = float(y.mean() * 255.0)
    lo, hi = float(levels.min()), float(levels.max())
    contrast_ratio = (hi + 0.05) / (lo + 0.05)

    lc = _clamp(local_contrast(y, config.window_size, config.window_stride))
    hr = highlight_recovery(y)
    sd = shadow_detail(y)

    basic = 100.0 - min(over_pct * 2.0, 30.0) - min(under_pct * 2.0, 30.0)
    basic = _clamp(basic - 20.0 + min(dynamic_range / config.optimal_dynamic_range, 1.0) * 20.0)
    spatial = _clamp(lc * config.local_contrast_weight
                     + hr * config.highlight_recovery_weight
                     + sd * config.shadow_detail_weight)
    perceptual = perceptual_score(hist, y)
    final = _clamp(basic * config.basic_weight
                   + spatial * config.spatial_weight
                   + perceptual * config.perceptual_weight)

    correction = GRAY_WORLD_TARGET / average if average > 0 else 1.0
    correction = max(0.5, min(2.0, correction))

    return ExposureMetrics(
        overexposure_percentage=float(over_pct),
        underexposure_percentage=float(under_pct),
        dynamic_range=dynamic_range,
        average_brightness=average,
        contrast_ratio=contrast_ratio,
        histogram_balance=histogram_balance(over_pct, under_pct, contrast_ratio),
        local_contrast=lc,
        highlight_recovery=hr,
        shadow_detail=sd,
        spatial_exposure_variance=region_variance(y, config.regions),
        color_balance=ColorBalance(y=float(y.mean()), cr=float(cr.mean()), cb=float(cb.mean())),
        correction_factor=correction,
        corrected_average_brightness=min(255.0, average * correction),
        basic_score=basic,
        spatial_score=spatial,
        perceptual_score=perceptual,
        exposure_score=final,
    )
