"""
Sensor noise and lens/compression artifacts.

noise_score = 100 - min(noise_level*k1, cap1)
                  - min(artifact_score*k2, cap2)
                  + min(snr*k3, cap3)
"""
from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np

from .backend import Dispatcher
from .config import NoiseConfig
from .loader import PixelBuffer
from .models import NoiseMetrics

log = logging.getLogger(__name__)

VIGNETTING_DROP_WEIGHT = 0.7
VIGNETTING_RESIDUAL_WEIGHT = 0.3


def _clamp(v: float, lo: float = 0.0, hi: float = 100.0) -> float:
    if not math.isfinite(v):
        return lo
    return float(max(lo, min(hi, v)))


def compression_score(boundary_mean: float, interior_mean: float, raw_scale: float) -> float:
    """Blocking: absolute boundary jumps and boundary-vs-interior continuity."""
    raw = _clamp(boundary_mean / raw_scale * 100.0)
    if interior_mean > 0:
        continuity = _clamp((boundary_mean / interior_mean - 1.0) * 100.0)
    else:
        continuity = 100.0 if boundary_mean > 0 else 0.0
    return (raw + continuity) / 2.0


def aberration_score(disagreement: np.ndarray) -> float:
    if disagreement.size == 0:
        return 0.0
    angular = float(disagreement[:, 0].mean())
    magnitude = float(disagreement[:, 1].mean())
    return _clamp((angular + magnitude) / 2.0 * 100.0)


def vignetting_score(ring_means: np.ndarray) -> float:
    """Center-to-edge drop plus deviation from a linear falloff."""
    radii = (np.arange(ring_means.size) + 0.5) / ring_means.size
    valid = np.isfinite(ring_means)
    if valid.sum() < 3:
        return 0.0
    radii, means = radii[valid], ring_means[valid]
    center = means[0]
    if center <= 0:
        return 0.0

    slope, intercept = np.polyfit(radii, means, 1)
    fitted = slope * radii + intercept
    drop = _clamp((center - means[-1]) / center * 100.0)
    rms = float(np.sqrt(np.mean((means - fitted) ** 2)))
    if rms < 1e-9 * center:
        # least-squares round-off on an exactly linear profile
        rms = 0.0
    residual = _clamp(rms / center * 100.0)
    return _clamp(drop * VIGNETTING_DROP_WEIGHT + residual * VIGNETTING_RESIDUAL_WEIGHT)


def analyze_noise(buf: PixelBuffer, dispatcher: Dispatcher,
                  config: Optional[NoiseConfig] = None) -> NoiseMetrics:
    config = config or NoiseConfig()
    gray = buf.gray

    variances = dispatcher.run("block_variance", gray, config.block_size)
    sigma = float(np.sqrt(variances.mean())) if variances.size else 0.0
    mean_luma = float(gray.mean())
    noise_level = _clamp(sigma / config.max_sigma * 100.0)
    snr = mean_luma / sigma if sigma > 0 else 0.0

    boundary, interior = dispatcher.run("blocking", gray, config.block_size)
    compression = compression_score(float(boundary), float(interior), config.blocking_raw_scale)
    aberration = aberration_score(dispatcher.run("aberration", buf.rgb, config.edge_threshold))
    vignetting = vignetting_score(dispatcher.run("vignetting", gray, config.vignetting_rings))

    artifact = _clamp(compression * config.compression_weight
                      + aberration * config.aberration_weight
                      + vignetting * config.vignetting_weight)
    score = (100.0
             - min(noise_level * config.noise_penalty_k, config.noise_penalty_cap)
             - min(artifact * config.artifact_penalty_k, config.artifact_penalty_cap)
             + min(snr * config.snr_bonus_k, config.snr_bonus_cap))

    log.debug("noise sigma=%.2f snr=%.2f artifacts=%.1f", sigma, snr, artifact)
    return NoiseMetrics(
        raw_standard_deviation=sigma,
        noise_level=noise_level,
        snr=snr,
        compression_artifacts=compression,
        chromatic_aberration=aberration,
        vignetting=vignetting,
        artifact_score=artifact,
        noise_score=_clamp(score),
    )
