"""
Sharpness from multi-scale Laplacian variance.

Blur detection:  variance of |Laplacian| at each scale, blended toward the
                 native resolution.
Scene check:     sky / ground pixel ratios pick the normalization factor.
"""
from __future__ import annotations

import logging
import math
from typing import Dict, Optional

import numpy as np
from PIL import Image

from .backend import Dispatcher
from .config import SCENE_PROFILES, BlurConfig, SceneType
from .loader import PixelBuffer
from .models import BlurMetrics

log = logging.getLogger(__name__)

SKY_MIN_BRIGHTNESS = 150     # 0-255
GROUND_MAX_BRIGHTNESS = 180  # 0-255
SCENE_SAMPLE_STEP = 4


def detect_scene(buf: PixelBuffer, config: Optional[BlurConfig] = None) -> SceneType:
    config = config or BlurConfig()
    rgb = buf.rgb.reshape(-1, 3)[::SCENE_SAMPLE_STEP].astype(np.int16)
    r, g, b = rgb[:, 0], rgb[:, 1], rgb[:, 2]
    mean = rgb.mean(axis=1)

    sky = float(np.mean((b > r) & (b > g) & (mean > SKY_MIN_BRIGHTNESS)))
    ground = float(np.mean(mean < GROUND_MAX_BRIGHTNESS))
    if sky > config.sky_ratio:
        return SceneType.AERIAL_SKY
    if ground > config.ground_ratio:
        return SceneType.GROUND_DETAIL
    return SceneType.MIXED


def normalization_for(scene: SceneType, config: BlurConfig) -> float:
    if scene is SceneType.MIXED:
        return config.normalization_factor
    return SCENE_PROFILES[scene].normalization_factor


def _rescale(gray: np.ndarray, factor: float) -> Optional[np.ndarray]:
    if factor == 1.0:
        return gray
    h, w = gray.shape
    new_w, new_h = int(w * factor), int(h * factor)
    if new_w < 3 or new_h < 3:
        return None
    small = Image.fromarray(gray.astype(np.float32)).resize((new_w, new_h), Image.Resampling.BILINEAR)
    return np.asarray(small, dtype=np.float64)


def analyze_blur(buf: PixelBuffer, dispatcher: Dispatcher,
                 config: Optional[BlurConfig] = None,
                 scene: Optional[SceneType] = None) -> BlurMetrics:
    config = config or BlurConfig()
    scene = scene or detect_scene(buf, config)
    norm = normalization_for(scene, config)

    variances: Dict[str, float] = {}
    weighted, total_weight = 0.0, 0.0
    for factor in config.scale_factors:
        img = _rescale(buf.gray, factor)
        if img is None:
            continue
        response = dispatcher.run("laplacian", img)
        if response.size == 0:
            continue
        var = float(np.var(response))
        if not math.isfinite(var):
            continue
        variances[f"{factor:g}"] = var
        weighted += factor * var
        total_weight += factor

    variance = weighted / total_weight if total_weight else 0.0
    score = max(0.0, min(100.0, math.log(variance + 1.0) * norm))
    log.debug("blur scene=%s variance=%.2f score=%.1f", scene.value, variance, score)
    return BlurMetrics(
        score=score,
        variance=variance,
        normalization_factor=norm,
        scene=scene,
        scale_variances=variances,
    )
