"""
Engine configuration: tuning constants, weight presets and scene profiles.

All empirically chosen constants live here as defaults so they can be
recalibrated against labelled data without touching the analyzers.
"""
from __future__ import annotations

import json
import math
import os
from copy import deepcopy
from enum import Enum
from typing import Any, Dict, List, Literal, NamedTuple, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError

# -------- scenes ------------------------------------------------------------
class SceneType(str, Enum):
    AERIAL_SKY = "aerial_sky"
    GROUND_DETAIL = "ground_detail"
    MIXED = "mixed"


class SceneProfile(NamedTuple):
    normalization_factor: float
    overexposure_bin: int
    underexposure_bin: int
    keypoint_density: float


SCENE_PROFILES: Dict[SceneType, SceneProfile] = {
    SceneType.AERIAL_SKY:    SceneProfile(12.0, 245, 10, 0.3),
    SceneType.GROUND_DETAIL: SceneProfile(18.0, 250, 5, 1.0),
    SceneType.MIXED:         SceneProfile(15.0, 248, 7, 0.7),
}

# -------- classification ----------------------------------------------------
RECOMMENDATION_TIERS: Tuple[Tuple[float, str], ...] = (
    (85.0, "excellent"),
    (70.0, "good"),
    (55.0, "acceptable"),
    (40.0, "poor"),
    (0.0, "unsuitable"),
)


def validate_tiers(tiers) -> Tuple[Tuple[float, str], ...]:
    """Tier tables must be strictly descending and end at 0."""
    tiers = tuple((float(t), str(label)) for t, label in tiers)
    if not tiers:
        raise ValueError("tier table is empty")
    bounds = [t for t, _ in tiers]
    if any(a <= b for a, b in zip(bounds, bounds[1:])):
        raise ValueError(f"tier thresholds must be strictly descending: {bounds}")
    if bounds[-1] != 0.0:
        raise ValueError("lowest tier must start at 0")
    return tiers


# -------- weights -----------------------------------------------------------
class QualityWeights(BaseModel):
    blur: float = Field(default=0.30, ge=0.0, le=1.0)
    exposure: float = Field(default=0.25, ge=0.0, le=1.0)
    noise: float = Field(default=0.20, ge=0.0, le=1.0)
    technical: float = Field(default=0.10, ge=0.0, le=1.0)
    descriptor: float = Field(default=0.15, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _sums_to_one(self):
        total = self.blur + self.exposure + self.noise + self.technical + self.descriptor
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise ValueError(f"weights must sum to 1.0, got {total:.6f}")
        return self

    def as_dict(self) -> Dict[str, float]:
        return self.model_dump()


WEIGHT_PRESETS: Dict[str, QualityWeights] = {
    "default": QualityWeights(),
    "photogrammetric": QualityWeights(
        blur=0.30, exposure=0.20, noise=0.10, technical=0.0, descriptor=0.40
    ),
}


# -------- per-stage settings ------------------------------------------------
class LoaderConfig(BaseModel):
    default_max_size: int = Field(default=800, ge=64, le=8192)
    gpu_max_size: int = Field(default=1600, ge=64, le=8192)
    gpu_min_source_pixels: int = Field(default=500_000, ge=0)
    # (megapixels above which, cap) - checked largest first
    megapixel_caps: List[Tuple[float, int]] = Field(
        default_factory=lambda: [(40.0, 600), (20.0, 700)]
    )
    decode_timeout_s: float = Field(
        default_factory=lambda: float(os.getenv("DRONEQA_DECODE_TIMEOUT_S", "20")),
        gt=0.0, le=600.0,
    )
    thumbnail_timeout_s: float = Field(default=5.0, gt=0.0, le=120.0)
    thumbnail_size: int = Field(default=150, ge=16, le=1024)
    generate_thumbnails: bool = False
    # refuse to decode sources larger than this (Pillow keeps its own bomb guard)
    max_source_pixels: int = Field(default=150_000_000, ge=1)

    @model_validator(mode="after")
    def _thumbnail_bound_is_shorter(self):
        if self.thumbnail_timeout_s > self.decode_timeout_s:
            self.thumbnail_timeout_s = self.decode_timeout_s
        return self


class BlurConfig(BaseModel):
    scale_factors: List[float] = Field(default_factory=lambda: [1.0, 0.5, 0.25])
    normalization_factor: float = Field(default=15.0, gt=0.0)
    sky_ratio: float = Field(default=0.4, ge=0.0, le=1.0)
    ground_ratio: float = Field(default=0.6, ge=0.0, le=1.0)

    @field_validator("scale_factors")
    @classmethod
    def _factors_in_range(cls, v: List[float]) -> List[float]:
        if not v or any(not 0.0 < f <= 1.0 for f in v):
            raise ValueError("scale factors must be in (0, 1]")
        return v


class ExposureConfig(BaseModel):
    overexposure_bin: int = Field(default=250, ge=1, le=255)
    underexposure_bin: int = Field(default=5, ge=0, le=254)
    window_size: int = Field(default=9, ge=3, le=63)
    window_stride: int = Field(default=3, ge=1, le=32)
    regions: int = Field(default=4, ge=1, le=16)
    optimal_dynamic_range: float = Field(default=200.0, gt=0.0)
    basic_weight: float = Field(default=0.40, ge=0.0, le=1.0)
    spatial_weight: float = Field(default=0.35, ge=0.0, le=1.0)
    perceptual_weight: float = Field(default=0.25, ge=0.0, le=1.0)
    local_contrast_weight: float = Field(default=0.70, ge=0.0, le=1.0)
    highlight_recovery_weight: float = Field(default=0.15, ge=0.0, le=1.0)
    shadow_detail_weight: float = Field(default=0.15, ge=0.0, le=1.0)


class NoiseConfig(BaseModel):
    block_size: int = Field(default=8, ge=2, le=64)
    max_sigma: float = Field(default=20.0, gt=0.0)
    noise_penalty_k: float = Field(default=2.0, ge=0.0)
    noise_penalty_cap: float = Field(default=40.0, ge=0.0, le=100.0)
    artifact_penalty_k: float = Field(default=1.0, ge=0.0)
    artifact_penalty_cap: float = Field(default=30.0, ge=0.0, le=100.0)
    snr_bonus_k: float = Field(default=0.5, ge=0.0)
    snr_bonus_cap: float = Field(default=20.0, ge=0.0, le=100.0)
    compression_weight: float = Field(default=1 / 3, ge=0.0, le=1.0)
    aberration_weight: float = Field(default=1 / 3, ge=0.0, le=1.0)
    vignetting_weight: float = Field(default=1 / 3, ge=0.0, le=1.0)
    blocking_raw_scale: float = Field(default=10.0, gt=0.0)
    edge_threshold: float = Field(default=40.0, ge=0.0)
    vignetting_rings: int = Field(default=10, ge=3, le=64)


class FeatureConfig(BaseModel):
    max_per_detector: int = Field(default=500, ge=1)
    max_keypoints: int = Field(default=2000, ge=1)
    min_distance: float = Field(default=5.0, ge=0.0)
    harris_k: float = Field(default=0.04, gt=0.0, lt=0.25)
    harris_threshold: float = Field(default=0.01, ge=0.0, le=1.0)
    fast_threshold: float = Field(default=20.0, ge=0.0)
    fast_min_arc: int = Field(default=9, ge=1, le=16)
    edge_threshold: float = Field(default=50.0, ge=0.0)
    blob_threshold: float = Field(default=100.0, ge=0.0)
    grid_size: int = Field(default=8, ge=1, le=64)
    density_target: int = Field(default=2000, ge=1)
    density_weight: float = Field(default=0.20, ge=0.0, le=1.0)
    distribution_weight: float = Field(default=0.25, ge=0.0, le=1.0)
    strength_weight: float = Field(default=0.20, ge=0.0, le=1.0)
    quality_weight: float = Field(default=0.35, ge=0.0, le=1.0)


class GpuConfig(BaseModel):
    processing_mode: Literal["auto", "cpu", "gpu"] = Field(
        default_factory=lambda: os.getenv("DRONEQA_PROCESSING_MODE", "auto")
    )
    pool_size: int = Field(default=3, ge=1, le=16)
    idle_timeout_s: float = Field(default=30.0, gt=0.0)
    benchmark_history: int = Field(default=100, ge=1)
    cache_size: int = Field(default=256, ge=1)
    min_pixels: int = Field(default=100_000, ge=0)
    speedup_threshold: float = Field(default=1.2, gt=0.0)
    size_bucket: int = Field(default=10_000, ge=1)


def _default_workers() -> int:
    env = os.getenv("DRONEQA_MAX_WORKERS")
    if env:
        return int(env)
    return min(os.cpu_count() or 4, 6)


class SchedulerConfig(BaseModel):
    max_workers: int = Field(default_factory=_default_workers, ge=1, le=64)
    worker_cap: int = Field(default=6, ge=1, le=64)

    @property
    def concurrency(self) -> int:
        return min(self.max_workers, self.worker_cap)


# -------- root --------------------------------------------------------------
class EngineConfig(BaseModel):
    weight_preset: str = "default"
    weights: Optional[QualityWeights] = None
    recommendation_tiers: Tuple[Tuple[float, str], ...] = RECOMMENDATION_TIERS
    quality_threshold: float = Field(default=70.0, ge=0.0, le=100.0)
    scene_preset: Literal["auto", "aerial_sky", "ground_detail", "mixed"] = "auto"

    loader: LoaderConfig = Field(default_factory=LoaderConfig)
    blur: BlurConfig = Field(default_factory=BlurConfig)
    exposure: ExposureConfig = Field(default_factory=ExposureConfig)
    noise: NoiseConfig = Field(default_factory=NoiseConfig)
    features: FeatureConfig = Field(default_factory=FeatureConfig)
    gpu: GpuConfig = Field(default_factory=GpuConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    @field_validator("weight_preset")
    @classmethod
    def _known_preset(cls, v: str) -> str:
        if v not in WEIGHT_PRESETS:
            raise ValueError(f"unknown weight preset {v!r}; choose from {sorted(WEIGHT_PRESETS)}")
        return v

    @field_validator("recommendation_tiers")
    @classmethod
    def _tiers_ordered(cls, v):
        return validate_tiers(v)

    def active_weights(self) -> QualityWeights:
        return self.weights if self.weights is not None else WEIGHT_PRESETS[self.weight_preset]

    def forced_scene(self) -> Optional[SceneType]:
        if self.scene_preset == "auto":
            return None
        return SceneType(self.scene_preset)


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    merged = deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_engine_config(current: EngineConfig, patch: dict[str, Any]) -> EngineConfig:
    merged_dict = deep_merge(current.model_dump(), patch)
    try:
        return EngineConfig.model_validate(merged_dict)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc


def load_engine_config(path: str) -> EngineConfig:
    """Read an `EngineConfig` patch from a JSON file on top of the defaults."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            patch = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc
    if not isinstance(patch, dict):
        raise ConfigError(f"config {path} must contain a JSON object")
    return merge_engine_config(EngineConfig(), patch)
