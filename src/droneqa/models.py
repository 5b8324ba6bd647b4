from __future__ import annotations

import time
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .config import SceneType

HistogramBalance = Literal["balanced", "underexposed", "overexposed", "high-contrast", "low-contrast"]
KeypointType = Literal["corner", "edge", "blob"]
Stage = Literal[
    "queued", "loading", "blur", "exposure", "noise", "descriptor",
    "metadata", "scoring", "completed", "failed",
]

# A zero-valued instance of every metric model is a valid "failed" payload,
# so every field carries a default.

# -------- metrics -----------------------------------------------------------
class BlurMetrics(BaseModel):
    score: float = 0.0
    variance: float = 0.0
    normalization_factor: float = 0.0
    scene: SceneType = SceneType.MIXED
    scale_variances: Dict[str, float] = Field(default_factory=dict)


class ColorBalance(BaseModel):
    y: float = 0.0
    cr: float = 0.0
    cb: float = 0.0


class ExposureMetrics(BaseModel):
    overexposure_percentage: float = 0.0
    underexposure_percentage: float = 0.0
    dynamic_range: float = 0.0
    average_brightness: float = 0.0
    contrast_ratio: float = 0.0
    histogram_balance: HistogramBalance = "balanced"
    local_contrast: float = 0.0
    highlight_recovery: float = 0.0
    shadow_detail: float = 0.0
    spatial_exposure_variance: float = 0.0
    color_balance: ColorBalance = Field(default_factory=ColorBalance)
    correction_factor: float = 1.0
    corrected_average_brightness: float = 0.0
    basic_score: float = 0.0
    spatial_score: float = 0.0
    perceptual_score: float = 0.0
    exposure_score: float = 0.0


class NoiseMetrics(BaseModel):
    raw_standard_deviation: float = 0.0
    noise_level: float = 0.0
    snr: float = 0.0
    compression_artifacts: float = 0.0
    chromatic_aberration: float = 0.0
    vignetting: float = 0.0
    artifact_score: float = 0.0
    noise_score: float = 0.0


class Keypoint(BaseModel):
    x: float
    y: float
    strength: float
    scale: float = 1.0
    angle: float = 0.0
    type: KeypointType = "corner"


class KeypointDistribution(BaseModel):
    uniformity: float = 0.0
    coverage: float = 0.0
    clustering: float = 100.0


class FeatureStrength(BaseModel):
    average: float = 0.0
    median: float = 0.0
    standard_deviation: float = 0.0


class DescriptorQuality(BaseModel):
    distinctiveness: float = 0.0
    repeatability: float = 0.0
    matchability: float = 0.0


class FeatureTypes(BaseModel):
    corners: int = 0
    edges: int = 0
    blobs: int = 0


class DescriptorMetrics(BaseModel):
    keypoint_count: int = 0
    keypoint_density: float = 0.0
    distribution: KeypointDistribution = Field(default_factory=KeypointDistribution)
    strength: FeatureStrength = Field(default_factory=FeatureStrength)
    quality: DescriptorQuality = Field(default_factory=DescriptorQuality)
    feature_types: FeatureTypes = Field(default_factory=FeatureTypes)
    scale_invariance: float = 0.0
    rotation_invariance: float = 0.0
    photogrammetric_score: float = 0.0
    reconstruction_suitability: str = "unsuitable"


# -------- composite ---------------------------------------------------------
class ComponentScore(BaseModel):
    raw_score: float
    weight: float
    contribution: float


class CompositeScore(BaseModel):
    blur: float = 0.0
    exposure: float = 0.0
    noise: float = 0.0
    technical: float = 0.0
    descriptor: float = 0.0
    weights: Dict[str, float] = Field(default_factory=dict)
    components: Dict[str, ComponentScore] = Field(default_factory=dict)
    method: str = "weighted_average"
    overall: int = 0
    recommendation: str = "unsuitable"


# -------- metadata ----------------------------------------------------------
class CameraMetadata(BaseModel):
    make: Optional[str] = None
    model: Optional[str] = None
    lens: Optional[str] = None
    iso: Optional[int] = None
    aperture: Optional[float] = None
    shutter_speed: Optional[str] = None
    focal_length: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    timestamp: Optional[str] = None
    color_space: Optional[str] = None
    file_format: str = "Unknown"


# -------- task / result -----------------------------------------------------
class AnalysisTask(BaseModel):
    task_id: str
    source: str
    data: bytes = Field(repr=False)


class ProgressUpdate(BaseModel):
    task_id: str
    stage: Stage
    percent: int = Field(ge=0, le=100)
    message: str = ""


class AnalysisResult(BaseModel):
    task_id: str
    source: str
    status: Literal["completed", "failed"] = "completed"
    width: int = 0
    height: int = 0
    scene: SceneType = SceneType.MIXED
    blur: BlurMetrics = Field(default_factory=BlurMetrics)
    exposure: ExposureMetrics = Field(default_factory=ExposureMetrics)
    noise: NoiseMetrics = Field(default_factory=NoiseMetrics)
    descriptor: DescriptorMetrics = Field(default_factory=DescriptorMetrics)
    metadata: Optional[CameraMetadata] = None
    technical_score: float = 0.0
    composite: CompositeScore = Field(default_factory=CompositeScore)
    recommended: bool = False
    thumbnail: Optional[bytes] = Field(default=None, repr=False)
    processing_time_s: float = 0.0
    degraded: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def failed(cls, task_id: str, source: str, error: str) -> "AnalysisResult":
        return cls(task_id=task_id, source=source, status="failed", error=error)


class BenchmarkRecord(BaseModel):
    operation: str
    cpu_time: float = Field(ge=0.0)
    gpu_time: float = Field(ge=0.0)
    speedup: float = Field(gt=0.0, allow_inf_nan=False)
    recommendation: Literal["cpu", "gpu"]
    pixel_count: int = Field(ge=0)
    timestamp: float = Field(default_factory=time.time)


# -------- aggregate ---------------------------------------------------------
class AnalysisStats(BaseModel):
    total_images: int = 0
    failed_count: int = 0
    excellent_count: int = 0
    good_count: int = 0
    acceptable_count: int = 0
    poor_count: int = 0
    unsuitable_count: int = 0
    average_blur_score: float = 0.0
    average_exposure_score: float = 0.0
    average_noise_score: float = 0.0
    average_technical_score: float = 0.0
    average_descriptor_score: float = 0.0
    average_composite_score: float = 0.0
    average_keypoint_count: float = 0.0
    recommended_for_reconstruction: int = 0


class SchedulerStatus(BaseModel):
    queue_length: int = 0
    processing: int = 0
    max_concurrency: int = 0
    completed: int = 0
    failed: int = 0
