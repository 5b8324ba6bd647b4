"""
Per-image orchestration: load -> analyzers -> metadata -> composite.

`QualityEngine.analyze(task, progress)` never raises for a bad image; load
failures, analyzer crashes and timeouts come back as a failed
`AnalysisResult`. Descriptor, metadata and unreadable-thumbnail problems only
degrade their own fields.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from .backend import Dispatcher, ExecutionContext
from .blur import analyze_blur, detect_scene
from .config import EngineConfig
from .descriptors import analyze_descriptors
from .errors import AnalyzerError, DecodeError, DecodeTimeoutError, DimensionError
from .exposure import analyze_exposure
from .loader import PixelBuffer, load_pixel_buffer, make_thumbnail
from .metadata import extract_metadata, technical_score
from .models import (
    AnalysisResult,
    AnalysisTask,
    CameraMetadata,
    DescriptorMetrics,
    ProgressUpdate,
)
from .noise import analyze_noise
from .scoring import composite_score

log = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]
T = TypeVar("T")

STAGE_PERCENT = {
    "queued": 0,
    "loading": 10,
    "blur": 25,
    "exposure": 40,
    "noise": 55,
    "descriptor": 70,
    "metadata": 85,
    "scoring": 95,
    "completed": 100,
    "failed": 100,
}


class _Reporter:
    def __init__(self, task_id: str, callback: Optional[ProgressCallback]):
        self.task_id = task_id
        self.callback = callback

    def __call__(self, stage: str, message: str = "") -> None:
        if self.callback is None:
            return
        update = ProgressUpdate(task_id=self.task_id, stage=stage,
                                percent=STAGE_PERCENT[stage], message=message)
        try:
            self.callback(update)
        except Exception:
            # a broken progress listener must not fail the analysis
            log.exception("%s progress callback failed at %s", self.task_id, stage)


def _stage(name: str, fn: Callable[[], T]) -> T:
    try:
        return fn()
    except AnalyzerError:
        raise
    except (ValueError, ArithmeticError, IndexError, MemoryError) as exc:
        raise AnalyzerError(name, str(exc)) from exc


class QualityEngine:
    def __init__(self, config: Optional[EngineConfig] = None,
                 context: Optional[ExecutionContext] = None):
        self.config = config or EngineConfig()
        self.context = context or ExecutionContext.from_config(self.config.gpu)
        self.dispatcher = Dispatcher(self.context)

    # -------- public -------------------------------------------------------
    def analyze(self, task: AnalysisTask,
                progress: Optional[ProgressCallback] = None) -> AnalysisResult:
        started = time.perf_counter()
        report = _Reporter(task.task_id, progress)

        report("loading")
        try:
            buf = load_pixel_buffer(task.data, self.context.gpu_available, self.config.loader)
        except (DecodeError, DimensionError, DecodeTimeoutError) as exc:
            log.warning("%s cannot load %s: %s", task.task_id, task.source, exc)
            return self._failed(task, str(exc), started, report)
        except Exception as exc:
            log.exception("%s unexpected error loading %s", task.task_id, task.source)
            return self._failed(task, f"internal error: {exc!r}", started, report)

        try:
            result = self._analyze_buffer(task, buf, report)
        except (AnalyzerError, DecodeTimeoutError) as exc:
            log.warning("%s analysis failed for %s: %s", task.task_id, task.source, exc)
            return self._failed(task, str(exc), started, report)
        except Exception as exc:
            log.exception("%s unexpected error analysing %s", task.task_id, task.source)
            return self._failed(task, f"internal error: {exc!r}", started, report)

        result.processing_time_s = time.perf_counter() - started
        report("completed")
        log.info("%s %s scored %d (%s) in %.2fs", task.task_id, task.source,
                 result.composite.overall, result.composite.recommendation,
                 result.processing_time_s)
        return result

    # -------- internals ----------------------------------------------------
    def _failed(self, task: AnalysisTask, error: str, started: float,
                report: _Reporter) -> AnalysisResult:
        result = AnalysisResult.failed(task.task_id, task.source, error)
        result.processing_time_s = time.perf_counter() - started
        report("failed", error)
        return result

    def _analyze_buffer(self, task: AnalysisTask, buf: PixelBuffer,
                        report: _Reporter) -> AnalysisResult:
        cfg = self.config
        forced = cfg.forced_scene()
        degraded = []

        report("blur")
        scene = forced or detect_scene(buf, cfg.blur)
        blur = analyze_blur(buf, self.dispatcher, cfg.blur, scene)

        report("exposure")
        exposure = _stage("exposure", lambda: analyze_exposure(buf, cfg.exposure, forced))

        report("noise")
        noise = _stage("noise", lambda: analyze_noise(buf, self.dispatcher, cfg.noise))

        report("descriptor")
        try:
            descriptor = analyze_descriptors(buf, self.dispatcher, cfg.features,
                                             cfg.recommendation_tiers)
        except Exception as exc:
            log.warning("%s descriptor analysis degraded: %s", task.task_id, exc)
            descriptor = DescriptorMetrics()
            degraded.append("descriptor")

        report("metadata")
        try:
            metadata = extract_metadata(task.data)
            technical = technical_score(metadata)
        except Exception as exc:
            log.warning("%s metadata extraction degraded: %s", task.task_id, exc)
            metadata = CameraMetadata(file_format=buf.format or "Unknown")
            technical = technical_score(metadata)
            degraded.append("metadata")
        thumbnail = None
        if cfg.loader.generate_thumbnails:
            try:
                thumbnail = make_thumbnail(task.data, cfg.loader)
            except DecodeError as exc:
                log.warning("%s thumbnail skipped: %s", task.task_id, exc)
                degraded.append("thumbnail")

        report("scoring")
        weights = cfg.active_weights()
        method = ("photogrammetric_specialized"
                  if cfg.weights is None and cfg.weight_preset == "photogrammetric"
                  else "weighted_average")
        composite = composite_score(
            blur.score, exposure.exposure_score, noise.noise_score, technical,
            descriptor.photogrammetric_score, weights, cfg.recommendation_tiers, method,
        )

        return AnalysisResult(
            task_id=task.task_id,
            source=task.source,
            width=buf.width,
            height=buf.height,
            scene=scene,
            blur=blur,
            exposure=exposure,
            noise=noise,
            descriptor=descriptor,
            metadata=metadata,
            technical_score=technical,
            composite=composite,
            recommended=composite.overall >= cfg.quality_threshold,
            thumbnail=thumbnail,
            degraded=degraded,
        )
