"""
Keypoint-based photogrammetric suitability.

Four detectors (Harris corners, FAST-style circle test, Sobel edge points,
LoG blobs) feed one candidate pool. Candidates are spatially deduplicated
strongest-first, capped, and then scored on density, spatial distribution,
strength and local distinctiveness.
"""
from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import ndimage
from scipy.spatial import cKDTree

from .backend import Dispatcher
from .config import RECOMMENDATION_TIERS, FeatureConfig
from .kernels import SOBEL_X, SOBEL_Y
from .loader import PixelBuffer
from .models import (
    DescriptorMetrics,
    DescriptorQuality,
    FeatureStrength,
    FeatureTypes,
    Keypoint,
    KeypointDistribution,
)
from .scoring import classify

log = logging.getLogger(__name__)

FAST_CIRCLE = (
    (-3, 0), (-3, -1), (-2, -2), (-1, -3), (0, -3), (1, -3),
    (2, -2), (3, -1), (3, 0), (3, 1), (2, 2), (1, 3),
    (0, 3), (-1, 3), (-2, 2), (-3, 1),
)
LOG_5X5 = np.array([[0, 0, -1, 0, 0],
                    [0, -1, -2, -1, 0],
                    [-1, -2, 16, -2, -1],
                    [0, -1, -2, -1, 0],
                    [0, 0, -1, 0, 0]], dtype=np.float64)
BLOB_SCALE = 2.0
EDGE_STRENGTH_DIVISOR = 255.0
BLOB_STRENGTH_DIVISOR = 1000.0
DISTINCT_RADIUS = 4   # 9x9 neighbourhood
DISTINCT_MARGIN = 8

# (xs, ys, strengths, angles) for one detector
Candidates = Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]


def _top(xs: np.ndarray, ys: np.ndarray, strengths: np.ndarray, angles: np.ndarray,
         limit: int) -> Candidates:
    strengths = np.minimum(strengths, 1.0)
    # ties are common after clipping; spread them across the frame
    tiebreak = (ys.astype(np.int64) * 7919 + xs.astype(np.int64) * 104729) % 1_000_003
    order = np.lexsort((tiebreak, -strengths))[:limit]
    return xs[order], ys[order], strengths[order], angles[order]


# -------- detectors ---------------------------------------------------------
def harris_candidates(gray: np.ndarray, dispatcher: Dispatcher,
                      config: FeatureConfig) -> Candidates:
    response = dispatcher.run("harris", gray, config.harris_k, 5)
    peak = float(response.max()) if response.size else 0.0
    if peak <= 0:
        return _empty()
    ys, xs = np.nonzero(response > config.harris_threshold * peak)
    gx = np.zeros_like(gray)
    gy = np.zeros_like(gray)
    gx[1:-1, 1:-1] = gray[1:-1, 2:] - gray[1:-1, :-2]
    gy[1:-1, 1:-1] = gray[2:, 1:-1] - gray[:-2, 1:-1]
    angles = np.arctan2(gy[ys, xs], gx[ys, xs])
    return _top(xs, ys, response[ys, xs] / peak, angles, config.max_per_detector)


def fast_candidates(gray: np.ndarray, config: FeatureConfig) -> Candidates:
    h, w = gray.shape
    if h < 7 or w < 7:
        return _empty()
    center = gray[3:-3, 3:-3]
    brighter = np.zeros(center.shape, dtype=np.int32)
    darker = np.zeros(center.shape, dtype=np.int32)
    t = config.fast_threshold
    for dx, dy in FAST_CIRCLE:
        ring = gray[3 + dy:h - 3 + dy, 3 + dx:w - 3 + dx]
        brighter += ring > center + t
        darker += ring < center - t
    best = np.maximum(brighter, darker)
    ys, xs = np.nonzero(best >= config.fast_min_arc)
    strengths = best[ys, xs] / float(len(FAST_CIRCLE))
    return _top(xs + 3, ys + 3, strengths, np.zeros(xs.size), config.max_per_detector)


def edge_candidates(gray: np.ndarray, config: FeatureConfig) -> Candidates:
    h, w = gray.shape
    if h < 3 or w < 3:
        return _empty()
    gx = ndimage.correlate(gray, SOBEL_X, mode="nearest")[1:-1, 1:-1]
    gy = ndimage.correlate(gray, SOBEL_Y, mode="nearest")[1:-1, 1:-1]
    magnitude = np.hypot(gx, gy)
    ys, xs = np.nonzero(magnitude > config.edge_threshold)
    return _top(xs + 1, ys + 1, magnitude[ys, xs] / EDGE_STRENGTH_DIVISOR,
                np.arctan2(gy[ys, xs], gx[ys, xs]), config.max_per_detector)


def blob_candidates(gray: np.ndarray, config: FeatureConfig) -> Candidates:
    h, w = gray.shape
    if h < 5 or w < 5:
        return _empty()
    response = np.abs(ndimage.correlate(gray, LOG_5X5, mode="nearest")[2:-2, 2:-2])
    ys, xs = np.nonzero(response > config.blob_threshold)
    return _top(xs + 2, ys + 2, response[ys, xs] / BLOB_STRENGTH_DIVISOR,
                np.zeros(xs.size), config.max_per_detector)


def _empty() -> Candidates:
    return np.empty(0, np.int64), np.empty(0, np.int64), np.empty(0), np.empty(0)


def _to_keypoints(cands: Candidates, kind: str, scale: float = 1.0) -> List[Keypoint]:
    xs, ys, strengths, angles = cands
    return [Keypoint(x=float(x), y=float(y), strength=float(s), scale=scale,
                     angle=float(a), type=kind)
            for x, y, s, a in zip(xs, ys, strengths, angles)]


# -------- dedup -------------------------------------------------------------
def deduplicate_keypoints(keypoints: Sequence[Keypoint], min_distance: float) -> List[Keypoint]:
    """
    Keep a keypoint only if no stronger keypoint already kept lies within
    `min_distance` pixels. Output is sorted by strength, strongest first.
    """
    ordered = sorted(keypoints, key=lambda k: (-k.strength, k.y, k.x))
    if min_distance <= 0:
        return ordered
    cell = float(min_distance)
    limit = min_distance * min_distance
    grid: Dict[Tuple[int, int], List[Keypoint]] = {}
    kept: List[Keypoint] = []
    for kp in ordered:
        cx, cy = int(math.floor(kp.x / cell)), int(math.floor(kp.y / cell))
        clash = False
        for nx in (cx - 1, cx, cx + 1):
            for ny in (cy - 1, cy, cy + 1):
                for other in grid.get((nx, ny), ()):
                    if (other.x - kp.x) ** 2 + (other.y - kp.y) ** 2 < limit:
                        clash = True
                        break
                if clash:
                    break
            if clash:
                break
        if not clash:
            grid.setdefault((cx, cy), []).append(kp)
            kept.append(kp)
    return kept


def extract_keypoints(gray: np.ndarray, dispatcher: Dispatcher,
                      config: Optional[FeatureConfig] = None) -> List[Keypoint]:
    config = config or FeatureConfig()
    pool = (_to_keypoints(harris_candidates(gray, dispatcher, config), "corner")
            + _to_keypoints(fast_candidates(gray, config), "corner")
            + _to_keypoints(edge_candidates(gray, config), "edge")
            + _to_keypoints(blob_candidates(gray, config), "blob", BLOB_SCALE))
    unique = deduplicate_keypoints(pool, config.min_distance)
    return unique[:config.max_keypoints]


# -------- metrics -----------------------------------------------------------
def keypoint_distribution(keypoints: Sequence[Keypoint], width: int, height: int,
                          grid_size: int = 8) -> KeypointDistribution:
    if not keypoints:
        return KeypointDistribution(uniformity=0.0, coverage=0.0, clustering=100.0)

    xs = np.array([k.x for k in keypoints])
    ys = np.array([k.y for k in keypoints])
    cols = np.floor(xs / (width / grid_size)).astype(np.int64)
    rows = np.floor(ys / (height / grid_size)).astype(np.int64)
    inside = (cols >= 0) & (cols < grid_size) & (rows >= 0) & (rows < grid_size)
    counts = np.bincount(rows[inside] * grid_size + cols[inside],
                         minlength=grid_size * grid_size)

    mean = len(keypoints) / counts.size
    cv = float(counts.std() / mean) if mean > 0 else 1.0
    uniformity = max(0.0, 100.0 - cv * 50.0)
    coverage = float(np.count_nonzero(counts)) / counts.size * 100.0

    if len(keypoints) < 2:
        clustering = 0.0
    else:
        points = np.column_stack([xs, ys])
        dist, _ = cKDTree(points).query(points, k=2)
        nearest = float(dist[:, 1].mean())
        expected = math.sqrt(width * height / len(keypoints)) / 2.0
        clustering = max(0.0, 100.0 - nearest / expected * 100.0) if expected > 0 else 0.0
    return KeypointDistribution(uniformity=uniformity, coverage=coverage,
                                clustering=min(100.0, clustering))


def feature_strength(keypoints: Sequence[Keypoint]) -> FeatureStrength:
    if not keypoints:
        return FeatureStrength()
    s = np.array([k.strength for k in keypoints])
    return FeatureStrength(
        average=float(s.mean()),
        median=float(np.sort(s)[s.size // 2]),
        standard_deviation=float(s.std()),
    )


def distinctiveness(keypoints: Sequence[Keypoint], gray: np.ndarray) -> float:
    """Mean absolute 9x9 contrast around each keypoint, scaled to 0-100."""
    if not keypoints:
        return 0.0
    h, w = gray.shape
    xs = np.rint([k.x for k in keypoints]).astype(np.int64)
    ys = np.rint([k.y for k in keypoints]).astype(np.int64)
    ok = ((xs >= DISTINCT_MARGIN) & (xs < w - DISTINCT_MARGIN)
          & (ys >= DISTINCT_MARGIN) & (ys < h - DISTINCT_MARGIN))
    total = 0.0
    if ok.any():
        offsets = np.arange(-DISTINCT_RADIUS, DISTINCT_RADIUS + 1)
        rows = ys[ok][:, None, None] + offsets[None, :, None]
        cols = xs[ok][:, None, None] + offsets[None, None, :]
        patches = gray[rows, cols]
        centers = gray[ys[ok], xs[ok]][:, None, None]
        side = 2 * DISTINCT_RADIUS + 1
        total = float((np.abs(patches - centers).sum(axis=(1, 2)) / (side * side * 255.0)).sum())
    # border keypoints count toward the average with zero contrast
    return min(100.0, total / len(keypoints) * 100.0)


def descriptor_quality(keypoints: Sequence[Keypoint], gray: np.ndarray) -> DescriptorQuality:
    if not keypoints:
        return DescriptorQuality()
    d = distinctiveness(keypoints, gray)
    s = np.array([k.strength for k in keypoints])
    avg = float(s.mean())
    repeatability = max(0.0, 100.0 - float(s.std()) / avg * 100.0) if avg > 0 else 0.0
    return DescriptorQuality(
        distinctiveness=d,
        repeatability=repeatability,
        matchability=min(100.0, (d + repeatability) / 2.0),
    )


def scale_invariance(keypoints: Sequence[Keypoint]) -> float:
    if not keypoints:
        return 0.0
    unique = len({k.scale for k in keypoints})
    return min(100.0, unique / len(keypoints) * 200.0)


def rotation_invariance(keypoints: Sequence[Keypoint]) -> float:
    if not keypoints:
        return 0.0
    return min(100.0, float(np.std([k.angle for k in keypoints])) * 50.0)


def photogrammetric_score(count: int, dist: KeypointDistribution, strength: FeatureStrength,
                          quality: DescriptorQuality, config: FeatureConfig) -> float:
    density = min(100.0, count / config.density_target * 100.0)
    spread = max(0.0, (dist.uniformity + dist.coverage) / 2.0 - dist.clustering / 2.0)
    strong = min(100.0, strength.average * 100.0)
    q = (quality.distinctiveness + quality.repeatability + quality.matchability) / 3.0
    score = (density * config.density_weight
             + spread * config.distribution_weight
             + strong * config.strength_weight
             + q * config.quality_weight)
    return max(0.0, min(100.0, score))


def analyze_descriptors(buf: PixelBuffer, dispatcher: Dispatcher,
                        config: Optional[FeatureConfig] = None,
                        tiers=RECOMMENDATION_TIERS) -> DescriptorMetrics:
    config = config or FeatureConfig()
    gray = np.asarray(buf.gray)
    keypoints = extract_keypoints(gray, dispatcher, config)

    dist = keypoint_distribution(keypoints, buf.width, buf.height, config.grid_size)
    strength = feature_strength(keypoints)
    quality = descriptor_quality(keypoints, gray)
    score = photogrammetric_score(len(keypoints), dist, strength, quality, config)

    types = FeatureTypes(
        corners=sum(1 for k in keypoints if k.type == "corner"),
        edges=sum(1 for k in keypoints if k.type == "edge"),
        blobs=sum(1 for k in keypoints if k.type == "blob"),
    )
    log.debug("descriptors: %d keypoints, score=%.1f", len(keypoints), score)
    return DescriptorMetrics(
        keypoint_count=len(keypoints),
        keypoint_density=len(keypoints) / buf.pixel_count * 1000.0,
        distribution=dist,
        strength=strength,
        quality=quality,
        feature_types=types,
        scale_invariance=scale_invariance(keypoints),
        rotation_invariance=rotation_invariance(keypoints),
        photogrammetric_score=score,
        reconstruction_suitability=classify(score, tiers),
    )
