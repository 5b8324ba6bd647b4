"""
Command line entry point: score a batch of drone images.

    droneqa survey/ --preset photogrammetric --json > report.json
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import uuid
from concurrent.futures import as_completed
from typing import Any, Dict, List, Optional, Sequence

from tqdm import tqdm

from .aggregate import summarize
from .config import WEIGHT_PRESETS, EngineConfig, load_engine_config, merge_engine_config
from .errors import ConfigError
from .models import AnalysisResult, AnalysisTask
from .pipeline import QualityEngine
from .scheduler import AnalysisScheduler

log = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".tif", ".tiff", ".webp", ".bmp")


def find_images(paths: Sequence[str]) -> List[str]:
    found: List[str] = []
    for path in paths:
        if os.path.isdir(path):
            for root, _, files in os.walk(path):
                found.extend(os.path.join(root, f) for f in sorted(files)
                             if f.lower().endswith(IMAGE_EXTENSIONS))
        elif os.path.isfile(path):
            found.append(path)
        else:
            log.warning("skipping %s: not a file or directory", path)
    return found


def build_config(args: argparse.Namespace) -> EngineConfig:
    config = load_engine_config(args.config) if args.config else EngineConfig()
    patch: Dict[str, Any] = {}
    if args.preset:
        patch["weight_preset"] = args.preset
    if args.scene:
        patch["scene_preset"] = args.scene
    if args.threshold is not None:
        patch["quality_threshold"] = args.threshold
    if args.workers:
        patch["scheduler"] = {"max_workers": args.workers}
    if args.mode:
        patch["gpu"] = {"processing_mode": args.mode}
    if args.thumbnails:
        patch["loader"] = {"generate_thumbnails": True}
    return merge_engine_config(config, patch) if patch else config


def _format_row(r: AnalysisResult) -> str:
    if r.status == "failed":
        return f"{r.source}\tFAILED\t{r.error}"
    c = r.composite
    return (f"{r.source}\t{c.overall:3d}\t{c.recommendation:<10}\t"
            f"blur={c.blur:.1f} exposure={c.exposure:.1f} noise={c.noise:.1f} "
            f"technical={c.technical:.1f} descriptor={c.descriptor:.1f}")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="droneqa",
        description="Score drone images for photogrammetric reconstruction quality.",
    )
    parser.add_argument("paths", nargs="+", help="Image files or directories")
    parser.add_argument("--config", help="JSON file with engine configuration overrides")
    parser.add_argument("--preset", choices=sorted(WEIGHT_PRESETS), help="Weight preset")
    parser.add_argument("--scene", choices=["auto", "aerial_sky", "ground_detail", "mixed"],
                        help="Force a scene profile (default: detect per image)")
    parser.add_argument("--threshold", type=float, help="Minimum composite score to recommend")
    parser.add_argument("--workers", type=int, help="Maximum concurrent analyses")
    parser.add_argument("--mode", choices=["auto", "cpu", "gpu"], help="Kernel processing mode")
    parser.add_argument("--thumbnails", action="store_true", help="Generate thumbnails")
    parser.add_argument("--json", action="store_true", help="Print a JSON report")
    parser.add_argument("--benchmarks", help="Write CPU/GPU benchmark history JSON here")
    parser.add_argument("--no-progress", action="store_true", help="Hide the progress bar")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        config = build_config(args)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    images = find_images(args.paths)
    if not images:
        print("No images found", file=sys.stderr)
        return 1

    engine = QualityEngine(config)
    results: Dict[str, AnalysisResult] = {}
    order: List[str] = []
    with AnalysisScheduler(engine) as scheduler:
        futures = {}
        for path in images:
            task_id = uuid.uuid4().hex[:12]
            order.append(task_id)
            try:
                with open(path, "rb") as fh:
                    data = fh.read()
            except OSError as exc:
                log.warning("%s cannot read %s: %s", task_id, path, exc)
                results[task_id] = AnalysisResult.failed(task_id, path, str(exc))
                continue
            task = AnalysisTask(task_id=task_id, source=path, data=data)
            futures[scheduler.submit(task)] = task_id

        with tqdm(total=len(images), desc="Analyzing", unit="img",
                  disable=args.no_progress, initial=len(results)) as pbar:
            for future in as_completed(futures):
                results[futures[future]] = future.result()
                pbar.update(1)

    ordered = [results[t] for t in order]
    stats = summarize(ordered, config.quality_threshold)

    if args.json:
        report = {
            "results": [r.model_dump(mode="json", exclude={"thumbnail"}) for r in ordered],
            "summary": stats.model_dump(),
        }
        print(json.dumps(report, indent=2))
    else:
        for r in ordered:
            print(_format_row(r))
        print(f"\n{stats.total_images} images, {stats.failed_count} failed, "
              f"{stats.recommended_for_reconstruction} recommended "
              f"(average score {stats.average_composite_score:.1f})")

    if args.benchmarks:
        with open(args.benchmarks, "w", encoding="utf-8") as fh:
            fh.write(engine.context.history.export_json())
    engine.context.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
