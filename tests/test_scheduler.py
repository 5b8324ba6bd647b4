import threading
import time

import numpy as np
import pytest

from droneqa.config import SchedulerConfig
from droneqa.models import AnalysisResult, AnalysisTask
from droneqa.scheduler import AnalysisScheduler


class SlowEngine:
    """Stand-in engine that records how many analyses overlap."""

    def __init__(self, delay=0.05):
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.lock = threading.Lock()

    def analyze(self, task, progress=None):
        with self.lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(self.delay)
        with self.lock:
            self.active -= 1
        return AnalysisResult(task_id=task.task_id, source=task.source)


class GatedEngine:
    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def analyze(self, task, progress=None):
        self.started.set()
        self.release.wait(timeout=5)
        return AnalysisResult(task_id=task.task_id, source=task.source)


class ExplodingEngine:
    def analyze(self, task, progress=None):
        if task.task_id == "boom":
            raise RuntimeError("kaboom")
        return AnalysisResult(task_id=task.task_id, source=task.source)


def _task(i, data=b"x"):
    return AnalysisTask(task_id=str(i), source=f"img{i}.png", data=data)


def test_never_exceeds_concurrency_cap():
    engine = SlowEngine()
    with AnalysisScheduler(engine, SchedulerConfig(max_workers=3)) as scheduler:
        results = scheduler.run([_task(i) for i in range(12)])
    assert len(results) == 12
    assert engine.peak <= 3
    assert scheduler.peak_concurrency <= 3
    assert engine.peak >= 2


def test_worker_cap_bounds_configured_workers():
    scheduler = AnalysisScheduler(SlowEngine(), SchedulerConfig(max_workers=20, worker_cap=4))
    assert scheduler.max_concurrency == 4
    scheduler.shutdown()


def test_results_keep_input_order():
    with AnalysisScheduler(SlowEngine(0.001), SchedulerConfig(max_workers=4)) as scheduler:
        results = scheduler.run([_task(i) for i in range(8)])
    assert [r.task_id for r in results] == [str(i) for i in range(8)]


def test_clear_drops_only_queued_tasks():
    engine = GatedEngine()
    scheduler = AnalysisScheduler(engine, SchedulerConfig(max_workers=1))
    futures = scheduler.submit_many([_task(i) for i in range(4)])
    assert engine.started.wait(timeout=5)

    status = scheduler.status()
    assert status.processing == 1
    assert status.queue_length == 3

    assert scheduler.clear() == 3
    engine.release.set()
    assert futures[0].result(timeout=5).status == "completed"
    assert all(f.cancelled() for f in futures[1:])
    scheduler.shutdown()


def test_engine_crash_becomes_failed_result():
    completed = []
    with AnalysisScheduler(ExplodingEngine(), SchedulerConfig(max_workers=2),
                           on_complete=completed.append) as scheduler:
        results = scheduler.run([_task(1), _task("boom"), _task(2)])
    assert [r.status for r in results] == ["completed", "failed", "completed"]
    assert "kaboom" in results[1].error
    assert len(completed) == 3
    status = scheduler.status()
    assert (status.completed, status.failed) == (2, 1)


def test_bad_file_does_not_affect_siblings(engine, textured_png):
    tasks = [_task(1, textured_png), _task(2, b""), _task(3, textured_png)]
    with AnalysisScheduler(engine, SchedulerConfig(max_workers=3)) as scheduler:
        results = scheduler.run(tasks)
    assert [r.status for r in results] == ["completed", "failed", "completed"]
    bad = results[1]
    assert bad.composite.overall == 0
    assert bad.composite.recommendation == "unsuitable"
    assert bad.blur.score == 0 and bad.descriptor.keypoint_count == 0
    assert results[0].composite.overall == results[2].composite.overall


def test_progress_updates_reach_the_callback(engine, textured_png):
    updates = []
    with AnalysisScheduler(engine, SchedulerConfig(max_workers=1),
                           on_progress=updates.append) as scheduler:
        scheduler.run([_task(1, textured_png)])
    stages = [u.stage for u in updates]
    assert stages[0] == "queued"
    assert stages[-1] == "completed"
    percents = [u.percent for u in updates]
    assert percents == sorted(percents)


def test_failing_callbacks_are_contained(engine, textured_png):
    def broken(_):
        raise RuntimeError("listener bug")

    with AnalysisScheduler(engine, SchedulerConfig(max_workers=1),
                           on_progress=broken, on_complete=broken) as scheduler:
        (result,) = scheduler.run([_task(1, textured_png)])
    assert result.status == "completed"
