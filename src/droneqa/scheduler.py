"""
Bounded-concurrency task scheduler on top of ThreadPoolExecutor.

Tasks are admitted FIFO; at most `SchedulerConfig.concurrency` run at once.
`clear()` drops tasks that have not started; running tasks always finish.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional

from .config import SchedulerConfig
from .models import AnalysisResult, AnalysisTask, ProgressUpdate, SchedulerStatus
from .pipeline import QualityEngine

log = logging.getLogger(__name__)


class AnalysisScheduler:
    def __init__(self, engine: Optional[QualityEngine] = None,
                 config: Optional[SchedulerConfig] = None,
                 on_progress: Optional[Callable[[ProgressUpdate], None]] = None,
                 on_complete: Optional[Callable[[AnalysisResult], None]] = None):
        self.engine = engine or QualityEngine()
        cfg = config or self.engine.config.scheduler
        self.max_concurrency = cfg.concurrency
        self.on_progress = on_progress
        self.on_complete = on_complete

        self._executor = ThreadPoolExecutor(max_workers=self.max_concurrency,
                                            thread_name_prefix="droneqa")
        self._lock = threading.Lock()
        self._pending: Dict[int, Future] = {}
        self._processing = 0
        self._peak = 0
        self._completed = 0
        self._failed = 0

    # -------- submission ----------------------------------------------------
    def submit(self, task: AnalysisTask) -> "Future[AnalysisResult]":
        self._progress(ProgressUpdate(task_id=task.task_id, stage="queued", percent=0))
        future = self._executor.submit(self._run, task)
        key = id(future)
        with self._lock:
            self._pending[key] = future
        future.add_done_callback(lambda f: self._forget(key))
        return future

    def submit_many(self, tasks: Iterable[AnalysisTask]) -> List["Future[AnalysisResult]"]:
        return [self.submit(t) for t in tasks]

    def run(self, tasks: Iterable[AnalysisTask]) -> List[AnalysisResult]:
        """Submit every task and wait; results come back in input order."""
        return [f.result() for f in self.submit_many(tasks)]

    def clear(self) -> int:
        """Cancel queued tasks; returns how many were dropped."""
        with self._lock:
            futures = list(self._pending.values())
        dropped = sum(1 for f in futures if f.cancel())
        if dropped:
            log.info("cleared %d queued tasks", dropped)
        return dropped

    # -------- state ---------------------------------------------------------
    def status(self) -> SchedulerStatus:
        with self._lock:
            waiting = sum(1 for f in self._pending.values() if not f.running() and not f.done())
            return SchedulerStatus(
                queue_length=waiting,
                processing=self._processing,
                max_concurrency=self.max_concurrency,
                completed=self._completed,
                failed=self._failed,
            )

    @property
    def peak_concurrency(self) -> int:
        return self._peak

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=cancel_pending)

    def __enter__(self) -> "AnalysisScheduler":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown(wait=True)

    # -------- worker --------------------------------------------------------
    def _forget(self, key: int) -> None:
        with self._lock:
            self._pending.pop(key, None)

    def _run(self, task: AnalysisTask) -> AnalysisResult:
        with self._lock:
            self._processing += 1
            self._peak = max(self._peak, self._processing)
        try:
            result = self.engine.analyze(task, self._progress)
        except Exception as exc:
            log.exception("%s engine crashed on %s", task.task_id, task.source)
            result = AnalysisResult.failed(task.task_id, task.source, f"internal error: {exc}")
        finally:
            with self._lock:
                self._processing -= 1

        with self._lock:
            if result.status == "failed":
                self._failed += 1
            else:
                self._completed += 1
        if self.on_complete is not None:
            try:
                self.on_complete(result)
            except Exception:
                log.exception("%s completion callback failed", task.task_id)
        return result

    def _progress(self, update: ProgressUpdate) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(update)
        except Exception:
            log.exception("%s progress callback failed", update.task_id)
