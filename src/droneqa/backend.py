"""
Kernel execution backend: CPU/GPU selection, benchmarking and device pooling.

All shared mutable state of the engine lives on one `ExecutionContext`
(the GPU context pool, the benchmark ring buffer and the cpu/gpu
recommendation cache). Analyzers never touch it directly; they call
`Dispatcher.run(op, image, ...)`, which picks an implementation and falls
back to the CPU reference whenever the GPU path fails.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict, deque
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import numpy as np
from pydantic import TypeAdapter

from .config import GpuConfig
from .errors import KernelExecutionError
from .kernels import OPERATIONS, CpuKernels, GpuKernels
from .models import BenchmarkRecord

log = logging.getLogger(__name__)

# a timing of 0 (coarse clock, trivial image) must not produce an infinite speedup.
# The floor is applied to both timings, so speedup = max(cpu, eps) / max(gpu, eps)
# rather than cpu / max(gpu, eps); a zero cpu timing still yields a positive ratio.
TIMING_EPSILON_S = 1e-6

_RECORDS = TypeAdapter(List[BenchmarkRecord])


# -------- devices -----------------------------------------------------------
class ArrayDevice:
    """A numpy-compatible array module plus its host transfer hooks."""

    def __init__(self, xp, name: str = "cuda",
                 to_host: Callable[[Any], np.ndarray] = np.asarray,
                 synchronize: Optional[Callable[[], None]] = None):
        self.xp = xp
        self.name = name
        self._to_host = to_host
        self._synchronize = synchronize

    def to_host(self, arr) -> np.ndarray:
        return np.asarray(self._to_host(arr))

    def synchronize(self) -> None:
        if self._synchronize is not None:
            self._synchronize()


def cuda_device() -> ArrayDevice:
    """Open the default CUDA device through cupy."""
    try:
        import cupy
    except ImportError as exc:
        raise KernelExecutionError("cupy is not installed") from exc
    try:
        count = cupy.cuda.runtime.getDeviceCount()
    except cupy.cuda.runtime.CUDARuntimeError as exc:
        raise KernelExecutionError(f"CUDA runtime unavailable: {exc}") from exc
    if count < 1:
        raise KernelExecutionError("no CUDA device found")
    return ArrayDevice(cupy, name="cuda", to_host=cupy.asnumpy,
                       synchronize=cupy.cuda.Stream.null.synchronize)


# -------- context pool ------------------------------------------------------
class GpuContext:
    """Per-size device resources: compiled tap programs and scratch buffers."""

    def __init__(self, device: ArrayDevice, width: int, height: int, now: float):
        self.device = device
        self.width = width
        self.height = height
        self.last_used = now
        self.in_use = False
        self._programs: Dict[str, Any] = {}
        self._scratch: Dict[Any, Any] = {}

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def program(self, name: str, build: Callable[[], Any]) -> Any:
        if name not in self._programs:
            self._programs[name] = build()
        return self._programs[name]

    def scratch(self, key: Any, build: Callable[[], Any]) -> Any:
        # scratch buffers are only valid for the current size
        if key not in self._scratch:
            self._scratch[key] = build()
        return self._scratch[key]

    def resize(self, width: int, height: int) -> None:
        self.width, self.height = width, height
        self._scratch.clear()

    def upload(self, arr: np.ndarray):
        return self.device.xp.asarray(arr, dtype=self.device.xp.float32)

    def download(self, arr) -> np.ndarray:
        return self.device.to_host(arr)

    def release(self) -> None:
        self._programs.clear()
        self._scratch.clear()


class GpuContextPool:
    def __init__(self, device: ArrayDevice, max_size: int = 3, idle_timeout_s: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        self.device = device
        self.max_size = max_size
        self.idle_timeout_s = idle_timeout_s
        self._clock = clock
        self._lock = threading.Lock()
        self._contexts: List[GpuContext] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)

    def sizes(self) -> List[Tuple[int, int]]:
        with self._lock:
            return [c.size for c in self._contexts]

    def _checkout(self, width: int, height: int) -> Tuple[GpuContext, bool]:
        now = self._clock()
        with self._lock:
            idle = [c for c in self._contexts if not c.in_use]
            for ctx in idle:
                if ctx.size == (width, height):
                    break
            else:
                if len(self._contexts) < self.max_size:
                    ctx = GpuContext(self.device, width, height, now)
                    self._contexts.append(ctx)
                elif idle:
                    ctx = min(idle, key=lambda c: c.last_used)
                    log.debug("resizing gpu context %s -> %s", ctx.size, (width, height))
                    ctx.resize(width, height)
                else:
                    # every pooled context is busy; hand out an unpooled one
                    return GpuContext(self.device, width, height, now), False
            ctx.in_use = True
            ctx.last_used = now
            return ctx, True

    @contextmanager
    def lease(self, width: int, height: int) -> Iterator[GpuContext]:
        ctx, pooled = self._checkout(width, height)
        try:
            yield ctx
        finally:
            if pooled:
                with self._lock:
                    ctx.in_use = False
                    ctx.last_used = self._clock()
            else:
                ctx.release()

    def evict_idle(self, now: Optional[float] = None) -> int:
        """Drop contexts unused for longer than the idle timeout."""
        now = self._clock() if now is None else now
        with self._lock:
            stale = [c for c in self._contexts
                     if not c.in_use and now - c.last_used > self.idle_timeout_s]
            for ctx in stale:
                self._contexts.remove(ctx)
                ctx.release()
        if stale:
            log.debug("evicted %d idle gpu contexts", len(stale))
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            for ctx in self._contexts:
                ctx.release()
            self._contexts.clear()


# -------- benchmark history -------------------------------------------------
class BenchmarkHistory:
    """Bounded ring of `BenchmarkRecord`s, exportable as JSON."""

    def __init__(self, max_records: int = 100):
        self._records: deque = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def add(self, record: BenchmarkRecord) -> None:
        with self._lock:
            self._records.append(record)

    def records(self) -> List[BenchmarkRecord]:
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def export_json(self, indent: Optional[int] = 2) -> str:
        return _RECORDS.dump_json(self.records(), indent=indent).decode("utf-8")

    def import_json(self, payload: str | bytes) -> int:
        records = _RECORDS.validate_json(payload)
        with self._lock:
            self._records.extend(records)
        return len(records)

    def stats(self) -> Dict[str, Any]:
        records = self.records()
        if not records:
            return {"total_benchmarks": 0, "average_speedup": 0.0,
                    "average_cpu_time": 0.0, "average_gpu_time": 0.0,
                    "gpu_recommended": 0, "operations": {}}

        operations: Dict[str, Dict[str, Any]] = {}
        for rec in records:
            entry = operations.setdefault(rec.operation, {"count": 0, "speedups": []})
            entry["count"] += 1
            entry["speedups"].append(rec.speedup)
            entry["recommendation"] = rec.recommendation  # latest wins
        for entry in operations.values():
            entry["average_speedup"] = float(np.mean(entry.pop("speedups")))

        return {
            "total_benchmarks": len(records),
            "average_speedup": float(np.mean([r.speedup for r in records])),
            "average_cpu_time": float(np.mean([r.cpu_time for r in records])),
            "average_gpu_time": float(np.mean([r.gpu_time for r in records])),
            "gpu_recommended": sum(1 for r in records if r.recommendation == "gpu"),
            "operations": operations,
        }


# -------- execution context -------------------------------------------------
class ExecutionContext:
    """
    Process-lifetime owner of the GPU pool, benchmark history and
    recommendation cache. Create one per engine and pass it by reference.
    """

    def __init__(self, config: Optional[GpuConfig] = None,
                 device: Optional[ArrayDevice] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or GpuConfig()
        self.device = device if self.config.processing_mode != "cpu" else None
        self.pool = (GpuContextPool(self.device, self.config.pool_size,
                                    self.config.idle_timeout_s, clock=clock)
                     if self.device is not None else None)
        self.history = BenchmarkHistory(self.config.benchmark_history)
        self._cache: "OrderedDict[Tuple[str, int], str]" = OrderedDict()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Optional[GpuConfig] = None) -> "ExecutionContext":
        config = config or GpuConfig()
        device = None
        if config.processing_mode != "cpu":
            try:
                device = cuda_device()
            except KernelExecutionError as exc:
                level = logging.WARNING if config.processing_mode == "gpu" else logging.INFO
                log.log(level, "gpu unavailable, using cpu kernels: %s", exc)
        return cls(config, device)

    @property
    def gpu_available(self) -> bool:
        return self.device is not None

    # -- recommendation cache -------------------------------------------------
    def cache_key(self, operation: str, pixel_count: int) -> Tuple[str, int]:
        return operation, pixel_count // self.config.size_bucket

    def cached_recommendation(self, key: Tuple[str, int]) -> Optional[str]:
        with self._lock:
            rec = self._cache.get(key)
            if rec is not None:
                self._cache.move_to_end(key)
            return rec

    def remember(self, key: Tuple[str, int], recommendation: str) -> None:
        with self._lock:
            self._cache[key] = recommendation
            self._cache.move_to_end(key)
            while len(self._cache) > self.config.cache_size:
                self._cache.popitem(last=False)

    def cache_snapshot(self) -> Dict[Tuple[str, int], str]:
        with self._lock:
            return dict(self._cache)

    def evict_idle(self, now: Optional[float] = None) -> int:
        return self.pool.evict_idle(now) if self.pool is not None else 0

    def close(self) -> None:
        if self.pool is not None:
            self.pool.clear()
        with self._lock:
            self._cache.clear()


# -------- dispatch ----------------------------------------------------------
class Dispatcher:
    """Route a kernel call to the CPU or GPU implementation."""

    def __init__(self, context: ExecutionContext,
                 timer: Callable[[], float] = time.perf_counter):
        self.context = context
        self.cpu = CpuKernels()
        self._timer = timer

    def run(self, operation: str, image: np.ndarray, *args,
            force_benchmark: bool = False, **kwargs) -> np.ndarray:
        if operation not in OPERATIONS:
            raise ValueError(f"unknown kernel {operation!r}")
        ctx = self.context
        pixels = int(image.shape[0] * image.shape[1])

        if not ctx.gpu_available or pixels < ctx.config.min_pixels:
            return getattr(self.cpu, operation)(image, *args, **kwargs)

        if ctx.config.processing_mode == "gpu":
            return self._gpu_or_cpu(operation, image, args, kwargs)

        key = ctx.cache_key(operation, pixels)
        recommendation = None if force_benchmark else ctx.cached_recommendation(key)
        if recommendation is None:
            record, result = self._benchmark(operation, image, args, kwargs)
            ctx.remember(key, record.recommendation)
            return result
        if recommendation == "gpu":
            return self._gpu_or_cpu(operation, image, args, kwargs)
        return getattr(self.cpu, operation)(image, *args, **kwargs)

    def benchmark(self, operation: str, image: np.ndarray, *args, **kwargs) -> BenchmarkRecord:
        """Time both paths for this operation/size and refresh the cached choice."""
        record, _ = self._benchmark(operation, image, args, kwargs)
        key = self.context.cache_key(operation, int(image.shape[0] * image.shape[1]))
        self.context.remember(key, record.recommendation)
        return record

    # -- internals ------------------------------------------------------------
    def _gpu(self, operation: str, image: np.ndarray, args, kwargs) -> np.ndarray:
        pool = self.context.pool
        if pool is None:
            raise KernelExecutionError("no gpu device")
        try:
            with pool.lease(image.shape[1], image.shape[0]) as gctx:
                result = getattr(GpuKernels(gctx), operation)(image, *args, **kwargs)
                gctx.device.synchronize()
        except KernelExecutionError:
            raise
        except Exception as exc:
            raise KernelExecutionError(f"{operation} failed on gpu: {exc}") from exc
        finally:
            # idle contexts are reclaimed whenever a lease is returned
            pool.evict_idle()
        return result

    def _gpu_or_cpu(self, operation: str, image: np.ndarray, args, kwargs) -> np.ndarray:
        try:
            return self._gpu(operation, image, args, kwargs)
        except KernelExecutionError as exc:
            log.warning("gpu fallback for %s: %s", operation, exc)
            return getattr(self.cpu, operation)(image, *args, **kwargs)

    def _benchmark(self, operation: str, image: np.ndarray, args, kwargs
                   ) -> Tuple[BenchmarkRecord, np.ndarray]:
        start = self._timer()
        cpu_result = getattr(self.cpu, operation)(image, *args, **kwargs)
        cpu_time = max(self._timer() - start, 0.0)

        gpu_result = None
        start = self._timer()
        try:
            gpu_result = self._gpu(operation, image, args, kwargs)
            gpu_time = max(self._timer() - start, 0.0)
        except KernelExecutionError as exc:
            log.warning("gpu benchmark failed for %s, keeping cpu: %s", operation, exc)
            gpu_time = cpu_time

        speedup = max(cpu_time, TIMING_EPSILON_S) / max(gpu_time, TIMING_EPSILON_S)
        use_gpu = gpu_result is not None and speedup > self.context.config.speedup_threshold
        record = BenchmarkRecord(
            operation=operation,
            cpu_time=cpu_time,
            gpu_time=gpu_time,
            speedup=speedup,
            recommendation="gpu" if use_gpu else "cpu",
            pixel_count=int(image.shape[0] * image.shape[1]),
        )
        self.context.history.add(record)
        log.info("benchmark %s %dpx: cpu=%.4fs gpu=%.4fs speedup=%.2f -> %s",
                 operation, record.pixel_count, cpu_time, gpu_time, speedup,
                 record.recommendation)
        return record, gpu_result if use_gpu else cpu_result
