"""
Decode raw file bytes into a bounded-resolution RGBA pixel buffer.

`load_pixel_buffer(data, gpu_available=..., config=...)` returns a
`PixelBuffer` whose largest side respects the resolution policy, with EXIF
orientation already applied. Decoding runs on a helper thread so a
malformed file cannot hold the caller past `decode_timeout_s`.
"""
from __future__ import annotations

import io
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from functools import cached_property
from typing import Callable, Optional, Tuple, TypeVar

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .config import LoaderConfig
from .errors import DecodeError, DecodeTimeoutError, DimensionError

log = logging.getLogger(__name__)

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float32)

T = TypeVar("T")


@dataclass(frozen=True)
class PixelBuffer:
    """Immutable RGBA image owned by a single analysis call."""
    rgba: np.ndarray
    source_width: int = 0
    source_height: int = 0
    format: Optional[str] = None
    scale: float = field(default=1.0, compare=False)

    def __post_init__(self):
        arr = self.rgba
        if arr.ndim != 3 or arr.shape[2] != 4 or arr.dtype != np.uint8:
            raise ValueError(f"expected (h, w, 4) uint8 array, got {arr.shape} {arr.dtype}")
        if arr.shape[0] <= 0 or arr.shape[1] <= 0:
            raise DimensionError(f"degenerate buffer {arr.shape[1]}x{arr.shape[0]}")
        arr.setflags(write=False)

    @classmethod
    def from_array(cls, arr: np.ndarray, **kwargs) -> "PixelBuffer":
        """Build a buffer from a gray, RGB or RGBA uint8 array."""
        arr = np.asarray(arr)
        if arr.dtype != np.uint8:
            arr = np.clip(arr, 0, 255).astype(np.uint8)
        if arr.ndim == 2:
            arr = np.stack([arr, arr, arr], axis=-1)
        if arr.ndim == 3 and arr.shape[2] == 3:
            alpha = np.full(arr.shape[:2] + (1,), 255, dtype=np.uint8)
            arr = np.concatenate([arr, alpha], axis=-1)
        arr = np.ascontiguousarray(arr).copy()
        h, w = arr.shape[:2]
        kwargs.setdefault("source_width", w)
        kwargs.setdefault("source_height", h)
        return cls(rgba=arr, **kwargs)

    @property
    def width(self) -> int:
        return int(self.rgba.shape[1])

    @property
    def height(self) -> int:
        return int(self.rgba.shape[0])

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @property
    def rgb(self) -> np.ndarray:
        return self.rgba[..., :3]

    @cached_property
    def luminance(self) -> np.ndarray:
        """BT.601 luma as float32 in [0, 1]."""
        lum = self.rgb.astype(np.float32) @ LUMA_WEIGHTS / 255.0
        lum.setflags(write=False)
        return lum

    @cached_property
    def gray(self) -> np.ndarray:
        """BT.601 luma as float64 in [0, 255]."""
        g = self.rgb.astype(np.float64) @ LUMA_WEIGHTS.astype(np.float64)
        g.setflags(write=False)
        return g


# -------- resolution policy -------------------------------------------------
def max_dimension_for(width: int, height: int, gpu_available: bool,
                      config: LoaderConfig) -> int:
    pixels = width * height
    if gpu_available and pixels > config.gpu_min_source_pixels:
        return config.gpu_max_size
    megapixels = pixels / 1_000_000
    for threshold, cap in sorted(config.megapixel_caps, reverse=True):
        if megapixels > threshold:
            return cap
    return config.default_max_size


def target_size(width: int, height: int, max_dim: int) -> Tuple[int, int]:
    if width <= 0 or height <= 0:
        raise DimensionError(f"image has no pixels ({width}x{height})")
    longest = max(width, height)
    if longest <= max_dim:
        return width, height
    ratio = max_dim / longest
    new_w, new_h = int(width * ratio), int(height * ratio)
    if new_w <= 0 or new_h <= 0:
        raise DimensionError(
            f"{width}x{height} collapses to {new_w}x{new_h} at max side {max_dim}"
        )
    return new_w, new_h


# -------- decode ------------------------------------------------------------
def _to_rgba(img: Image.Image) -> Image.Image:
    if img.mode in ("I", "I;16", "I;16B", "I;16L", "F"):
        # 16-bit / float TIFFs: rescale to 8 bits before colour conversion
        arr = np.asarray(img, dtype=np.float64)
        top = arr.max() if arr.size else 0.0
        scale = 255.0 / top if top > 255 else 1.0
        img = Image.fromarray(np.clip(arr * scale, 0, 255).astype(np.uint8), mode="L")
    return img.convert("RGBA")


def _decode(data: bytes, gpu_available: bool, config: LoaderConfig) -> PixelBuffer:
    if not data:
        raise DecodeError("empty file")
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            width, height = img.size
            if width * height > config.max_source_pixels:
                raise DecodeError(
                    f"{width}x{height} exceeds {config.max_source_pixels} source pixels"
                )
            img.load()
            oriented = ImageOps.exif_transpose(img)
            src_w, src_h = oriented.size
            max_dim = max_dimension_for(src_w, src_h, gpu_available, config)
            new_w, new_h = target_size(src_w, src_h, max_dim)
            if (new_w, new_h) != (src_w, src_h):
                oriented = oriented.resize((new_w, new_h), Image.Resampling.LANCZOS)
            rgba = np.asarray(_to_rgba(oriented), dtype=np.uint8)
    except (UnidentifiedImageError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"unsupported or unsafe image: {exc}") from exc
    except (OSError, SyntaxError, ValueError, EOFError) as exc:
        raise DecodeError(f"corrupt image data: {exc}") from exc

    return PixelBuffer(
        rgba=np.array(rgba, copy=True),
        source_width=src_w,
        source_height=src_h,
        format=fmt,
        scale=new_w / src_w,
    )


def _run_bounded(fn: Callable[[], T], timeout: float, what: str) -> T:
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="droneqa-decode")
    try:
        future = pool.submit(fn)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            # the decode thread cannot be interrupted; it is abandoned
            raise DecodeTimeoutError(f"{what} exceeded {timeout:.1f}s") from None
    finally:
        pool.shutdown(wait=False)


def load_pixel_buffer(data: bytes, gpu_available: bool = False,
                      config: Optional[LoaderConfig] = None) -> PixelBuffer:
    config = config or LoaderConfig()
    buf = _run_bounded(lambda: _decode(data, gpu_available, config),
                       config.decode_timeout_s, "decode")
    log.debug("decoded %s %dx%d -> %dx%d", buf.format, buf.source_width,
              buf.source_height, buf.width, buf.height)
    return buf


# -------- thumbnails --------------------------------------------------------
def _thumbnail(data: bytes, size: int) -> bytes:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            img.thumbnail((size, size), Image.Resampling.LANCZOS)
            out = io.BytesIO()
            img.convert("RGB").save(out, format="JPEG", quality=80)
            return out.getvalue()
    except (UnidentifiedImageError, Image.DecompressionBombError,
            OSError, SyntaxError, ValueError, EOFError) as exc:
        raise DecodeError(f"thumbnail failed: {exc}") from exc


def make_thumbnail(data: bytes, config: Optional[LoaderConfig] = None) -> bytes:
    config = config or LoaderConfig()
    return _run_bounded(lambda: _thumbnail(data, config.thumbnail_size),
                        config.thumbnail_timeout_s, "thumbnail")
