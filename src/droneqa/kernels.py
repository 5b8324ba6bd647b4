"""
Pixel-level kernels shared by the analyzers, in two interchangeable forms.

`CpuKernels` is the reference implementation (numpy + scipy.ndimage,
float64). `GpuKernels` computes the same quantities the way a fragment
shader would: every output pixel is a fixed sum of edge-clamped taps,
evaluated as whole-array expressions on the device array module (cupy in
production) in float32. Results are statistically comparable, not
bit-identical.

Every kernel takes host numpy input and returns host numpy output:

    laplacian(gray)                  -> |3x3 Laplacian| over interior pixels
    harris(gray, k, window)          -> corner response, zero on borders
    block_variance(gray, block)      -> per-block variance grid
    blocking(gray, block)            -> [boundary mean |diff|, interior mean |diff|]
    aberration(rgb, edge_threshold)  -> (N, 2) angular/magnitude disagreement at edges
    vignetting(gray, rings)          -> mean brightness per radial ring (NaN if empty)
"""
from __future__ import annotations

from typing import List, Tuple

import numpy as np
from scipy import ndimage

OPERATIONS = ("laplacian", "harris", "block_variance", "blocking", "aberration", "vignetting")

LAPLACIAN_3X3 = np.array([[-1, -1, -1],
                          [-1,  8, -1],
                          [-1, -1, -1]], dtype=np.float64)
SOBEL_X = np.array([[-1, 0, 1],
                    [-2, 0, 2],
                    [-1, 0, 1]], dtype=np.float64)
SOBEL_Y = SOBEL_X.T.copy()

_EPS = 1e-12


def _boundary_masks(h: int, w: int, block: int) -> Tuple[np.ndarray, np.ndarray]:
    # column diff j sits between x=j and x=j+1; a block edge when (j+1) % block == 0
    col = (np.arange(w - 1) + 1) % block == 0
    row = (np.arange(h - 1) + 1) % block == 0
    return col, row


def _disagreement(gx: List, gy: List, xp, edge_threshold: float):
    """Angular and magnitude disagreement of the R/G/B gradient vectors."""
    mags = [xp.sqrt(x * x + y * y) for x, y in zip(gx, gy)]
    peak = xp.maximum(xp.maximum(mags[0], mags[1]), mags[2])
    mask = peak > edge_threshold

    def angle(a: int, b: int):
        dot = gx[a] * gx[b] + gy[a] * gy[b]
        both = (mags[a] > _EPS) & (mags[b] > _EPS)
        cos = xp.clip(dot / xp.maximum(mags[a] * mags[b], _EPS), -1.0, 1.0)
        return xp.where(both, xp.arccos(cos) / np.pi, 0.0)

    angular = (angle(0, 1) + angle(2, 1)) / 2.0
    spread = (xp.abs(mags[0] - mags[1]) + xp.abs(mags[1] - mags[2])
              + xp.abs(mags[2] - mags[0]))
    magnitude = spread / xp.maximum(2.0 * peak, _EPS)
    return xp.stack([angular[mask], magnitude[mask]], axis=1)


class CpuKernels:
    name = "cpu"

    def laplacian(self, gray: np.ndarray) -> np.ndarray:
        h, w = gray.shape
        if h < 3 or w < 3:
            return np.empty((0, 0))
        response = ndimage.correlate(np.asarray(gray, dtype=np.float64), LAPLACIAN_3X3,
                                     mode="nearest")
        return np.abs(response[1:-1, 1:-1])

    def harris(self, gray: np.ndarray, k: float = 0.04, window: int = 5) -> np.ndarray:
        g = np.asarray(gray, dtype=np.float64)
        h, w = g.shape
        r = window // 2
        out = np.zeros((h, w))
        if h < 2 * r + 3 or w < 2 * r + 3:
            return out
        ix = np.zeros_like(g)
        iy = np.zeros_like(g)
        ix[1:-1, 1:-1] = g[1:-1, 2:] - g[1:-1, :-2]
        iy[1:-1, 1:-1] = g[2:, 1:-1] - g[:-2, 1:-1]
        area = float(window * window)
        sxx = ndimage.uniform_filter(ix * ix, size=window, mode="constant") * area
        syy = ndimage.uniform_filter(iy * iy, size=window, mode="constant") * area
        sxy = ndimage.uniform_filter(ix * iy, size=window, mode="constant") * area
        response = sxx * syy - sxy * sxy - k * (sxx + syy) ** 2
        out[r:-r, r:-r] = response[r:-r, r:-r]
        return out

    def block_variance(self, gray: np.ndarray, block: int = 8) -> np.ndarray:
        h, w = gray.shape
        bh, bw = h // block, w // block
        if bh == 0 or bw == 0:
            return np.empty((0, 0))
        tiles = np.asarray(gray, dtype=np.float64)[:bh * block, :bw * block]
        return tiles.reshape(bh, block, bw, block).var(axis=(1, 3))

    def blocking(self, gray: np.ndarray, block: int = 8) -> np.ndarray:
        g = np.asarray(gray, dtype=np.float64)
        h, w = g.shape
        if h < 2 or w < 2:
            return np.zeros(2)
        dh = np.abs(np.diff(g, axis=1))
        dv = np.abs(np.diff(g, axis=0))
        col, row = _boundary_masks(h, w, block)
        b_sum = dh[:, col].sum() + dv[row, :].sum()
        b_cnt = dh[:, col].size + dv[row, :].size
        i_sum = dh[:, ~col].sum() + dv[~row, :].sum()
        i_cnt = dh[:, ~col].size + dv[~row, :].size
        return np.array([b_sum / b_cnt if b_cnt else 0.0,
                         i_sum / i_cnt if i_cnt else 0.0])

    def aberration(self, rgb: np.ndarray, edge_threshold: float = 40.0) -> np.ndarray:
        h, w = rgb.shape[:2]
        if h < 3 or w < 3:
            return np.empty((0, 2))
        gx, gy = [], []
        for c in range(3):
            channel = np.asarray(rgb[..., c], dtype=np.float64)
            gx.append(ndimage.correlate(channel, SOBEL_X, mode="nearest")[1:-1, 1:-1])
            gy.append(ndimage.correlate(channel, SOBEL_Y, mode="nearest")[1:-1, 1:-1])
        return _disagreement(gx, gy, np, edge_threshold)

    def vignetting(self, gray: np.ndarray, rings: int = 10) -> np.ndarray:
        g = np.asarray(gray, dtype=np.float64)
        h, w = g.shape
        cy, cx = (h - 1) / 2.0, (w - 1) / 2.0
        yy, xx = np.indices((h, w))
        radius = np.hypot(yy - cy, xx - cx)
        reach = np.hypot(cy, cx)
        norm = radius / reach if reach > 0 else np.zeros_like(radius)
        idx = np.minimum((norm * rings).astype(np.int64), rings - 1).ravel()
        sums = np.bincount(idx, weights=g.ravel(), minlength=rings)
        counts = np.bincount(idx, minlength=rings)
        with np.errstate(invalid="ignore", divide="ignore"):
            return np.where(counts > 0, sums / np.maximum(counts, 1), np.nan)


class GpuKernels:
    """Shader-style kernels bound to one pooled device context."""
    name = "gpu"

    def __init__(self, ctx):
        self.ctx = ctx
        self.xp = ctx.device.xp

    # -- helpers -------------------------------------------------------------
    def _tap_plan(self, name: str, kernel: np.ndarray) -> List[Tuple[int, int, float]]:
        def build():
            r = kernel.shape[0] // 2
            return [(dy - r, dx - r, float(kernel[dy, dx]))
                    for dy in range(kernel.shape[0]) for dx in range(kernel.shape[1])
                    if kernel[dy, dx] != 0]
        return self.ctx.program(name, build)

    def _apply(self, img, plan, r: int = 1, mode: str = "edge"):
        xp = self.xp
        h, w = img.shape
        pad = xp.pad(img, r, mode=mode)
        acc = xp.zeros_like(img)
        for dy, dx, weight in plan:
            acc += weight * pad[r + dy:r + dy + h, r + dx:r + dx + w]
        return acc

    def _box_sum(self, img, window: int):
        ones = np.ones((window, window))
        return self._apply(img, self._tap_plan(f"box{window}", ones), r=window // 2,
                           mode="constant")

    # -- kernels -------------------------------------------------------------
    def laplacian(self, gray: np.ndarray) -> np.ndarray:
        h, w = gray.shape
        if h < 3 or w < 3:
            return np.empty((0, 0))
        g = self.ctx.upload(gray)
        response = self._apply(g, self._tap_plan("laplacian", LAPLACIAN_3X3))
        return self.ctx.download(self.xp.abs(response[1:-1, 1:-1]))

    def harris(self, gray: np.ndarray, k: float = 0.04, window: int = 5) -> np.ndarray:
        xp = self.xp
        h, w = gray.shape
        r = window // 2
        if h < 2 * r + 3 or w < 2 * r + 3:
            return np.zeros((h, w))
        g = self.ctx.upload(gray)
        ix = xp.zeros_like(g)
        iy = xp.zeros_like(g)
        ix[1:-1, 1:-1] = g[1:-1, 2:] - g[1:-1, :-2]
        iy[1:-1, 1:-1] = g[2:, 1:-1] - g[:-2, 1:-1]
        sxx = self._box_sum(ix * ix, window)
        syy = self._box_sum(iy * iy, window)
        sxy = self._box_sum(ix * iy, window)
        response = sxx * syy - sxy * sxy - k * (sxx + syy) ** 2
        out = xp.zeros_like(g)
        out[r:-r, r:-r] = response[r:-r, r:-r]
        return self.ctx.download(out).astype(np.float64)

    def block_variance(self, gray: np.ndarray, block: int = 8) -> np.ndarray:
        h, w = gray.shape
        bh, bw = h // block, w // block
        if bh == 0 or bw == 0:
            return np.empty((0, 0))
        g = self.ctx.upload(gray[:bh * block, :bw * block])
        tiles = g.reshape(bh, block, bw, block)
        mean = tiles.mean(axis=(1, 3), keepdims=True)
        var = ((tiles - mean) ** 2).mean(axis=(1, 3))
        return self.ctx.download(var).astype(np.float64)

    def blocking(self, gray: np.ndarray, block: int = 8) -> np.ndarray:
        xp = self.xp
        h, w = gray.shape
        if h < 2 or w < 2:
            return np.zeros(2)
        g = self.ctx.upload(gray)
        dh = xp.abs(g[:, 1:] - g[:, :-1])
        dv = xp.abs(g[1:, :] - g[:-1, :])
        col_h, row_h = _boundary_masks(h, w, block)
        col, row = xp.asarray(col_h), xp.asarray(row_h)
        sums = xp.stack([
            (dh * col[None, :]).sum() + (dv * row[:, None]).sum(),
            (dh * ~col[None, :]).sum() + (dv * ~row[:, None]).sum(),
        ])
        b_sum, i_sum = (float(v) for v in self.ctx.download(sums))
        b_cnt = int(col_h.sum()) * h + int(row_h.sum()) * w
        i_cnt = dh.size + dv.size - b_cnt
        return np.array([b_sum / b_cnt if b_cnt else 0.0,
                         i_sum / i_cnt if i_cnt else 0.0])

    def aberration(self, rgb: np.ndarray, edge_threshold: float = 40.0) -> np.ndarray:
        h, w = rgb.shape[:2]
        if h < 3 or w < 3:
            return np.empty((0, 2))
        sx = self._tap_plan("sobel_x", SOBEL_X)
        sy = self._tap_plan("sobel_y", SOBEL_Y)
        gx, gy = [], []
        for c in range(3):
            channel = self.ctx.upload(rgb[..., c])
            gx.append(self._apply(channel, sx)[1:-1, 1:-1])
            gy.append(self._apply(channel, sy)[1:-1, 1:-1])
        return self.ctx.download(_disagreement(gx, gy, self.xp, edge_threshold)).astype(np.float64)

    def vignetting(self, gray: np.ndarray, rings: int = 10) -> np.ndarray:
        xp = self.xp
        h, w = gray.shape
        ring_index = self.ctx.scratch(("rings", rings), lambda: self._ring_index(h, w, rings))
        g = self.ctx.upload(gray).ravel()
        sums = xp.bincount(ring_index, weights=g, minlength=rings)
        counts = xp.bincount(ring_index, minlength=rings)
        sums_h = self.ctx.download(sums).astype(np.float64)
        counts_h = self.ctx.download(counts)
        with np.errstate(invalid="ignore", divide="ignore"):
            return np.where(counts_h > 0, sums_h / np.maximum(counts_h, 1), np.nan)

    def _ring_index(self, h: int, w: int, rings: int):
        xp = self.xp
        cy, cx = (h - 1) / 2.0, (w - 1) / 2.0
        yy = xp.arange(h, dtype=xp.float32)[:, None]
        xx = xp.arange(w, dtype=xp.float32)[None, :]
        radius = xp.sqrt((yy - cy) ** 2 + (xx - cx) ** 2)
        reach = float(np.hypot(cy, cx))
        norm = radius / reach if reach > 0 else xp.zeros_like(radius)
        return xp.minimum((norm * rings).astype(xp.int64), rings - 1).ravel()
