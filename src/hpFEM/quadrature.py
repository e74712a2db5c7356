"""Gauss-Legendre quadrature on [-1, 1] and on reference sub-boxes."""

from __future__ import annotations

from functools import lru_cache
from math import ceil

import numpy as np
from numpy.polynomial.legendre import leggauss

# Cap on points per direction (exact up to degree 2 * 32 - 1)
MAX_POINTS = 32


@lru_cache(maxsize=None)
def gauss_legendre(n_points: int) -> tuple[np.ndarray, np.ndarray]:
    """Return (points, weights) of the n-point Gauss-Legendre rule on [-1, 1]."""
    if n_points < 1:
        raise ValueError(f"gauss_legendre: n_points must be >= 1, got {n_points}")
    pts, wts = leggauss(n_points)
    pts.setflags(write=False)
    wts.setflags(write=False)
    return pts, wts


def points_for_order(order: int) -> int:
    """Number of 1D points integrating degree ``order + 2`` exactly.

    The two extra degrees absorb the bilinear geometry map.
    """
    n = ceil((max(order, 0) + 3) / 2)
    return min(max(n, 1), MAX_POINTS)


def tensor_rule(
    box: tuple[float, float, float, float], n_points: int
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Tensor Gauss rule on ``box = (r0, r1, s0, s1)``.

    Returns flattened reference coordinates (r, s) and weights scaled by the
    box area relative to [-1, 1]^2.
    """
    r0, r1, s0, s1 = box
    pts, wts = gauss_legendre(n_points)
    r1d = r0 + 0.5 * (r1 - r0) * (pts + 1.0)
    s1d = s0 + 0.5 * (s1 - s0) * (pts + 1.0)
    R, S = np.meshgrid(r1d, s1d, indexing="ij")
    W = np.outer(wts, wts) * (0.25 * (r1 - r0) * (s1 - s0))
    return R.ravel(), S.ravel(), W.ravel()


def line_rule(a: float, b: float, n_points: int) -> tuple[np.ndarray, np.ndarray]:
    """Gauss rule on the interval [a, b]; weights scaled by (b - a) / 2."""
    pts, wts = gauss_legendre(n_points)
    return a + 0.5 * (b - a) * (pts + 1.0), wts * (0.5 * (b - a))
