"""Hierarchical H1 shapeset on the reference quad [-1, 1]^2.

The 1D Lobatto functions are

    l0(x) = (1 - x) / 2,   l1(x) = (1 + x) / 2,
    lk(x) = (P_k(x) - P_{k-2}(x)) / sqrt(2 (2k - 1)),   k >= 2,

with ``lk' = sqrt((2k - 1) / 2) P_{k-1}``. An element of order (px, py) uses
the tensor products ``l_i(xi) l_j(eta)`` for ``0 <= i <= px``, ``0 <= j <= py``.
Vertex functions have ``i, j in {0, 1}``, edge functions have exactly one index
``>= 2`` and bubbles have both indices ``>= 2``. Local index of (i, j) is
``i * (py + 1) + j``.
"""

from __future__ import annotations

from functools import lru_cache

import numpy as np
from numba import njit

from .quadrature import gauss_legendre

# Highest polynomial degree supported per direction
MAX_ORDER = 10


@njit
def _lobatto_tables(x, n):
    """Values and derivatives of l_0..l_n at the points x."""
    m = x.shape[0]
    P = np.empty((n + 1, m))
    vals = np.empty((n + 1, m))
    ders = np.empty((n + 1, m))

    for q in range(m):
        P[0, q] = 1.0
        if n >= 1:
            P[1, q] = x[q]
    for k in range(1, n):
        for q in range(m):
            P[k + 1, q] = ((2 * k + 1) * x[q] * P[k, q] - k * P[k - 1, q]) / (k + 1)

    for q in range(m):
        vals[0, q] = 0.5 * (1.0 - x[q])
        ders[0, q] = -0.5
        if n >= 1:
            vals[1, q] = 0.5 * (1.0 + x[q])
            ders[1, q] = 0.5
    for k in range(2, n + 1):
        c_val = 1.0 / np.sqrt(2.0 * (2 * k - 1))
        c_der = np.sqrt((2 * k - 1) / 2.0)
        for q in range(m):
            vals[k, q] = c_val * (P[k, q] - P[k - 2, q])
            ders[k, q] = c_der * P[k - 1, q]
    return vals, ders


def lobatto(x, n: int) -> tuple[np.ndarray, np.ndarray]:
    """Return (values, derivatives) of l_0..l_n, each of shape (n + 1, len(x))."""
    x = np.ascontiguousarray(np.atleast_1d(x), dtype=np.float64)
    return _lobatto_tables(x, max(int(n), 1))


def num_local(order: tuple[int, int]) -> int:
    return (order[0] + 1) * (order[1] + 1)


def local_index(i: int, j: int, order: tuple[int, int]) -> int:
    return i * (order[1] + 1) + j


def element_basis(
    box: tuple[float, float, float, float],
    order: tuple[int, int],
    r: np.ndarray,
    s: np.ndarray,
    K: np.ndarray,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Evaluate all local shape functions of an element.

    Parameters
    ----------
    box : (r0, r1, s0, s1)
        Element extent in its root's reference coordinates.
    order : (px, py)
    r, s : (nq,) arrays
        Points in root reference coordinates.
    K : (nq, 2, 2) array
        Inverse Jacobian of the root map at the points.

    Returns
    -------
    val, dx, dy : (nloc, nq) arrays
    """
    r0, r1, s0, s1 = box
    px, py = order
    hr, hs = r1 - r0, s1 - s0
    xi = 2.0 * (r - r0) / hr - 1.0
    eta = 2.0 * (s - s0) / hs - 1.0

    lx, dlx = lobatto(xi, px)
    ly, dly = lobatto(eta, py)
    lx, dlx = lx[: px + 1], dlx[: px + 1]
    ly, dly = ly[: py + 1], dly[: py + 1]

    nloc = (px + 1) * (py + 1)
    val = (lx[:, None, :] * ly[None, :, :]).reshape(nloc, -1)
    d_r = (dlx[:, None, :] * ly[None, :, :]).reshape(nloc, -1) * (2.0 / hr)
    d_s = (lx[:, None, :] * dly[None, :, :]).reshape(nloc, -1) * (2.0 / hs)

    dx = K[:, 0, 0] * d_r + K[:, 1, 0] * d_s
    dy = K[:, 0, 1] * d_r + K[:, 1, 1] * d_s
    return val, dx, dy


@lru_cache(maxsize=8192)
def _edge_transfer(t_a: float, t_b: float, q: int) -> np.ndarray:
    s, _ = gauss_legendre(q - 1)
    t = t_a + 0.5 * (t_b - t_a) * (s + 1.0)
    Ls, _ = lobatto(s, q)
    Lt, _ = lobatto(t, q)
    ends, _ = lobatto(np.array([t_a, t_b]), q)
    A = Ls[2 : q + 1].T
    rhs = Lt[: q + 1] - ends[: q + 1, 0:1] * Ls[0][None, :] - ends[: q + 1, 1:2] * Ls[1][None, :]
    D = np.linalg.solve(A, rhs.T).T
    D.setflags(write=False)
    return D


def edge_transfer(t_a: float, t_b: float, q: int) -> np.ndarray:
    """Lobatto coefficients of master edge functions restricted to a segment.

    The master edge trace is ``sum_b c_b l_b(t)`` for ``b = 0..q``. On the
    segment ``t = t_a + (t_b - t_a)(s + 1) / 2`` the restricted trace expands as
    ``R(-1) l0(s) + R(1) l1(s) + sum_j d_j l_j(s)``. Returns the (q + 1, q - 1)
    matrix ``D`` with ``d_j = sum_b c_b D[b, j - 2]``.
    """
    if q < 2:
        return np.zeros((q + 1, 0))
    return _edge_transfer(round(float(t_a), 12), round(float(t_b), 12), int(q))
