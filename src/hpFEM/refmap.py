"""Bilinear reference maps and quadrature point sets on (sub-)elements."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from .quadrature import gauss_legendre, tensor_rule

# Edge k of a box: (fixed coordinate, fixed side, CCW orientation sign)
#   0: bottom (s = s0), 1: right (r = r1), 2: top (s = s1), 3: left (r = r0)
_EDGE_LAYOUT = ((1, 0, 1.0), (0, 1, 1.0), (1, 1, -1.0), (0, 0, -1.0))


@dataclass
class QuadPoints:
    """Quadrature points in a root element, with physical data.

    ``r, s`` are root reference coordinates, ``x, y`` physical coordinates,
    ``w`` the physical weights and ``K`` the inverse Jacobian of the root map.
    Edge point sets also carry the unit outer normal ``(nx, ny)``.
    """

    r: NDArray[np.float64]
    s: NDArray[np.float64]
    x: NDArray[np.float64]
    y: NDArray[np.float64]
    w: NDArray[np.float64]
    K: NDArray[np.float64]
    nx: NDArray[np.float64] | None = None
    ny: NDArray[np.float64] | None = None

    def __len__(self) -> int:
        return len(self.w)


def _shape(r, s):
    return np.array([
        0.25 * (1 - r) * (1 - s),  # SW
        0.25 * (1 + r) * (1 - s),  # SE
        0.25 * (1 + r) * (1 + s),  # NE
        0.25 * (1 - r) * (1 + s),  # NW
    ])


def _shape_derivatives(r, s):
    dr = np.array([-0.25 * (1 - s), 0.25 * (1 - s), 0.25 * (1 + s), -0.25 * (1 + s)])
    ds = np.array([-0.25 * (1 - r), -0.25 * (1 + r), 0.25 * (1 + r), 0.25 * (1 - r)])
    return dr, ds


def bilinear_map(corners: NDArray[np.float64], r, s) -> tuple[np.ndarray, np.ndarray]:
    """Map root reference coordinates to physical coordinates."""
    N = _shape(np.asarray(r, dtype=float), np.asarray(s, dtype=float))
    x = np.tensordot(corners[:, 0], N, axes=1)
    y = np.tensordot(corners[:, 1], N, axes=1)
    return x, y


def bilinear_jacobian(corners: NDArray[np.float64], r, s) -> np.ndarray:
    """Jacobian ``[[x_r, x_s], [y_r, y_s]]`` at each point, shape (n, 2, 2)."""
    r = np.atleast_1d(np.asarray(r, dtype=float))
    s = np.atleast_1d(np.asarray(s, dtype=float))
    dr, ds = _shape_derivatives(r, s)
    J = np.empty((len(r), 2, 2))
    J[:, 0, 0] = corners[:, 0] @ dr
    J[:, 0, 1] = corners[:, 0] @ ds
    J[:, 1, 0] = corners[:, 1] @ dr
    J[:, 1, 1] = corners[:, 1] @ ds
    return J


def _inverse(J: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    det = J[:, 0, 0] * J[:, 1, 1] - J[:, 0, 1] * J[:, 1, 0]
    K = np.empty_like(J)
    K[:, 0, 0] = J[:, 1, 1] / det
    K[:, 0, 1] = -J[:, 0, 1] / det
    K[:, 1, 0] = -J[:, 1, 0] / det
    K[:, 1, 1] = J[:, 0, 0] / det
    return K, det


def volume_points(
    corners: NDArray[np.float64],
    box: tuple[float, float, float, float],
    n_points: int,
) -> QuadPoints:
    """Tensor Gauss points on a sub-box of a root element."""
    r, s, w_ref = tensor_rule(box, n_points)
    x, y = bilinear_map(corners, r, s)
    K, det = _inverse(bilinear_jacobian(corners, r, s))
    return QuadPoints(r=r, s=s, x=x, y=y, w=w_ref * np.abs(det), K=K)


def edge_points(
    corners: NDArray[np.float64],
    box: tuple[float, float, float, float],
    edge: int,
    n_points: int,
) -> QuadPoints:
    """Gauss points on edge ``edge`` of a sub-box, with outer normals."""
    r0, r1, s0, s1 = box
    fixed, side, sign = _EDGE_LAYOUT[edge]
    pts, wts = gauss_legendre(n_points)
    if fixed == 1:
        r = r0 + 0.5 * (r1 - r0) * (pts + 1.0)
        s = np.full_like(r, s1 if side else s0)
        half = 0.5 * (r1 - r0)
    else:
        s = s0 + 0.5 * (s1 - s0) * (pts + 1.0)
        r = np.full_like(s, r1 if side else r0)
        half = 0.5 * (s1 - s0)

    x, y = bilinear_map(corners, r, s)
    J = bilinear_jacobian(corners, r, s)
    K, _ = _inverse(J)
    # Tangent along the varying coordinate, oriented counter-clockwise
    col = 0 if fixed == 1 else 1
    tx, ty = sign * J[:, 0, col], sign * J[:, 1, col]
    speed = np.hypot(tx, ty)
    return QuadPoints(
        r=r, s=s, x=x, y=y, w=wts * half * speed, K=K, nx=ty / speed, ny=-tx / speed
    )


def invert_bilinear(
    corners: NDArray[np.float64], x: float, y: float, max_iter: int = 30, tol: float = 1e-13
) -> tuple[float, float]:
    """Newton inversion of the bilinear map; returns (r, s) (may lie outside [-1, 1]^2)."""
    rs = np.zeros(2)
    target = np.array([x, y], dtype=float)
    for _ in range(max_iter):
        px, py = bilinear_map(corners, rs[0], rs[1])
        F = np.array([px, py]) - target
        J = bilinear_jacobian(corners, rs[0], rs[1])[0]
        delta = np.linalg.solve(J, F)
        rs -= delta
        if np.max(np.abs(delta)) < tol:
            break
    return float(rs[0]), float(rs[1])
