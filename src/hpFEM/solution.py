"""Discrete and exact solutions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

import numpy as np

from .mesh import Mesh
from .order import NONPOLY_ORDER
from .refmap import QuadPoints, bilinear_jacobian
from .shapeset import element_basis
from .space import H1Space
from .traverse import Layer
from .weakform import Func


class MeshFunction(ABC):
    """A function that can be evaluated on union cells."""

    mesh: Mesh | None = None

    def layer(self) -> Layer | None:
        return None

    @abstractmethod
    def evaluate(self, pts: QuadPoints, leaf_id: int | None = None) -> Func:
        """Values and derivatives at the points; ``leaf_id`` is the containing leaf."""

    @abstractmethod
    def order(self, leaf_id: int | None = None) -> int:
        """Polynomial degree used for quadrature."""


@dataclass(frozen=True)
class _Leaf:
    root: int
    box: tuple[float, float, float, float]
    order: tuple[int, int]
    coeffs: np.ndarray


class Solution(MeshFunction):
    """Finite element function frozen at the time it was computed.

    Holds the mesh, the leaf elements of the space at construction time with
    their local coefficients, and the global coefficient vector. Later
    refinement of the mesh does not affect it.
    """

    def __init__(self, space: H1Space, vector: np.ndarray):
        vector = np.array(vector, dtype=float)
        ndofs = space.get_num_dofs()
        if vector.shape != (ndofs,):
            raise ValueError(f"Coefficient vector has shape {vector.shape}, expected ({ndofs},)")
        vector.setflags(write=False)
        self.mesh = space.mesh
        self._vector = vector
        self._leaves: dict[int, _Leaf] = {}
        for el in space.mesh.active_elements():
            asm = space.element_assembly(el.id)
            coeffs = asm.T @ vector[asm.dofs] + asm.lift
            coeffs.setflags(write=False)
            self._leaves[el.id] = _Leaf(asm.root, asm.box, asm.order, coeffs)

    @property
    def vector(self) -> np.ndarray:
        return self._vector

    @property
    def num_dofs(self) -> int:
        return len(self._vector)

    @property
    def leaf_ids(self) -> list[int]:
        return list(self._leaves)

    def is_leaf(self, elem_id: int) -> bool:
        return elem_id in self._leaves

    def layer(self) -> Layer:
        return Layer(self.mesh, self.is_leaf)

    def leaf_order(self, leaf_id: int) -> tuple[int, int]:
        return self._leaves[leaf_id].order

    def order(self, leaf_id: int | None = None) -> int:
        if leaf_id is None:
            return max(max(leaf.order) for leaf in self._leaves.values())
        return max(self._leaves[leaf_id].order)

    def evaluate(self, pts: QuadPoints, leaf_id: int | None = None) -> Func:
        leaf = self._leaves[leaf_id]
        val, dx, dy = element_basis(leaf.box, leaf.order, pts.r, pts.s, pts.K)
        c = leaf.coeffs
        return Func(c @ val, c @ dx, c @ dy)

    def get_pt_value(self, x: float, y: float, derivatives: bool = False):
        """Value at physical point (x, y); with ``derivatives`` also (dx, dy)."""
        found = self.mesh.locate(x, y, self.is_leaf)
        if found is None:
            raise ValueError(f"Point ({x}, {y}) lies outside the mesh")
        leaf_id, r, s = found
        leaf = self._leaves[leaf_id]
        J = bilinear_jacobian(self.mesh.root_corners(leaf.root), r, s)
        K = np.linalg.inv(J)
        f = self.evaluate(_point(x, y, r, s, K), leaf_id)
        if derivatives:
            return float(f.val[0]), float(f.dx[0]), float(f.dy[0])
        return float(f.val[0])


def _point(x, y, r, s, K) -> QuadPoints:
    one = lambda v: np.array([float(v)])  # noqa: E731
    return QuadPoints(r=one(r), s=one(s), x=one(x), y=one(y), w=np.ones(1), K=K)


class ExactSolution(MeshFunction):
    """Analytic function ``fn(x, y) -> (value, dx, dy)``."""

    def __init__(self, fn: Callable, order: int = NONPOLY_ORDER):
        self.fn = fn
        self._order = order

    def order(self, leaf_id: int | None = None) -> int:
        return self._order

    def evaluate(self, pts: QuadPoints, leaf_id: int | None = None) -> Func:
        val, dx, dy = self.fn(pts.x, pts.y)
        shape = np.shape(pts.x)
        return Func(
            np.broadcast_to(np.asarray(val, dtype=float), shape),
            np.broadcast_to(np.asarray(dx, dtype=float), shape),
            np.broadcast_to(np.asarray(dy, dtype=float), shape),
        )

    def get_pt_value(self, x: float, y: float) -> float:
        val, _, _ = self.fn(np.array([x]), np.array([y]))
        return float(np.ravel(val)[0])


def zero_solution(space: H1Space) -> Solution:
    return Solution(space, np.zeros(space.get_num_dofs()))
