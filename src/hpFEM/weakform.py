"""Weak form registry.

A form callback has the signature

    matrix forms:  fn(wt, u, v, e, ext)
    vector forms:  fn(wt, v, e, ext)

``u`` and ``v`` are :class:`Func` objects with ``val``, ``dx`` and ``dy``;
``e`` is a :class:`Geom` with the physical coordinates (and normals on edges);
``ext`` is a list of :class:`Func` for the external functions the form was
registered with. During assembly the same callback is evaluated twice: once
with :class:`~hpFEM.order.Ord` arguments to pick the quadrature order, and once
with arrays (``wt`` is then the array of quadrature weights). Callbacks should
therefore integrate through :func:`hpFEM.order.integral`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Sequence

import numpy as np

from .order import GEOMETRY_ORDER, NONPOLY_ORDER, Ord, as_order

log = logging.getLogger(__name__)

# Area/marker wildcard
ANY = -1


class Symmetry(IntEnum):
    ANTISYM = -1
    UNSYM = 0
    SYM = 1


@dataclass
class Func:
    """Values and physical derivatives of a function at quadrature points."""

    val: Any
    dx: Any
    dy: Any

    def __sub__(self, other: Func) -> Func:
        return Func(self.val - other.val, self.dx - other.dx, self.dy - other.dy)

    @classmethod
    def of_order(cls, order: int) -> Func:
        o = Ord(order)
        return cls(o, o, o)


@dataclass
class Geom:
    """Geometry at quadrature points."""

    x: Any
    y: Any
    nx: Any = None
    ny: Any = None
    marker: int = 0
    elem_id: int = -1

    @classmethod
    def of_order(cls, surface: bool = False) -> Geom:
        g = Ord(GEOMETRY_ORDER)
        n = g if surface else None
        return cls(g, g, n, n)


class Form:
    """Base form: a callback, an optional order callback, an area and externals."""

    surface = False

    def __init__(
        self,
        fn: Callable,
        ord: Callable | None = None,
        area: int = ANY,
        ext: Sequence = (),
    ):
        self.fn = fn
        self.ord_fn = ord
        self.area = area
        self.ext = list(ext)

    def applies_to(self, marker: int) -> bool:
        return self.area == ANY or self.area == marker

    def value(self, wt, *args):
        return self.fn(wt, *args)

    def _order(self, *args) -> int:
        fn = self.ord_fn or self.fn
        try:
            return as_order(fn(None, *args))
        except TypeError as exc:
            log.debug(f"Order estimation failed ({exc}); using {NONPOLY_ORDER}")
            return NONPOLY_ORDER


class MatrixFormVol(Form):
    def __init__(self, i: int, j: int, fn, sym=Symmetry.UNSYM, area=ANY, ord=None, ext=()):
        super().__init__(fn, ord, area, ext)
        self.i, self.j = i, j
        self.sym = Symmetry(sym)

    def order(self, u_order: int, v_order: int, ext_orders: Sequence[int]) -> int:
        ext = [Func.of_order(o) for o in ext_orders]
        return self._order(
            Func.of_order(u_order), Func.of_order(v_order), Geom.of_order(self.surface), ext
        )


class MatrixFormSurf(MatrixFormVol):
    surface = True

    def __init__(self, i: int, j: int, fn, area=ANY, ord=None, ext=()):
        super().__init__(i, j, fn, Symmetry.UNSYM, area, ord, ext)


class VectorFormVol(Form):
    def __init__(self, i: int, fn, area=ANY, ord=None, ext=()):
        super().__init__(fn, ord, area, ext)
        self.i = i

    def order(self, v_order: int, ext_orders: Sequence[int]) -> int:
        ext = [Func.of_order(o) for o in ext_orders]
        return self._order(Func.of_order(v_order), Geom.of_order(self.surface), ext)


class VectorFormSurf(VectorFormVol):
    surface = True


class WeakForm:
    """Ordered registry of matrix and vector forms for ``neq`` components."""

    def __init__(self, neq: int = 1):
        if neq < 1:
            raise ValueError(f"WeakForm needs at least one equation, got {neq}")
        self.neq = neq
        self.matrix_forms_vol: list[MatrixFormVol] = []
        self.matrix_forms_surf: list[MatrixFormSurf] = []
        self.vector_forms_vol: list[VectorFormVol] = []
        self.vector_forms_surf: list[VectorFormSurf] = []

    def _check(self, *idx: int) -> None:
        for i in idx:
            if not 0 <= i < self.neq:
                raise ValueError(f"Component index {i} out of range for {self.neq} equations")

    def add_matrix_form(self, i, j, fn, sym=Symmetry.UNSYM, area=ANY, ord=None, ext=()):
        self._check(i, j)
        sym = Symmetry(sym)
        if sym != Symmetry.UNSYM and i > j:
            raise ValueError(
                f"Symmetric forms must be registered in the upper block (i <= j), got ({i}, {j})"
            )
        form = MatrixFormVol(i, j, fn, sym, area, ord, ext)
        self.matrix_forms_vol.append(form)
        return form

    def add_matrix_form_surf(self, i, j, fn, area=ANY, ord=None, ext=()):
        self._check(i, j)
        form = MatrixFormSurf(i, j, fn, area, ord, ext)
        self.matrix_forms_surf.append(form)
        return form

    def add_vector_form(self, i, fn, area=ANY, ord=None, ext=()):
        self._check(i)
        form = VectorFormVol(i, fn, area, ord, ext)
        self.vector_forms_vol.append(form)
        return form

    def add_vector_form_surf(self, i, fn, area=ANY, ord=None, ext=()):
        self._check(i)
        form = VectorFormSurf(i, fn, area, ord, ext)
        self.vector_forms_surf.append(form)
        return form

    def volume_blocks(self):
        """Yield ``(form, row, col, transpose_sign)`` including mirrored blocks."""
        for form in self.matrix_forms_vol:
            yield form, form.i, form.j, 0
            if form.sym != Symmetry.UNSYM and form.i != form.j:
                yield form, form.j, form.i, int(form.sym)


def as_array_shape(value, shape) -> np.ndarray:
    """Broadcast a form result (possibly a scalar) to the expected shape."""
    return np.broadcast_to(np.asarray(value, dtype=float), shape)
