"""Polynomial-order arithmetic used to pick integration rules.

Forms are written once and evaluated with two kinds of arguments: numpy arrays
(numeric evaluation) or :class:`Ord` objects (order estimation). ``Ord`` tracks
the polynomial degree of an expression: sums take the maximum, products add.
Any other numpy ufunc applied to an ``Ord`` yields :data:`NONPOLY_ORDER`.
"""

from __future__ import annotations

import numpy as np

# Degree assumed for non-polynomial expressions (sin, exp, sqrt, ...)
NONPOLY_ORDER = 20

# Degree assigned to geometry quantities on bilinear quads
GEOMETRY_ORDER = 1

_ADDITIVE_UFUNCS = {np.add, np.subtract, np.maximum, np.minimum}
_IDENTITY_UFUNCS = {np.negative, np.positive, np.absolute, np.conjugate}


def _order_of(value) -> int:
    if isinstance(value, Ord):
        return value.order
    return 0


class Ord:
    """Degree of a polynomial expression."""

    __slots__ = ("order",)

    def __init__(self, order: int = 0):
        self.order = int(order)

    def __repr__(self) -> str:
        return f"Ord({self.order})"

    def __eq__(self, other) -> bool:
        return isinstance(other, Ord) and other.order == self.order

    def __hash__(self) -> int:
        return hash(self.order)

    def __add__(self, other) -> Ord:
        return Ord(max(self.order, _order_of(other)))

    __radd__ = __add__
    __sub__ = __add__
    __rsub__ = __add__

    def __mul__(self, other) -> Ord:
        return Ord(self.order + _order_of(other))

    __rmul__ = __mul__

    def __truediv__(self, other) -> Ord:
        if isinstance(other, Ord) and other.order > 0:
            return Ord(NONPOLY_ORDER)
        return Ord(self.order)

    def __rtruediv__(self, other) -> Ord:
        if self.order > 0:
            return Ord(NONPOLY_ORDER)
        return Ord(_order_of(other))

    def __pow__(self, exponent) -> Ord:
        if isinstance(exponent, (int, np.integer)) and exponent >= 0:
            return Ord(self.order * int(exponent))
        return Ord(NONPOLY_ORDER)

    def __neg__(self) -> Ord:
        return Ord(self.order)

    __pos__ = __neg__
    __abs__ = __neg__

    def __array_ufunc__(self, ufunc, method, *inputs, **kwargs):
        if method != "__call__":
            return NotImplemented
        orders = [_order_of(x) for x in inputs]
        if ufunc in _ADDITIVE_UFUNCS or ufunc in _IDENTITY_UFUNCS:
            return Ord(max(orders))
        if ufunc is np.multiply:
            return Ord(sum(orders))
        if ufunc is np.square:
            return Ord(2 * orders[0])
        return Ord(NONPOLY_ORDER)


def integral(wt, expr):
    """Integrate ``expr`` with quadrature weights ``wt`` over the last axis.

    With an ``Ord`` expression this returns the order itself, which lets the
    same form callback serve numeric assembly and order estimation.
    """
    if isinstance(expr, Ord):
        return expr
    return np.sum(expr * wt, axis=-1)


def as_order(value) -> int:
    """Integer degree of a form's order estimate."""
    if isinstance(value, Ord):
        return value.order
    if isinstance(value, (int, np.integer)):
        return int(value)
    raise TypeError(f"Form order estimate must be Ord or int, got {type(value).__name__}")
