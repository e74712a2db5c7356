"""Common integrals for weak forms.

All helpers work on numeric :class:`~hpFEM.weakform.Func` data as well as on
:class:`~hpFEM.order.Ord` placeholders.
"""

from __future__ import annotations

from .order import integral


def int_u_v(wt, u, v):
    return integral(wt, u.val * v.val)


def int_grad_u_grad_v(wt, u, v):
    return integral(wt, u.dx * v.dx + u.dy * v.dy)


def int_dudx_dvdx(wt, u, v):
    return integral(wt, u.dx * v.dx)


def int_dudy_dvdy(wt, u, v):
    return integral(wt, u.dy * v.dy)


def int_dudx_dvdy(wt, u, v):
    return integral(wt, u.dx * v.dy)


def int_dudy_dvdx(wt, u, v):
    return integral(wt, u.dy * v.dx)


def int_v(wt, v):
    return integral(wt, v.val)


def int_F_v(wt, F, v, e):
    """Integral of ``F(x, y) v``."""
    return integral(wt, F(e.x, e.y) * v.val)


# Bilinear forms with the standard callback signature


def h1_form(wt, u, v, e, ext):
    """H1 inner product."""
    return int_u_v(wt, u, v) + int_grad_u_grad_v(wt, u, v)


def l2_form(wt, u, v, e, ext):
    return int_u_v(wt, u, v)


def laplace_form(wt, u, v, e, ext):
    return int_grad_u_grad_v(wt, u, v)


def elasticity_forms(lam: float, mu: float) -> dict:
    """Bilinear forms of 2D linear elasticity, keyed by (row, col) block.

    The (0, 1) block is symmetric with (1, 0); register it with ``Symmetry.SYM``
    and the (1, 0) block is not needed for assembly. It is still returned for
    use as an error form.
    """

    def bilinear_form_0_0(wt, u, v, e, ext):
        return (lam + 2 * mu) * int_dudx_dvdx(wt, u, v) + mu * int_dudy_dvdy(wt, u, v)

    def bilinear_form_0_1(wt, u, v, e, ext):
        return lam * int_dudy_dvdx(wt, u, v) + mu * int_dudx_dvdy(wt, u, v)

    def bilinear_form_1_0(wt, u, v, e, ext):
        return mu * int_dudy_dvdx(wt, u, v) + lam * int_dudx_dvdy(wt, u, v)

    def bilinear_form_1_1(wt, u, v, e, ext):
        return mu * int_dudx_dvdx(wt, u, v) + (lam + 2 * mu) * int_dudy_dvdy(wt, u, v)

    return {
        (0, 0): bilinear_form_0_0,
        (0, 1): bilinear_form_0_1,
        (1, 0): bilinear_form_1_0,
        (1, 1): bilinear_form_1_1,
    }
