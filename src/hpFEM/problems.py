"""Example problems for the adaptive loop.

Each builder returns a :class:`Problem` with ready-to-adapt coarse spaces, the
weak form, optional error forms and, where known, the exact solution.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .forms import elasticity_forms, int_F_v, int_v, laplace_form
from .mesh import Mesh, rectangle_mesh
from .order import Ord
from .solution import ExactSolution, MeshFunction
from .space import BCType, H1Space
from .weakform import Symmetry, WeakForm

log = logging.getLogger(__name__)


@dataclass
class Problem:
    name: str
    spaces: list[H1Space]
    wf: Optional[WeakForm] = None
    error_forms: dict = field(default_factory=dict)
    exact: Optional[list[MeshFunction]] = None


# ============================================================================
# Line singularity: -Laplace u = f on (-1, 1)^2
# ============================================================================


def line_singularity_exact(k: float = np.pi / 2, alpha: float = 2.01) -> ExactSolution:
    """u = cos(k y) for x <= 0, cos(k y) + x^alpha for x > 0."""

    def fn(x, y):
        xp = np.clip(x, 0.0, None)
        val = np.cos(k * y) + np.where(x > 0, xp**alpha, 0.0)
        dx = np.where(x > 0, alpha * xp ** (alpha - 1), 0.0)
        dy = -k * np.sin(k * y) * np.ones_like(x)
        return val, dx, dy

    return ExactSolution(fn)


def line_singularity(
    p_init: int = 1,
    init_ref_num: int = 1,
    k: float = np.pi / 2,
    alpha: float = 2.01,
    rhs_order: int = 30,
) -> Problem:
    exact = line_singularity_exact(k, alpha)

    def rhs(x, y):
        xp = np.clip(x, 0.0, None)
        return k * k * np.cos(k * y) - np.where(x > 0, alpha * (alpha - 1) * xp ** (alpha - 2), 0.0)

    def bc_types(marker):
        return BCType.ESSENTIAL

    def bc_values(marker, x, y):
        return exact.fn(x, y)[0]

    def linear_form(wt, v, e, ext):
        return int_F_v(wt, rhs, v, e)

    def linear_form_ord(wt, v, e, ext):
        return Ord(rhs_order)

    mesh = rectangle_mesh(-1.0, 1.0, -1.0, 1.0, 1, 1, markers=(1, 1, 1, 1))
    for _ in range(init_ref_num):
        mesh.refine_all_elements()
    space = H1Space(mesh, bc_types, bc_values, p_init)

    wf = WeakForm(1)
    wf.add_matrix_form(0, 0, laplace_form, Symmetry.SYM)
    wf.add_vector_form(0, linear_form, ord=linear_form_ord)
    log.info(f"Line singularity: k={k:g}, alpha={alpha:g}, ndof={space.get_num_dofs()}")
    return Problem("line_singularity", [space], wf, exact=[exact])


# ============================================================================
# Bracket: linear elasticity on an L-shaped domain, multi-mesh
# ============================================================================

BDY_LEFT = 1
BDY_TOP = 2
BDY_FREE = 3


def bracket_mesh() -> Mesh:
    """L-shaped bracket: a horizontal arm clamped on the left and a vertical leg."""
    vertices = [
        (0.0, 0.8), (0.8, 0.8), (1.0, 0.8), (0.0, 1.0),
        (0.8, 1.0), (1.0, 1.0), (0.8, 0.0), (1.0, 0.0),
    ]
    elements = [(0, 1, 4, 3), (1, 2, 5, 4), (6, 7, 2, 1)]
    boundaries = [
        (0, 3, BDY_LEFT),
        (3, 4, BDY_TOP), (4, 5, BDY_TOP),
        (0, 1, BDY_FREE), (5, 2, BDY_FREE), (2, 7, BDY_FREE),
        (7, 6, BDY_FREE), (6, 1, BDY_FREE),
    ]
    return Mesh.from_arrays(vertices, elements, boundaries)


def bracket(
    p_init: int = 2,
    multi: bool = True,
    E: float = 200e9,
    nu: float = 0.3,
    f: float = 1e3,
    init_ref_num: int = 1,
) -> Problem:
    """Two displacement components; with ``multi`` each lives on its own mesh."""
    lam = (E * nu) / ((1 + nu) * (1 - 2 * nu))
    mu = E / (2 * (1 + nu))

    def bc_types(marker):
        return BCType.ESSENTIAL if marker == BDY_LEFT else BCType.NATURAL

    def bc_values(marker, x, y):
        return 0.0

    u_mesh = bracket_mesh()
    for _ in range(init_ref_num):
        u_mesh.refine_all_elements()
    v_mesh = u_mesh.copy() if multi else u_mesh

    u_space = H1Space(u_mesh, bc_types, bc_values, p_init)
    v_space = H1Space(v_mesh, bc_types, bc_values, p_init)

    forms = elasticity_forms(lam, mu)

    def linear_form_surf_1(wt, v, e, ext):
        return -f * int_v(wt, v)

    wf = WeakForm(2)
    wf.add_matrix_form(0, 0, forms[(0, 0)], Symmetry.SYM)
    wf.add_matrix_form(0, 1, forms[(0, 1)], Symmetry.SYM)
    wf.add_matrix_form(1, 1, forms[(1, 1)], Symmetry.SYM)
    wf.add_vector_form_surf(1, linear_form_surf_1, area=BDY_TOP)
    return Problem("bracket", [u_space, v_space], wf, error_forms=forms)


# ============================================================================
# Exact-function adaptivity: interior layer around a circle
# ============================================================================


def wave_front_exact(
    x0: float = -0.05, y0: float = -0.05, r0: float = 0.7, slope: float = 20.0
) -> ExactSolution:
    """u = atan(slope (r - r0)) with r the distance to (x0, y0)."""

    def fn(x, y):
        dxc, dyc = x - x0, y - y0
        r = np.sqrt(dxc * dxc + dyc * dyc)
        t = slope * (r - r0)
        g = slope / (1.0 + t * t)
        r_safe = np.where(r > 0, r, 1.0)
        return np.arctan(t), g * dxc / r_safe, g * dyc / r_safe

    return ExactSolution(fn)


def wave_front(p_init: int = 1, init_ref_num: int = 2, slope: float = 20.0) -> Problem:
    exact = wave_front_exact(slope=slope)
    mesh = rectangle_mesh(0.0, 1.0, 0.0, 1.0, 1, 1)
    for _ in range(init_ref_num):
        mesh.refine_all_elements()
    return Problem("wave_front", [H1Space(mesh, order=p_init)], exact=[exact])


PROBLEMS = {
    "line_singularity": line_singularity,
    "bracket": bracket,
    "wave_front": wave_front,
}


def build_problem(name: str, **params) -> Problem:
    if name not in PROBLEMS:
        raise ValueError(f"Unknown problem {name!r}; available: {sorted(PROBLEMS)}")
    return PROBLEMS[name](**params)
