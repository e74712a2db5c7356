"""Global projection of functions onto finite element spaces."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Sequence

from .forms import h1_form, l2_form
from .linsystem import solve_linear
from .order import integral
from .solution import MeshFunction, Solution
from .space import H1Space
from .weakform import Symmetry, VectorFormVol, WeakForm

log = logging.getLogger(__name__)


class ProjNorm(str, Enum):
    H1 = "h1"
    L2 = "l2"
    ENERGY = "energy"


def _h1_rhs(wt, v, e, ext):
    f = ext[0]
    return integral(wt, f.val * v.val + f.dx * v.dx + f.dy * v.dy)


def _l2_rhs(wt, v, e, ext):
    return integral(wt, ext[0].val * v.val)


class _SourceForm(VectorFormVol):
    """Vector form ``sign * a(u=v, v=source)`` built from a matrix form.

    Applying a bilinear form with the source in one slot gives the right-hand
    side of the energy projection.
    """

    def __init__(self, row: int, matrix_form, source: MeshFunction, transpose: int):
        self.matrix_form = matrix_form
        self.transpose = transpose
        super().__init__(
            row, self._evaluate, area=matrix_form.area, ext=[source] + matrix_form.ext
        )

    def _evaluate(self, wt, v, e, ext):
        fn = self.matrix_form.fn
        if self.transpose:
            return self.transpose * fn(wt, v, ext[0], e, ext[1:])
        return fn(wt, ext[0], v, e, ext[1:])


def project_global(
    spaces: Sequence[H1Space],
    sources: Sequence[MeshFunction],
    norms: ProjNorm | str | Sequence = ProjNorm.H1,
    wf: WeakForm | None = None,
    solver: str = "splu",
) -> list[Solution]:
    """Project each source onto the matching space.

    Parameters
    ----------
    spaces : sequence of H1Space
    sources : sequence of MeshFunction
        Functions to project, e.g. reference Solutions or ExactSolutions.
    norms : ProjNorm, str or sequence
        Norm per component (a single value applies to all). ``ENERGY`` uses
        the volume matrix forms of ``wf`` and projects all components jointly.
    wf : WeakForm, optional
        Required for the energy norm.
    """
    spaces = list(spaces)
    sources = list(sources)
    if len(spaces) != len(sources):
        raise ValueError(f"Got {len(sources)} sources for {len(spaces)} spaces")
    if isinstance(norms, (str, ProjNorm)):
        norms = [norms] * len(spaces)
    norms = [ProjNorm(n) for n in norms]

    neq = len(spaces)
    pwf = WeakForm(neq)
    if ProjNorm.ENERGY in norms:
        if wf is None:
            raise ValueError("Energy-norm projection requires a weak form")
        if any(n != ProjNorm.ENERGY for n in norms):
            raise ValueError("Energy-norm projection cannot be mixed with other norms")
        if wf.neq != neq:
            raise ValueError(f"Weak form has {wf.neq} equations, projecting {neq} components")
        for form in wf.matrix_forms_vol:
            pwf.add_matrix_form(form.i, form.j, form.fn, form.sym, form.area, form.ord_fn, form.ext)
            pwf.vector_forms_vol.append(_SourceForm(form.i, form, sources[form.j], 0))
            if form.sym != Symmetry.UNSYM and form.i != form.j:
                pwf.vector_forms_vol.append(
                    _SourceForm(form.j, form, sources[form.i], int(form.sym))
                )
    else:
        for i, norm in enumerate(norms):
            if norm == ProjNorm.H1:
                pwf.add_matrix_form(i, i, h1_form, Symmetry.SYM)
                pwf.add_vector_form(i, _h1_rhs, ext=[sources[i]])
            else:
                pwf.add_matrix_form(i, i, l2_form, Symmetry.SYM)
                pwf.add_vector_form(i, _l2_rhs, ext=[sources[i]])

    log.debug(f"Projecting {neq} component(s) in norms {[n.value for n in norms]}")
    return solve_linear(spaces, pwf, solver)
