"""Element error estimation and hp-adaptation of coarse spaces."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import IntEnum, IntFlag
from typing import Sequence

import numpy as np

from .errors import SelectionExhausted
from .forms import h1_form
from .mesh import Split
from .quadrature import points_for_order
from .refmap import volume_points
from .solution import Solution
from .space import H1Space
from .traverse import union_cells
from .weakform import Geom, MatrixFormVol, Symmetry

log = logging.getLogger(__name__)

# Relative tolerance for treating element errors as equal
TIE_TOLERANCE = 1e-3


class ErrorFlag(IntFlag):
    TOTAL_ERROR_REL = 0x01
    TOTAL_ERROR_ABS = 0x02
    ELEMENT_ERROR_REL = 0x04
    ELEMENT_ERROR_ABS = 0x08


DEFAULT_ERROR_FLAGS = ErrorFlag.TOTAL_ERROR_REL | ErrorFlag.ELEMENT_ERROR_REL


class Strategy(IntEnum):
    CUMULATIVE = 0
    RELATIVE_TO_MAX = 1
    ABSOLUTE = 2


@dataclass(frozen=True)
class ElementErrorRecord:
    component: int
    element_id: int
    error_squared: float

    @property
    def error(self) -> float:
        return float(np.sqrt(self.error_squared))


def select_elements(
    records: Sequence[ElementErrorRecord], strategy: Strategy, threshold: float
) -> list[ElementErrorRecord]:
    """Elements to refine under a marking strategy.

    ``records`` must be sorted by descending error. All comparisons are made on
    squared errors.
    """
    if not records:
        return []
    strategy = Strategy(strategy)
    if strategy == Strategy.RELATIVE_TO_MAX:
        limit = threshold * records[0].error_squared
        return [r for r in records if r.error_squared > limit]
    if strategy == Strategy.ABSOLUTE:
        return [r for r in records if r.error_squared > threshold]

    total = sum(r.error_squared for r in records)
    target = np.sqrt(threshold) * total
    chosen: list[ElementErrorRecord] = []
    processed = 0.0
    last = None
    for r in records:
        if processed > target and last is not None:
            # Elements tied with the last processed one go together
            if last <= 0 or abs(r.error_squared - last) / last > TIE_TOLERANCE:
                break
        chosen.append(r)
        processed += r.error_squared
        last = r.error_squared
    return chosen


class Adapt:
    """Reference-solution error estimation and refinement of coarse spaces."""

    def __init__(self, spaces: Sequence[H1Space]):
        self.spaces = list(spaces)
        self.neq = len(self.spaces)
        self.error_forms: dict[tuple[int, int], MatrixFormVol] = {
            (i, i): MatrixFormVol(i, i, h1_form, Symmetry.SYM) for i in range(self.neq)
        }
        self.coarse: list[Solution] | None = None
        self.ref: list[Solution] | None = None
        self.records: list[ElementErrorRecord] = []
        self.component_errors: list[float] = []

    def set_error_form(self, i: int, j: int, fn, ord=None) -> None:
        """Replace the error form of block (i, j)."""
        if not (0 <= i < self.neq and 0 <= j < self.neq):
            raise ValueError(f"Error form block ({i}, {j}) out of range")
        form = fn if isinstance(fn, MatrixFormVol) else MatrixFormVol(i, j, fn, ord=ord)
        self.error_forms[(i, j)] = form

    def set_solutions(self, coarse: Sequence[Solution], ref: Sequence[Solution]) -> None:
        if len(coarse) != self.neq or len(ref) != self.neq:
            raise ValueError(f"Expected {self.neq} coarse and reference solutions")
        self.coarse = list(coarse)
        self.ref = list(ref)

    def calc_error(self, flags: ErrorFlag = DEFAULT_ERROR_FLAGS) -> float:
        """Estimate the error of the coarse solutions against the reference ones.

        Returns the relative (or absolute) total error; element records are
        stored in ``self.records`` sorted by descending error.
        """
        if self.coarse is None or self.ref is None:
            raise ValueError("calc_error requires set_solutions to be called first")
        flags = ErrorFlag(flags)

        errors = [defaultdict(float) for _ in range(self.neq)]
        norms = np.zeros(self.neq)
        for (i, j), form in self.error_forms.items():
            layers = [
                self.coarse[i].layer(),
                self.coarse[j].layer(),
                self.ref[i].layer(),
                self.ref[j].layer(),
            ]
            mesh = self.coarse[i].mesh
            for root, box, ids in union_cells(layers):
                ci, cj, ri, rj = ids
                n = points_for_order(
                    form.order(self.ref[j].order(rj), self.ref[i].order(ri), [])
                )
                pts = volume_points(mesh.root_corners(root), box, n)
                fi = self.ref[i].evaluate(pts, ri)
                fj = self.ref[j].evaluate(pts, rj)
                di = fi - self.coarse[i].evaluate(pts, ci)
                dj = fj - self.coarse[j].evaluate(pts, cj)
                e = Geom(pts.x, pts.y, marker=mesh.elements[ci].marker, elem_id=ci)
                errors[i][ci] += abs(float(form.value(pts.w, dj, di, e, [])))
                norms[i] += abs(float(form.value(pts.w, fj, fi, e, [])))

        total_err = sum(sum(err.values()) for err in errors)
        total_norm = float(norms.sum())
        if total_norm == 0.0:
            log.debug("Reference solution has zero norm; using absolute errors")
            total_norm = 1.0

        scale = total_norm if flags & ErrorFlag.ELEMENT_ERROR_REL else 1.0
        records = [
            ElementErrorRecord(i, eid, err / scale)
            for i in range(self.neq)
            for eid, err in errors[i].items()
        ]
        records.sort(key=lambda r: (-r.error_squared, r.component, r.element_id))
        self.records = records
        self.component_errors = [
            float(np.sqrt(sum(errors[i].values()) / (norms[i] if norms[i] > 0 else 1.0)))
            for i in range(self.neq)
        ]

        if flags & ErrorFlag.TOTAL_ERROR_ABS:
            return float(np.sqrt(total_err))
        return float(np.sqrt(total_err / total_norm))

    def adapt(
        self,
        selectors,
        threshold: float,
        strategy: Strategy = Strategy.CUMULATIVE,
        regularity: int = -1,
    ) -> bool:
        """Refine the coarse spaces; returns True when nothing was refined.

        ``selectors`` is one selector for all components or one per component.
        """
        if self.ref is None:
            raise ValueError("adapt requires set_solutions and calc_error first")
        if not isinstance(selectors, (list, tuple)):
            selectors = [selectors] * self.neq
        chosen = select_elements(self.records, strategy, threshold)

        refined = 0
        exhausted = 0
        for rec in chosen:
            space = self.spaces[rec.component]
            mesh = space.mesh
            el = mesh.elements[rec.element_id]
            if not el.active:
                # Already split this pass through a mesh shared with another component
                continue
            allowed = [s for s in Split if mesh.can_split(el.id, s, regularity)]
            try:
                cand = selectors[rec.component].select_refinement(
                    mesh, el.id, space.get_element_order(el.id), self.ref[rec.component], allowed
                )
            except SelectionExhausted as exc:
                log.debug(str(exc))
                exhausted += 1
                continue
            if cand.split is None:
                space.set_element_order(el.id, cand.orders[0])
            else:
                sons = mesh.refine_element(el.id, cand.split)
                for son, order in zip(sons, cand.orders):
                    space.set_element_order(son, order)
            refined += 1

        for mesh in {id(s.mesh): s.mesh for s in self.spaces}.values():
            mesh.regularize(regularity)

        log.info(
            f"Adapt: {len(chosen)} elements marked, {refined} refined, "
            f"{exhausted} without a better candidate"
        )
        return refined == 0


def calc_rel_error(sln: Solution, ref, norm_form=h1_form) -> float:
    """Relative error of ``sln`` against ``ref`` (a Solution or ExactSolution) in the H1 norm."""
    layers = [sln.layer()]
    ref_layer = ref.layer()
    if ref_layer is not None:
        layers.append(ref_layer)
    form = MatrixFormVol(0, 0, norm_form, Symmetry.SYM)
    err = norm = 0.0
    for root, box, ids in union_cells(layers):
        leaf = ids[0]
        ref_leaf = ids[1] if ref_layer is not None else None
        n = points_for_order(form.order(ref.order(ref_leaf), sln.order(leaf), []))
        pts = volume_points(sln.mesh.root_corners(root), box, n)
        f = ref.evaluate(pts, ref_leaf)
        d = f - sln.evaluate(pts, leaf)
        e = Geom(pts.x, pts.y, elem_id=leaf)
        err += abs(float(form.value(pts.w, d, d, e, [])))
        norm += abs(float(form.value(pts.w, f, f, e, [])))
    return float(np.sqrt(err / norm)) if norm > 0 else float(np.sqrt(err))
