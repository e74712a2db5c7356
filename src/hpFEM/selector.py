"""Projection-based selection of hp-refinement candidates."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

import numpy as np
import scipy.linalg as sla

from .errors import SelectionExhausted
from .mesh import Mesh, Split, split_boxes
from .quadrature import points_for_order
from .refmap import volume_points
from .shapeset import MAX_ORDER, element_basis
from .solution import Solution
from .traverse import region_cells

log = logging.getLogger(__name__)


class CandList(str, Enum):
    P_ISO = "p_iso"
    P_ANISO = "p_aniso"
    H_ISO = "h_iso"
    H_ANISO = "h_aniso"
    HP_ISO = "hp_iso"
    HP_ANISO_H = "hp_aniso_h"
    HP_ANISO_P = "hp_aniso_p"
    HP_ANISO = "hp_aniso"

    @classmethod
    def parse(cls, value) -> CandList:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls[str(value).upper()]


_P_ISO = {CandList.P_ISO, CandList.HP_ISO, CandList.HP_ANISO_H}
_P_ANISO = {CandList.P_ANISO, CandList.HP_ANISO_P, CandList.HP_ANISO}
_HP = {CandList.HP_ISO, CandList.HP_ANISO_H, CandList.HP_ANISO_P, CandList.HP_ANISO}
_ISO_SPLIT = {
    CandList.H_ISO,
    CandList.H_ANISO,
    CandList.HP_ISO,
    CandList.HP_ANISO_H,
    CandList.HP_ANISO_P,
    CandList.HP_ANISO,
}
_ANISO_SPLIT = {CandList.H_ANISO, CandList.HP_ANISO_H, CandList.HP_ANISO}


@dataclass
class RefinementCandidate:
    """A refinement option. ``split`` is None for a pure p-refinement."""

    split: Split | None
    orders: tuple[tuple[int, int], ...]
    error: float = np.inf
    dofs: int = 0
    score: float = 0.0

    @property
    def num_sons(self) -> int:
        return len(self.orders)


class ProjBasedSelector:
    """Chooses the refinement with the best error decrease per added DOF.

    Parameters
    ----------
    cand_list : CandList or str
        Which candidate family to consider.
    conv_exp : float
        Exponent applied to the DOF increase in the score.
    max_order : int
        Highest order a candidate may use.
    """

    def __init__(self, cand_list=CandList.HP_ANISO, conv_exp: float = 1.0, max_order: int = MAX_ORDER):
        if conv_exp <= 0:
            raise ValueError(f"conv_exp must be positive, got {conv_exp}")
        if not 1 <= max_order <= MAX_ORDER:
            raise ValueError(f"max_order must be within 1..{MAX_ORDER}, got {max_order}")
        self.cand_list = CandList.parse(cand_list)
        self.conv_exp = conv_exp
        self.max_order = max_order

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------
    def create_candidates(
        self, order: tuple[int, int], allowed_splits: Sequence[Split] | None = None
    ) -> list[RefinementCandidate]:
        """Candidate list for an element of ``order``; entry 0 is the unrefined element."""
        px, py = order
        mo = self.max_order
        allowed = set(Split) if allowed_splits is None else set(allowed_splits)
        cands = [RefinementCandidate(None, ((px, py),))]
        seen = {(None, ((px, py),))}

        def add(split, orders):
            if split is not None and split not in allowed:
                return
            key = (split, orders)
            if key not in seen:
                seen.add(key)
                cands.append(RefinementCandidate(split, orders))

        if self.cand_list in _P_ISO:
            for inc in (1, 2):
                add(None, ((min(px + inc, mo), min(py + inc, mo)),))
        if self.cand_list in _P_ANISO:
            for a in range(3):
                for b in range(3):
                    if a or b:
                        add(None, ((min(px + a, mo), min(py + b, mo)),))

        splits = []
        if self.cand_list in _ISO_SPLIT:
            splits.append(Split.ISO)
        if self.cand_list in _ANISO_SPLIT:
            splits += [Split.HORZ, Split.VERT]
        hx, hy = max(1, (px + 1) // 2), max(1, (py + 1) // 2)
        for split in splits:
            nsons = 4 if split == Split.ISO else 2
            if self.cand_list not in _HP:
                add(split, ((px, py),) * nsons)
                continue
            for inc in (0, 1):
                sx = min(hx + inc, mo) if split != Split.HORZ else px
                sy = min(hy + inc, mo) if split != Split.VERT else py
                add(split, ((sx, sy),) * nsons)

        return cands

    # ------------------------------------------------------------------
    # Projection errors
    # ------------------------------------------------------------------
    @staticmethod
    def projection_error(
        mesh: Mesh,
        root: int,
        box: tuple[float, float, float, float],
        order: tuple[int, int],
        rsln: Solution,
    ) -> float:
        """Squared H1 error of the local projection of ``rsln`` onto Q_order on ``box``."""
        corners = mesh.root_corners(root)
        cells = []
        for cell_box, (leaf,) in region_cells([rsln.layer()], root, box):
            n = points_for_order(2 * max(rsln.order(leaf), max(order)))
            pts = volume_points(corners, cell_box, n)
            f = rsln.evaluate(pts, leaf)
            val, dx, dy = element_basis(box, order, pts.r, pts.s, pts.K)
            cells.append((pts.w, f, val, dx, dy))

        nloc = (order[0] + 1) * (order[1] + 1)
        M = np.zeros((nloc, nloc))
        rhs = np.zeros(nloc)
        for w, f, val, dx, dy in cells:
            M += (val * w) @ val.T + (dx * w) @ dx.T + (dy * w) @ dy.T
            rhs += val @ (w * f.val) + dx @ (w * f.dx) + dy @ (w * f.dy)
        c = sla.solve(M, rhs, assume_a="pos")

        err = 0.0
        for w, f, val, dx, dy in cells:
            ev = f.val - c @ val
            ex = f.dx - c @ dx
            ey = f.dy - c @ dy
            err += float(np.sum(w * (ev * ev + ex * ex + ey * ey)))
        return err

    def evaluate_candidate(self, mesh: Mesh, elem_id: int, cand: RefinementCandidate, rsln: Solution) -> None:
        el = mesh.elements[elem_id]
        if cand.split is None:
            boxes = [el.box]
        else:
            boxes = split_boxes(el.box, cand.split)
        cand.error = sum(
            self.projection_error(mesh, el.root, b, o, rsln) for b, o in zip(boxes, cand.orders)
        )
        cand.dofs = sum((o[0] + 1) * (o[1] + 1) for o in cand.orders)

    def select_refinement(
        self,
        mesh: Mesh,
        elem_id: int,
        order: tuple[int, int],
        rsln: Solution,
        allowed_splits: Sequence[Split] | None = None,
    ) -> RefinementCandidate:
        """Best candidate for an element.

        Raises
        ------
        SelectionExhausted
            If no candidate lowers the error while adding DOFs.
        """
        cands = self.create_candidates(tuple(order), allowed_splits)
        for cand in cands:
            self.evaluate_candidate(mesh, elem_id, cand, rsln)

        e0, d0 = cands[0].error, cands[0].dofs
        best = None
        for cand in cands[1:]:
            if not (cand.error < e0 and cand.dofs > d0):
                continue
            if cand.error <= 0:
                cand.score = np.inf
            else:
                gain = np.log10(np.sqrt(e0)) - np.log10(np.sqrt(cand.error))
                cand.score = gain / (cand.dofs - d0) ** self.conv_exp
            if best is None or cand.score > best.score:
                best = cand
        if best is None:
            raise SelectionExhausted(elem_id)
        log.debug(
            f"Element {elem_id}: split={best.split!r} orders={best.orders} "
            f"score={best.score:.3e} ({len(cands)} candidates)"
        )
        return best
