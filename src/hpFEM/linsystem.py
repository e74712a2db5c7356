"""Assembly and direct solution of the discrete linear system."""

from __future__ import annotations

import logging
import time
import warnings
from typing import Sequence

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import MatrixRankWarning, splu, spsolve

from .errors import SolverError
from .mesh import INTERIOR
from .quadrature import points_for_order
from .refmap import edge_points, volume_points
from .shapeset import element_basis
from .solution import MeshFunction, Solution
from .space import H1Space
from .traverse import Layer, union_cells
from .weakform import ANY, Func, Geom, WeakForm, as_array_shape

log = logging.getLogger(__name__)

_SIDE_TOL = 1e-12


def _layers(spaces: Sequence[H1Space], ext: Sequence[MeshFunction]) -> list[Layer]:
    layers = [Layer(s.mesh) for s in spaces]
    layers += [f.layer() for f in ext if f.layer() is not None]
    return layers


def _ext_values(ext, ids, pts):
    """Evaluate external functions; mesh-based ones take their leaf id from ``ids``."""
    out, k = [], 0
    for f in ext:
        if f.layer() is not None:
            out.append(f.evaluate(pts, ids[k]))
            k += 1
        else:
            out.append(f.evaluate(pts))
    return out


def _ext_orders(ext, ids):
    out, k = [], 0
    for f in ext:
        if f.layer() is not None:
            out.append(f.order(ids[k]))
            k += 1
        else:
            out.append(f.order())
    return out


def _touching_sides(cell_box, elem_box, elem, mesh, area):
    """Local edges of ``elem`` that are boundary edges matching ``area`` and touch the cell."""
    sides = []
    for k in range(4):
        marker = mesh.edges[elem.edge_key(k)].marker
        if marker == INTERIOR or not (area == ANY or area == marker):
            continue
        idx = (2, 1, 3, 0)[k]
        if abs(cell_box[idx] - elem_box[idx]) < _SIDE_TOL:
            sides.append((k, marker))
    return sides


class LinearSystem:
    """Sparse system for a weak form on a list of spaces (one per component)."""

    def __init__(self, wf: WeakForm, spaces: Sequence[H1Space]):
        if len(spaces) != wf.neq:
            raise ValueError(f"Weak form has {wf.neq} equations but {len(spaces)} spaces given")
        self.wf = wf
        self.spaces = list(spaces)
        self.ndofs = [s.get_num_dofs() for s in self.spaces]
        self.offsets = np.concatenate([[0], np.cumsum(self.ndofs)]).astype(np.int64)
        self.matrix: sp.csc_matrix | None = None
        self.rhs: np.ndarray | None = None

    def get_num_dofs(self) -> int:
        return int(self.offsets[-1])

    def _basis(self, space, elem_id, pts):
        asm = space.element_assembly(elem_id)
        val, dx, dy = element_basis(asm.box, asm.order, pts.r, pts.s, pts.K)
        return asm, val, dx, dy

    def assemble(self) -> tuple[sp.csc_matrix, np.ndarray]:
        N = self.get_num_dofs()
        rows, cols, vals = [], [], []
        b = np.zeros(N)
        wf = self.wf

        def add_block(asm_i, asm_j, K_loc, i, j, sign):
            if sign == 0:
                ri, rj, Ti, Tj, lift_j, K = asm_i, asm_j, asm_i.T, asm_j.T, asm_j.lift, K_loc
                oi, oj = self.offsets[i], self.offsets[j]
            else:
                # Mirrored block (j, i) = sign * K^T
                ri, rj, Ti, Tj, lift_j, K = asm_j, asm_i, asm_j.T, asm_i.T, asm_i.lift, sign * K_loc.T
                oi, oj = self.offsets[j], self.offsets[i]
            if len(ri.dofs) == 0:
                return
            if len(rj.dofs):
                G = Ti.T @ K @ Tj
                rr, cc = np.meshgrid(oi + ri.dofs, oj + rj.dofs, indexing="ij")
                rows.append(rr.ravel())
                cols.append(cc.ravel())
                vals.append(G.ravel())
            if np.any(lift_j):
                np.subtract.at(b, oi + ri.dofs, Ti.T @ (K @ lift_j))

        for form in wf.matrix_forms_vol:
            i, j = form.i, form.j
            si, sj = self.spaces[i], self.spaces[j]
            mirror = int(form.sym) if i != j else 0
            for root, box, ids in union_cells(_layers([si, sj], form.ext)):
                ei, ej = ids[0], ids[1]
                el = si.mesh.elements[ei]
                if not form.applies_to(el.marker):
                    continue
                n = points_for_order(
                    form.order(
                        max(sj.get_element_order(ej)),
                        max(si.get_element_order(ei)),
                        _ext_orders(form.ext, ids[2:]),
                    )
                )
                pts = volume_points(si.mesh.root_corners(root), box, n)
                asm_i, vi, dxi, dyi = self._basis(si, ei, pts)
                asm_j, vj, dxj, dyj = self._basis(sj, ej, pts)
                u = Func(vj[None], dxj[None], dyj[None])
                v = Func(vi[:, None], dxi[:, None], dyi[:, None])
                e = Geom(pts.x, pts.y, marker=el.marker, elem_id=ei)
                ext = _ext_values(form.ext, ids[2:], pts)
                K_loc = as_array_shape(form.value(pts.w, u, v, e, ext), (len(vi), len(vj)))
                add_block(asm_i, asm_j, K_loc, i, j, 0)
                if mirror:
                    add_block(asm_i, asm_j, K_loc, i, j, mirror)

        for form in wf.matrix_forms_surf:
            i, j = form.i, form.j
            si, sj = self.spaces[i], self.spaces[j]
            for root, box, ids in union_cells(_layers([si, sj], form.ext)):
                ei, ej = ids[0], ids[1]
                el = si.mesh.elements[ei]
                sides = _touching_sides(box, el.box, el, si.mesh, form.area)
                if not sides:
                    continue
                corners = si.mesh.root_corners(root)
                n = points_for_order(
                    form.order(
                        max(sj.get_element_order(ej)),
                        max(si.get_element_order(ei)),
                        _ext_orders(form.ext, ids[2:]),
                    )
                )
                for k, marker in sides:
                    pts = edge_points(corners, box, k, n)
                    asm_i, vi, dxi, dyi = self._basis(si, ei, pts)
                    asm_j, vj, dxj, dyj = self._basis(sj, ej, pts)
                    u = Func(vj[None], dxj[None], dyj[None])
                    v = Func(vi[:, None], dxi[:, None], dyi[:, None])
                    e = Geom(pts.x, pts.y, pts.nx, pts.ny, marker=marker, elem_id=ei)
                    ext = _ext_values(form.ext, ids[2:], pts)
                    K_loc = as_array_shape(form.value(pts.w, u, v, e, ext), (len(vi), len(vj)))
                    add_block(asm_i, asm_j, K_loc, i, j, 0)

        for form in wf.vector_forms_vol:
            si = self.spaces[form.i]
            oi = self.offsets[form.i]
            for root, box, ids in union_cells(_layers([si], form.ext)):
                ei = ids[0]
                el = si.mesh.elements[ei]
                if not form.applies_to(el.marker):
                    continue
                n = points_for_order(
                    form.order(max(si.get_element_order(ei)), _ext_orders(form.ext, ids[1:]))
                )
                pts = volume_points(si.mesh.root_corners(root), box, n)
                asm, vi, dxi, dyi = self._basis(si, ei, pts)
                if len(asm.dofs) == 0:
                    continue
                e = Geom(pts.x, pts.y, marker=el.marker, elem_id=ei)
                ext = _ext_values(form.ext, ids[1:], pts)
                F = as_array_shape(form.value(pts.w, Func(vi, dxi, dyi), e, ext), (len(vi),))
                np.add.at(b, oi + asm.dofs, asm.T.T @ F)

        for form in wf.vector_forms_surf:
            si = self.spaces[form.i]
            oi = self.offsets[form.i]
            for root, box, ids in union_cells(_layers([si], form.ext)):
                ei = ids[0]
                el = si.mesh.elements[ei]
                sides = _touching_sides(box, el.box, el, si.mesh, form.area)
                if not sides:
                    continue
                corners = si.mesh.root_corners(root)
                n = points_for_order(
                    form.order(max(si.get_element_order(ei)), _ext_orders(form.ext, ids[1:]))
                )
                for k, marker in sides:
                    pts = edge_points(corners, box, k, n)
                    asm, vi, dxi, dyi = self._basis(si, ei, pts)
                    if len(asm.dofs) == 0:
                        continue
                    e = Geom(pts.x, pts.y, pts.nx, pts.ny, marker=marker, elem_id=ei)
                    ext = _ext_values(form.ext, ids[1:], pts)
                    F = as_array_shape(form.value(pts.w, Func(vi, dxi, dyi), e, ext), (len(vi),))
                    np.add.at(b, oi + asm.dofs, asm.T.T @ F)

        if rows:
            A = sp.coo_matrix(
                (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))), shape=(N, N)
            ).tocsc()
        else:
            A = sp.csc_matrix((N, N))
        self.matrix, self.rhs = A, b
        return A, b

    def solve(self, solver: str = "splu") -> list[Solution]:
        """Assemble, solve, and split the result into one Solution per component."""
        t0 = time.perf_counter()
        A, b = self.assemble()
        N = self.get_num_dofs()
        log.debug(f"Assembled system with {N} DOFs in {time.perf_counter() - t0:.3f}s")

        if N == 0:
            x = np.zeros(0)
        elif solver == "splu":
            try:
                x = splu(A).solve(b)
            except RuntimeError as exc:
                raise SolverError(f"LU factorization failed: {exc}") from exc
        elif solver == "spsolve":
            with warnings.catch_warnings():
                warnings.simplefilter("error", MatrixRankWarning)
                try:
                    x = spsolve(A, b)
                except MatrixRankWarning as exc:
                    raise SolverError(f"Matrix is singular: {exc}") from exc
        else:
            raise ValueError(f"Unknown solver {solver!r} (expected 'splu' or 'spsolve')")

        if not np.all(np.isfinite(x)):
            raise SolverError("Linear solve produced non-finite values")

        return [
            Solution(space, x[self.offsets[k] : self.offsets[k + 1]])
            for k, space in enumerate(self.spaces)
        ]


def solve_linear(spaces: Sequence[H1Space], wf: WeakForm, solver: str = "splu") -> list[Solution]:
    """Solve the problem given by ``wf`` on ``spaces``."""
    return LinearSystem(wf, spaces).solve(solver)
