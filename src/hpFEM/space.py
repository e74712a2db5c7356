"""Continuous H1 space of hierarchical Lobatto functions on a refined mesh.

Degrees of freedom live on vertices, on edges and in element interiors
(bubbles). Irregular meshes are made conforming by constraints:

* the *master* of an active edge is its topmost ancestor-or-self that is itself
  an edge of an active element. All active edges sharing a master are
  constrained to the master's trace;
* the trace order on a master edge is the minimum of the relevant directional
  orders of all elements touching it (minimum rule);
* a hanging vertex takes the value of its master's trace at the vertex.

Every local coefficient of an element is therefore an affine combination of
global DOFs. Constraints nest to any hanging level.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import numpy as np

from .mesh import EDGE_VERTICES, INTERIOR, Mesh, edge_key
from .quadrature import gauss_legendre
from .shapeset import MAX_ORDER, edge_transfer, local_index, lobatto, num_local

log = logging.getLogger(__name__)

# Coefficients below this magnitude are dropped from constraint combinations
_COEF_TOL = 1e-14


class BCType(Enum):
    ESSENTIAL = "essential"
    NATURAL = "natural"


def _natural_everywhere(marker: int) -> BCType:
    return BCType.NATURAL


def _zero_values(marker: int, x, y):
    return 0.0


@dataclass
class ElementAssembly:
    """Map from global DOFs to the local coefficients of one element.

    ``local = T @ u[dofs] + lift``
    """

    dofs: np.ndarray
    T: np.ndarray
    lift: np.ndarray
    order: tuple[int, int]
    box: tuple[float, float, float, float]
    root: int


class _Combo:
    """Affine combination ``const + sum(coef * u[dof])``."""

    __slots__ = ("terms", "const")

    def __init__(self, terms=None, const=0.0):
        self.terms = terms or {}
        self.const = const

    @staticmethod
    def combine(pairs) -> _Combo:
        terms: dict[int, float] = {}
        const = 0.0
        for factor, combo in pairs:
            if abs(factor) < _COEF_TOL:
                continue
            const += factor * combo.const
            for dof, coef in combo.terms.items():
                terms[dof] = terms.get(dof, 0.0) + factor * coef
        terms = {d: c for d, c in terms.items() if abs(c) > _COEF_TOL}
        return _Combo(terms, const)


_ZERO = _Combo()


def _normalize_order(order) -> tuple[int, int]:
    if isinstance(order, (int, np.integer)):
        order = (int(order), int(order))
    px, py = (int(p) for p in order)
    if not (1 <= px <= MAX_ORDER and 1 <= py <= MAX_ORDER):
        raise ValueError(f"Element order must be within 1..{MAX_ORDER}, got {(px, py)}")
    return px, py


class H1Space:
    """H1-conforming space on a Mesh.

    Parameters
    ----------
    mesh : Mesh
    bc_types : callable, optional
        ``bc_types(marker) -> BCType``. Defaults to natural conditions.
    bc_values : callable, optional
        ``bc_values(marker, x, y)`` for essential markers; must accept arrays.
    order : int or (int, int)
        Initial uniform order.
    """

    def __init__(
        self,
        mesh: Mesh,
        bc_types: Callable[[int], BCType] | None = None,
        bc_values: Callable | None = None,
        order=1,
    ):
        self._mesh = mesh
        self.bc_types = bc_types or _natural_everywhere
        self.bc_values = bc_values or _zero_values
        self._orders: dict[int, tuple[int, int]] = {}
        self._default_order = _normalize_order(order)
        self._seq = 0
        self._built_for = None
        self._ndofs = 0
        self._asm: dict[int, ElementAssembly] = {}

    @property
    def mesh(self) -> Mesh:
        return self._mesh

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def set_uniform_order(self, order) -> None:
        self._default_order = _normalize_order(order)
        self._orders = {el.id: self._default_order for el in self._mesh.active_elements()}
        self._seq += 1

    def set_element_order(self, elem_id: int, order) -> None:
        self._orders[elem_id] = _normalize_order(order)
        self._seq += 1

    def get_element_order(self, elem_id: int) -> tuple[int, int]:
        """Order of an element; unset elements inherit from their nearest ancestor."""
        eid = elem_id
        elements = self._mesh.elements
        while eid is not None:
            if eid in self._orders:
                return self._orders[eid]
            eid = elements[eid].parent
        return self._default_order

    def is_essential(self, marker: int) -> bool:
        return marker != INTERIOR and self.bc_types(marker) == BCType.ESSENTIAL

    def duplicate_onto(self, mesh: Mesh) -> H1Space:
        """Same boundary conditions and orders on another (derived) mesh."""
        dup = H1Space(mesh, self.bc_types, self.bc_values, self._default_order)
        dup._orders = {eid: o for eid, o in self._orders.items() if eid in mesh.elements}
        return dup

    def copy_orders(self, source: H1Space, increment: int = 0) -> None:
        """Take orders from ``source``, whose mesh this mesh was derived from."""
        elements = self._mesh.elements
        src_elements = source.mesh.elements
        for el in self._mesh.active_elements():
            eid = el.id
            while eid not in src_elements:
                eid = elements[eid].parent
            px, py = source.get_element_order(eid)
            self._orders[el.id] = (min(px + increment, MAX_ORDER), min(py + increment, MAX_ORDER))
        self._seq += 1

    # ------------------------------------------------------------------
    # DOFs
    # ------------------------------------------------------------------
    def get_num_dofs(self) -> int:
        self.assign_dofs()
        return self._ndofs

    def element_assembly(self, elem_id: int) -> ElementAssembly:
        self.assign_dofs()
        return self._asm[elem_id]

    def assign_dofs(self) -> int:
        """(Re)enumerate DOFs if the mesh or the orders changed since the last call."""
        state = (id(self._mesh), self._mesh.seq, self._seq)
        if state != self._built_for:
            self._build()
            self._built_for = state
        return self._ndofs

    def _edge_param(self, master, node: int) -> float:
        a, b = master
        if node == a:
            return -1.0
        if node == b:
            return 1.0
        nodes = self._mesh.nodes
        xa, ya = nodes[a].x, nodes[a].y
        dx, dy = nodes[b].x - xa, nodes[b].y - ya
        px, py = nodes[node].x - xa, nodes[node].y - ya
        return 2.0 * (px * dx + py * dy) / (dx * dx + dy * dy) - 1.0

    def _project_edge_bc(self, master, q: int, marker: int, va: float, vb: float) -> np.ndarray:
        """Edge coefficients of the essential condition (1D L2 projection)."""
        nodes = self._mesh.nodes
        a, b = master
        t, w = gauss_legendre(min(q + 8, 32))
        x = nodes[a].x + 0.5 * (t + 1.0) * (nodes[b].x - nodes[a].x)
        y = nodes[a].y + 0.5 * (t + 1.0) * (nodes[b].y - nodes[a].y)
        g = np.broadcast_to(np.asarray(self.bc_values(marker, x, y), dtype=float), t.shape)
        L, _ = lobatto(t, q)
        resid = g - va * L[0] - vb * L[1]
        B = L[2 : q + 1]
        M = (B * w) @ B.T
        return np.linalg.solve(M, B @ (w * resid))

    def _build(self) -> None:
        mesh = self._mesh
        edges = mesh.edges
        nodes = mesh.nodes
        active = sorted(mesh.active_elements(), key=lambda el: el.id)

        owners: dict[tuple[int, int], list[tuple[int, int]]] = {}
        for el in active:
            for k in range(4):
                owners.setdefault(el.edge_key(k), []).append((el.id, k))

        def top_active(start):
            top, cur = None, start
            while cur is not None:
                if cur in owners:
                    top = cur
                cur = edges[cur].parent
            return top

        master = {key: top_active(key) for key in owners}
        q: dict[tuple[int, int], int] = {}
        orders = {el.id: self.get_element_order(el.id) for el in active}
        for key, lst in owners.items():
            m = master[key]
            for eid, k in lst:
                p = orders[eid][k % 2]
                q[m] = min(q.get(m, p), p)

        essential_edges = {
            m: edges[m].marker for m in q if self.is_essential(edges[m].marker)
        }
        essential_vertex: dict[int, float] = {}
        for m in sorted(essential_edges):
            marker = essential_edges[m]
            for n in m:
                if n not in essential_vertex:
                    g = self.bc_values(marker, np.array([nodes[n].x]), np.array([nodes[n].y]))
                    essential_vertex[n] = float(np.ravel(np.asarray(g, dtype=float))[0])

        vertex_nodes = sorted({n for el in active for n in el.vn})
        hanging = {}
        for n in vertex_nodes:
            parent = nodes[n].parent_edge
            if parent is not None:
                top = top_active(parent)
                if top is not None:
                    hanging[n] = top

        # Enumerate: vertices, edges, bubbles
        ndofs = 0
        vertex_dof = {}
        for n in vertex_nodes:
            if n in hanging or n in essential_vertex:
                continue
            vertex_dof[n] = ndofs
            ndofs += 1
        edge_start = {}
        for m in sorted(q):
            if m in essential_edges or q[m] < 2:
                continue
            edge_start[m] = ndofs
            ndofs += q[m] - 1
        bubble_start = {}
        for el in active:
            px, py = orders[el.id]
            if px >= 2 and py >= 2:
                bubble_start[el.id] = ndofs
                ndofs += (px - 1) * (py - 1)

        memo: dict[int, _Combo] = {}
        edge_coefs: dict[tuple[int, int], list[_Combo]] = {}

        def vertex_value(n: int) -> _Combo:
            if n not in memo:
                if n in vertex_dof:
                    memo[n] = _Combo({vertex_dof[n]: 1.0})
                elif n in essential_vertex:
                    memo[n] = _Combo(const=essential_vertex[n])
                else:
                    m = hanging[n]
                    memo[n] = trace_value(m, self._edge_param(m, n))
            return memo[n]

        def master_coefs(m) -> list[_Combo]:
            """Lobatto coefficients 0..q of the master trace."""
            if m not in edge_coefs:
                qm = q[m]
                coefs = [vertex_value(m[0]), vertex_value(m[1])]
                if qm >= 2:
                    if m in essential_edges:
                        c = self._project_edge_bc(
                            m, qm, essential_edges[m], coefs[0].const, coefs[1].const
                        )
                        coefs += [_Combo(const=float(ck)) for ck in c]
                    else:
                        coefs += [_Combo({edge_start[m] + k: 1.0}) for k in range(qm - 1)]
                edge_coefs[m] = coefs
            return edge_coefs[m]

        def trace_value(m, t: float) -> _Combo:
            coefs = master_coefs(m)
            L, _ = lobatto(np.array([t]), q[m])
            return _Combo.combine((L[b, 0], coefs[b]) for b in range(len(coefs)))

        self._asm = {}
        for el in active:
            order = orders[el.id]
            px, py = order
            combos: list[_Combo] = [_ZERO] * num_local(order)
            v = el.vn
            for (i, j), n in zip(((0, 0), (1, 0), (1, 1), (0, 1)), v):
                combos[local_index(i, j, order)] = vertex_value(n)

            for k, (ia, ib) in enumerate(EDGE_VERTICES):
                A, B = v[ia], v[ib]
                m = master[edge_key(A, B)]
                qm = q[m]
                if qm < 2:
                    continue
                coefs = master_coefs(m)
                D = edge_transfer(self._edge_param(m, A), self._edge_param(m, B), qm)
                for jj in range(2, qm + 1):
                    combo = _Combo.combine((D[b, jj - 2], coefs[b]) for b in range(qm + 1))
                    if k == 0:
                        combos[local_index(jj, 0, order)] = combo
                    elif k == 1:
                        combos[local_index(1, jj, order)] = combo
                    elif k == 2:
                        combos[local_index(jj, 1, order)] = combo
                    else:
                        combos[local_index(0, jj, order)] = combo

            if el.id in bubble_start:
                start = bubble_start[el.id]
                for i in range(2, px + 1):
                    for j in range(2, py + 1):
                        dof = start + (i - 2) * (py - 1) + (j - 2)
                        combos[local_index(i, j, order)] = _Combo({dof: 1.0})

            dofs = sorted({d for c in combos for d in c.terms})
            col = {d: c for c, d in enumerate(dofs)}
            T = np.zeros((len(combos), len(dofs)))
            lift = np.zeros(len(combos))
            for row, c in enumerate(combos):
                lift[row] = c.const
                for d, coef in c.terms.items():
                    T[row, col[d]] = coef
            self._asm[el.id] = ElementAssembly(
                dofs=np.array(dofs, dtype=np.int64),
                T=T,
                lift=lift,
                order=order,
                box=el.box,
                root=el.root,
            )

        self._ndofs = ndofs
        log.debug(
            f"Assigned {ndofs} DOFs ({len(vertex_dof)} vertex, {len(hanging)} hanging "
            f"vertices, {len(active)} elements)"
        )
