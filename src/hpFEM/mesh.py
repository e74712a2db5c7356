"""Refinable quadrilateral mesh.

Root elements come from the input mesh. Every refinement splits an element
dyadically in its root's reference coordinates, so each element is fully
described by its root id and a sub-box ``(r0, r1, s0, s1)`` of ``[-1, 1]^2``.
Edges form a tree as well: splitting an edge creates a midpoint node and two
child edges that inherit the boundary marker. Elements are never removed.

Vertex ordering is counter-clockwise, starting at the SW corner of the
reference box. Edge ``k`` runs between the vertex pair ``EDGE_VERTICES[k]``,
listed in increasing reference-parameter order.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from enum import IntEnum

import numpy as np
from numpy.typing import NDArray

from .errors import FormatError
from .quadrature import tensor_rule
from .refmap import bilinear_jacobian, bilinear_map, invert_bilinear

log = logging.getLogger(__name__)

# Edge k connects these vertex positions (SW=0, SE=1, NE=2, NW=3)
EDGE_VERTICES = ((0, 1), (1, 2), (3, 2), (0, 3))

# Marker given to boundary edges without an explicit one
DEFAULT_BOUNDARY_MARKER = 1

# Marker of interior edges
INTERIOR = 0

ROOT_BOX = (-1.0, 1.0, -1.0, 1.0)

_BOX_TOL = 1e-12


class Split(IntEnum):
    """Refinement types: 4 sons, or 2 sons cut by a horizontal or vertical line."""

    ISO = 0
    HORZ = 1
    VERT = 2


# Edges cut by each split type
SPLIT_EDGES = {
    Split.ISO: (0, 1, 2, 3),
    Split.HORZ: (1, 3),
    Split.VERT: (0, 2),
}


def split_boxes(box: tuple[float, float, float, float], split: Split) -> list[tuple]:
    """Sub-boxes of the sons, in the order ``Mesh.refine_element`` creates them."""
    r0, r1, s0, s1 = box
    rm, sm = 0.5 * (r0 + r1), 0.5 * (s0 + s1)
    if split == Split.ISO:
        return [(r0, rm, s0, sm), (rm, r1, s0, sm), (rm, r1, sm, s1), (r0, rm, sm, s1)]
    if split == Split.HORZ:
        return [(r0, r1, s0, sm), (r0, r1, sm, s1)]
    if split == Split.VERT:
        return [(r0, rm, s0, s1), (rm, r1, s0, s1)]
    raise ValueError(f"Unknown split type: {split!r}")


def edge_key(a: int, b: int) -> tuple[int, int]:
    return (a, b) if a < b else (b, a)


@dataclass
class Node:
    x: float
    y: float
    # Edge this node is the midpoint of (None for input vertices and centres)
    parent_edge: tuple[int, int] | None = None


@dataclass
class EdgeRecord:
    marker: int = INTERIOR
    parent: tuple[int, int] | None = None
    mid: int | None = None


@dataclass
class Element:
    """Quadrilateral element: 4 vertex node ids (SW, SE, NE, NW)."""

    id: int
    vn: tuple[int, int, int, int]
    root: int
    box: tuple[float, float, float, float] = ROOT_BOX
    marker: int = 0
    parent: int | None = None
    sons: tuple[int, ...] = ()
    split: Split | None = None
    level: int = 0

    @property
    def active(self) -> bool:
        return not self.sons

    def edge_key(self, k: int) -> tuple[int, int]:
        a, b = EDGE_VERTICES[k]
        return edge_key(self.vn[a], self.vn[b])


@dataclass
class Mesh:
    """Mesh of quadrilaterals with a refinement history."""

    nodes: dict[int, Node] = field(default_factory=dict)
    edges: dict[tuple[int, int], EdgeRecord] = field(default_factory=dict)
    elements: dict[int, Element] = field(default_factory=dict)
    root_ids: list[int] = field(default_factory=list)
    # Bumped on every topology change
    seq: int = 0

    _next_node: int = field(default=0, repr=False)
    _next_elem: int = field(default=0, repr=False)
    _edge_cache: tuple | None = field(default=None, repr=False, compare=False)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def from_arrays(
        cls,
        vertices,
        elements,
        boundaries=None,
        markers=None,
    ) -> Mesh:
        """Build a mesh from vertex coordinates and quad connectivity.

        Parameters
        ----------
        vertices : (nv, 2) array_like
        elements : (ne, 4) array_like of int
            Vertex indices of each quad. Clockwise quads are reoriented.
        boundaries : iterable of (a, b, marker), optional
            Markers of boundary edges. Unlisted boundary edges get
            ``DEFAULT_BOUNDARY_MARKER``.
        markers : (ne,) array_like of int, optional
            Element (material) markers.
        """
        V = np.asarray(vertices, dtype=float)
        E = np.asarray(elements)
        if V.ndim != 2 or V.shape[1] < 2:
            raise FormatError(f"Vertices must have shape (n, 2), got {V.shape}")
        if E.ndim != 2 or E.shape[1] != 4:
            raise FormatError(f"Elements must be quadrilaterals (n, 4), got {E.shape}")
        if len(E) == 0:
            raise FormatError("Mesh has no elements")
        if not np.issubdtype(E.dtype, np.integer):
            raise FormatError("Element connectivity must be integer")
        if E.min() < 0 or E.max() >= len(V):
            raise FormatError("Element references a vertex that does not exist")
        if markers is not None and len(markers) != len(E):
            raise FormatError(f"Got {len(markers)} element markers for {len(E)} elements")

        mesh = cls()
        for x, y in V[:, :2]:
            mesh._new_node(float(x), float(y))

        counts: dict[tuple[int, int], int] = {}
        for idx, quad in enumerate(E):
            vn = [int(v) for v in quad]
            if len(set(vn)) != 4:
                raise FormatError(f"Element {idx} has repeated vertices")
            xy = V[vn, :2]
            area = 0.5 * np.sum(xy[:, 0] * np.roll(xy[:, 1], -1) - np.roll(xy[:, 0], -1) * xy[:, 1])
            if area < 0:
                vn = [vn[0], vn[3], vn[2], vn[1]]
                xy = V[vn, :2]
            elif area == 0:
                raise FormatError(f"Element {idx} is degenerate")
            # Bilinear Jacobian at each corner: cross product of the two adjacent edges
            fwd = np.roll(xy, -1, axis=0) - xy
            bwd = np.roll(xy, 1, axis=0) - xy
            det = fwd[:, 0] * bwd[:, 1] - fwd[:, 1] * bwd[:, 0]
            if np.any(det <= 0):
                raise FormatError(f"Element {idx} is not convex")
            el = Element(
                id=mesh._next_elem,
                vn=tuple(vn),
                root=mesh._next_elem,
                marker=int(markers[idx]) if markers is not None else 0,
            )
            mesh._next_elem += 1
            mesh.elements[el.id] = el
            mesh.root_ids.append(el.id)
            for k in range(4):
                key = el.edge_key(k)
                counts[key] = counts.get(key, 0) + 1

        for key, count in counts.items():
            if count > 2:
                raise FormatError(f"Edge {key} is shared by {count} elements")
            mesh.edges[key] = EdgeRecord(
                marker=DEFAULT_BOUNDARY_MARKER if count == 1 else INTERIOR
            )

        for a, b, marker in boundaries or ():
            key = edge_key(int(a), int(b))
            if counts.get(key) != 1:
                raise FormatError(f"Boundary edge ({a}, {b}) is not on the boundary")
            if int(marker) <= 0:
                raise FormatError(f"Boundary marker must be positive, got {marker}")
            mesh.edges[key].marker = int(marker)

        log.debug(f"Mesh created: {len(mesh.nodes)} vertices, {len(E)} elements")
        return mesh

    def copy(self) -> Mesh:
        """Deep copy, including the refinement history."""
        dup = copy.deepcopy(self)
        dup._edge_cache = None
        return dup

    def _new_node(self, x: float, y: float, parent_edge=None) -> int:
        nid = self._next_node
        self.nodes[nid] = Node(x, y, parent_edge)
        self._next_node += 1
        return nid

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def active_elements(self) -> list[Element]:
        return [e for e in self.elements.values() if e.active]

    def get_num_active_elements(self) -> int:
        return sum(1 for e in self.elements.values() if e.active)

    def root_corners(self, root: int) -> NDArray[np.float64]:
        vn = self.elements[root].vn
        return np.array([[self.nodes[n].x, self.nodes[n].y] for n in vn])

    def element_box(self, elem_id: int) -> tuple[float, float, float, float]:
        return self.elements[elem_id].box

    def element_area(self, elem_id: int) -> float:
        el = self.elements[elem_id]
        r, s, w = tensor_rule(el.box, 2)
        J = bilinear_jacobian(self.root_corners(el.root), r, s)
        det = J[:, 0, 0] * J[:, 1, 1] - J[:, 0, 1] * J[:, 1, 0]
        return float(np.sum(w * np.abs(det)))

    def element_center(self, elem_id: int) -> tuple[float, float]:
        el = self.elements[elem_id]
        r0, r1, s0, s1 = el.box
        x, y = bilinear_map(self.root_corners(el.root), 0.5 * (r0 + r1), 0.5 * (s0 + s1))
        return float(x), float(y)

    def boundary_edges(self) -> list[tuple[int, int, int]]:
        """Active boundary edges as (element id, local edge, marker)."""
        out = []
        for el in self.active_elements():
            for k in range(4):
                marker = self.edges[el.edge_key(k)].marker
                if marker != INTERIOR:
                    out.append((el.id, k, marker))
        return out

    def locate(self, x: float, y: float, is_leaf=None) -> tuple[int, float, float] | None:
        """Find the leaf element containing physical point (x, y).

        Returns ``(element id, r, s)`` with (r, s) in root reference
        coordinates, or None when the point is outside the mesh. ``is_leaf``
        overrides the leaf test (defaults to the current active elements).
        """
        if is_leaf is None:
            is_leaf = lambda eid: self.elements[eid].active  # noqa: E731
        tol = 1e-10
        for root in self.root_ids:
            r, s = invert_bilinear(self.root_corners(root), x, y)
            if abs(r) > 1 + tol or abs(s) > 1 + tol:
                continue
            eid = root
            while not is_leaf(eid):
                for son in self.elements[eid].sons:
                    r0, r1, s0, s1 = self.elements[son].box
                    if r0 - tol <= r <= r1 + tol and s0 - tol <= s <= s1 + tol:
                        eid = son
                        break
                else:
                    break
            return eid, r, s
        return None

    def _active_edges(self) -> set[tuple[int, int]]:
        if self._edge_cache is None or self._edge_cache[0] != self.seq:
            keys = {el.edge_key(k) for el in self.active_elements() for k in range(4)}
            self._edge_cache = (self.seq, keys)
        return self._edge_cache[1]

    def _top_active_ancestor(self, key):
        """Topmost ancestor of ``key`` that is an active edge, and the depth to it."""
        active = self._active_edges()
        top, depth, steps = None, 0, 0
        cur = self.edges[key].parent
        while cur is not None:
            steps += 1
            if cur in active:
                top, depth = cur, steps
            cur = self.edges[cur].parent
        return top, depth

    def hanging_level(self, key: tuple[int, int]) -> int:
        """Number of edge generations between ``key`` and its constraining edge."""
        return self._top_active_ancestor(key)[1]

    def can_split(self, elem_id: int, split: Split, bound: int) -> bool:
        """Whether splitting keeps the hanging-node level within ``bound``."""
        if bound < 0:
            return True
        el = self.elements[elem_id]
        return all(self.hanging_level(el.edge_key(k)) < bound for k in SPLIT_EDGES[Split(split)])

    # ------------------------------------------------------------------
    # Refinement
    # ------------------------------------------------------------------
    def _split_edge(self, a: int, b: int) -> int:
        key = edge_key(a, b)
        rec = self.edges[key]
        if rec.mid is None:
            na, nb = self.nodes[a], self.nodes[b]
            mid = self._new_node(0.5 * (na.x + nb.x), 0.5 * (na.y + nb.y), parent_edge=key)
            rec.mid = mid
            for end in key:
                self.edges[edge_key(end, mid)] = EdgeRecord(marker=rec.marker, parent=key)
        return rec.mid

    def _add_edge(self, a: int, b: int) -> None:
        self.edges.setdefault(edge_key(a, b), EdgeRecord())

    def refine_element(self, elem_id: int, split: Split = Split.ISO) -> list[int]:
        """Split an active element; returns the ids of the new sons."""
        el = self.elements[elem_id]
        if not el.active:
            raise ValueError(f"Element {elem_id} is already refined")
        split = Split(split)
        v0, v1, v2, v3 = el.vn

        if split == Split.ISO:
            m0 = self._split_edge(v0, v1)
            m1 = self._split_edge(v1, v2)
            m2 = self._split_edge(v3, v2)
            m3 = self._split_edge(v0, v3)
            r0, r1, s0, s1 = el.box
            cx, cy = bilinear_map(self.root_corners(el.root), 0.5 * (r0 + r1), 0.5 * (s0 + s1))
            c = self._new_node(float(cx), float(cy))
            for a in (m0, m1, m2, m3):
                self._add_edge(a, c)
            quads = [(v0, m0, c, m3), (m0, v1, m1, c), (c, m1, v2, m2), (m3, c, m2, v3)]
        elif split == Split.HORZ:
            m1 = self._split_edge(v1, v2)
            m3 = self._split_edge(v0, v3)
            self._add_edge(m3, m1)
            quads = [(v0, v1, m1, m3), (m3, m1, v2, v3)]
        else:
            m0 = self._split_edge(v0, v1)
            m2 = self._split_edge(v3, v2)
            self._add_edge(m0, m2)
            quads = [(v0, m0, m2, v3), (m0, v1, v2, m2)]

        sons = []
        for vn, box in zip(quads, split_boxes(el.box, split)):
            son = Element(
                id=self._next_elem,
                vn=vn,
                root=el.root,
                box=box,
                marker=el.marker,
                parent=el.id,
                level=el.level + 1,
            )
            self._next_elem += 1
            self.elements[son.id] = son
            sons.append(son.id)
        el.sons = tuple(sons)
        el.split = split
        self.seq += 1
        return sons

    def refine_all_elements(self, split: Split = Split.ISO) -> None:
        for el in self.active_elements():
            self.refine_element(el.id, split)

    def regularize(self, bound: int) -> list[int]:
        """Refine coarse neighbours until no hanging level exceeds ``bound``.

        Returns the ids of the elements that were refined.
        """
        if bound < 0:
            return []
        refined = []
        while True:
            owner = {}
            for el in self.active_elements():
                for k in range(4):
                    owner[el.edge_key(k)] = el.id
            offender = None
            for key in owner:
                top, depth = self._top_active_ancestor(key)
                if depth > bound:
                    offender = owner[top]
                    break
            if offender is None:
                break
            self.refine_element(offender, Split.ISO)
            refined.append(offender)
        if refined:
            log.debug(f"Regularization refined {len(refined)} elements")
        return refined


def rectangle_mesh(
    x0: float,
    x1: float,
    y0: float,
    y1: float,
    nx: int,
    ny: int,
    markers: tuple[int, int, int, int] = (1, 2, 3, 4),
) -> Mesh:
    """Structured nx-by-ny quad mesh of a rectangle.

    Boundary markers are given as (bottom, right, top, left).
    """
    if nx < 1 or ny < 1:
        raise ValueError(f"rectangle_mesh: nx and ny must be >= 1, got {nx}, {ny}")
    xs = np.linspace(x0, x1, nx + 1)
    ys = np.linspace(y0, y1, ny + 1)
    X, Y = np.meshgrid(xs, ys, indexing="ij")
    vertices = np.column_stack([X.ravel(), Y.ravel()])

    def vid(i, j):
        return i * (ny + 1) + j

    quads = [
        (vid(i, j), vid(i + 1, j), vid(i + 1, j + 1), vid(i, j + 1))
        for i in range(nx)
        for j in range(ny)
    ]
    bottom, right, top, left = markers
    boundaries = []
    for i in range(nx):
        boundaries.append((vid(i, 0), vid(i + 1, 0), bottom))
        boundaries.append((vid(i, ny), vid(i + 1, ny), top))
    for j in range(ny):
        boundaries.append((vid(0, j), vid(0, j + 1), left))
        boundaries.append((vid(nx, j), vid(nx, j + 1), right))
    return Mesh.from_arrays(vertices, np.array(quads, dtype=np.int64), boundaries)
