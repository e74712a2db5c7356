"""Union-mesh traversal.

Meshes derived from the same base mesh share their root elements, and every
element is a dyadic sub-box of its root. Overlaying several such meshes gives
a set of union cells; on each cell every mesh is represented by exactly one
leaf element. Integrals that couple functions living on different meshes are
computed cell by cell.
"""

from __future__ import annotations

from typing import Callable, Iterator, Sequence

from .mesh import ROOT_BOX, Mesh

_AREA_TOL = 1e-14

Box = tuple[float, float, float, float]


class Layer:
    """A mesh together with its notion of leaf elements."""

    __slots__ = ("mesh", "is_leaf")

    def __init__(self, mesh: Mesh, is_leaf: Callable[[int], bool] | None = None):
        self.mesh = mesh
        if is_leaf is None:
            elements = mesh.elements
            is_leaf = lambda eid: elements[eid].active  # noqa: E731
        self.is_leaf = is_leaf


def intersect(a: Box, b: Box) -> Box | None:
    """Intersection of two boxes, or None when it has no area."""
    r0, r1 = max(a[0], b[0]), min(a[1], b[1])
    s0, s1 = max(a[2], b[2]), min(a[3], b[3])
    if r1 - r0 <= _AREA_TOL or s1 - s0 <= _AREA_TOL:
        return None
    return (r0, r1, s0, s1)


def _descend(layers: Sequence[Layer], ids: list[int], box: Box) -> Iterator[tuple[Box, tuple]]:
    for k, layer in enumerate(layers):
        if layer.is_leaf(ids[k]):
            continue
        elements = layer.mesh.elements
        for son in elements[ids[k]].sons:
            sub = intersect(box, elements[son].box)
            if sub is not None:
                sub_ids = list(ids)
                sub_ids[k] = son
                yield from _descend(layers, sub_ids, sub)
        return
    yield box, tuple(ids)


def union_cells(layers: Sequence[Layer]) -> Iterator[tuple[int, Box, tuple]]:
    """Yield ``(root id, cell box, leaf ids)`` covering the whole domain.

    ``leaf ids[k]`` is the leaf element of ``layers[k]`` containing the cell.
    """
    if not layers:
        return
    for root in layers[0].mesh.root_ids:
        for box, ids in _descend(layers, [root] * len(layers), ROOT_BOX):
            yield root, box, ids


def region_cells(layers: Sequence[Layer], root: int, region: Box) -> Iterator[tuple[Box, tuple]]:
    """Union cells restricted to a sub-box of one root element."""
    yield from _descend(layers, [root] * len(layers), region)
