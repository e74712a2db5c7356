"""Mesh file input through meshio."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from .errors import FormatError
from .mesh import Mesh

if TYPE_CHECKING:
    import meshio

log = logging.getLogger(__name__)


def _cell_tags(mesh, cell_type: str):
    """Physical tags of ``cell_type`` cells, or None when absent."""
    tags = mesh.cell_data_dict.get("gmsh:physical", {})
    if cell_type in tags:
        return np.concatenate([np.atleast_1d(tags[cell_type])]).astype(np.int64)
    return None


def load_mesh(mesh: meshio.Mesh | str | Path) -> Mesh:
    """
    Create a Mesh from a meshio mesh or a mesh file.

    Quadrilateral cells become root elements; their ``gmsh:physical`` tags
    (when present) become element markers. Line cells with ``gmsh:physical``
    tags provide the boundary markers.

    Parameters
    ----------
    mesh : meshio.Mesh or str or Path
        Either a meshio Mesh object or path to a mesh file.

    Returns
    -------
    Mesh

    Raises
    ------
    FormatError
        If the file cannot be read, holds no quadrilaterals, or has
        inconsistent connectivity.
    """
    import meshio as mio

    if isinstance(mesh, (str, Path)):
        try:
            mesh = mio.read(mesh)
        except (OSError, ValueError, mio.ReadError) as exc:
            raise FormatError(f"Cannot read mesh file {mesh}: {exc}") from exc

    quads, lines = [], []
    for block in mesh.cells:
        if block.type == "quad":
            quads.append(block.data)
        elif block.type == "line":
            lines.append(block.data)
        elif block.type == "triangle":
            raise FormatError("Triangular cells are not supported; mesh must be all quads")

    if not quads:
        raise FormatError("No quadrilateral cells found in mesh")

    elements = np.concatenate(quads).astype(np.int64)
    markers = _cell_tags(mesh, "quad")
    if markers is not None and len(markers) != len(elements):
        raise FormatError("Quad cells and their physical tags differ in length")

    boundaries = []
    line_tags = _cell_tags(mesh, "line")
    if lines and line_tags is not None:
        line_cells = np.concatenate(lines).astype(np.int64)
        if len(line_tags) != len(line_cells):
            raise FormatError("Line cells and their physical tags differ in length")
        boundaries = [(a, b, tag) for (a, b), tag in zip(line_cells, line_tags)]

    # Drop points not used by any quad (e.g. gmsh geometry points)
    used = np.unique(elements)
    remap = -np.ones(len(mesh.points), dtype=np.int64)
    remap[used] = np.arange(len(used))
    vertices = np.asarray(mesh.points)[used, :2]
    elements = remap[elements]
    boundaries = [
        (remap[a], remap[b], tag)
        for a, b, tag in boundaries
        if remap[a] >= 0 and remap[b] >= 0
    ]

    result = Mesh.from_arrays(vertices, elements, boundaries, markers)
    log.info(f"Loaded mesh: {len(vertices)} vertices, {len(elements)} quads")
    return result
