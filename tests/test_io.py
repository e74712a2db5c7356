"""Tests for mesh input through meshio.

Run with: pytest tests/test_io.py -v
"""

import numpy as np
import pytest

from hpFEM import FormatError, H1Space, load_mesh

meshio = pytest.importorskip("meshio")


@pytest.fixture
def points():
    # The last point is not used by any quad
    return np.array(
        [
            [0.0, 0.0, 0.0],
            [1.0, 0.0, 0.0],
            [2.0, 0.0, 0.0],
            [0.0, 1.0, 0.0],
            [1.0, 1.0, 0.0],
            [2.0, 1.0, 0.0],
            [5.0, 5.0, 0.0],
        ]
    )


QUADS = np.array([[0, 1, 4, 3], [1, 2, 5, 4]])


class TestLoadMesh:
    """Conversion of meshio meshes."""

    def test_plain_quads(self, points):
        mesh = load_mesh(meshio.Mesh(points, [("quad", QUADS)]))
        assert len(mesh.nodes) == 6
        assert mesh.get_num_active_elements() == 2
        assert np.isclose(sum(mesh.element_area(e) for e in mesh.root_ids), 2.0)
        assert {m for _, _, m in mesh.boundary_edges()} == {1}

    def test_physical_tags(self, points):
        lines = np.array([[0, 3], [2, 5]])
        mio_mesh = meshio.Mesh(
            points,
            [("quad", QUADS), ("line", lines)],
            cell_data={"gmsh:physical": [np.array([10, 20]), np.array([4, 2])]},
        )
        mesh = load_mesh(mio_mesh)
        assert [mesh.elements[e].marker for e in mesh.root_ids] == [10, 20]
        markers = sorted(m for _, _, m in mesh.boundary_edges())
        assert markers == [1, 1, 1, 1, 2, 4]

    def test_space_on_loaded_mesh(self, points):
        mesh = load_mesh(meshio.Mesh(points, [("quad", QUADS)]))
        assert H1Space(mesh, order=2).get_num_dofs() == 15

    def test_triangles_rejected(self, points):
        tri = np.array([[0, 1, 4], [0, 4, 3]])
        with pytest.raises(FormatError):
            load_mesh(meshio.Mesh(points, [("triangle", tri)]))

    def test_no_quads(self, points):
        with pytest.raises(FormatError):
            load_mesh(meshio.Mesh(points, [("line", np.array([[0, 1]]))]))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FormatError):
            load_mesh(tmp_path / "missing.msh")

    @pytest.mark.parametrize(
        "name,content",
        [
            ("bad.msh", b"garbage\x00\xff"),
            ("empty.msh", b""),
            (
                "short.vtk",
                b"# vtk DataFile Version 4.2\nshort\nASCII\nDATASET UNSTRUCTURED_GRID\nPOINTS 3 double\n0 0\n",
            ),
        ],
    )
    def test_corrupt_file(self, tmp_path, name, content):
        path = tmp_path / name
        path.write_bytes(content)
        with pytest.raises(FormatError):
            load_mesh(path)

    def test_quad_tag_count_mismatch(self, points):
        mio_mesh = meshio.Mesh(points, [("quad", QUADS)])
        mio_mesh.cell_data["gmsh:physical"] = [np.array([10])]
        with pytest.raises(FormatError):
            load_mesh(mio_mesh)

    def test_multiple_line_blocks(self, points):
        mio_mesh = meshio.Mesh(
            points,
            [("quad", QUADS), ("line", np.array([[0, 3], [2, 5]])), ("line", np.array([[0, 1]]))],
            cell_data={"gmsh:physical": [np.array([1, 2]), np.array([4, 2]), np.array([3])]},
        )
        mesh = load_mesh(mio_mesh)
        assert sorted(m for _, _, m in mesh.boundary_edges()) == [1, 1, 1, 2, 3, 4]
