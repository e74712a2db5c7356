"""Tests for the H1 space: DOF enumeration, constraints and boundary conditions.

Run with: pytest tests/test_space.py -v
"""

import numpy as np
import pytest

from hpFEM import BCType, H1Space, Solution, Split, construct_refined_spaces, rectangle_mesh


def essential(marker):
    return BCType.ESSENTIAL


def random_solution(space, seed=0):
    rng = np.random.default_rng(seed)
    return Solution(space, rng.standard_normal(space.get_num_dofs()))


@pytest.fixture
def strip():
    return rectangle_mesh(0.0, 2.0, 0.0, 1.0, 2, 1)


class TestDofCount:
    """Number of degrees of freedom."""

    @pytest.mark.parametrize("order,expected", [(1, 6), (2, 15), (3, 28)])
    def test_uniform_order(self, strip, order, expected):
        assert H1Space(strip, order=order).get_num_dofs() == expected

    def test_essential_boundary_removes_dofs(self, strip):
        space = H1Space(strip, bc_types=essential, order=2)
        # One interior edge function and two bubbles
        assert space.get_num_dofs() == 3

    def test_minimum_rule_on_shared_edge(self, strip):
        space = H1Space(strip, order=1)
        space.set_element_order(0, 3)
        assert space.get_num_dofs() == 16

    def test_anisotropic_order(self):
        mesh = rectangle_mesh(0.0, 1.0, 0.0, 1.0, 1, 1)
        space = H1Space(mesh, order=(3, 1))
        assert space.get_num_dofs() == 8

    def test_hanging_vertex_is_constrained(self, strip):
        strip.refine_element(0)
        assert H1Space(strip, order=1).get_num_dofs() == 10

    def test_renumbered_after_refinement(self, strip):
        space = H1Space(strip, order=2)
        before = space.get_num_dofs()
        strip.refine_element(1, Split.HORZ)
        assert space.get_num_dofs() > before

    def test_renumbered_after_order_change(self, strip):
        space = H1Space(strip, order=2)
        before = space.get_num_dofs()
        space.set_element_order(1, (4, 2))
        assert space.get_num_dofs() > before


class TestOrders:
    """Per-element polynomial orders."""

    def test_sons_inherit_order(self, strip):
        space = H1Space(strip, order=2)
        space.set_element_order(0, (3, 4))
        sons = strip.refine_element(0)
        assert all(space.get_element_order(s) == (3, 4) for s in sons)

    @pytest.mark.parametrize("order", [0, 11, (2, 0), (11, 3)])
    def test_invalid_order_raises(self, strip, order):
        space = H1Space(strip)
        with pytest.raises(ValueError):
            space.set_element_order(0, order)

    def test_set_uniform_order(self, strip):
        space = H1Space(strip, order=1)
        space.set_element_order(0, 4)
        space.set_uniform_order(2)
        assert space.get_element_order(0) == (2, 2)
        assert space.get_num_dofs() == 15


class TestContinuity:
    """Conformity of the discrete functions across irregular interfaces."""

    def assert_continuous(self, sln, points, eps=1e-9):
        for x, y, nx, ny in points:
            left = sln.get_pt_value(x - eps * nx, y - eps * ny)
            right = sln.get_pt_value(x + eps * nx, y + eps * ny)
            assert np.isclose(left, right, atol=1e-6), f"Jump at ({x}, {y})"

    def test_hanging_node_level_one(self, strip):
        strip.refine_element(0)
        space = H1Space(strip, order=3)
        sln = random_solution(space)
        ys = np.linspace(0.05, 0.95, 7)
        self.assert_continuous(sln, [(1.0, y, 1.0, 0.0) for y in ys])

    def test_nested_hanging_nodes_mixed_orders(self, strip):
        _, se, _, _ = strip.refine_element(0)
        sons = strip.refine_element(se)
        strip.refine_element(sons[3], Split.VERT)
        space = H1Space(strip, order=2)
        rng = np.random.default_rng(3)
        for el in strip.active_elements():
            space.set_element_order(el.id, tuple(rng.integers(1, 6, size=2)))
        sln = random_solution(space, seed=1)

        ys = np.linspace(0.03, 0.97, 11)
        xs = np.linspace(0.03, 0.97, 11)
        self.assert_continuous(sln, [(1.0, y, 1.0, 0.0) for y in ys])
        self.assert_continuous(sln, [(0.5, y, 1.0, 0.0) for y in ys])
        self.assert_continuous(sln, [(x, 0.5, 0.0, 1.0) for x in xs])
        self.assert_continuous(sln, [(x, 0.25, 0.0, 1.0) for x in xs if 0.5 < x < 1.0])

    def test_anisotropic_refinement(self, strip):
        strip.refine_element(1, Split.HORZ)
        strip.refine_element(0, Split.VERT)
        space = H1Space(strip, order=4)
        sln = random_solution(space, seed=2)
        ys = np.linspace(0.05, 0.95, 9)
        xs = np.linspace(1.05, 1.95, 9)
        self.assert_continuous(sln, [(1.0, y, 1.0, 0.0) for y in ys])
        self.assert_continuous(sln, [(x, 0.5, 0.0, 1.0) for x in xs])


class TestEssentialConditions:
    """Dirichlet data on boundary edges."""

    def test_quadratic_data_is_reproduced(self, strip):
        def g(marker, x, y):
            return x**2 + 3 * y

        strip.refine_element(0)
        space = H1Space(strip, bc_types=essential, bc_values=g, order=2)
        sln = random_solution(space)
        for x in np.linspace(0.1, 1.9, 7):
            assert np.isclose(sln.get_pt_value(x, 1e-12), x**2, atol=1e-8)
            assert np.isclose(sln.get_pt_value(x, 1.0 - 1e-12), x**2 + 3, atol=1e-8)

    def test_marker_selection(self, strip):
        """Only the left side (marker 4) is essential."""

        def bc_types(marker):
            return BCType.ESSENTIAL if marker == 4 else BCType.NATURAL

        space = H1Space(strip, bc_types=bc_types, bc_values=lambda m, x, y: 2.0 + 0 * x, order=2)
        assert space.get_num_dofs() == 15 - 3
        sln = random_solution(space)
        for y in [0.1, 0.5, 0.9]:
            assert np.isclose(sln.get_pt_value(1e-12, y), 2.0)

    def test_all_essential_no_dofs(self):
        mesh = rectangle_mesh(0.0, 1.0, 0.0, 1.0, 1, 1)
        space = H1Space(mesh, bc_types=essential, bc_values=lambda m, x, y: x + y, order=1)
        assert space.get_num_dofs() == 0
        sln = Solution(space, np.zeros(0))
        assert np.isclose(sln.get_pt_value(0.3, 0.6), 0.9)


class TestSolution:
    """Frozen discrete functions."""

    def test_wrong_vector_length(self, strip):
        space = H1Space(strip, order=2)
        with pytest.raises(ValueError):
            Solution(space, np.zeros(3))

    def test_vector_is_read_only(self, strip):
        sln = random_solution(H1Space(strip, order=2))
        with pytest.raises(ValueError):
            sln.vector[0] = 1.0

    def test_unaffected_by_later_refinement(self, strip):
        space = H1Space(strip, order=2)
        sln = random_solution(space)
        value = sln.get_pt_value(0.3, 0.4)
        strip.refine_all_elements()
        space.set_uniform_order(3)
        assert sln.get_pt_value(0.3, 0.4) == value
        assert len(sln.leaf_ids) == 2

    def test_outside_point_raises(self, strip):
        sln = random_solution(H1Space(strip, order=1))
        with pytest.raises(ValueError):
            sln.get_pt_value(3.0, 0.5)

    def test_derivatives_of_linear_function(self):
        mesh = rectangle_mesh(0.0, 2.0, 0.0, 1.0, 1, 1)
        space = H1Space(mesh, bc_types=essential, bc_values=lambda m, x, y: 2 * x - y, order=1)
        sln = Solution(space, np.zeros(0))
        val, dx, dy = sln.get_pt_value(0.5, 0.5, derivatives=True)
        assert np.isclose(val, 0.5)
        assert np.isclose(dx, 2.0)
        assert np.isclose(dy, -1.0)


class TestReferenceSpaces:
    """Globally enriched spaces used for error estimation."""

    def test_reference_is_richer(self, strip):
        strip.refine_element(0, Split.VERT)
        space = H1Space(strip, order=2)
        space.set_element_order(1, (3, 1))
        (ref,) = construct_refined_spaces([space])
        assert ref.get_num_dofs() > space.get_num_dofs()
        assert ref.mesh.get_num_active_elements() == 4 * strip.get_num_active_elements()
        for el in ref.mesh.active_elements():
            parent = ref.mesh.elements[el.parent]
            px, py = space.get_element_order(parent.id)
            assert ref.get_element_order(el.id) == (px + 1, py + 1)

    def test_coarse_mesh_untouched(self, strip):
        space = H1Space(strip, order=2)
        construct_refined_spaces([space])
        assert strip.get_num_active_elements() == 2

    def test_shared_meshes_stay_shared(self, strip):
        other = strip.copy()
        a, b, c = H1Space(strip), H1Space(strip), H1Space(other)
        ra, rb, rc = construct_refined_spaces([a, b, c], order_increase=0)
        assert ra.mesh is rb.mesh
        assert ra.mesh is not rc.mesh
        assert ra.get_element_order(ra.mesh.active_elements()[0].id) == (1, 1)

    def test_order_capped(self, strip):
        space = H1Space(strip, order=10)
        (ref,) = construct_refined_spaces([space])
        assert all(ref.get_element_order(el.id) == (10, 10) for el in ref.mesh.active_elements())
