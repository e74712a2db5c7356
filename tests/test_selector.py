"""Tests for projection-based candidate selection.

Run with: pytest tests/test_selector.py -v
"""

import numpy as np
import pytest

from hpFEM import (
    CandList,
    ExactSolution,
    H1Space,
    ProjBasedSelector,
    SelectionExhausted,
    Split,
    construct_refined_spaces,
    project_global,
    rectangle_mesh,
)
from hpFEM.solution import zero_solution


def reference_of(fn, coarse_order=1, ref_order_increase=2):
    mesh = rectangle_mesh(0.0, 1.0, 0.0, 1.0, 1, 1)
    space = H1Space(mesh, order=coarse_order)
    (ref_space,) = construct_refined_spaces([space], ref_order_increase)
    (ref,) = project_global([ref_space], [ExactSolution(fn, order=4)])
    return mesh, ref


class TestCandidates:
    """Candidate families."""

    @pytest.mark.parametrize(
        "cand_list,order,expected",
        [
            (CandList.P_ISO, (2, 2), 3),
            (CandList.P_ANISO, (2, 2), 9),
            (CandList.H_ISO, (2, 2), 2),
            (CandList.H_ANISO, (2, 2), 4),
            (CandList.HP_ISO, (1, 1), 5),
            (CandList.HP_ANISO, (1, 1), 15),
        ],
    )
    def test_counts(self, cand_list, order, expected):
        cands = ProjBasedSelector(cand_list).create_candidates(order)
        assert len(cands) == expected
        assert cands[0].split is None and cands[0].orders == (order,)

    def test_max_order_caps_p_candidates(self):
        cands = ProjBasedSelector(CandList.P_ISO).create_candidates((10, 10))
        assert len(cands) == 1

    def test_hp_son_orders(self):
        cands = ProjBasedSelector(CandList.HP_ANISO).create_candidates((5, 3))
        by_split = {}
        for c in cands[1:]:
            by_split.setdefault(c.split, set()).add(c.orders[0])
        assert by_split[Split.ISO] == {(3, 2), (4, 3)}
        assert by_split[Split.HORZ] == {(5, 2), (5, 3)}
        assert by_split[Split.VERT] == {(3, 3), (4, 3)}
        assert all(c.num_sons == 4 for c in cands if c.split == Split.ISO)

    def test_disallowed_splits_removed(self):
        selector = ProjBasedSelector(CandList.HP_ANISO)
        cands = selector.create_candidates((1, 1), allowed_splits=[])
        assert len(cands) == 9
        assert all(c.split is None for c in cands)
        cands = selector.create_candidates((1, 1), allowed_splits=[Split.VERT])
        assert {c.split for c in cands} == {None, Split.VERT}

    def test_parse(self):
        assert CandList.parse("hp_aniso") is CandList.HP_ANISO
        assert CandList.parse("H_ISO") is CandList.H_ISO
        with pytest.raises(KeyError):
            CandList.parse("q_iso")

    @pytest.mark.parametrize("kwargs", [{"conv_exp": 0.0}, {"max_order": 0}, {"max_order": 11}])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            ProjBasedSelector(**kwargs)


class TestProjectionError:
    """Local projection errors on element boxes."""

    def test_exact_polynomial_has_no_error(self):
        mesh, ref = reference_of(lambda x, y: (x * x, 2 * x, 0 * y))
        err = ProjBasedSelector.projection_error(mesh, 0, (-1.0, 1.0, -1.0, 1.0), (2, 1), ref)
        assert err == pytest.approx(0.0, abs=1e-20)

    def test_lower_order_has_error(self):
        mesh, ref = reference_of(lambda x, y: (x * x, 2 * x, 0 * y))
        err = ProjBasedSelector.projection_error(mesh, 0, (-1.0, 1.0, -1.0, 1.0), (1, 3), ref)
        assert err > 1e-6

    def test_sub_box_error_smaller(self):
        mesh, ref = reference_of(lambda x, y: (np.sin(4 * x) * y, 4 * np.cos(4 * x) * y, np.sin(4 * x)))
        whole = ProjBasedSelector.projection_error(mesh, 0, (-1.0, 1.0, -1.0, 1.0), (2, 2), ref)
        halves = sum(
            ProjBasedSelector.projection_error(mesh, 0, box, (2, 2), ref)
            for box in [(-1.0, 0.0, -1.0, 1.0), (0.0, 1.0, -1.0, 1.0)]
        )
        assert halves < whole


class TestSelectRefinement:
    """Choice of the best candidate."""

    def test_picks_exact_p_refinement(self):
        mesh, ref = reference_of(lambda x, y: (x * x, 2 * x, 0 * y))
        best = ProjBasedSelector(CandList.P_ANISO).select_refinement(mesh, 0, (1, 1), ref)
        assert best.split is None
        assert best.orders[0][0] >= 2
        assert best.error < 1e-12
        assert best.dofs > 4

    def test_direction_follows_solution(self):
        """A function varying in y only should raise py, not px."""
        mesh, ref = reference_of(lambda x, y: (y**3, 0 * x, 3 * y**2))
        best = ProjBasedSelector(CandList.P_ANISO).select_refinement(mesh, 0, (1, 1), ref)
        px, py = best.orders[0]
        assert py >= 3
        assert px < py

    def test_anisotropic_split_for_layer(self):
        """A steep layer in x favours a vertical cut over a horizontal one."""
        def layer(x, y):
            t = np.tanh(20 * (x - 0.5))
            return t, 20 * (1 - t * t), 0 * y

        mesh, ref = reference_of(layer, coarse_order=1, ref_order_increase=3)
        best = ProjBasedSelector(CandList.H_ANISO).select_refinement(mesh, 0, (1, 1), ref)
        assert best.split in (Split.VERT, Split.ISO)

    def test_exhausted(self):
        mesh = rectangle_mesh(0.0, 1.0, 0.0, 1.0, 1, 1)
        (ref_space,) = construct_refined_spaces([H1Space(mesh, order=1)])
        with pytest.raises(SelectionExhausted) as exc_info:
            ProjBasedSelector().select_refinement(mesh, 0, (1, 1), zero_solution(ref_space))
        assert exc_info.value.element_id == 0
