"""Tests for the adaptive loop and the example problems.

Run with: pytest tests/test_engine.py -v
"""

import numpy as np
import pytest

from hpFEM import (
    AdaptivityConfig,
    AdaptivityEngine,
    BCType,
    ConvergenceRecorder,
    ExactSolution,
    H1Space,
    ProjBasedSelector,
    SolverError,
    StopReason,
    Symmetry,
    WeakForm,
    adapt_to_exact_function,
    rectangle_mesh,
)
from hpFEM.forms import int_F_v, int_u_v, laplace_form
from hpFEM.problems import PROBLEMS, bracket, build_problem, line_singularity, wave_front_exact


def steep_exact():
    return wave_front_exact(slope=10.0)


def small_space(order=1):
    mesh = rectangle_mesh(0.0, 1.0, 0.0, 1.0, 2, 2)
    return H1Space(mesh, order=order)


class TestStopCriteria:
    """Each stopping rule ends the loop."""

    def test_error_below_tolerance(self):
        """u = x^2 + y^2 lies in the coarse space; the first estimate is zero."""
        mesh = rectangle_mesh(0.0, 1.0, 0.0, 1.0, 2, 2)
        space = H1Space(
            mesh, lambda m: BCType.ESSENTIAL, lambda m, x, y: x**2 + y**2, order=2
        )
        wf = WeakForm(1)
        wf.add_matrix_form(0, 0, laplace_form, Symmetry.SYM)
        wf.add_vector_form(0, lambda wt, v, e, ext: int_F_v(wt, lambda x, y: -4.0 + 0.0 * x, v, e))
        result = AdaptivityEngine([space], wf, AdaptivityConfig(err_stop=1e-3)).run()
        assert result.stop_reason is StopReason.ERROR_BELOW_TOLERANCE
        assert result.iterations == 1
        assert result.err_est < 1e-3
        assert result.metrics.converged

    def test_dof_cap(self):
        space = small_space()
        config = AdaptivityConfig(err_stop=1e-6, ndof_stop=40)
        result = adapt_to_exact_function(space, steep_exact(), config=config)
        assert result.stop_reason is StopReason.DOF_CAP
        assert result.history["ndof"].iloc[-1] >= 40
        assert (result.history["ndof"].iloc[:-1] < 40).all()

    def test_dof_cap_reached_at_start(self):
        """A coarse space already above the cap stops after one estimate."""
        mesh = rectangle_mesh(0.0, 1.0, 0.0, 1.0, 4, 4)
        space = H1Space(mesh, order=3)
        assert space.get_num_dofs() > 100
        config = AdaptivityConfig(err_stop=1e-9, ndof_stop=100)
        result = adapt_to_exact_function(space, steep_exact(), config=config)
        assert result.stop_reason is StopReason.DOF_CAP
        assert result.iterations == 1
        assert mesh.get_num_active_elements() == 16

    def test_stalled(self):
        space = small_space()
        config = AdaptivityConfig(threshold=1.0, strategy="relative_to_max", err_stop=1e-6)
        result = adapt_to_exact_function(space, steep_exact(), config=config)
        assert result.stop_reason is StopReason.STALLED
        assert result.iterations == 1

    def test_max_iterations(self):
        space = small_space()
        config = AdaptivityConfig(err_stop=1e-6, max_iterations=2)
        result = adapt_to_exact_function(space, steep_exact(), config=config)
        assert result.stop_reason is StopReason.MAX_ITERATIONS
        assert result.iterations == 2
        assert list(result.history["iteration"]) == [1, 2]


class TestConvergence:
    """Behaviour of the estimates over iterations."""

    @pytest.mark.parametrize("cand_list", ["h_iso", "p_iso", "hp_aniso"])
    def test_error_decreases(self, cand_list):
        space = small_space()
        config = AdaptivityConfig(cand_list=cand_list, err_stop=1e-6, max_iterations=4)
        result = adapt_to_exact_function(space, steep_exact(), config=config)
        err = result.history["err_est"].to_numpy()
        ndof = result.history["ndof"].to_numpy()
        assert np.all(err >= 0)
        assert ndof[-1] > ndof[0]
        assert err[-1] < err[0]

    def test_exact_error_reported(self):
        space = small_space()
        config = AdaptivityConfig(err_stop=1e-6, max_iterations=2)
        result = adapt_to_exact_function(space, steep_exact(), config=config)
        assert "err_exact" in result.history
        assert (result.history["err_exact"] > 0).all()
        assert result.metrics.final_err_exact == pytest.approx(result.history["err_exact"].iloc[-1])

    def test_solutions_live_on_final_spaces(self):
        space = small_space()
        config = AdaptivityConfig(err_stop=1e-6, max_iterations=2)
        result = adapt_to_exact_function(space, steep_exact(), config=config)
        (coarse,) = result.coarse_solutions
        (ref,) = result.solutions
        assert coarse.num_dofs == result.history["ndof"].iloc[-1]
        assert ref.num_dofs == result.history["ref_ndof"].iloc[-1]
        assert result.spaces[0] is space

    def test_regularity_respected(self):
        space = small_space()
        config = AdaptivityConfig(
            cand_list="h_iso", mesh_regularity=1, err_stop=1e-6, max_iterations=4
        )
        adapt_to_exact_function(space, steep_exact(), config=config)
        mesh = space.mesh
        keys = {el.edge_key(k) for el in mesh.active_elements() for k in range(4)}
        assert max(mesh.hanging_level(key) for key in keys) <= 1


class TestSinks:
    """Iteration observers."""

    def test_sinks_called_each_iteration(self, tmp_path):
        reports = []
        recorder = ConvergenceRecorder(tmp_path)
        config = AdaptivityConfig(err_stop=1e-6, max_iterations=3)
        adapt_to_exact_function(small_space(), steep_exact(), config=config, sinks=[reports.append, recorder])
        assert [r.iteration for r in reports] == [1, 2, 3]
        assert all(len(r.coarse_solutions) == 1 for r in reports)

        rows = (tmp_path / "conv_dof.dat").read_text().strip().splitlines()
        assert len(rows) == 3
        assert all(len(row.split()) == 2 for row in rows)
        assert (tmp_path / "conv_cpu.dat").exists()
        assert (tmp_path / "conv_dof_exact.dat").exists()
        assert (tmp_path / "conv_cpu_exact.dat").exists()


class TestEngineSetup:
    """Constructor checks and failure propagation."""

    def test_needs_weak_form_or_solver(self):
        with pytest.raises(ValueError):
            AdaptivityEngine([small_space()])

    def test_selector_count(self):
        wf = WeakForm(1)
        with pytest.raises(ValueError):
            AdaptivityEngine([small_space()], wf, selector=[ProjBasedSelector(), ProjBasedSelector()])

    def test_energy_projection_needs_weak_form(self):
        config = AdaptivityConfig(proj_norm="energy")
        with pytest.raises(ValueError):
            adapt_to_exact_function(small_space(), steep_exact(), config=config)

    def test_solver_error_propagates(self):
        wf = WeakForm(1)
        wf.add_matrix_form(0, 0, lambda wt, u, v, e, ext: 0.0 * int_u_v(wt, u, v), Symmetry.SYM)
        engine = AdaptivityEngine([small_space()], wf)
        with pytest.raises(SolverError):
            engine.run()


class TestProblems:
    """Example problems run through a few iterations."""

    def test_registry(self):
        assert set(PROBLEMS) == {"line_singularity", "bracket", "wave_front"}
        with pytest.raises(ValueError):
            build_problem("crack")

    def test_line_singularity(self):
        problem = line_singularity()
        config = AdaptivityConfig(err_stop=1e-6, max_iterations=2)
        result = AdaptivityEngine(
            problem.spaces, problem.wf, config, exact=problem.exact
        ).run()
        assert result.iterations == 2
        err = result.history["err_exact"].to_numpy()
        assert err[-1] < err[0]

    def test_bracket_multimesh(self):
        problem = bracket()
        config = AdaptivityConfig(err_stop=1e-6, max_iterations=2, cand_list="h_iso")
        result = AdaptivityEngine(
            problem.spaces, problem.wf, config, error_forms=problem.error_forms
        ).run()
        assert result.iterations == 2
        assert len(result.solutions) == 2
        assert np.all(result.history["err_est"] > 0)
        # The load pushes the arm downwards
        (_, v) = result.solutions
        assert v.get_pt_value(0.2, 0.9) < 0

    def test_wave_front_builds(self):
        problem = build_problem("wave_front", init_ref_num=1)
        assert problem.wf is None
        assert problem.spaces[0].mesh.get_num_active_elements() == 4
        assert isinstance(problem.exact[0], ExactSolution)
