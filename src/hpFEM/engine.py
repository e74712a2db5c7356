"""Adaptive hp-FEM loop driven by reference-solution error estimates.

Each iteration solves on a globally enriched reference space, projects the
reference solution onto the coarse space, estimates element errors from the
difference and refines the coarse space where the error is largest:

    INIT -> SOLVE_REFERENCE -> PROJECT -> ESTIMATE_ERROR -> CHECK_STOP
         -> (REFINE -> SOLVE_REFERENCE) | DONE
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Sequence

import pandas as pd

from .adapt import Adapt, calc_rel_error
from .datastructures import AdaptivityConfig, AdaptivityMetrics, ConvergenceHistory
from .errors import SolverError
from .linsystem import solve_linear
from .projection import ProjNorm, project_global
from .reference import construct_refined_spaces
from .reporting import IterationReport
from .selector import ProjBasedSelector
from .solution import MeshFunction, Solution
from .space import H1Space
from .weakform import WeakForm

log = logging.getLogger(__name__)


class State(Enum):
    INIT = "init"
    SOLVE_REFERENCE = "solve_reference"
    PROJECT = "project"
    ESTIMATE_ERROR = "estimate_error"
    CHECK_STOP = "check_stop"
    REFINE = "refine"
    DONE = "done"


class StopReason(Enum):
    ERROR_BELOW_TOLERANCE = "err_stop"
    DOF_CAP = "ndof_stop"
    STALLED = "stalled"
    MAX_ITERATIONS = "max_iterations"


@dataclass
class AdaptivityResult:
    """Outcome of an adaptive run. ``solutions`` are the final reference solutions."""

    solutions: list[Solution]
    coarse_solutions: list[Solution]
    spaces: list[H1Space]
    stop_reason: StopReason
    iterations: int
    err_est: float
    history: pd.DataFrame = field(repr=False)
    metrics: AdaptivityMetrics = field(default_factory=AdaptivityMetrics)


class AdaptivityEngine:
    """
    Runs the adaptive loop on a list of coarse spaces (one per component).

    Parameters
    ----------
    spaces : sequence of H1Space
        Coarse spaces; they are refined in place.
    wf : WeakForm, optional
        Problem to solve on the reference spaces. Needed unless
        ``reference_solver`` is given, and for energy-norm projection.
    config : AdaptivityConfig, optional
    selector : ProjBasedSelector or sequence of them, optional
        One selector for all components or one per component. Defaults to a
        selector built from ``config``.
    sinks : sequence of callables, optional
        Called with an IterationReport after each error estimate.
    reference_solver : callable, optional
        ``reference_solver(ref_spaces) -> list[Solution]``; replaces the linear
        solve, e.g. by a projection of known functions.
    error_forms : dict, optional
        ``{(i, j): form}`` overriding the default H1 error forms.
    exact : sequence of MeshFunction, optional
        Exact solutions; when given, the true relative error is reported too.
    """

    def __init__(
        self,
        spaces: Sequence[H1Space],
        wf: WeakForm | None = None,
        config: AdaptivityConfig | None = None,
        selector=None,
        sinks: Sequence[Callable[[IterationReport], None]] = (),
        reference_solver: Callable[[list[H1Space]], list[Solution]] | None = None,
        error_forms: dict | None = None,
        exact: Sequence[MeshFunction] | None = None,
    ):
        self.spaces = list(spaces)
        self.wf = wf
        self.config = config or AdaptivityConfig()
        if selector is None:
            selector = ProjBasedSelector(self.config.cand_list, self.config.conv_exp)
        self.selectors = list(selector) if isinstance(selector, (list, tuple)) else [selector] * len(self.spaces)
        self.sinks = list(sinks)
        self.error_forms = dict(error_forms or {})
        self.exact = list(exact) if exact is not None else None

        if reference_solver is None:
            if wf is None:
                raise ValueError("AdaptivityEngine needs a weak form or a reference solver")
            reference_solver = lambda ref_spaces: solve_linear(ref_spaces, wf, self.config.solver)  # noqa: E731
        self.reference_solver = reference_solver

        if len(self.selectors) != len(self.spaces):
            raise ValueError(f"Got {len(self.selectors)} selectors for {len(self.spaces)} spaces")
        if self.exact is not None and len(self.exact) != len(self.spaces):
            raise ValueError(f"Got {len(self.exact)} exact solutions for {len(self.spaces)} spaces")
        if self.config.proj_norm == ProjNorm.ENERGY and wf is None:
            raise ValueError("Energy-norm projection requires a weak form")

        self.state = State.INIT

    def _notify(self, report: IterationReport) -> float:
        """Call the sinks; returns the CPU time they used."""
        t0 = time.process_time()
        for sink in self.sinks:
            sink(report)
        return time.process_time() - t0

    def run(self) -> AdaptivityResult:
        cfg = self.config
        history = ConvergenceHistory()
        wall0 = time.perf_counter()
        cpu0 = time.process_time()
        sink_time = 0.0
        iteration = 0
        reason = None
        ref_spaces = ref_slns = coarse_slns = hp = None
        err_est = float("inf")
        err_exact = None

        self.state = State.INIT
        while self.state is not State.DONE:
            if self.state is State.INIT:
                log.info(
                    f"Adaptivity: {len(self.spaces)} component(s), threshold={cfg.threshold}, "
                    f"strategy={cfg.strategy.name}, candidates={self.selectors[0].cand_list.name}"
                )
                iteration = 1
                self.state = State.SOLVE_REFERENCE

            elif self.state is State.SOLVE_REFERENCE:
                log.info(f"---- Adaptivity step {iteration}:")
                ref_spaces = construct_refined_spaces(self.spaces, cfg.order_increase)
                try:
                    ref_slns = self.reference_solver(ref_spaces)
                except SolverError as exc:
                    log.error(f"Reference solve failed in step {iteration}: {exc}")
                    raise
                self.state = State.PROJECT

            elif self.state is State.PROJECT:
                coarse_slns = project_global(
                    self.spaces, ref_slns, cfg.proj_norm, self.wf, cfg.solver
                )
                self.state = State.ESTIMATE_ERROR

            elif self.state is State.ESTIMATE_ERROR:
                hp = Adapt(self.spaces)
                for (i, j), form in self.error_forms.items():
                    hp.set_error_form(i, j, form)
                hp.set_solutions(coarse_slns, ref_slns)
                err_est = hp.calc_error(cfg.error_flags) * 100
                if self.exact is not None:
                    err_exact = 100 * max(
                        calc_rel_error(s, ex) for s, ex in zip(coarse_slns, self.exact)
                    )

                ndof = sum(s.get_num_dofs() for s in self.spaces)
                ref_ndof = sum(s.get_num_dofs() for s in ref_spaces)
                cpu = time.process_time() - cpu0 - sink_time
                history.append(iteration, ndof, ref_ndof, err_est, cpu, err_exact)
                sink_time += self._notify(
                    IterationReport(
                        iteration, ndof, ref_ndof, err_est, cpu, coarse_slns, ref_slns, err_exact
                    )
                )
                self.state = State.CHECK_STOP

            elif self.state is State.CHECK_STOP:
                ndof = sum(s.get_num_dofs() for s in self.spaces)
                if err_est < cfg.err_stop:
                    reason = StopReason.ERROR_BELOW_TOLERANCE
                elif ndof >= cfg.ndof_stop:
                    reason = StopReason.DOF_CAP
                elif iteration >= cfg.max_iterations:
                    reason = StopReason.MAX_ITERATIONS
                self.state = State.DONE if reason is not None else State.REFINE

            elif self.state is State.REFINE:
                nothing_done = hp.adapt(
                    self.selectors, cfg.threshold, cfg.strategy, cfg.mesh_regularity
                )
                if nothing_done:
                    log.warning(f"Adaptivity stalled in step {iteration}: no element was refined")
                    reason = StopReason.STALLED
                    self.state = State.DONE
                else:
                    iteration += 1
                    self.state = State.SOLVE_REFERENCE

        log.info(f"Adaptivity finished after {iteration} step(s): {reason.value}, err_est {err_est:.4f}%")
        metrics = AdaptivityMetrics(
            iterations=iteration,
            converged=reason is StopReason.ERROR_BELOW_TOLERANCE,
            stop_reason=reason.value,
            final_ndof=history.ndof[-1],
            final_ref_ndof=history.ref_ndof[-1],
            final_err_est=err_est,
            final_err_exact=err_exact if err_exact is not None else float("inf"),
            cpu_time_seconds=history.cpu_time[-1],
            wall_time_seconds=time.perf_counter() - wall0,
        )
        return AdaptivityResult(
            solutions=ref_slns,
            coarse_solutions=coarse_slns,
            spaces=self.spaces,
            stop_reason=reason,
            iterations=iteration,
            err_est=err_est,
            history=history.to_dataframe(),
            metrics=metrics,
        )


def adapt_to_exact_function(
    space: H1Space,
    exact: MeshFunction,
    selector: ProjBasedSelector | None = None,
    config: AdaptivityConfig | None = None,
    sinks: Sequence[Callable[[IterationReport], None]] = (),
) -> AdaptivityResult:
    """Adapt ``space`` to approximate a known function.

    The reference "solve" is the H1 projection of ``exact`` onto the reference
    space, so no weak form is involved.
    """
    config = config or AdaptivityConfig()

    def project_exact(ref_spaces):
        return project_global(ref_spaces, [exact], ProjNorm.H1, solver=config.solver)

    engine = AdaptivityEngine(
        [space],
        config=config,
        selector=selector,
        sinks=sinks,
        reference_solver=project_exact,
        exact=[exact],
    )
    return engine.run()
