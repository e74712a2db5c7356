"""Observers of the adaptive loop: iteration reports and convergence graphs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

import pandas as pd

from .solution import Solution

log = logging.getLogger(__name__)


@dataclass
class IterationReport:
    """What a sink sees after each error estimate."""

    iteration: int
    ndof: int
    ref_ndof: int
    err_est: float
    cpu_time: float
    coarse_solutions: Sequence[Solution] = field(repr=False, default=())
    ref_solutions: Sequence[Solution] = field(repr=False, default=())
    err_exact: Optional[float] = None


class ConvergenceGraph:
    """Series of (x, y) points written as a whitespace-separated data file."""

    def __init__(self, x_label: str, y_label: str = "err_est"):
        self.x_label = x_label
        self.y_label = y_label
        self._rows: list[tuple[float, float]] = []

    def add_values(self, x: float, y: float) -> None:
        self._rows.append((x, y))

    def __len__(self) -> int:
        return len(self._rows)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(self._rows, columns=[self.x_label, self.y_label])

    def save(self, path: str | Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_dataframe().to_csv(path, sep=" ", header=False, index=False)
        log.info(f"Saved convergence data to {path}")
        return path


class ConvergenceRecorder:
    """Sink that records DOF and CPU convergence graphs.

    With ``output_dir`` set, the graphs are rewritten after every iteration as
    ``conv_dof.dat`` and ``conv_cpu.dat``, plus the ``_exact`` pair when an
    exact solution is known.
    """

    def __init__(self, output_dir: str | Path | None = None):
        self.output_dir = Path(output_dir) if output_dir is not None else None
        self.graph_dof = ConvergenceGraph("ndof")
        self.graph_cpu = ConvergenceGraph("cpu_time")
        self.graph_dof_exact = ConvergenceGraph("ndof", "err_exact")
        self.graph_cpu_exact = ConvergenceGraph("cpu_time", "err_exact")

    def __call__(self, report: IterationReport) -> None:
        self.graph_dof.add_values(report.ndof, report.err_est)
        self.graph_cpu.add_values(report.cpu_time, report.err_est)
        if report.err_exact is not None:
            self.graph_dof_exact.add_values(report.ndof, report.err_exact)
            self.graph_cpu_exact.add_values(report.cpu_time, report.err_exact)
        if self.output_dir is not None:
            self.save()

    def save(self) -> None:
        if self.output_dir is None:
            raise ValueError("ConvergenceRecorder has no output directory")
        self.graph_dof.save(self.output_dir / "conv_dof.dat")
        self.graph_cpu.save(self.output_dir / "conv_cpu.dat")
        if len(self.graph_dof_exact):
            self.graph_dof_exact.save(self.output_dir / "conv_dof_exact.dat")
            self.graph_cpu_exact.save(self.output_dir / "conv_cpu_exact.dat")


class LoggingSink:
    """Sink that logs one line per iteration."""

    def __call__(self, report: IterationReport) -> None:
        exact = f", err_exact: {report.err_exact:.4f}%" if report.err_exact is not None else ""
        log.info(
            f"Iteration {report.iteration}: ndof_coarse: {report.ndof}, "
            f"ndof_fine: {report.ref_ndof}, err_est: {report.err_est:.4f}%{exact}"
        )
