"""Data structures for adaptivity configuration and results.

             Params (input/config)         Metrics (output/results)
             ─────────────────────         ────────────────────────
Global       AdaptivityConfig              AdaptivityMetrics
             threshold, strategy, ...      iterations, stop_reason, ...

Timeseries   -                             ConvergenceHistory
                                           ndof[], err_est[], cpu_time[]...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import pandas as pd

from .adapt import DEFAULT_ERROR_FLAGS, ErrorFlag, Strategy
from .projection import ProjNorm
from .selector import CandList


def _parse_strategy(value) -> Strategy:
    if isinstance(value, Strategy):
        return value
    if isinstance(value, int):
        return Strategy(value)
    return Strategy[str(value).upper().replace("-", "_")]


def _plain(value):
    """MLflow-friendly scalar."""
    if isinstance(value, (bool, ErrorFlag)):
        return int(value)
    if isinstance(value, Enum):
        return value.name.lower()
    return value


# ============================================================================
# Parameters (Input Configuration) - logged to MLflow as params
# ============================================================================


@dataclass
class AdaptivityConfig:
    """Settings of the adaptive loop.

    ``err_stop`` is a percentage. ``mesh_regularity`` is the maximum hanging
    level (-1 for unlimited). Enum fields also accept their names as strings,
    so values can come straight from a YAML config.
    """

    threshold: float = 0.3
    strategy: Strategy = Strategy.CUMULATIVE
    cand_list: CandList = CandList.HP_ANISO
    mesh_regularity: int = -1
    conv_exp: float = 1.0
    err_stop: float = 1.0
    ndof_stop: int = 60000
    order_increase: int = 1
    max_iterations: int = 100
    proj_norm: ProjNorm = ProjNorm.H1
    error_flags: ErrorFlag = DEFAULT_ERROR_FLAGS
    solver: str = "splu"

    def __post_init__(self) -> None:
        self.strategy = _parse_strategy(self.strategy)
        self.cand_list = CandList.parse(self.cand_list)
        self.proj_norm = ProjNorm(str(getattr(self.proj_norm, "value", self.proj_norm)).lower())
        self.error_flags = ErrorFlag(int(self.error_flags))

        if self.threshold <= 0:
            raise ValueError(f"threshold must be positive, got {self.threshold}")
        if self.mesh_regularity == 0 or self.mesh_regularity < -1:
            raise ValueError(
                f"mesh_regularity must be -1 (unlimited) or >= 1, got {self.mesh_regularity}"
            )
        if self.conv_exp <= 0:
            raise ValueError(f"conv_exp must be positive, got {self.conv_exp}")
        if self.err_stop < 0:
            raise ValueError(f"err_stop must be non-negative, got {self.err_stop}")
        if self.ndof_stop < 1:
            raise ValueError(f"ndof_stop must be positive, got {self.ndof_stop}")
        if self.order_increase < 0:
            raise ValueError(f"order_increase must be >= 0, got {self.order_increase}")
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.solver not in ("splu", "spsolve"):
            raise ValueError(f"solver must be 'splu' or 'spsolve', got {self.solver!r}")

    @classmethod
    def from_dict(cls, cfg) -> AdaptivityConfig:
        """Build from a mapping (e.g. an OmegaConf node), ignoring unknown keys."""
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in dict(cfg).items() if k in known})

    def to_mlflow(self) -> dict:
        """Convert to MLflow-compatible params dict."""
        return {k: _plain(v) for k, v in self.__dict__.items()}

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([self.to_mlflow()])


# ============================================================================
# Metrics (Output Results) - logged to MLflow as metrics
# ============================================================================


@dataclass
class AdaptivityMetrics:
    """Summary of a finished adaptive run."""

    iterations: int = 0
    converged: bool = False
    stop_reason: str = ""
    final_ndof: int = 0
    final_ref_ndof: int = 0
    final_err_est: float = float("inf")
    final_err_exact: float = float("inf")
    cpu_time_seconds: float = 0.0
    wall_time_seconds: float = 0.0

    def to_mlflow(self) -> dict:
        """Convert to MLflow-compatible dict (bools as int, skip inf and strings)."""
        return {
            k: (int(v) if isinstance(v, bool) else v)
            for k, v in self.__dict__.items()
            if not isinstance(v, str) and v != float("inf")
        }

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([{**self.to_mlflow(), "stop_reason": self.stop_reason}])


# ============================================================================
# TimeSeries (Convergence History) - logged to MLflow as step metrics
# ============================================================================


@dataclass
class ConvergenceHistory:
    """One value per adaptivity iteration."""

    iteration: List[int] = field(default_factory=list)
    ndof: List[int] = field(default_factory=list)
    ref_ndof: List[int] = field(default_factory=list)
    err_est: List[float] = field(default_factory=list)
    cpu_time: List[float] = field(default_factory=list)
    err_exact: List[Optional[float]] = field(default_factory=list)

    def append(self, iteration, ndof, ref_ndof, err_est, cpu_time, err_exact=None) -> None:
        self.iteration.append(iteration)
        self.ndof.append(ndof)
        self.ref_ndof.append(ref_ndof)
        self.err_est.append(err_est)
        self.cpu_time.append(cpu_time)
        self.err_exact.append(err_exact)

    def to_mlflow_batch(self) -> list:
        """Convert history to MLflow Metric objects for batch logging."""
        from mlflow.entities import Metric

        return [
            Metric(key=name, value=value, timestamp=0, step=step)
            for name, values in self.__dict__.items()
            if name != "iteration" and values
            for step, value in enumerate(values)
            if value is not None
        ]

    def to_dataframe(self) -> pd.DataFrame:
        """Convert to DataFrame with one row per iteration."""
        data = {k: v for k, v in self.__dict__.items() if v}
        if not any(v is not None for v in self.err_exact):
            data.pop("err_exact", None)
        return pd.DataFrame(data)
