"""hpFEM package for adaptive hp finite elements in 2D.

This package implements automatic hp-adaptivity on quadrilateral meshes with
hanging nodes, driven by reference-solution error estimates.

Main components:
- Mesh: refinable quadrilateral mesh (isotropic and anisotropic splits)
- H1Space: continuous hierarchical space with per-element (px, py) orders
- WeakForm, solve_linear: weak form registry and sparse assembly/solve
- project_global: H1, L2 and energy-norm projections
- Adapt, ProjBasedSelector: error estimation and hp-candidate selection
- AdaptivityEngine, adapt_to_exact_function: the adaptive loop
"""

from .errors import FormatError, HpFemError, SelectionExhausted, SolverError
from .mesh import Mesh, Split, rectangle_mesh
from .io import load_mesh
from .order import Ord, integral
from .space import BCType, H1Space
from .weakform import ANY, Func, Geom, Symmetry, WeakForm
from .solution import ExactSolution, Solution
from .linsystem import LinearSystem, solve_linear
from .projection import ProjNorm, project_global
from .reference import construct_refined_spaces
from .adapt import Adapt, ElementErrorRecord, ErrorFlag, Strategy, calc_rel_error, select_elements
from .selector import CandList, ProjBasedSelector, RefinementCandidate
from .datastructures import AdaptivityConfig, AdaptivityMetrics, ConvergenceHistory
from .reporting import ConvergenceGraph, ConvergenceRecorder, IterationReport, LoggingSink
from .engine import (
    AdaptivityEngine,
    AdaptivityResult,
    State,
    StopReason,
    adapt_to_exact_function,
)

__all__ = [
    # Errors
    "HpFemError",
    "FormatError",
    "SolverError",
    "SelectionExhausted",
    # Mesh
    "Mesh",
    "Split",
    "rectangle_mesh",
    "load_mesh",
    # Spaces and forms
    "H1Space",
    "BCType",
    "WeakForm",
    "Symmetry",
    "ANY",
    "Func",
    "Geom",
    "Ord",
    "integral",
    # Solutions and solvers
    "Solution",
    "ExactSolution",
    "LinearSystem",
    "solve_linear",
    "project_global",
    "ProjNorm",
    "construct_refined_spaces",
    # Adaptivity
    "Adapt",
    "ElementErrorRecord",
    "ErrorFlag",
    "Strategy",
    "select_elements",
    "calc_rel_error",
    "CandList",
    "ProjBasedSelector",
    "RefinementCandidate",
    "AdaptivityConfig",
    "AdaptivityMetrics",
    "ConvergenceHistory",
    "AdaptivityEngine",
    "AdaptivityResult",
    "State",
    "StopReason",
    "adapt_to_exact_function",
    # Reporting
    "IterationReport",
    "ConvergenceGraph",
    "ConvergenceRecorder",
    "LoggingSink",
]
