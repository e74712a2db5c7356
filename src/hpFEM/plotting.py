"""Figures for adaptive runs: polynomial-order maps, solutions and convergence."""

from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib.collections import PolyCollection

from .refmap import bilinear_map, volume_points
from .solution import Solution
from .space import H1Space

log = logging.getLogger(__name__)

FIGURES_DIR = Path("figures")
STYLE_PATH = Path(__file__).resolve().parent / "hpfem.mplstyle"


def setup_style():
    """Apply shared matplotlib style."""
    if STYLE_PATH.exists():
        plt.style.use(STYLE_PATH)
    plt.rcParams.setdefault("savefig.bbox", "tight")


def save_figure(fig, filename: str | Path):
    """
    Save figure to the specified path.
    """
    filepath = Path(filename)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(filepath, bbox_inches="tight")
    log.info(f"Saved: {filepath}")
    return filepath


def _element_outline(mesh, el, n: int = 2) -> np.ndarray:
    """Boundary polygon of an element, sampled along its (mapped) edges."""
    r0, r1, s0, s1 = el.box
    t = np.linspace(0.0, 1.0, n, endpoint=False)
    r = np.concatenate([r0 + (r1 - r0) * t, np.full(n, r1), r1 - (r1 - r0) * t, np.full(n, r0)])
    s = np.concatenate([np.full(n, s0), s0 + (s1 - s0) * t, np.full(n, s1), s1 - (s1 - s0) * t])
    x, y = bilinear_map(mesh.root_corners(el.root), r, s)
    return np.column_stack([x, y])


def plot_orders(space: H1Space, direction: str = "max", ax=None, cmap: str = "viridis"):
    """Colour active elements by polynomial order (``"x"``, ``"y"`` or ``"max"``)."""
    if ax is None:
        _, ax = plt.subplots()
    mesh = space.mesh
    polys, values = [], []
    for el in mesh.active_elements():
        px, py = space.get_element_order(el.id)
        polys.append(_element_outline(mesh, el))
        values.append({"x": px, "y": py}.get(direction, max(px, py)))

    coll = PolyCollection(polys, array=np.asarray(values, dtype=float), cmap=cmap, edgecolors="k", linewidths=0.3)
    ax.add_collection(coll)
    ax.autoscale_view()
    ax.set_aspect("equal")
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    ax.figure.colorbar(coll, ax=ax, label=f"order ({direction})")
    return ax


def plot_solution(sln: Solution, ax=None, n_points: int = 4, cmap: str = "coolwarm"):
    """Pseudocolour plot interpolated from per-element Gauss samples."""
    if ax is None:
        _, ax = plt.subplots()
    mesh = sln.mesh
    xs, ys, vs = [], [], []
    for leaf in sln.leaf_ids:
        el = mesh.elements[leaf]
        pts = volume_points(mesh.root_corners(el.root), el.box, n_points)
        xs.append(pts.x)
        ys.append(pts.y)
        vs.append(sln.evaluate(pts, leaf).val)
    tpc = ax.tripcolor(np.concatenate(xs), np.concatenate(ys), np.concatenate(vs), shading="gouraud", cmap=cmap)
    ax.set_aspect("equal")
    ax.figure.colorbar(tpc, ax=ax)
    return ax


def plot_convergence(history: pd.DataFrame, x: str = "ndof", ax=None):
    """Estimated (and exact, if recorded) error against DOFs or CPU time."""
    if ax is None:
        _, ax = plt.subplots()
    ax.loglog(history[x], history["err_est"], "o-", label="error estimate")
    if "err_exact" in history:
        ax.loglog(history[x], history["err_exact"], "s--", label="exact error")
    ax.set_xlabel({"ndof": "Degrees of freedom", "cpu_time": "CPU time [s]"}.get(x, x))
    ax.set_ylabel("Relative error [%]")
    ax.grid(True, which="both", alpha=0.3)
    ax.legend()
    return ax
