"""Smoke tests for figures.

Run with: pytest tests/test_plotting.py -v
"""

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402

from hpFEM import H1Space, Solution, Split, rectangle_mesh  # noqa: E402
from hpFEM.plotting import plot_convergence, plot_orders, plot_solution, save_figure, setup_style  # noqa: E402


class TestPlots:
    """Figures are produced and saved."""

    def test_orders_and_solution(self, tmp_path):
        setup_style()
        mesh = rectangle_mesh(0.0, 1.0, 0.0, 1.0, 2, 1)
        mesh.refine_element(0, Split.HORZ)
        space = H1Space(mesh, order=2)
        space.set_element_order(1, (4, 1))
        sln = Solution(space, np.linspace(0.0, 1.0, space.get_num_dofs()))

        fig, (ax1, ax2) = plt.subplots(1, 2)
        plot_orders(space, direction="x", ax=ax1)
        plot_solution(sln, ax=ax2)
        assert len(ax1.collections) == 1
        path = save_figure(fig, tmp_path / "figs" / "orders.png")
        plt.close(fig)
        assert path.exists()

    def test_convergence(self, tmp_path):
        history = pd.DataFrame(
            {"ndof": [10, 30, 90], "cpu_time": [0.1, 0.3, 0.9], "err_est": [10.0, 3.0, 1.0], "err_exact": [9.0, 2.5, 0.8]}
        )
        ax = plot_convergence(history, x="cpu_time")
        assert len(ax.get_lines()) == 2
        assert ax.get_xlabel() == "CPU time [s]"
        path = save_figure(ax.figure, tmp_path / "conv.png")
        plt.close(ax.figure)
        assert path.exists()
