"""
hp-FEM adaptivity - unified entry point for running example problems.

Usage:
    python main.py
    python main.py problem=bracket adapt.strategy=relative_to_max
    python main.py problem=wave_front adapt.cand_list=h_aniso mlflow.enabled=true
"""

import logging
import os
import tempfile
from pathlib import Path

import hydra
import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import mlflow  # noqa: E402
from dotenv import load_dotenv  # noqa: E402
from omegaconf import DictConfig, OmegaConf  # noqa: E402

from hpFEM import (  # noqa: E402
    AdaptivityConfig,
    AdaptivityEngine,
    ConvergenceHistory,
    ConvergenceRecorder,
    LoggingSink,
    ProjBasedSelector,
    adapt_to_exact_function,
)
from hpFEM.plotting import plot_convergence, plot_orders, save_figure, setup_style  # noqa: E402
from hpFEM.problems import build_problem  # noqa: E402

load_dotenv()

log = logging.getLogger(__name__)


def setup_mlflow(cfg: DictConfig) -> str:
    """Setup MLflow tracking and return experiment name."""
    tracking_uri = cfg.mlflow.get("tracking_uri", "./mlruns")
    os.environ["MLFLOW_TRACKING_URI"] = str(tracking_uri)
    mlflow.set_tracking_uri(tracking_uri)
    experiment_name = cfg.mlflow.get("experiment_name", "hpFEM")
    mlflow.set_experiment(experiment_name)
    return experiment_name


def output_dir() -> Path:
    return Path(hydra.core.hydra_config.HydraConfig.get().runtime.output_dir)


def run_problem(cfg: DictConfig):
    """Build the configured problem and run the adaptive loop."""
    params = OmegaConf.to_container(cfg.problem, resolve=True)
    name = params.pop("name")
    problem = build_problem(name, **params)

    config = AdaptivityConfig.from_dict(OmegaConf.to_container(cfg.adapt, resolve=True))
    selector = ProjBasedSelector(config.cand_list, config.conv_exp)
    recorder = ConvergenceRecorder(output_dir())

    if problem.wf is None:
        result = adapt_to_exact_function(
            problem.spaces[0], problem.exact[0], selector, config, sinks=[LoggingSink(), recorder]
        )
    else:
        engine = AdaptivityEngine(
            problem.spaces,
            problem.wf,
            config,
            selector,
            sinks=[LoggingSink(), recorder],
            error_forms=problem.error_forms,
            exact=problem.exact,
        )
        result = engine.run()
    return problem, config, result


def generate_plots(problem, result, out: Path) -> list[Path]:
    setup_style()
    paths = []
    for k, space in enumerate(problem.spaces):
        fig, ax = plt.subplots()
        plot_orders(space, ax=ax)
        ax.set_title(f"{problem.name}: polynomial orders (component {k})")
        paths.append(save_figure(fig, out / "figures" / f"orders_{k}.png"))
        plt.close(fig)
    fig, ax = plt.subplots()
    plot_convergence(result.history, ax=ax)
    ax.set_title(f"{problem.name}: convergence")
    paths.append(save_figure(fig, out / "figures" / "convergence.png"))
    plt.close(fig)
    return paths


@hydra.main(config_path="conf", config_name="config", version_base=None)
def main(cfg: DictConfig) -> float:
    """Main entry point; returns the final error estimate in percent."""
    log.info(f"Problem: {cfg.problem.name}")
    tracking = cfg.mlflow.get("enabled", False)
    if tracking:
        log.info(f"MLflow experiment: {setup_mlflow(cfg)}")

    problem, config, result = run_problem(cfg)
    out = output_dir()
    plots = generate_plots(problem, result, out) if cfg.get("plots", True) else []

    if tracking:
        with mlflow.start_run(run_name=f"{problem.name}_{config.cand_list.value}") as run:
            mlflow.log_params(config.to_mlflow())
            mlflow.log_dict(OmegaConf.to_container(cfg), "config.yaml")
            mlflow.log_metrics(result.metrics.to_mlflow())
            mlflow.set_tag("stop_reason", result.stop_reason.value)
            history = ConvergenceHistory(**{
                col: result.history[col].tolist() for col in result.history.columns
            })
            batch = history.to_mlflow_batch()
            if batch:
                mlflow.tracking.MlflowClient().log_batch(run.info.run_id, metrics=batch)
            with tempfile.TemporaryDirectory() as tmpdir:
                csv_path = Path(tmpdir) / "history.csv"
                result.history.to_csv(csv_path, index=False)
                mlflow.log_artifact(str(csv_path))
            for path in plots:
                mlflow.log_artifact(str(path))

    log.info(
        f"Done: {result.iterations} steps, {result.stop_reason.value}, "
        f"ndof={result.metrics.final_ndof}, err_est={result.err_est:.4f}%"
    )
    return result.err_est


if __name__ == "__main__":
    main()
