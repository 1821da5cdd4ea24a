"""
Command-line interface for features_pipeline.

    features-pipeline run      --config config.yaml [--strategy parallel_pool]
    features-pipeline describe --config config.yaml
    features-pipeline validate --config config.yaml
    features-pipeline version

The console script entry point in pyproject.toml:

    [project.scripts]
    features-pipeline = "features_pipeline.cli:app"

Any AppError is printed to stderr and the command exits with status 1.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from . import __version__
from .config import AppConfig, load_config
from .data.loading import read_header
from .exceptions import AppError
from .features.pipeline_config import load_feature_pipeline
from .features.plan import ExecutionPlan
from .labels import load_labels_pipeline
from .logging_config import configure_logging_from_app_config, get_logger
from .pipeline import run_pipeline

app = typer.Typer(
    help="Declarative feature pipeline with binary classification evaluation.",
    no_args_is_help=True,
)

logger = get_logger(__name__)

_CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    dir_okay=False,
    help=(
        "Path to the YAML app config. If omitted, FEATURES_PIPELINE_CONFIG_PATH "
        "or ./config.yaml is used."
    ),
)
_ENV_OPTION = typer.Option(
    None,
    "--env",
    help="Config environment/profile name (e.g. 'dev', 'prod').",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fail(exc: AppError) -> None:
    """Report an AppError on stderr and exit with status 1."""
    logger.error("Command failed", extra={"error": exc.to_dict()})
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)


def _load(config: Optional[Path], env: Optional[str]) -> AppConfig:
    cfg = load_config(config, env=env)
    configure_logging_from_app_config(cfg, force=True)
    return cfg


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("version")
def version() -> None:
    """Print the installed features_pipeline version."""
    typer.echo(f"features_pipeline version: {__version__}")


@app.command("run")
def run(
    config: Optional[Path] = _CONFIG_OPTION,
    env: Optional[str] = _ENV_OPTION,
    strategy: Optional[str] = typer.Option(
        None,
        "--strategy",
        "-s",
        help="Execution strategy: sequential, parallel_batch or parallel_pool.",
    ),
    no_write: bool = typer.Option(
        False,
        "--no-write",
        help="Do not create a run directory or write any output file.",
    ),
    no_mlflow: bool = typer.Option(
        False,
        "--no-mlflow",
        help="Disable MLflow logging even if configured.",
    ),
) -> None:
    """Apply features and labels, fit the classifier and report metrics."""
    try:
        cfg = _load(config, env)
        if no_mlflow and cfg.mlflow.enabled:
            cfg = cfg.model_copy(update={"mlflow": cfg.mlflow.model_copy(update={"enabled": False})})

        result = run_pipeline(
            cfg,
            strategy=strategy,
            write_outputs=False if no_write else None,
        )
    except AppError as exc:
        _fail(exc)
        return

    typer.echo(f"Strategy: {result.strategy.value}")
    typer.echo(f"Features: {result.features.shape[0]} rows x {result.features.shape[1]} columns")
    for split, metrics in (("train", result.train_metrics), ("test", result.test_metrics)):
        typer.echo(
            f"{split}: accuracy={metrics.accuracy:.4f} precision={metrics.precision:.4f} "
            f"recall={metrics.recall:.4f} f1={metrics.f1:.4f} "
            f"(tp={metrics.tp} fp={metrics.fp} tn={metrics.tn} fn={metrics.fn})"
        )
    if result.run_dir is not None:
        typer.echo(f"Outputs written to {result.run_dir}")


@app.command("describe")
def describe(
    config: Optional[Path] = _CONFIG_OPTION,
    env: Optional[str] = _ENV_OPTION,
) -> None:
    """List the configured feature and label steps."""
    try:
        cfg = _load(config, env)
        features = load_feature_pipeline(cfg.resolve_input("features"))
        labels = load_labels_pipeline(cfg.resolve_input("labels"))
    except AppError as exc:
        _fail(exc)
        return

    typer.echo(f"Loaded {len(features)} feature steps")
    if features.description:
        typer.echo(features.description)
    for i, step in enumerate(features.steps, start=1):
        typer.echo(f"Feature {i}: {step.label} -> {step.model_dump(exclude={'function'})}")

    typer.echo(f"Loaded {len(labels)} label steps (target: {labels.target_column})")
    for i, label_step in enumerate(labels.steps, start=1):
        typer.echo(f"Label {i}: {label_step.label}")

    typer.echo("")
    typer.echo(features.to_yaml_text().rstrip())


@app.command("validate")
def validate(
    config: Optional[Path] = _CONFIG_OPTION,
    env: Optional[str] = _ENV_OPTION,
) -> None:
    """Check config, step definitions and the dataset header without computing."""
    try:
        cfg = _load(config, env)
        data_path = cfg.resolve_input("data")
        features = load_feature_pipeline(cfg.resolve_input("features"))
        load_labels_pipeline(cfg.resolve_input("labels"))
        header = read_header(data_path, separator=cfg.inputs.separator)
        plan = ExecutionPlan.build(features.steps, header)
    except AppError as exc:
        _fail(exc)
        return

    labels = [step.label for step in features.steps]
    typer.echo(f"Config OK: {len(features)} feature steps, {len(header)} input columns")
    typer.echo(f"Independent steps: {[labels[i] for i in plan.independent]}")
    typer.echo(f"Dependent steps: {[labels[i] for i in plan.dependent]}")


# ---------------------------------------------------------------------------
# Entry point for `python -m features_pipeline.cli`
# ---------------------------------------------------------------------------


if __name__ == "__main__":
    app()
