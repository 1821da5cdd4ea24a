from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional

from features_pipeline.config import AppConfig, get_config
from features_pipeline.exceptions import AppError, PipelineError
from features_pipeline.logging_config import get_logger

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _get_cfg(cfg: Optional[AppConfig] = None) -> AppConfig:
    """Return an AppConfig, using get_config() if one is not provided."""
    return cfg or get_config()


def _import_mlflow() -> Any:
    """Import the mlflow package or raise a PipelineError if unavailable.

    Only called when cfg.mlflow.enabled is True.
    """
    try:
        import mlflow  # type: ignore
    except ImportError as exc:
        raise PipelineError(
            "The 'mlflow' package is not installed. "
            "Install it with `pip install mlflow` or include the 'mlops' extra "
            "from this project (e.g. `pip install -e '.[mlops]'`).",
            code="mlflow_not_installed",
            cause=exc,
            location="features_pipeline.mlops.mlflow_utils._import_mlflow",
        ) from exc
    return mlflow


def mlflow_is_enabled(cfg: Optional[AppConfig] = None) -> bool:
    """Return True if MLflow is enabled in configuration.

    This only reflects the config flag; the import is checked lazily.
    """
    return bool(_get_cfg(cfg).mlflow.enabled)


def ensure_mlflow_available(cfg: Optional[AppConfig] = None) -> None:
    """Fail early with `mlflow_not_installed` when MLflow is enabled but missing."""
    if mlflow_is_enabled(cfg):
        _import_mlflow()


def _flatten_dict(
    d: Mapping[str, Any],
    parent_key: str = "",
    sep: str = ".",
) -> Dict[str, Any]:
    """Flatten a nested mapping into a single-level dict with dotted keys.

        {"engine": {"strategy": "sequential"}} -> {"engine.strategy": "sequential"}
    """
    items: Dict[str, Any] = {}
    for key, value in d.items():
        new_key = f"{parent_key}{sep}{key}" if parent_key else str(key)
        if isinstance(value, Mapping):
            items.update(_flatten_dict(value, parent_key=new_key, sep=sep))
        else:
            items[new_key] = value
    return items


def _active_mlflow(cfg: AppConfig, caller: str) -> Any | None:
    """Return the mlflow module if enabled and a run is active, else None."""
    if not cfg.mlflow.enabled:
        logger.debug("MLflow disabled; skipping %s.", caller)
        return None

    mlflow = _import_mlflow()
    if mlflow.active_run() is None:
        logger.warning(
            "%s called but no active MLflow run is present. Did you forget to use mlflow_run()?",
            caller,
        )
        return None
    return mlflow


# ---------------------------------------------------------------------------
# Context manager for MLflow runs
# ---------------------------------------------------------------------------


@contextmanager
def mlflow_run(
    cfg: Optional[AppConfig] = None,
    *,
    experiment_name: Optional[str] = None,
    run_name: Optional[str] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Iterator[Any]:
    """Start/stop an MLflow run if enabled.

        with mlflow_run(cfg) as mlflow:
            if mlflow is not None:
                log_params({"engine.strategy": "parallel_pool"}, cfg=cfg)
                log_metrics({"test_f1": 0.71}, cfg=cfg)

    - If cfg.mlflow.enabled is False, this yields None and does nothing.
    - Otherwise it sets the tracking URI and experiment
      (cfg.mlflow.experiment_name or cfg.experiment_name), starts a run and
      yields the mlflow module.
    """
    cfg = _get_cfg(cfg)

    if not cfg.mlflow.enabled:
        logger.info("MLflow is disabled in configuration; skipping MLflow run.")
        yield None
        return

    mlflow = _import_mlflow()

    if cfg.mlflow.tracking_uri:
        logger.info("Setting MLflow tracking URI to %s", cfg.mlflow.tracking_uri)
        mlflow.set_tracking_uri(cfg.mlflow.tracking_uri)

    exp_name = experiment_name or cfg.mlflow.experiment_name or cfg.experiment_name
    if exp_name:
        logger.info("Setting MLflow experiment to '%s'", exp_name)
        mlflow.set_experiment(exp_name)

    effective_run_name = run_name or cfg.mlflow.run_name

    logger.info(
        "Starting MLflow run (experiment=%s, run_name=%s)",
        exp_name,
        effective_run_name,
    )

    try:
        with mlflow.start_run(run_name=effective_run_name):
            if tags:
                mlflow.set_tags(tags)
            yield mlflow
    except AppError:
        raise
    except Exception as exc:
        raise PipelineError(
            "An error occurred during MLflow run context.",
            code="mlflow_run_error",
            cause=exc,
            context={"experiment_name": exp_name, "run_name": effective_run_name},
            location="features_pipeline.mlops.mlflow_utils.mlflow_run",
        ) from exc
    finally:
        logger.info("MLflow run finished.")


# ---------------------------------------------------------------------------
# Logging helpers
# ---------------------------------------------------------------------------


def log_params(
    params: Mapping[str, Any],
    *,
    prefix: Optional[str] = None,
    flatten: bool = False,
    cfg: Optional[AppConfig] = None,
) -> None:
    """Log parameters to the current MLflow run if enabled.

    Non-primitive values are logged as strings. No-op when MLflow is
    disabled or no run is active.
    """
    mlflow = _active_mlflow(_get_cfg(cfg), "log_params")
    if mlflow is None:
        return

    data: Mapping[str, Any] = _flatten_dict(params) if flatten else params

    to_log: Dict[str, Any] = {}
    for key, value in data.items():
        full_key = f"{prefix}{key}" if prefix else str(key)
        if isinstance(value, (str, int, float, bool)) or value is None:
            to_log[full_key] = value
        else:
            to_log[full_key] = str(value)

    if not to_log:
        logger.debug("No parameters to log after processing; skipping.")
        return

    logger.info("Logging %d MLflow params.", len(to_log))
    mlflow.log_params(to_log)


def log_metrics(
    metrics: Mapping[str, float],
    *,
    step: Optional[int] = None,
    cfg: Optional[AppConfig] = None,
) -> None:
    """Log metrics to the current MLflow run if enabled."""
    mlflow = _active_mlflow(_get_cfg(cfg), "log_metrics")
    if mlflow is None:
        return

    if not metrics:
        logger.debug("Empty metrics mapping provided; skipping log_metrics.")
        return

    logger.info("Logging %d MLflow metrics (step=%s).", len(metrics), step)
    mlflow.log_metrics(dict(metrics), step=step)


def log_artifacts_from_dir(
    dir_path: Path | str,
    *,
    artifact_path: Optional[str] = None,
    cfg: Optional[AppConfig] = None,
) -> None:
    """Log all files in a directory (e.g. a run directory) as MLflow artifacts."""
    mlflow = _active_mlflow(_get_cfg(cfg), "log_artifacts_from_dir")
    if mlflow is None:
        return

    path = Path(dir_path).resolve()
    if not path.is_dir():
        raise PipelineError(
            f"Artifact directory does not exist or is not a directory: {path}",
            code="mlflow_artifact_dir_invalid",
            context={"dir_path": str(path)},
            location="features_pipeline.mlops.mlflow_utils.log_artifacts_from_dir",
        )

    logger.info("Logging artifacts from directory %s (artifact_path=%s).", path, artifact_path)
    mlflow.log_artifacts(str(path), artifact_path=artifact_path)
