"""
End-to-end run: load -> transform -> encode labels -> split -> fit/predict ->
evaluate -> persist.

Outputs go to a fresh timestamped directory under `paths.output_dir`:

    data/output/20250101_120000/
      features.csv   # input columns + every feature_* column, ";"-separated
      labels.csv     # table holding the label column(s), ";"-separated
      metrics.yaml   # train/test confusion counts and metrics
      config.yaml    # the effective AppConfig

Nothing is written unless every stage succeeded, and existing files are
never overwritten.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

import pandas as pd
import yaml

from features_pipeline.config import AppConfig
from features_pipeline.data.loading import load_dataframe, write_dataframe
from features_pipeline.data.splits import Dataset, split_dataset
from features_pipeline.evaluation.metrics import BinaryMetrics, evaluate_binary
from features_pipeline.exceptions import DataError, EncodingError
from features_pipeline.features.engine import ExecutionStrategy, TransformEngine
from features_pipeline.features.pipeline_config import load_feature_pipeline
from features_pipeline.features.plan import ExecutionPlan
from features_pipeline.labels import LabelsResult, load_labels_pipeline
from features_pipeline.logging_config import get_logger
from features_pipeline.mlops.mlflow_utils import (
    ensure_mlflow_available,
    log_artifacts_from_dir,
    log_metrics,
    log_params,
    mlflow_run,
)
from features_pipeline.models.classifier import SklearnClassifier, select_feature_matrix

logger = get_logger(__name__)

RUN_DIR_FORMAT = "%Y%m%d_%H%M%S"
FEATURES_FILENAME = "features.csv"
LABELS_FILENAME = "labels.csv"
METRICS_FILENAME = "metrics.yaml"
CONFIG_FILENAME = "config.yaml"


@dataclass(frozen=True)
class RunResult:
    """Everything a pipeline run produced."""

    features: pd.DataFrame
    labels: LabelsResult
    plan: ExecutionPlan
    strategy: ExecutionStrategy
    dataset: Dataset
    train_metrics: BinaryMetrics
    test_metrics: BinaryMetrics
    feature_columns: tuple[str, ...]
    run_dir: Path | None = None

    def summary(self) -> dict[str, Any]:
        """Plain-data summary written to metrics.yaml."""
        mapping: dict[str, int] = {}
        for encoding in self.labels.encodings:
            mapping.update({str(k): int(v) for k, v in encoding.mapping.items()})

        return {
            "run": {
                "strategy": self.strategy.value,
                "n_steps": self.plan.n_steps,
                "n_rows": int(self.features.shape[0]),
                "n_feature_columns": len(self.feature_columns),
                "n_train": self.dataset.n_train,
                "n_test": self.dataset.n_test,
                "target": self.labels.target_column,
            },
            "label_mapping": mapping,
            "train": self.train_metrics.as_dict(),
            "test": self.test_metrics.as_dict(),
        }


# ---------------------------------------------------------------------------
# Output bookkeeping
# ---------------------------------------------------------------------------


def create_run_dir(output_dir: str | Path, *, now: datetime | None = None) -> Path:
    """Create `output_dir/<YYYYmmdd_HHMMSS>` and return it.

    Raises
    ------
    DataError
        If that directory already exists or cannot be created.
    """
    stamp = (now or datetime.now()).strftime(RUN_DIR_FORMAT)
    run_dir = Path(output_dir) / stamp
    try:
        run_dir.mkdir(parents=True, exist_ok=False)
    except FileExistsError as exc:
        raise DataError(
            f"Run directory already exists: {run_dir}",
            code="data_output_exists",
            cause=exc,
            context={"path": str(run_dir)},
            location=f"{__name__}.create_run_dir",
        ) from exc
    except OSError as exc:
        raise DataError(
            f"Failed to create run directory: {run_dir}",
            code="data_write_error",
            cause=exc,
            context={"path": str(run_dir)},
            location=f"{__name__}.create_run_dir",
        ) from exc

    logger.info("Created run directory", extra={"run_dir": str(run_dir)})
    return run_dir


def _write_yaml_new(path: Path, data: Mapping[str, Any]) -> None:
    try:
        with path.open("x", encoding="utf-8") as handle:
            yaml.safe_dump(dict(data), handle, sort_keys=False)
    except FileExistsError as exc:
        raise DataError(
            f"Refusing to overwrite existing file: {path}",
            code="data_output_exists",
            cause=exc,
            context={"path": str(path)},
            location=f"{__name__}._write_yaml_new",
        ) from exc
    except OSError as exc:
        raise DataError(
            f"Failed to write {path}",
            code="data_write_error",
            cause=exc,
            context={"path": str(path)},
            location=f"{__name__}._write_yaml_new",
        ) from exc


def _discard_run_dir(run_dir: Path) -> None:
    """Remove a run directory created by this run after a later stage failed."""
    logger.warning("Run failed after outputs were started; removing them", extra={"run_dir": str(run_dir)})
    shutil.rmtree(run_dir, ignore_errors=True)


def write_run_outputs(result: RunResult, cfg: AppConfig, run_dir: Path) -> None:
    separator = cfg.output.separator
    write_dataframe(result.features, run_dir / FEATURES_FILENAME, separator=separator)
    write_dataframe(result.labels.table, run_dir / LABELS_FILENAME, separator=separator)
    _write_yaml_new(run_dir / METRICS_FILENAME, result.summary())
    _write_yaml_new(run_dir / CONFIG_FILENAME, cfg.to_dict())


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


def _require_binary_target(target: pd.Series) -> None:
    location = f"{__name__}._require_binary_target"
    n_nulls = int(target.isna().sum())
    if n_nulls:
        raise EncodingError(
            f"Target column '{target.name}' contains {n_nulls} null value(s)",
            code="encoding_null_target",
            context={"column": str(target.name), "n_nulls": n_nulls},
            location=location,
        )

    values = set(pd.unique(target))
    if not values <= {0, 1}:
        raise EncodingError(
            f"Target column '{target.name}' must be binary (0/1), got {len(values)} distinct values",
            code="encoding_not_binary",
            context={"column": str(target.name), "values": sorted(str(v) for v in values)[:10]},
            location=location,
        )


def _log_to_mlflow(cfg: AppConfig, result: RunResult, classifier: SklearnClassifier) -> None:
    with mlflow_run(cfg) as mlflow:
        if mlflow is None:
            return
        log_params(
            {
                "engine.strategy": result.strategy.value,
                "engine.n_steps": result.plan.n_steps,
                "classifier.kind": classifier.kind,
                "training.test_size": cfg.training.test_size,
                "training.random_seed": cfg.training.random_seed,
                "training.stratify": cfg.training.stratify,
            },
            cfg=cfg,
        )
        log_params(classifier.params, prefix="classifier.params.", cfg=cfg)
        log_metrics(result.train_metrics.as_dict("train_"), cfg=cfg)
        log_metrics(result.test_metrics.as_dict("test_"), cfg=cfg)
        if result.run_dir is not None and cfg.mlflow.log_artifacts:
            log_artifacts_from_dir(result.run_dir, cfg=cfg)


def run_pipeline(
    cfg: AppConfig,
    *,
    strategy: ExecutionStrategy | str | None = None,
    write_outputs: bool | None = None,
) -> RunResult:
    """Run every stage and return the results.

    Parameters
    ----------
    cfg:
        Effective application configuration.
    strategy:
        Overrides `cfg.engine.strategy` when given.
    write_outputs:
        Overrides `cfg.output.write_outputs` when given.

    Raises
    ------
    AppError
        Any ConfigError, DataError (ColumnNotFoundError, ComputationError,
        EncodingError), ConcurrencyError or ModelError raised by a stage.
        Nothing is persisted in that case.
    """
    # Configuration is fully validated before the dataset is read.
    data_path = cfg.resolve_input("data")
    feature_pipeline = load_feature_pipeline(cfg.resolve_input("features"))
    labels_pipeline = load_labels_pipeline(cfg.resolve_input("labels"))
    ensure_mlflow_available(cfg)

    engine = TransformEngine(
        feature_pipeline.steps,
        strategy=cfg.engine.strategy if strategy is None else strategy,
        max_workers=cfg.engine.max_workers,
        n_jobs=cfg.engine.n_jobs,
    )

    table = load_dataframe(data_path, separator=cfg.inputs.separator)
    plan = engine.plan(table)

    features = engine.apply(table)
    labels = labels_pipeline.apply(table)
    target = labels.target
    _require_binary_target(target)

    exclude = [
        *cfg.classifier.exclude_columns,
        *labels_pipeline.source_columns,
        *(step.name for step in labels_pipeline.steps),
    ]
    X = select_feature_matrix(
        features.loc[target.index],
        include=cfg.classifier.feature_columns,
        exclude=exclude,
    )
    dataset = split_dataset(
        X,
        target.astype("int64"),
        test_size=cfg.training.test_size,
        random_seed=cfg.training.random_seed,
        stratify=cfg.training.stratify,
    )

    classifier = SklearnClassifier.from_config(cfg.classifier, random_seed=cfg.training.random_seed)
    model = classifier.fit(dataset.X_train, dataset.y_train)
    train_metrics = evaluate_binary(
        classifier.predict(model, dataset.X_train), dataset.y_train, split="train"
    )
    test_metrics = evaluate_binary(
        classifier.predict(model, dataset.X_test), dataset.y_test, split="test"
    )

    result = RunResult(
        features=features,
        labels=labels,
        plan=plan,
        strategy=engine.strategy,
        dataset=dataset,
        train_metrics=train_metrics,
        test_metrics=test_metrics,
        feature_columns=tuple(X.columns),
    )

    should_write = cfg.output.write_outputs if write_outputs is None else write_outputs
    run_dir = create_run_dir(cfg.resolved_paths().output_dir) if should_write else None
    try:
        if run_dir is not None:
            write_run_outputs(result, cfg, run_dir)
            result = replace(result, run_dir=run_dir)
        _log_to_mlflow(cfg, result, classifier)
    except Exception:
        if run_dir is not None:
            _discard_run_dir(run_dir)
        raise

    logger.info(
        "Pipeline run finished",
        extra={
            "run_dir": str(result.run_dir) if result.run_dir else None,
            **result.test_metrics.as_dict("test_"),
        },
    )
    return result
