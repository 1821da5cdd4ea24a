from __future__ import annotations

import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator

import pandas as pd
import pytest
import yaml

from features_pipeline.config import AppConfig, load_config
from features_pipeline.exceptions import (
    ColumnNotFoundError,
    ConfigError,
    DataError,
    EncodingError,
    PipelineError,
)
from features_pipeline.features.engine import ExecutionStrategy
from features_pipeline.pipeline import (
    CONFIG_FILENAME,
    FEATURES_FILENAME,
    LABELS_FILENAME,
    METRICS_FILENAME,
    create_run_dir,
    run_pipeline,
)


@pytest.fixture
def cfg(app_config_path: Path) -> AppConfig:
    return load_config(app_config_path)


def _run_dirs(project_dir: Path) -> list[Path]:
    output = project_dir / "data" / "output"
    return sorted(output.iterdir()) if output.exists() else []


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


def test_run_pipeline_end_to_end_writes_outputs(cfg: AppConfig, project_dir: Path) -> None:
    result = run_pipeline(cfg)

    assert result.run_dir is not None
    assert _run_dirs(project_dir) == [result.run_dir]
    assert sorted(p.name for p in result.run_dir.iterdir()) == sorted(
        [CONFIG_FILENAME, FEATURES_FILENAME, LABELS_FILENAME, METRICS_FILENAME]
    )

    features = pd.read_csv(result.run_dir / FEATURES_FILENAME, sep=";")
    assert list(features.columns) == list(result.features.columns)
    assert len(features) == 40
    assert "feature_relative_gain" in features.columns

    labels = pd.read_csv(result.run_dir / LABELS_FILENAME, sep=";")
    assert set(labels["label"].unique()) <= {0, 1}

    metrics = yaml.safe_load((result.run_dir / METRICS_FILENAME).read_text(encoding="utf-8"))
    assert set(metrics) == {"run", "label_mapping", "train", "test"}
    assert metrics["label_mapping"] == {"<=50K": 0, ">50K": 1}
    assert metrics["run"]["n_train"] + metrics["run"]["n_test"] == 40
    assert metrics["run"]["strategy"] == "sequential"
    assert 0.0 <= metrics["test"]["accuracy"] <= 1.0
    tp, fp, tn, fn = (metrics["test"][k] for k in ("tp", "fp", "tn", "fn"))
    assert tp + fp + tn + fn == metrics["run"]["n_test"]

    saved_cfg = yaml.safe_load((result.run_dir / CONFIG_FILENAME).read_text(encoding="utf-8"))
    assert saved_cfg["experiment_name"] == "test_features"


def test_feature_matrix_excludes_label_columns(cfg: AppConfig) -> None:
    result = run_pipeline(cfg, write_outputs=False)

    assert "income" not in result.feature_columns
    assert "label" not in result.feature_columns
    assert "feature_over_40" in result.feature_columns
    assert "sex_F" in result.feature_columns
    assert list(result.dataset.X_train.columns) == list(result.feature_columns)


def test_no_write_leaves_output_dir_empty(cfg: AppConfig, project_dir: Path) -> None:
    result = run_pipeline(cfg, write_outputs=False)

    assert result.run_dir is None
    assert _run_dirs(project_dir) == []


def test_all_strategies_give_identical_results(cfg: AppConfig) -> None:
    results = {
        strategy.value: run_pipeline(cfg, strategy=strategy, write_outputs=False)
        for strategy in ExecutionStrategy
    }

    baseline = results["sequential"]
    for name, result in results.items():
        assert result.strategy.value == name
        pd.testing.assert_frame_equal(result.features, baseline.features)
        assert result.test_metrics == baseline.test_metrics


def test_summary_matches_result(cfg: AppConfig) -> None:
    result = run_pipeline(cfg, write_outputs=False)

    summary = result.summary()

    assert summary["run"]["n_steps"] == 8
    assert summary["run"]["target"] == "label"
    assert summary["test"] == result.test_metrics.as_dict()


# ---------------------------------------------------------------------------
# Failures never write
# ---------------------------------------------------------------------------


def test_missing_column_fails_without_outputs(
    cfg: AppConfig,
    project_dir: Path,
    write_yaml: Callable[[Path, Any], Path],
) -> None:
    write_yaml(
        project_dir / "config" / "bad_features.yaml",
        {"steps": [{"function": "mean", "column": "salary", "name": "avg_salary"}]},
    )
    bad = cfg.model_copy(
        update={"inputs": cfg.inputs.model_copy(update={"features": Path("config/bad_features.yaml")})}
    )

    with pytest.raises(ColumnNotFoundError) as ctx:
        run_pipeline(bad)

    assert ctx.value.column == "salary"
    assert _run_dirs(project_dir) == []


def test_non_binary_target_is_rejected(
    cfg: AppConfig,
    project_dir: Path,
    write_yaml: Callable[[Path, Any], Path],
) -> None:
    write_yaml(
        project_dir / "config" / "workclass_labels.yaml",
        {"steps": [{"function": "existing_target", "column": "workclass", "name": "label"}]},
    )
    bad = cfg.model_copy(
        update={"inputs": cfg.inputs.model_copy(update={"labels": Path("config/workclass_labels.yaml")})}
    )

    with pytest.raises(EncodingError) as ctx:
        run_pipeline(bad)

    assert ctx.value.code == "encoding_not_binary"
    assert _run_dirs(project_dir) == []


def test_unknown_strategy_override(cfg: AppConfig) -> None:
    with pytest.raises(ConfigError) as ctx:
        run_pipeline(cfg, strategy="turbo")

    assert ctx.value.code == "config_invalid_engine"


def test_missing_input_is_reported_before_reading_data(tmp_path: Path) -> None:
    cfg = AppConfig(paths={"base_dir": tmp_path}, inputs={"data": "missing.csv"})

    with pytest.raises(ConfigError) as ctx:
        run_pipeline(cfg)

    assert ctx.value.context["kind"] == "data"


# ---------------------------------------------------------------------------
# Run directories
# ---------------------------------------------------------------------------


def test_create_run_dir_is_timestamped(tmp_path: Path) -> None:
    run_dir = create_run_dir(tmp_path / "out", now=datetime(2025, 1, 2, 3, 4, 5))

    assert run_dir == tmp_path / "out" / "20250102_030405"
    assert run_dir.is_dir()


def test_create_run_dir_never_reuses_a_directory(tmp_path: Path) -> None:
    now = datetime(2025, 1, 2, 3, 4, 5)
    create_run_dir(tmp_path, now=now)

    with pytest.raises(DataError) as ctx:
        create_run_dir(tmp_path, now=now)

    assert ctx.value.code == "data_output_exists"


# ---------------------------------------------------------------------------
# MLflow
# ---------------------------------------------------------------------------


class _RecordingMlflow:
    """Stands in for the mlflow module and records what the run logs."""

    def __init__(self) -> None:
        self.logged: dict[str, Any] = {"params": {}, "metrics": {}, "artifacts": []}
        self._run: Any = None

    def set_experiment(self, name: str) -> None:
        self.logged["experiment"] = name

    @contextmanager
    def start_run(self, run_name: Any = None) -> Iterator[str]:
        self._run = "active"
        try:
            yield self._run
        finally:
            self._run = None

    def active_run(self) -> Any:
        return self._run

    def log_params(self, params: dict) -> None:
        self.logged["params"].update(params)

    def log_metrics(self, metrics: dict, step: Any = None) -> None:
        self.logged["metrics"].update(metrics)

    def log_artifacts(self, path: str, artifact_path: Any = None) -> None:
        self.logged["artifacts"].append(path)


class _FailingArtifactsMlflow(_RecordingMlflow):
    def log_artifacts(self, path: str, artifact_path: Any = None) -> None:
        raise RuntimeError("artifact store unreachable")


def _with_mlflow(cfg: AppConfig) -> AppConfig:
    return cfg.model_copy(update={"mlflow": cfg.mlflow.model_copy(update={"enabled": True})})


def test_run_logs_params_metrics_and_artifacts_to_mlflow(
    monkeypatch: pytest.MonkeyPatch,
    cfg: AppConfig,
) -> None:
    from features_pipeline.mlops import mlflow_utils

    fake = _RecordingMlflow()
    monkeypatch.setattr(mlflow_utils, "_import_mlflow", lambda: fake)

    result = run_pipeline(_with_mlflow(cfg))

    logged = fake.logged
    assert logged["experiment"] == "test_features"
    assert logged["params"]["engine.strategy"] == "sequential"
    assert logged["params"]["classifier.params.max_iter"] == 500
    assert logged["metrics"]["test_f1"] == result.test_metrics.f1
    assert logged["metrics"]["train_tp"] == result.train_metrics.tp
    assert logged["artifacts"] == [str(result.run_dir.resolve())]


def test_missing_mlflow_fails_before_any_output(
    monkeypatch: pytest.MonkeyPatch,
    cfg: AppConfig,
    project_dir: Path,
) -> None:
    monkeypatch.setitem(sys.modules, "mlflow", None)

    with pytest.raises(PipelineError) as ctx:
        run_pipeline(_with_mlflow(cfg))

    assert ctx.value.code == "mlflow_not_installed"
    assert _run_dirs(project_dir) == []


def test_mlflow_failure_after_writing_removes_run_dir(
    monkeypatch: pytest.MonkeyPatch,
    cfg: AppConfig,
    project_dir: Path,
) -> None:
    from features_pipeline.mlops import mlflow_utils

    fake = _FailingArtifactsMlflow()
    monkeypatch.setattr(mlflow_utils, "_import_mlflow", lambda: fake)

    with pytest.raises(PipelineError) as ctx:
        run_pipeline(_with_mlflow(cfg))

    assert ctx.value.code == "mlflow_run_error"
    assert fake.logged["metrics"]
    assert _run_dirs(project_dir) == []


def test_failed_write_removes_partial_outputs(
    monkeypatch: pytest.MonkeyPatch,
    cfg: AppConfig,
    project_dir: Path,
) -> None:
    from features_pipeline import pipeline as pipeline_module

    def _fail_on_config(path: Path, data: Any) -> None:
        if path.name == CONFIG_FILENAME:
            raise DataError(f"Failed to write {path}", code="data_write_error")
        path.write_text(yaml.safe_dump(dict(data)), encoding="utf-8")

    monkeypatch.setattr(pipeline_module, "_write_yaml_new", _fail_on_config)

    with pytest.raises(DataError) as ctx:
        run_pipeline(cfg)

    assert ctx.value.code == "data_write_error"
    assert _run_dirs(project_dir) == []
