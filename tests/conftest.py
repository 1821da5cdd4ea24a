from __future__ import annotations

import os
import random
from pathlib import Path
from typing import Any, Callable, Generator, Mapping

import numpy as np
import pandas as pd
import pytest
import yaml


# ---------------------------------------------------------------------------
# Global isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolate_environment(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[None, None, None]:
    """Run every test from an empty cwd with no FEATURES_PIPELINE_* overrides.

    This keeps config discovery (./config.yaml, .env, env vars) from leaking
    between tests or picking up files from the developer's checkout.
    """
    for key in list(os.environ):
        if key.startswith("FEATURES_PIPELINE_"):
            monkeypatch.delenv(key, raising=False)

    workdir = tmp_path / "cwd"
    workdir.mkdir()
    monkeypatch.chdir(workdir)

    seed = 1234
    random.seed(seed)
    np.random.seed(seed)
    yield


# ---------------------------------------------------------------------------
# In-memory tables
# ---------------------------------------------------------------------------


@pytest.fixture
def people_df() -> pd.DataFrame:
    """Six rows with nulls in numeric, string and group-key columns.

    Small enough that every expected feature value can be worked out by hand:

      row  age   workclass  hours  gain   sex   income
      0    25    private    40     100    M     <=50K
      1    35    gov        0      50     F     >50K
      2    NaN   private    20     0      F     <=50K
      3    45    None       50     NaN    M     >50K
      4    55    gov        40     400    None  >50K
      5    30    private    10     30     F     <=50K
    """
    return pd.DataFrame(
        {
            "age": [25.0, 35.0, np.nan, 45.0, 55.0, 30.0],
            "workclass": ["private", "gov", "private", None, "gov", "private"],
            "hours": [40, 0, 20, 50, 40, 10],
            "gain": [100.0, 50.0, 0.0, np.nan, 400.0, 30.0],
            "sex": ["M", "F", "F", "M", None, "F"],
            "income": ["<=50K", ">50K", "<=50K", ">50K", ">50K", "<=50K"],
        }
    )


@pytest.fixture
def adult_like_df() -> pd.DataFrame:
    """Forty deterministic rows where income is mostly explained by age and hours."""
    rng = np.random.default_rng(7)
    n = 40
    age = rng.integers(18, 70, size=n)
    hours = rng.integers(10, 60, size=n)
    workclass = np.array(["private", "gov", "self"])[np.arange(n) % 3]
    sex = np.array(["F", "M"])[np.arange(n) % 2]
    gain = (age * 10 + rng.integers(0, 50, size=n)).astype(float)

    score = (age > 40).astype(int) + (hours > 40).astype(int)
    income = np.where(score >= 1, ">50K", "<=50K")
    # Guarantee both classes have enough rows for a stratified split.
    income[:4] = ">50K"
    income[4:8] = "<=50K"

    return pd.DataFrame(
        {
            "age": age,
            "workclass": workclass,
            "hours": hours,
            "gain": gain,
            "sex": sex,
            "income": income,
        }
    )


# ---------------------------------------------------------------------------
# YAML helpers and on-disk configs
# ---------------------------------------------------------------------------


@pytest.fixture
def write_yaml() -> Callable[[Path, Any], Path]:
    """Return a helper that dumps `data` to `path` as YAML and returns the path."""

    def _write(path: Path, data: Any) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        return path

    return _write


FEATURES_YAML: Mapping[str, Any] = {
    "description": "test features",
    "steps": [
        {"function": "mean", "column": "age", "group_by": ["workclass"], "name": "mean_age_by_workclass"},
        {"function": "sum", "column": "gain", "name": "total_gain"},
        {"function": "count", "column": "age", "group_by": ["sex"], "name": "n_by_sex"},
        {"function": "count_distinct", "column": "workclass", "name": "n_workclasses"},
        {"function": "ratio", "numerator": "gain", "denominator": "hours", "name": "gain_per_hour"},
        {"function": "threshold", "column": "age", "threshold": 40, "comparator": "gt", "name": "over_40"},
        {"function": "ohe", "columns": ["sex"], "drop_first": False, "drop_nulls": True},
        {
            "function": "ratio",
            "numerator": "feature_gain_per_hour",
            "denominator": "feature_mean_age_by_workclass",
            "name": "relative_gain",
        },
    ],
}

LABELS_YAML: Mapping[str, Any] = {
    "steps": [
        {
            "function": "existing_target",
            "column": "income",
            "name": "label",
            "encode": True,
            "drop_original": False,
        }
    ]
}


@pytest.fixture
def project_dir(
    tmp_path: Path,
    adult_like_df: pd.DataFrame,
    write_yaml: Callable[[Path, Any], Path],
) -> Path:
    """Write data + features + labels files and return the project base dir."""
    base = tmp_path / "project"
    (base / "data").mkdir(parents=True)
    adult_like_df.to_csv(base / "data" / "adult.csv", index=False)
    write_yaml(base / "config" / "features.yaml", dict(FEATURES_YAML))
    write_yaml(base / "config" / "labels.yaml", dict(LABELS_YAML))
    return base


@pytest.fixture
def app_config_path(
    project_dir: Path,
    write_yaml: Callable[[Path, Any], Path],
) -> Path:
    """A complete AppConfig YAML pointing at the files from `project_dir`."""
    config = {
        "env": "test",
        "experiment_name": "test_features",
        "log_level": "INFO",
        "paths": {
            "base_dir": str(project_dir),
            "data_dir": "data",
            "output_dir": "data/output",
        },
        "inputs": {
            "data": "data/adult.csv",
            "features": "config/features.yaml",
            "labels": "config/labels.yaml",
        },
        "training": {"random_seed": 0, "test_size": 0.25, "stratify": True},
        "classifier": {"kind": "logistic_regression", "params": {"max_iter": 500}},
    }
    return write_yaml(project_dir / "config.yaml", config)
