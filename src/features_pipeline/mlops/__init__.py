"""
Experiment tracking for features_pipeline.

MLflow is optional (the `mlops` extra). Import the helpers directly:

    from features_pipeline.mlops.mlflow_utils import mlflow_run, log_metrics

so that mlflow is only imported when tracking is enabled.
"""

from __future__ import annotations

__all__: list[str] = []
