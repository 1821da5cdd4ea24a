"""
Feature engineering for features_pipeline.

- `steps`: the closed set of declarative feature steps (mean, sum, max, min,
  count, count_distinct, ratio, threshold, ohe).
- `plan`: split of a step sequence into independent and dependent tiers.
- `engine`: `TransformEngine`, which applies steps sequentially or in parallel.
- `pipeline_config`: loading a feature step list from YAML.
"""

from __future__ import annotations

from .engine import ExecutionStrategy, TransformEngine
from .pipeline_config import FeaturePipeline, load_feature_pipeline
from .plan import ExecutionPlan
from .steps import (
    STEP_TYPES,
    CountDistinctStep,
    CountStep,
    FeatureStep,
    MaxStep,
    MeanStep,
    MinStep,
    OneHotEncodeStep,
    RatioStep,
    SumStep,
    ThresholdStep,
    parse_step,
    validate_steps,
)

__all__ = [
    "ExecutionPlan",
    "ExecutionStrategy",
    "TransformEngine",
    "FeaturePipeline",
    "load_feature_pipeline",
    "FeatureStep",
    "STEP_TYPES",
    "MeanStep",
    "SumStep",
    "MaxStep",
    "MinStep",
    "CountStep",
    "CountDistinctStep",
    "RatioStep",
    "ThresholdStep",
    "OneHotEncodeStep",
    "parse_step",
    "validate_steps",
]
