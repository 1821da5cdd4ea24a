"""
features_pipeline: declarative feature engineering and binary evaluation.

A list of feature steps (YAML) is applied to a tabular dataset by the
`TransformEngine`, sequentially or in parallel with identical results.
A target column is label-encoded, a scikit-learn classifier is fitted on a
train split, and its predictions are scored with a confusion matrix.

    from features_pipeline import (
        TransformEngine,
        load_feature_pipeline,
        evaluate_binary,
    )

    steps = load_feature_pipeline("config/features.yaml").steps
    augmented = TransformEngine(steps, strategy="parallel_pool").apply(df)
"""

from __future__ import annotations

from importlib import metadata as _metadata

# ---------------------------------------------------------------------------
# Version
# ---------------------------------------------------------------------------

try:
    __version__ = _metadata.version("features-pipeline")
except _metadata.PackageNotFoundError:
    # Running from a source checkout without installation
    __version__ = "0.0.0"

# ---------------------------------------------------------------------------
# Public API re-exports
# ---------------------------------------------------------------------------

from .config import AppConfig, get_config, get_paths, load_config  # noqa: F401,E402
from .evaluation.metrics import (  # noqa: F401,E402
    BinaryMetrics,
    ConfusionMatrix,
    confusion_matrix,
    evaluate_binary,
)
from .exceptions import (  # noqa: F401,E402
    AppError,
    ColumnNotFoundError,
    ComputationError,
    ConcurrencyError,
    ConfigError,
    DataError,
    EncodingError,
    EvaluationError,
    ModelError,
    PipelineError,
)
from .features import (  # noqa: F401,E402
    ExecutionPlan,
    ExecutionStrategy,
    FeaturePipeline,
    TransformEngine,
    load_feature_pipeline,
    parse_step,
)
from .labels import LabelEncoder, LabelsPipeline, load_labels_pipeline  # noqa: F401,E402
from .logging_config import get_logger  # noqa: F401,E402

__all__ = [
    "__version__",
    # Config
    "AppConfig",
    "get_config",
    "get_paths",
    "load_config",
    # Logging
    "get_logger",
    # Exceptions
    "AppError",
    "ConfigError",
    "DataError",
    "ColumnNotFoundError",
    "ComputationError",
    "EncodingError",
    "ModelError",
    "EvaluationError",
    "PipelineError",
    "ConcurrencyError",
    # Features
    "ExecutionPlan",
    "ExecutionStrategy",
    "FeaturePipeline",
    "TransformEngine",
    "load_feature_pipeline",
    "parse_step",
    # Labels
    "LabelEncoder",
    "LabelsPipeline",
    "load_labels_pipeline",
    # Evaluation
    "BinaryMetrics",
    "ConfusionMatrix",
    "confusion_matrix",
    "evaluate_binary",
]
