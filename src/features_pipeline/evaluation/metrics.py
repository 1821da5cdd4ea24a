from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

import numpy as np
import pandas as pd
from pandas.api import types as ptypes
from sklearn.metrics import accuracy_score, f1_score, precision_score, recall_score

from features_pipeline.exceptions import EvaluationError
from features_pipeline.logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    "ConfusionMatrix",
    "BinaryMetrics",
    "confusion_matrix",
    "evaluate_binary",
]


# ---------------------------------------------------------------------------
# Core dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConfusionMatrix:
    """
    Binary confusion counts.

    Derived metrics never divide by zero:
      - precision is 0 when no positive predictions were made (TP + FP == 0)
      - recall is 0 when there are no actual positives (TP + FN == 0)
      - f1 is 0 when precision + recall == 0
      - accuracy is 0.0 for an empty evaluation (logged as a warning)
    """

    tp: int
    fp: int
    tn: int
    fn: int

    def __post_init__(self) -> None:
        for field_name in ("tp", "fp", "tn", "fn"):
            value = getattr(self, field_name)
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 0:
                raise EvaluationError(
                    f"Confusion count '{field_name}' must be a non-negative integer, got {value!r}",
                    code="evaluation_invalid_count",
                    context={field_name: repr(value)},
                    location=f"{__name__}.ConfusionMatrix",
                )

    @property
    def total(self) -> int:
        return self.tp + self.fp + self.tn + self.fn

    @property
    def support_pos(self) -> int:
        return self.tp + self.fn

    @property
    def support_neg(self) -> int:
        return self.tn + self.fp

    @property
    def accuracy(self) -> float:
        if self.total == 0:
            logger.warning("Accuracy requested for an empty evaluation; returning 0.0")
            return 0.0
        return (self.tp + self.tn) / self.total

    @property
    def precision(self) -> float:
        denominator = self.tp + self.fp
        return self.tp / denominator if denominator else 0.0

    @property
    def recall(self) -> float:
        denominator = self.tp + self.fn
        return self.tp / denominator if denominator else 0.0

    @property
    def f1(self) -> float:
        p, r = self.precision, self.recall
        if p + r == 0:
            return 0.0
        return 2 * p * r / (p + r)

    def as_dict(self) -> Dict[str, int]:
        return {"tp": self.tp, "fp": self.fp, "tn": self.tn, "fn": self.fn}


@dataclass(frozen=True)
class BinaryMetrics:
    """
    Confusion counts plus the four derived metrics for one evaluation.

    This is what gets written to metrics.yaml and, when enabled, to MLflow.
    """

    accuracy: float
    precision: float
    recall: float
    f1: float

    support_pos: int
    support_neg: int

    tp: int
    fp: int
    tn: int
    fn: int

    @classmethod
    def from_confusion(cls, cm: ConfusionMatrix) -> "BinaryMetrics":
        return cls(
            accuracy=cm.accuracy,
            precision=cm.precision,
            recall=cm.recall,
            f1=cm.f1,
            support_pos=cm.support_pos,
            support_neg=cm.support_neg,
            tp=cm.tp,
            fp=cm.fp,
            tn=cm.tn,
            fn=cm.fn,
        )

    @property
    def confusion(self) -> ConfusionMatrix:
        return ConfusionMatrix(tp=self.tp, fp=self.fp, tn=self.tn, fn=self.fn)

    def as_dict(self, prefix: str = "") -> Dict[str, float]:
        """
        Flatten into a dict for logging (e.g. MLflow). `prefix` can be used to
        distinguish train/test (e.g. "train_", "test_").
        """
        p = prefix
        return {
            f"{p}accuracy": float(self.accuracy),
            f"{p}precision": float(self.precision),
            f"{p}recall": float(self.recall),
            f"{p}f1": float(self.f1),
            f"{p}support_pos": int(self.support_pos),
            f"{p}support_neg": int(self.support_neg),
            f"{p}tp": int(self.tp),
            f"{p}fp": int(self.fp),
            f"{p}tn": int(self.tn),
            f"{p}fn": int(self.fn),
        }


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _to_numpy(y: Any) -> np.ndarray:
    """Convert various array-likes to a flat numpy array."""
    arr = np.asarray(y)
    if arr.ndim != 1:
        arr = arr.ravel()
    return arr


def _to_binary(y: Any, *, name: str) -> np.ndarray:
    """Validate a label vector over {0, 1} / {False, True} and return it as bool."""
    series = pd.Series(_to_numpy(y))

    n_nulls = int(series.isna().sum())
    if n_nulls:
        raise EvaluationError(
            f"'{name}' labels contain {n_nulls} null value(s)",
            code="evaluation_null_label",
            context={"labels": name, "n_nulls": n_nulls},
            location=f"{__name__}._to_binary",
        )

    if ptypes.is_bool_dtype(series.dtype):
        return series.to_numpy(dtype=bool)

    numeric = pd.to_numeric(series, errors="coerce")
    invalid = numeric.isna() | ~numeric.isin([0, 1])
    if bool(invalid.any()):
        examples = [str(v) for v in pd.unique(series[invalid])[:5]]
        raise EvaluationError(
            f"'{name}' labels must be binary (0/1 or bool), got values such as {examples}",
            code="evaluation_non_binary_label",
            context={"labels": name, "invalid_values": examples},
            location=f"{__name__}._to_binary",
        )
    return numeric.to_numpy() == 1


def _binary_pair(predicted: Any, actual: Any) -> tuple[np.ndarray, np.ndarray]:
    pred = _to_binary(predicted, name="predicted")
    act = _to_binary(actual, name="actual")

    if pred.shape[0] != act.shape[0]:
        raise EvaluationError(
            f"predicted and actual must have the same length, got {pred.shape[0]} and {act.shape[0]}",
            code="evaluation_length_mismatch",
            context={"n_predicted": int(pred.shape[0]), "n_actual": int(act.shape[0])},
            location=f"{__name__}._binary_pair",
        )
    return pred, act


def _binary_confusion_counts(pred: np.ndarray, act: np.ndarray) -> ConfusionMatrix:
    return ConfusionMatrix(
        tp=int(np.sum(pred & act)),
        fp=int(np.sum(pred & ~act)),
        tn=int(np.sum(~pred & ~act)),
        fn=int(np.sum(~pred & act)),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def confusion_matrix(predicted: Any, actual: Any) -> ConfusionMatrix:
    """Count TP/FP/TN/FN from predicted and actual binary labels.

    Raises
    ------
    EvaluationError
        If the sequences differ in length or contain nulls or non-binary values.
    """
    return _binary_confusion_counts(*_binary_pair(predicted, actual))


def evaluate_binary(predicted: Any, actual: Any, *, split: str | None = None) -> BinaryMetrics:
    """Confusion matrix plus derived metrics for one set of predictions.

    Accuracy, precision, recall and F1 come from `sklearn.metrics` with
    `zero_division=0`. An empty evaluation yields all-zero metrics.
    """
    pred, act = _binary_pair(predicted, actual)
    cm = _binary_confusion_counts(pred, act)

    if cm.total == 0:
        metrics = BinaryMetrics.from_confusion(cm)
    else:
        y_true = act.astype(int)
        y_pred = pred.astype(int)
        metrics = BinaryMetrics(
            accuracy=float(accuracy_score(y_true, y_pred)),
            precision=float(precision_score(y_true, y_pred, zero_division=0)),
            recall=float(recall_score(y_true, y_pred, zero_division=0)),
            f1=float(f1_score(y_true, y_pred, zero_division=0)),
            support_pos=cm.support_pos,
            support_neg=cm.support_neg,
            tp=cm.tp,
            fp=cm.fp,
            tn=cm.tn,
            fn=cm.fn,
        )
    logger.info(
        "Evaluated predictions",
        extra={"split": split, **metrics.as_dict()},
    )
    return metrics
