from __future__ import annotations

from typing import Any, Iterable, Mapping, Protocol, Sequence

import numpy as np
import pandas as pd
from sklearn.base import ClassifierMixin
from sklearn.ensemble import GradientBoostingClassifier, RandomForestClassifier
from sklearn.impute import SimpleImputer
from sklearn.linear_model import LogisticRegression
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.tree import DecisionTreeClassifier

from features_pipeline.exceptions import DataError, ModelError
from features_pipeline.logging_config import get_logger
from features_pipeline.table import ColumnKind, column_kind

logger = get_logger(__name__)

ESTIMATORS: dict[str, type[ClassifierMixin]] = {
    "logistic_regression": LogisticRegression,
    "random_forest": RandomForestClassifier,
    "decision_tree": DecisionTreeClassifier,
    "gradient_boosting": GradientBoostingClassifier,
}


class Classifier(Protocol):
    """Opaque fit/predict capability used by the pipeline."""

    def fit(self, features: pd.DataFrame, labels: pd.Series) -> Any: ...

    def predict(self, model: Any, features: pd.DataFrame) -> np.ndarray: ...


# ---------------------------------------------------------------------------
# Feature matrix selection
# ---------------------------------------------------------------------------


def select_feature_matrix(
    table: pd.DataFrame,
    *,
    include: Sequence[str] | None = None,
    exclude: Iterable[str] = (),
) -> pd.DataFrame:
    """Return the float64 feature matrix for a classifier.

    If `include` is None, every numeric and boolean column not in `exclude`
    is used. Explicitly included columns must exist and be numeric/boolean.

    Raises
    ------
    DataError
        If a requested column is missing or non-numeric, or nothing is selected.
    """
    location = f"{__name__}.select_feature_matrix"
    excluded = set(exclude)

    if include is not None:
        missing = [c for c in include if c not in table.columns]
        if missing:
            raise DataError(
                "Some configured feature_columns are not present in the table.",
                code="data_missing_columns",
                context={"missing": missing, "available_columns": list(table.columns)},
                location=location,
            )
        candidates = [c for c in include if c not in excluded]
        non_numeric = [
            c
            for c in candidates
            if column_kind(table[c]) not in (ColumnKind.NUMERIC, ColumnKind.BOOLEAN)
        ]
        if non_numeric:
            raise DataError(
                "Configured feature_columns must be numeric or boolean.",
                code="data_non_numeric_features",
                context={
                    "columns": non_numeric,
                    "dtypes": {c: str(table[c].dtype) for c in non_numeric},
                },
                location=location,
            )
        selected = candidates
    else:
        selected = [
            c
            for c in table.columns
            if c not in excluded
            and column_kind(table[c]) in (ColumnKind.NUMERIC, ColumnKind.BOOLEAN)
        ]

    if not selected:
        raise DataError(
            "No numeric or boolean feature columns available for the classifier.",
            code="data_no_features",
            context={"excluded": sorted(excluded), "available_columns": list(table.columns)},
            location=location,
        )

    logger.info(
        "Selected feature matrix columns",
        extra={"n_columns": len(selected), "columns": selected},
    )
    # Nullable dtypes (boolean, Int64, Float64) become float64 with NaN for the imputer.
    return table.loc[:, selected].astype("float64")


# ---------------------------------------------------------------------------
# scikit-learn implementation
# ---------------------------------------------------------------------------


class SklearnClassifier:
    """Classifier capability backed by a scikit-learn Pipeline.

    The fitted model is `SimpleImputer(median) -> StandardScaler -> estimator`.

    Parameters
    ----------
    kind:
        One of ESTIMATORS' keys.
    params:
        Keyword arguments forwarded to the estimator.
    random_seed:
        Used as `random_state` when the estimator accepts one and `params`
        does not set it.
    """

    def __init__(
        self,
        kind: str = "logistic_regression",
        params: Mapping[str, Any] | None = None,
        *,
        random_seed: int | None = 42,
    ) -> None:
        if kind not in ESTIMATORS:
            raise ModelError(
                f"Unknown classifier kind: {kind!r}",
                code="model_unknown_kind",
                context={"kind": kind, "allowed": sorted(ESTIMATORS)},
                location=f"{__name__}.SklearnClassifier.__init__",
            )
        self.kind = kind
        self.params = dict(params or {})
        self.random_seed = random_seed

    def build(self) -> Pipeline:
        estimator_cls = ESTIMATORS[self.kind]
        params = dict(self.params)
        if self.random_seed is not None and "random_state" in estimator_cls().get_params():
            params.setdefault("random_state", self.random_seed)

        try:
            estimator = estimator_cls(**params)
        except TypeError as exc:
            raise ModelError(
                f"Invalid parameters for {self.kind}: {exc}",
                code="model_invalid_params",
                cause=exc,
                context={"kind": self.kind, "params": {k: repr(v) for k, v in params.items()}},
                location=f"{__name__}.SklearnClassifier.build",
            ) from exc

        return Pipeline(
            steps=[
                ("imputer", SimpleImputer(strategy="median", keep_empty_features=True)),
                ("scaler", StandardScaler()),
                ("estimator", estimator),
            ]
        )

    def fit(self, features: pd.DataFrame, labels: pd.Series) -> Pipeline:
        model = self.build()
        logger.info(
            "Fitting classifier",
            extra={
                "kind": self.kind,
                "n_rows": int(features.shape[0]),
                "n_features": int(features.shape[1]),
            },
        )
        try:
            model.fit(features, np.asarray(labels))
        except Exception as exc:
            raise ModelError(
                f"Failed to fit {self.kind} classifier: {exc}",
                code="model_fit_error",
                cause=exc,
                context={"kind": self.kind, "n_rows": int(features.shape[0])},
                location=f"{__name__}.SklearnClassifier.fit",
            ) from exc
        return model

    def predict(self, model: Pipeline, features: pd.DataFrame) -> np.ndarray:
        try:
            return np.asarray(model.predict(features))
        except Exception as exc:
            raise ModelError(
                f"Failed to predict with {self.kind} classifier: {exc}",
                code="model_predict_error",
                cause=exc,
                context={"kind": self.kind, "n_rows": int(features.shape[0])},
                location=f"{__name__}.SklearnClassifier.predict",
            ) from exc

    @classmethod
    def from_config(cls, classifier_config: Any, *, random_seed: int | None = 42) -> SklearnClassifier:
        return cls(classifier_config.kind, classifier_config.params, random_seed=random_seed)
