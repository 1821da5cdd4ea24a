from __future__ import annotations

from dataclasses import dataclass

import pandas as pd
from sklearn.model_selection import train_test_split

from features_pipeline.exceptions import DataError
from features_pipeline.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Dataset:
    """Row-disjoint train/test partitions of a feature matrix and its labels.

    Row index labels are kept from the source Table, so `X_train.index` and
    `X_test.index` never intersect.
    """

    X_train: pd.DataFrame
    X_test: pd.DataFrame
    y_train: pd.Series
    y_test: pd.Series

    @property
    def n_train(self) -> int:
        return int(self.X_train.shape[0])

    @property
    def n_test(self) -> int:
        return int(self.X_test.shape[0])


def split_dataset(
    features: pd.DataFrame,
    labels: pd.Series,
    *,
    test_size: float = 0.2,
    random_seed: int = 42,
    stratify: bool = True,
) -> Dataset:
    """Randomly split rows into train and test partitions.

    `test_size` and `random_seed` are taken as given. With `stratify`, the
    class proportions of `labels` are kept in both partitions.

    Raises
    ------
    DataError
        If features and labels are not aligned or there are too few rows.
    """
    if not features.index.equals(labels.index):
        raise DataError(
            "Features and labels must share the same row index",
            code="data_misaligned",
            context={"n_features_rows": int(len(features)), "n_label_rows": int(len(labels))},
            location=f"{__name__}.split_dataset",
        )

    if len(features) < 2:
        raise DataError(
            f"Need at least 2 rows to split, got {len(features)}",
            code="data_too_few_rows",
            context={"n_rows": int(len(features))},
            location=f"{__name__}.split_dataset",
        )

    try:
        X_train, X_test, y_train, y_test = train_test_split(
            features,
            labels,
            test_size=test_size,
            random_state=random_seed,
            stratify=labels if stratify else None,
        )
    except ValueError as exc:
        raise DataError(
            f"Could not split dataset: {exc}",
            code="data_split_error",
            cause=exc,
            context={"test_size": test_size, "stratify": stratify, "n_rows": int(len(features))},
            location=f"{__name__}.split_dataset",
        ) from exc

    dataset = Dataset(X_train=X_train, X_test=X_test, y_train=y_train, y_test=y_test)
    logger.info(
        "Split dataset",
        extra={
            "n_train": dataset.n_train,
            "n_test": dataset.n_test,
            "test_size": test_size,
            "random_seed": random_seed,
            "stratify": stratify,
        },
    )
    return dataset
