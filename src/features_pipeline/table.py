"""
Table helpers.

A Table is a plain `pandas.DataFrame`: ordered, named, single-typed columns
with nullable values and one shared row count. Nothing in this package
mutates a published frame. Every transformation returns a new one.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Sequence

import pandas as pd
from pandas.api import types as ptypes

from features_pipeline.exceptions import ColumnNotFoundError, ComputationError

FEATURE_PREFIX = "feature_"


class ColumnKind(str, Enum):
    """Scalar type of a Table column."""

    NUMERIC = "numeric"
    BOOLEAN = "boolean"
    STRING = "string"
    CATEGORICAL = "categorical"


def feature_column_name(name: str) -> str:
    """Return the published column name for a step output called `name`."""
    return f"{FEATURE_PREFIX}{name}"


def column_kind(series: pd.Series) -> ColumnKind:
    """Classify a column into one of the four Table scalar kinds."""
    dtype = series.dtype
    if ptypes.is_bool_dtype(dtype):
        return ColumnKind.BOOLEAN
    if isinstance(dtype, pd.CategoricalDtype):
        return ColumnKind.CATEGORICAL
    if ptypes.is_numeric_dtype(dtype):
        return ColumnKind.NUMERIC
    return ColumnKind.STRING


def available_columns(table: pd.DataFrame) -> list[str]:
    return [str(c) for c in table.columns]


def sorted_values(values: Iterable[Any]) -> list[Any]:
    """Sort distinct values ascending (numbers) or lexicographically (strings).

    Mixed, mutually unorderable types fall back to ordering by string form.
    """
    items = list(values)
    try:
        return sorted(items)
    except TypeError:
        return sorted(items, key=str)


def require_columns(
    table: pd.DataFrame,
    columns: Iterable[str],
    *,
    step: str | None = None,
    location: str | None = None,
) -> None:
    """Raise ColumnNotFoundError for the first column absent from `table`."""
    present = set(table.columns)
    for column in columns:
        if column not in present:
            context = {"step": step} if step is not None else None
            raise ColumnNotFoundError(
                column,
                available_columns(table),
                context=context,
                location=location,
            )


def require_numeric(
    table: pd.DataFrame,
    column: str,
    *,
    step: str | None = None,
    location: str | None = None,
) -> pd.Series:
    """Return `table[column]`, raising ComputationError unless it is numeric or boolean."""
    series = table[column]
    kind = column_kind(series)
    if kind not in (ColumnKind.NUMERIC, ColumnKind.BOOLEAN):
        raise ComputationError(
            f"Column '{column}' must be numeric, got {kind.value} ({series.dtype})",
            code="computation_type_mismatch",
            context={"step": step, "column": column, "dtype": str(series.dtype)},
            location=location,
        )
    return series


def append_columns(
    table: pd.DataFrame,
    new_columns: Sequence[pd.DataFrame],
    *,
    location: str | None = None,
) -> pd.DataFrame:
    """Return a new Table with the columns of every frame in `new_columns` appended.

    Frames are appended in the given order. A column name that already
    exists (in `table` or in an earlier frame) is a ComputationError:
    published columns are never overwritten.
    """
    seen = set(table.columns)
    for frame in new_columns:
        clashes = [c for c in frame.columns if c in seen]
        if clashes:
            raise ComputationError(
                f"Output column(s) already exist in the table: {clashes}",
                code="computation_duplicate_column",
                context={"columns": clashes, "available_columns": available_columns(table)},
                location=location,
            )
        seen.update(frame.columns)

    if not new_columns:
        return table.copy()
    return pd.concat([table, *new_columns], axis=1)
