from __future__ import annotations

import pandas as pd
import pytest

from features_pipeline.exceptions import ColumnNotFoundError, ComputationError
from features_pipeline.table import (
    ColumnKind,
    append_columns,
    column_kind,
    feature_column_name,
    require_columns,
    require_numeric,
    sorted_values,
)


@pytest.mark.parametrize(
    "series, expected",
    [
        (pd.Series([1, 2, 3]), ColumnKind.NUMERIC),
        (pd.Series([1.5, None]), ColumnKind.NUMERIC),
        (pd.Series([True, False]), ColumnKind.BOOLEAN),
        (pd.Series([True, None], dtype="boolean"), ColumnKind.BOOLEAN),
        (pd.Series(["a", None]), ColumnKind.STRING),
        (pd.Series(["a", "b"], dtype="category"), ColumnKind.CATEGORICAL),
    ],
)
def test_column_kind(series: pd.Series, expected: ColumnKind) -> None:
    assert column_kind(series) is expected


def test_feature_column_name_prefix() -> None:
    assert feature_column_name("avg_age") == "feature_avg_age"


def test_sorted_values_orders_numbers_and_strings() -> None:
    assert sorted_values([3, 1, 2]) == [1, 2, 3]
    assert sorted_values(["b", "a", "c"]) == ["a", "b", "c"]
    # Unorderable mix falls back to string order
    assert sorted_values(["b", 1]) == [1, "b"]


def test_require_columns_reports_first_missing(people_df: pd.DataFrame) -> None:
    with pytest.raises(ColumnNotFoundError) as ctx:
        require_columns(people_df, ["age", "salary", "bonus"], step="mean:x")

    err = ctx.value
    assert err.column == "salary"
    assert err.context["step"] == "mean:x"
    assert "age" in err.available


def test_require_columns_passes_when_present(people_df: pd.DataFrame) -> None:
    require_columns(people_df, ["age", "sex"])


def test_require_numeric_rejects_strings(people_df: pd.DataFrame) -> None:
    assert require_numeric(people_df, "age").dtype == "float64"

    with pytest.raises(ComputationError) as ctx:
        require_numeric(people_df, "sex", step="sum:s")

    assert ctx.value.code == "computation_type_mismatch"
    assert ctx.value.context["column"] == "sex"


def test_append_columns_keeps_order_and_input(people_df: pd.DataFrame) -> None:
    before = people_df.copy()
    a = pd.DataFrame({"feature_a": range(6)}, index=people_df.index)
    b = pd.DataFrame({"feature_b": range(6)}, index=people_df.index)

    out = append_columns(people_df, [a, b])

    assert list(out.columns) == [*people_df.columns, "feature_a", "feature_b"]
    pd.testing.assert_frame_equal(people_df, before)


def test_append_columns_never_overwrites(people_df: pd.DataFrame) -> None:
    clash = pd.DataFrame({"age": range(6)}, index=people_df.index)

    with pytest.raises(ComputationError) as ctx:
        append_columns(people_df, [clash])

    assert ctx.value.code == "computation_duplicate_column"
    assert ctx.value.context["columns"] == ["age"]


def test_append_columns_without_frames_returns_copy(people_df: pd.DataFrame) -> None:
    out = append_columns(people_df, [])

    assert out is not people_df
    pd.testing.assert_frame_equal(out, people_df)
