from __future__ import annotations

import logging

import numpy as np
import pandas as pd
import pytest

from features_pipeline.exceptions import ColumnNotFoundError, ComputationError, ConfigError
from features_pipeline.features.steps import (
    STEP_TYPES,
    CountDistinctStep,
    CountStep,
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


def _values(frame: pd.DataFrame, column: str) -> list:
    return frame[column].tolist()


# ---------------------------------------------------------------------------
# Broadcast aggregations
# ---------------------------------------------------------------------------


def test_mean_by_group_broadcasts_to_rows(people_df: pd.DataFrame) -> None:
    step = MeanStep(column="age", group_by=["workclass"], name="avg_age")

    out = step.compute(people_df)

    assert list(out.columns) == ["feature_avg_age"]
    # Null age is skipped; the null workclass row is its own group.
    assert _values(out, "feature_avg_age") == [27.5, 45.0, 27.5, 45.0, 45.0, 27.5]
    assert out.index.equals(people_df.index)


def test_global_mean_is_constant(people_df: pd.DataFrame) -> None:
    out = MeanStep(column="age", name="avg_age").compute(people_df)

    assert _values(out, "feature_avg_age") == [38.0] * 6


def test_sum_treats_all_null_group_as_zero(people_df: pd.DataFrame) -> None:
    out = SumStep(column="gain", group_by=["workclass"], name="g").compute(people_df)

    assert _values(out, "feature_g") == [130.0, 450.0, 130.0, 0.0, 450.0, 130.0]


def test_max_and_min(people_df: pd.DataFrame) -> None:
    max_out = MaxStep(column="age", name="oldest").compute(people_df)
    min_out = MinStep(column="age", group_by="sex", name="youngest").compute(people_df)

    assert _values(max_out, "feature_oldest") == [55.0] * 6
    assert _values(min_out, "feature_youngest") == [25.0, 30.0, 30.0, 25.0, 55.0, 30.0]


def test_count_includes_null_values(people_df: pd.DataFrame) -> None:
    grouped = CountStep(column="age", group_by=["workclass"], name="n").compute(people_df)
    total = CountStep(column="age", name="n").compute(people_df)

    assert _values(grouped, "feature_n") == [3, 2, 3, 1, 2, 3]
    assert _values(total, "feature_n") == [6] * 6


def test_count_distinct_excludes_nulls(people_df: pd.DataFrame) -> None:
    grouped = CountDistinctStep(column="sex", group_by=["workclass"], name="k").compute(people_df)
    total = CountDistinctStep(column="sex", name="k").compute(people_df)

    assert _values(grouped, "feature_k") == [2, 1, 2, 1, 1, 2]
    assert _values(total, "feature_k") == [2] * 6


def test_aggregation_over_multiple_keys(people_df: pd.DataFrame) -> None:
    out = CountStep(column="age", group_by=["workclass", "sex"], name="n").compute(people_df)

    # (private, M), (gov, F), (private, F), (None, M), (gov, None), (private, F)
    assert _values(out, "feature_n") == [1, 1, 2, 1, 1, 2]


def test_group_by_is_deduplicated_in_order() -> None:
    step = MeanStep(column="age", group_by=["sex", "workclass", "sex"], name="m")

    assert step.group_by == ("sex", "workclass")
    assert step.referenced_columns() == ("age", "sex", "workclass")


def test_numeric_aggregation_rejects_string_column(people_df: pd.DataFrame) -> None:
    with pytest.raises(ComputationError) as ctx:
        MeanStep(column="sex", name="m").compute(people_df)

    assert ctx.value.code == "computation_type_mismatch"
    assert ctx.value.context["step"] == "mean:m"


def test_missing_group_column_raises_column_not_found(people_df: pd.DataFrame) -> None:
    with pytest.raises(ColumnNotFoundError) as ctx:
        SumStep(column="gain", group_by=["country"], name="g").compute(people_df)

    assert ctx.value.column == "country"
    assert ctx.value.context["step"] == "sum:g"


# ---------------------------------------------------------------------------
# Elementwise steps
# ---------------------------------------------------------------------------


def test_ratio_is_null_on_zero_denominator(
    people_df: pd.DataFrame,
    caplog: pytest.LogCaptureFixture,
) -> None:
    step = RatioStep(numerator="gain", denominator="hours", name="gph")

    with caplog.at_level(logging.WARNING, logger="features_pipeline"):
        out = step.compute(people_df)

    values = out["feature_gph"].to_numpy()
    np.testing.assert_allclose(values, [2.5, np.nan, 0.0, np.nan, 10.0, 3.0])
    assert out["feature_gph"].dtype == "float64"

    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert any(getattr(r, "n_zero_denominator", None) == 1 for r in warnings)


def test_ratio_without_zero_denominator_does_not_warn(
    caplog: pytest.LogCaptureFixture,
) -> None:
    table = pd.DataFrame({"a": [1, 2], "b": [2, 4]})

    with caplog.at_level(logging.WARNING, logger="features_pipeline"):
        out = RatioStep(numerator="a", denominator="b", name="r").compute(table)

    assert _values(out, "feature_r") == [0.5, 0.5]
    assert not [r for r in caplog.records if r.levelno >= logging.WARNING]


@pytest.mark.parametrize(
    "comparator, expected",
    [
        ("gt", [False, True, pd.NA, True, True, False]),
        ("lt", [True, False, pd.NA, False, False, False]),
    ],
)
def test_threshold_keeps_nulls(
    people_df: pd.DataFrame,
    comparator: str,
    expected: list,
) -> None:
    out = ThresholdStep(column="age", threshold=30, comparator=comparator, name="t").compute(people_df)

    pd.testing.assert_series_equal(
        out["feature_t"],
        pd.Series(expected, dtype="boolean", name="feature_t"),
    )


def test_threshold_must_be_finite() -> None:
    with pytest.raises(ValueError):
        ThresholdStep(column="age", threshold=float("inf"), comparator="gt", name="t")


# ---------------------------------------------------------------------------
# One-hot encoding
# ---------------------------------------------------------------------------


def test_ohe_emits_sorted_categories_and_null_indicator(people_df: pd.DataFrame) -> None:
    out = OneHotEncodeStep(columns=["sex"]).compute(people_df)

    assert list(out.columns) == ["sex_F", "sex_M", "sex_null"]
    assert all(dtype == bool for dtype in out.dtypes)
    assert _values(out, "sex_F") == [False, True, True, False, False, True]
    assert _values(out, "sex_M") == [True, False, False, True, False, False]
    assert _values(out, "sex_null") == [False, False, False, False, True, False]


def test_ohe_drop_first_drops_smallest_category(people_df: pd.DataFrame) -> None:
    out = OneHotEncodeStep(columns=["sex"], drop_first=True).compute(people_df)

    assert list(out.columns) == ["sex_M", "sex_null"]


def test_ohe_drop_nulls_leaves_null_rows_all_false(people_df: pd.DataFrame) -> None:
    out = OneHotEncodeStep(columns=["sex"], drop_nulls=True).compute(people_df)

    assert list(out.columns) == ["sex_F", "sex_M"]
    assert not out.iloc[4].any()


def test_ohe_multiple_columns_and_separator(people_df: pd.DataFrame) -> None:
    step = OneHotEncodeStep(columns=["sex", "workclass"], separator="=", drop_nulls=True)

    out = step.compute(people_df)

    assert list(out.columns) == ["sex=F", "sex=M", "workclass=gov", "workclass=private"]
    assert step.label == "ohe:sex+workclass"
    assert step.can_produce("workclass=self")
    assert not step.can_produce("feature_x")


def test_ohe_duplicate_output_name_is_an_error() -> None:
    table = pd.DataFrame({"c": ["null", None]})

    with pytest.raises(ComputationError) as ctx:
        OneHotEncodeStep(columns=["c"]).compute(table)

    assert ctx.value.code == "computation_duplicate_category"


def test_ohe_requires_at_least_one_column() -> None:
    with pytest.raises(ValueError):
        OneHotEncodeStep(columns=[])


# ---------------------------------------------------------------------------
# Parsing and validation
# ---------------------------------------------------------------------------


def test_parse_step_dispatches_on_function_tag() -> None:
    for tag, cls in STEP_TYPES.items():
        payload = {
            "ratio": {"numerator": "a", "denominator": "b", "name": "x"},
            "threshold": {"column": "a", "threshold": 1, "comparator": "gt", "name": "x"},
            "ohe": {"columns": ["a"]},
        }.get(tag, {"column": "a", "name": "x"})

        step = parse_step({"function": tag, **payload})

        assert isinstance(step, cls)
        assert step.function == tag


@pytest.mark.parametrize(
    "data",
    [
        {"function": "median", "column": "age", "name": "m"},
        {"function": "mean", "name": "m"},
        {"function": "mean", "column": "age", "name": "m", "extra": 1},
        {"function": "mean", "column": " age", "name": "m"},
        {"function": "threshold", "column": "age", "threshold": 1, "comparator": "ge", "name": "t"},
    ],
)
def test_parse_step_rejects_malformed_definitions(data: dict) -> None:
    with pytest.raises(ConfigError) as ctx:
        parse_step(data, index=3)

    assert ctx.value.code == "config_invalid_step"
    assert ctx.value.context["step_index"] == 3
    assert ctx.value.context["errors"]


def test_steps_are_immutable() -> None:
    step = MeanStep(column="age", name="m")

    with pytest.raises(ValueError):
        step.column = "hours"  # type: ignore[misc]


def test_validate_steps_rejects_duplicate_names() -> None:
    steps = [
        MeanStep(column="age", name="x"),
        OneHotEncodeStep(columns=["sex"]),
        SumStep(column="gain", name="x"),
    ]

    with pytest.raises(ConfigError) as ctx:
        validate_steps(steps)

    assert ctx.value.code == "config_duplicate_feature_name"
    assert ctx.value.context == {"name": "x", "first_index": 0, "duplicate_index": 2}
