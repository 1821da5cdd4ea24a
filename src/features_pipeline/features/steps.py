from __future__ import annotations

import math
from typing import Annotated, Any, ClassVar, Literal, Mapping, Sequence, Union

import numpy as np
import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from features_pipeline.exceptions import ComputationError, ConfigError
from features_pipeline.logging_config import get_logger
from features_pipeline.table import (
    ColumnKind,
    column_kind,
    feature_column_name,
    require_columns,
    require_numeric,
    sorted_values,
)

logger = get_logger(__name__)
_LOCATION_PREFIX = __name__


def _check_column_ref(value: str) -> str:
    if not value or value != value.strip():
        raise ValueError(
            "column references must be non-empty names without surrounding "
            f"whitespace, got {value!r}"
        )
    return value


class _StepBase(BaseModel):
    """Behaviour shared by every feature step variant.

    A step is an immutable descriptor. `compute` is a pure function of the
    Table it is given: it returns a frame holding only the new column(s),
    indexed like the input, and never touches the input itself.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    function: str

    @property
    def label(self) -> str:
        """Short identifier used in logs and error context, e.g. 'mean:avg_age'."""
        return f"{self.function}:{getattr(self, 'name', None)}"

    def referenced_columns(self) -> tuple[str, ...]:
        raise NotImplementedError

    def output_columns(self) -> tuple[str, ...]:
        """Output column names known before the step runs."""
        return ()

    def output_prefixes(self) -> tuple[str, ...]:
        """Prefixes of output names that are only known once data is seen."""
        return ()

    def can_produce(self, column: str) -> bool:
        return column in self.output_columns() or any(
            column.startswith(prefix) for prefix in self.output_prefixes()
        )

    def compute(self, table: pd.DataFrame) -> pd.DataFrame:
        """Validate referenced columns, then compute the new column(s)."""
        require_columns(
            table,
            self.referenced_columns(),
            step=self.label,
            location=f"{_LOCATION_PREFIX}.{type(self).__name__}.compute",
        )
        return self._compute(table)

    def _compute(self, table: pd.DataFrame) -> pd.DataFrame:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Broadcast aggregations
# ---------------------------------------------------------------------------


class _AggregationStep(_StepBase):
    """Windowed aggregate: one value per group, repeated on every row of the group.

    An empty `group_by` aggregates over the whole column and broadcasts the
    single value to all rows. Null group keys form their own group.
    """

    column: str
    group_by: tuple[str, ...] = ()
    name: str

    numeric_only: ClassVar[bool] = True
    kernel: ClassVar[str] = ""

    @field_validator("column", "name")
    @classmethod
    def _check_refs(cls, value: str) -> str:
        return _check_column_ref(value)

    @field_validator("group_by", mode="before")
    @classmethod
    def _dedupe_group_by(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        # A set of column refs: first occurrence wins, order is kept.
        return tuple(dict.fromkeys(value))

    @field_validator("group_by")
    @classmethod
    def _check_group_by(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for item in value:
            _check_column_ref(item)
        return value

    def referenced_columns(self) -> tuple[str, ...]:
        return (self.column, *self.group_by)

    def output_columns(self) -> tuple[str, ...]:
        return (feature_column_name(self.name),)

    def _compute(self, table: pd.DataFrame) -> pd.DataFrame:
        location = f"{_LOCATION_PREFIX}.{type(self).__name__}._compute"
        if self.numeric_only:
            values = require_numeric(table, self.column, step=self.label, location=location)
            if column_kind(values) is ColumnKind.BOOLEAN:
                values = values.astype("float64")
        else:
            values = table[self.column]

        if self.group_by:
            keys: list[Any] = [table[c] for c in self.group_by]
        else:
            # Global aggregation is a grouped one over a single constant key.
            keys = [np.zeros(len(table), dtype=np.int8)]

        grouped = values.groupby(keys, dropna=False, sort=False, observed=True)
        result = grouped.transform(self.kernel)
        return result.rename(self.output_columns()[0]).to_frame()


class MeanStep(_AggregationStep):
    function: Literal["mean"] = "mean"
    kernel: ClassVar[str] = "mean"


class SumStep(_AggregationStep):
    """Sum of non-null values; an all-null group sums to 0."""

    function: Literal["sum"] = "sum"
    kernel: ClassVar[str] = "sum"


class MaxStep(_AggregationStep):
    function: Literal["max"] = "max"
    kernel: ClassVar[str] = "max"


class MinStep(_AggregationStep):
    function: Literal["min"] = "min"
    kernel: ClassVar[str] = "min"


class CountStep(_AggregationStep):
    """Number of rows in the group, null values included."""

    function: Literal["count"] = "count"
    numeric_only: ClassVar[bool] = False
    kernel: ClassVar[str] = "size"


class CountDistinctStep(_AggregationStep):
    """Number of distinct non-null values in the group."""

    function: Literal["count_distinct"] = "count_distinct"
    numeric_only: ClassVar[bool] = False
    kernel: ClassVar[str] = "nunique"


# ---------------------------------------------------------------------------
# Elementwise steps
# ---------------------------------------------------------------------------


class RatioStep(_StepBase):
    """numerator / denominator, null where the denominator is 0 or either side is null."""

    function: Literal["ratio"] = "ratio"
    numerator: str
    denominator: str
    name: str

    @field_validator("numerator", "denominator", "name")
    @classmethod
    def _check_refs(cls, value: str) -> str:
        return _check_column_ref(value)

    def referenced_columns(self) -> tuple[str, ...]:
        return (self.numerator, self.denominator)

    def output_columns(self) -> tuple[str, ...]:
        return (feature_column_name(self.name),)

    def _compute(self, table: pd.DataFrame) -> pd.DataFrame:
        location = f"{_LOCATION_PREFIX}.RatioStep._compute"
        num = require_numeric(table, self.numerator, step=self.label, location=location)
        den = require_numeric(table, self.denominator, step=self.label, location=location)
        num = num.astype("float64")
        den = den.astype("float64")

        zero_den = den.eq(0)
        n_zero_den = int(zero_den.sum())
        if n_zero_den > 0:
            logger.warning(
                "Zero denominator encountered when computing ratio feature",
                extra={
                    "step": self.label,
                    "numerator": self.numerator,
                    "denominator": self.denominator,
                    "n_zero_denominator": n_zero_den,
                },
            )

        result = num / den.mask(zero_den)
        return result.rename(self.output_columns()[0]).to_frame()


class ThresholdStep(_StepBase):
    """`column > threshold` (gt) or `column < threshold` (lt); null stays null."""

    function: Literal["threshold"] = "threshold"
    column: str
    threshold: float
    comparator: Literal["gt", "lt"]
    name: str

    @field_validator("column", "name")
    @classmethod
    def _check_refs(cls, value: str) -> str:
        return _check_column_ref(value)

    @field_validator("threshold")
    @classmethod
    def _check_finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError(f"threshold must be a finite number, got {value!r}")
        return value

    def referenced_columns(self) -> tuple[str, ...]:
        return (self.column,)

    def output_columns(self) -> tuple[str, ...]:
        return (feature_column_name(self.name),)

    def _compute(self, table: pd.DataFrame) -> pd.DataFrame:
        values = require_numeric(
            table,
            self.column,
            step=self.label,
            location=f"{_LOCATION_PREFIX}.ThresholdStep._compute",
        )
        # Nullable Float64 keeps nulls as <NA> through the comparison.
        numeric = values.astype("Float64")
        if self.comparator == "gt":
            result = numeric > self.threshold
        else:
            result = numeric < self.threshold
        return result.astype("boolean").rename(self.output_columns()[0]).to_frame()


class OneHotEncodeStep(_StepBase):
    """One boolean column per observed category of each listed column.

    Output columns are named `<column><separator><category>`. Categories are
    ordered by value; `drop_first` omits the smallest one. Null rows get a
    `<column><separator>null` indicator unless `drop_nulls` is set, in which
    case they are all-False.
    """

    function: Literal["ohe"] = "ohe"
    columns: tuple[str, ...] = Field(min_length=1)
    drop_first: bool = False
    drop_nulls: bool = False
    separator: str = "_"
    name: str | None = None

    @field_validator("columns")
    @classmethod
    def _check_columns(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for item in value:
            _check_column_ref(item)
        return tuple(dict.fromkeys(value))

    @field_validator("separator", mode="before")
    @classmethod
    def _default_separator(cls, value: Any) -> Any:
        return "_" if value is None else value

    @property
    def label(self) -> str:
        return f"ohe:{self.name or '+'.join(self.columns)}"

    def referenced_columns(self) -> tuple[str, ...]:
        return self.columns

    def output_prefixes(self) -> tuple[str, ...]:
        return tuple(f"{column}{self.separator}" for column in self.columns)

    def _compute(self, table: pd.DataFrame) -> pd.DataFrame:
        outputs: dict[str, np.ndarray] = {}

        for column in self.columns:
            series = table[column]
            nulls = series.isna()
            categories = sorted_values(series[~nulls].unique())
            if self.drop_first:
                categories = categories[1:]

            indicators: list[tuple[str, pd.Series]] = [
                (f"{column}{self.separator}{category}", series.eq(category))
                for category in categories
            ]
            if not self.drop_nulls and bool(nulls.any()):
                indicators.append((f"{column}{self.separator}null", nulls))

            for out_name, indicator in indicators:
                if out_name in outputs:
                    raise ComputationError(
                        f"One-hot encoding of '{column}' produces duplicate column '{out_name}'",
                        code="computation_duplicate_category",
                        context={"step": self.label, "column": column, "output": out_name},
                        location=f"{_LOCATION_PREFIX}.OneHotEncodeStep._compute",
                    )
                outputs[out_name] = indicator.fillna(False).to_numpy(dtype=bool)

        return pd.DataFrame(outputs, index=table.index)


# ---------------------------------------------------------------------------
# The closed union + helpers
# ---------------------------------------------------------------------------

FeatureStep = Annotated[
    Union[
        MeanStep,
        SumStep,
        MaxStep,
        MinStep,
        CountStep,
        CountDistinctStep,
        RatioStep,
        ThresholdStep,
        OneHotEncodeStep,
    ],
    Field(discriminator="function"),
]

STEP_TYPES: dict[str, type[_StepBase]] = {
    "mean": MeanStep,
    "sum": SumStep,
    "max": MaxStep,
    "min": MinStep,
    "count": CountStep,
    "count_distinct": CountDistinctStep,
    "ratio": RatioStep,
    "threshold": ThresholdStep,
    "ohe": OneHotEncodeStep,
}

_STEP_ADAPTER: TypeAdapter[Any] = TypeAdapter(FeatureStep)


def parse_step(data: Mapping[str, Any], *, index: int | None = None) -> FeatureStep:
    """Build a FeatureStep from a mapping such as one YAML list entry.

    Raises
    ------
    ConfigError
        If the `function` tag is unknown or the fields are malformed.
    """
    try:
        return _STEP_ADAPTER.validate_python(dict(data))
    except ValidationError as exc:
        raise ConfigError(
            f"Invalid feature step definition: {dict(data)!r}",
            code="config_invalid_step",
            cause=exc,
            context={
                "step_index": index,
                "function": data.get("function"),
                "errors": exc.errors(include_url=False),
            },
            location=f"{_LOCATION_PREFIX}.parse_step",
        ) from exc


def validate_steps(steps: Sequence[FeatureStep]) -> None:
    """Check step-level invariants that span the whole sequence.

    Raises
    ------
    ConfigError
        If two steps share a name.
    """
    seen: dict[str, int] = {}
    for index, step in enumerate(steps):
        name = getattr(step, "name", None)
        if name is None:
            continue
        if name in seen:
            raise ConfigError(
                f"Duplicate feature name '{name}'",
                code="config_duplicate_feature_name",
                context={"name": name, "first_index": seen[name], "duplicate_index": index},
                location=f"{_LOCATION_PREFIX}.validate_steps",
            )
        seen[name] = index
