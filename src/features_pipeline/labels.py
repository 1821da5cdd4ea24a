"""
Target (label) handling.

`LabelEncoder` turns a categorical target column into integer codes that
depend only on the set of distinct values: they are sorted (ascending for
numbers, lexicographic for strings) and numbered from 0. An explicit
category order can be supplied instead.

`LabelsPipeline` is the YAML-driven wrapper, with a single step kind:

    steps:
      - function: existing_target
        column: income
        name: label
        encode: true
        drop_original: false
        null_policy: fail      # or "drop"
        categories: null       # or an explicit order, e.g. ["<=50K", ">50K"]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Mapping, Sequence

import pandas as pd
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from features_pipeline.config import load_yaml_mapping
from features_pipeline.exceptions import ComputationError, ConfigError, EncodingError
from features_pipeline.logging_config import get_logger
from features_pipeline.table import require_columns, sorted_values

logger = get_logger(__name__)
_LOCATION_PREFIX = __name__


class NullPolicy(str, Enum):
    """What to do with null target values."""

    FAIL = "fail"
    DROP = "drop"


def _to_builtin(value: Any) -> Any:
    # numpy scalars -> plain Python so mappings serialize cleanly.
    return value.item() if hasattr(value, "item") else value


@dataclass(frozen=True)
class LabelEncoding:
    """Result of encoding one target column."""

    column: str
    mapping: dict[Any, int]
    codes: pd.Series
    dropped_rows: pd.Index = field(default_factory=lambda: pd.Index([]))

    @property
    def n_classes(self) -> int:
        return len(self.mapping)

    def inverse_mapping(self) -> dict[int, Any]:
        return {code: value for value, code in self.mapping.items()}


class LabelEncoder:
    """Deterministic value -> code mapping for a target column.

    Parameters
    ----------
    null_policy:
        "fail" (default) raises EncodingError on any null target value;
        "drop" removes those rows and reports them in `dropped_rows`.
    categories:
        Optional explicit category order. Codes follow this order, and a
        value outside it is an EncodingError.
    """

    def __init__(
        self,
        *,
        null_policy: NullPolicy | str = NullPolicy.FAIL,
        categories: Sequence[Any] | None = None,
    ) -> None:
        self.null_policy = NullPolicy(null_policy)
        self.categories = list(categories) if categories is not None else None

    def fit_mapping(self, values: pd.Series) -> dict[Any, int]:
        """Return the value -> code mapping for the non-null values of `values`."""
        if self.categories is not None:
            return {category: code for code, category in enumerate(self.categories)}

        distinct = [_to_builtin(v) for v in values.dropna().unique()]
        return {value: code for code, value in enumerate(sorted_values(distinct))}

    def encode(self, table: pd.DataFrame, column: str) -> LabelEncoding:
        """Encode `table[column]`.

        Raises
        ------
        ColumnNotFoundError
            If `column` is absent.
        EncodingError
            On a null value under the "fail" policy, or on a value outside
            the explicit category list.
        """
        location = f"{_LOCATION_PREFIX}.LabelEncoder.encode"
        require_columns(table, [column], location=location)

        series = table[column]
        nulls = series.isna()
        n_nulls = int(nulls.sum())
        dropped = pd.Index([])

        if n_nulls:
            if self.null_policy is NullPolicy.FAIL:
                raise EncodingError(
                    f"Target column '{column}' contains {n_nulls} null value(s)",
                    code="encoding_null_target",
                    context={
                        "column": column,
                        "n_nulls": n_nulls,
                        "example_rows": [_to_builtin(i) for i in series.index[nulls][:5]],
                    },
                    location=location,
                )
            dropped = series.index[nulls]
            series = series[~nulls]
            logger.warning(
                "Dropping rows with a null target",
                extra={"column": column, "n_dropped": n_nulls},
            )

        mapping = self.fit_mapping(series)
        codes = series.map(mapping)

        unknown = codes.isna()
        if bool(unknown.any()):
            unseen = sorted_values({_to_builtin(v) for v in series[unknown].unique()})
            raise EncodingError(
                f"Target column '{column}' has values outside the declared categories: {unseen}",
                code="encoding_unknown_category",
                context={
                    "column": column,
                    "unknown_values": unseen,
                    "categories": list(mapping),
                },
                location=location,
            )

        logger.info(
            "Encoded target column",
            extra={"column": column, "mapping": {str(k): v for k, v in mapping.items()}},
        )
        return LabelEncoding(
            column=column,
            mapping=mapping,
            codes=codes.astype("int64"),
            dropped_rows=dropped,
        )


class ExistingTargetStep(BaseModel):
    """Use an existing column as the label, optionally encoded and renamed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    function: Literal["existing_target"] = "existing_target"
    column: str
    name: str
    encode: bool = True
    drop_original: bool = False
    null_policy: NullPolicy = NullPolicy.FAIL
    categories: list[bool | int | float | str] | None = None

    @field_validator("column", "name")
    @classmethod
    def _check_names(cls, value: str) -> str:
        if not value or value != value.strip():
            raise ValueError(f"column names must be non-empty and unpadded, got {value!r}")
        return value

    @model_validator(mode="after")
    def _check_invariants(self) -> ExistingTargetStep:
        if self.name == self.column:
            raise ValueError("name must differ from column")
        if self.categories is not None:
            if not self.categories:
                raise ValueError("categories must not be empty when given")
            if len(set(self.categories)) != len(self.categories):
                raise ValueError("categories must not contain duplicates")
        return self

    @property
    def label(self) -> str:
        return f"{self.function}:{self.name}"

    def encoder(self) -> LabelEncoder:
        return LabelEncoder(null_policy=self.null_policy, categories=self.categories)

    def apply(self, table: pd.DataFrame) -> tuple[pd.DataFrame, LabelEncoding | None]:
        """Return a new Table holding the label column, plus the encoding if any."""
        location = f"{_LOCATION_PREFIX}.ExistingTargetStep.apply"
        require_columns(table, [self.column], step=self.label, location=location)

        if self.name in table.columns:
            raise ComputationError(
                f"Label column '{self.name}' already exists in the table",
                code="computation_duplicate_column",
                context={"step": self.label, "columns": [self.name]},
                location=location,
            )

        encoding: LabelEncoding | None = None
        if self.encode:
            try:
                encoding = self.encoder().encode(table, self.column)
            except EncodingError as exc:
                raise exc.add_context(step=self.label)
            result = table.drop(index=encoding.dropped_rows)
            result = result.assign(**{self.name: encoding.codes})
        else:
            result = table.assign(**{self.name: table[self.column]})

        if self.drop_original:
            result = result.drop(columns=[self.column])
        return result, encoding


@dataclass(frozen=True)
class LabelsResult:
    table: pd.DataFrame
    target_column: str
    encodings: tuple[LabelEncoding, ...] = ()

    @property
    def target(self) -> pd.Series:
        return self.table[self.target_column]


@dataclass(frozen=True)
class LabelsPipeline:
    """Ordered label steps; the last step's `name` is the classification target."""

    steps: tuple[ExistingTargetStep, ...]
    description: str | None = None
    source_path: Path | None = None

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def target_column(self) -> str:
        return self.steps[-1].name

    @property
    def source_columns(self) -> list[str]:
        return [step.column for step in self.steps]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.description:
            data["description"] = self.description
        data["steps"] = [step.model_dump(mode="json") for step in self.steps]
        return data

    def apply(self, table: pd.DataFrame) -> LabelsResult:
        result = table
        encodings: list[LabelEncoding] = []
        for step in self.steps:
            result, encoding = step.apply(result)
            if encoding is not None:
                encodings.append(encoding)
        return LabelsResult(
            table=result,
            target_column=self.target_column,
            encodings=tuple(encodings),
        )

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        *,
        source_path: Path | None = None,
    ) -> LabelsPipeline:
        location = f"{_LOCATION_PREFIX}.LabelsPipeline.from_mapping"
        raw_steps = data.get("steps")
        if not isinstance(raw_steps, list) or not raw_steps:
            raise ConfigError(
                "Labels pipeline must define a non-empty 'steps' list",
                code="config_structure_error",
                context={"config_path": str(source_path) if source_path else None},
                location=location,
            )

        steps: list[ExistingTargetStep] = []
        seen: dict[str, int] = {}
        for index, raw in enumerate(raw_steps):
            try:
                step = ExistingTargetStep.model_validate(raw)
            except ValidationError as exc:
                raise ConfigError(
                    f"Invalid labels step definition: {raw!r}",
                    code="config_invalid_step",
                    cause=exc,
                    context={"step_index": index, "errors": exc.errors(include_url=False)},
                    location=location,
                ) from exc

            if step.name in seen:
                raise ConfigError(
                    f"Duplicate label name '{step.name}'",
                    code="config_duplicate_feature_name",
                    context={"name": step.name, "first_index": seen[step.name], "duplicate_index": index},
                    location=location,
                )
            seen[step.name] = index
            steps.append(step)

        description = data.get("description")
        return cls(
            steps=tuple(steps),
            description=str(description) if description is not None else None,
            source_path=source_path,
        )


def load_labels_pipeline(path: str | Path) -> LabelsPipeline:
    """Load the labels steps YAML at `path`."""
    path = Path(path)
    data = load_yaml_mapping(
        path,
        location=f"{_LOCATION_PREFIX}.load_labels_pipeline",
        extra_context={"kind": "labels"},
    )
    pipeline = LabelsPipeline.from_mapping(data, source_path=path)
    logger.info(
        "Loaded labels pipeline",
        extra={"path": str(path), "n_steps": len(pipeline), "target": pipeline.target_column},
    )
    return pipeline
