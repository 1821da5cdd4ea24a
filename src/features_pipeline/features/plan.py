from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from features_pipeline.exceptions import ConfigError
from features_pipeline.features.steps import FeatureStep

_LOCATION_PREFIX = __name__


@dataclass(frozen=True)
class ExecutionPlan:
    """Partition of a step sequence into independent and dependent tiers.

    Indices refer to positions in the declared step sequence and are kept in
    declared order within each tier.

    - independent: steps that only reference columns of the base Table.
      They may run concurrently against the same read-only snapshot.
    - dependent: steps that reference a column produced by an earlier step.
      They run one by one, in declared order, after every independent step
      has been merged.
    """

    independent: tuple[int, ...]
    dependent: tuple[int, ...]

    @property
    def n_steps(self) -> int:
        return len(self.independent) + len(self.dependent)

    def is_dependent(self, index: int) -> bool:
        return index in self.dependent

    @classmethod
    def build(
        cls,
        steps: Sequence[FeatureStep],
        base_columns: Iterable[str],
    ) -> ExecutionPlan:
        """Classify each step by scanning its references against earlier outputs.

        A reference is a dependency when the column is absent from the base
        Table and some earlier step can produce it. References to columns that
        neither exist nor are produced leave the step independent; the step
        then fails with ColumnNotFoundError when it executes.

        Raises
        ------
        ConfigError
            If a step's statically known output collides with a base column or
            with the output of an earlier step.
        """
        base = set(base_columns)
        produced: dict[str, int] = {}
        independent: list[int] = []
        dependent: list[int] = []

        for index, step in enumerate(steps):
            missing = [c for c in step.referenced_columns() if c not in base]
            depends_on = [
                c
                for c in missing
                if any(earlier.can_produce(c) for earlier in steps[:index])
            ]
            (dependent if depends_on else independent).append(index)

            for column in step.output_columns():
                if column in base:
                    raise ConfigError(
                        f"Output column '{column}' of step '{step.label}' already exists in the table",
                        code="config_output_collision",
                        context={"step": step.label, "step_index": index, "column": column},
                        location=f"{_LOCATION_PREFIX}.ExecutionPlan.build",
                    )
                if column in produced:
                    raise ConfigError(
                        f"Output column '{column}' is produced by more than one step",
                        code="config_output_collision",
                        context={
                            "step": step.label,
                            "step_index": index,
                            "first_index": produced[column],
                            "column": column,
                        },
                        location=f"{_LOCATION_PREFIX}.ExecutionPlan.build",
                    )
                produced[column] = index

        return cls(independent=tuple(independent), dependent=tuple(dependent))
