from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml

from features_pipeline.config import load_yaml_mapping
from features_pipeline.exceptions import ConfigError
from features_pipeline.features.steps import FeatureStep, parse_step, validate_steps
from features_pipeline.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class FeaturePipeline:
    """An ordered, validated sequence of feature steps loaded from YAML.

    YAML shape:

        description: "Adult income features"
        steps:
          - function: mean
            column: age
            group_by: [workclass]
            name: mean_age_by_workclass
          - function: ohe
            columns: [sex]
            drop_nulls: true
    """

    steps: tuple[FeatureStep, ...]
    description: str | None = None
    source_path: Path | None = None

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def labels(self) -> list[str]:
        return [step.label for step in self.steps]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.description:
            data["description"] = self.description
        data["steps"] = [step.model_dump(mode="json") for step in self.steps]
        return data

    def to_yaml_text(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False)

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        *,
        source_path: Path | None = None,
    ) -> FeaturePipeline:
        """Parse and validate a `{description, steps}` mapping.

        Raises
        ------
        ConfigError
            If `steps` is missing or not a list, a step is malformed, or two
            steps share a name.
        """
        raw_steps = data.get("steps")
        if not isinstance(raw_steps, Sequence) or isinstance(raw_steps, (str, bytes)):
            raise ConfigError(
                "Feature pipeline must define a 'steps' list",
                code="config_structure_error",
                context={
                    "config_path": str(source_path) if source_path else None,
                    "got": type(raw_steps).__name__,
                },
                location="features_pipeline.features.pipeline_config.FeaturePipeline.from_mapping",
            )

        steps: list[FeatureStep] = []
        for index, raw in enumerate(raw_steps):
            if not isinstance(raw, Mapping):
                raise ConfigError(
                    f"Feature step #{index} must be a mapping, got {type(raw).__name__}",
                    code="config_invalid_step",
                    context={"step_index": index},
                    location="features_pipeline.features.pipeline_config.FeaturePipeline.from_mapping",
                )
            steps.append(parse_step(raw, index=index))

        validate_steps(steps)

        description = data.get("description")
        return cls(
            steps=tuple(steps),
            description=str(description) if description is not None else None,
            source_path=source_path,
        )


def load_feature_pipeline(path: str | Path) -> FeaturePipeline:
    """Load the feature steps YAML at `path`.

    Every step is validated here, before any data is read.
    """
    path = Path(path)
    data = load_yaml_mapping(
        path,
        location="features_pipeline.features.pipeline_config.load_feature_pipeline",
        extra_context={"kind": "features"},
    )
    pipeline = FeaturePipeline.from_mapping(data, source_path=path)

    logger.info(
        "Loaded feature pipeline",
        extra={"path": str(path), "n_steps": len(pipeline), "steps": pipeline.labels},
    )
    return pipeline
