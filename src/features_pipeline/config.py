from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from features_pipeline.exceptions import ConfigError

# ----------------------------------------------------------------------
# Environment + discovery defaults
# ----------------------------------------------------------------------

# Example: FEATURES_PIPELINE_ENV, FEATURES_PIPELINE_ENGINE__STRATEGY, ...
ENV_PREFIX = "FEATURES_PIPELINE_"
ENV_ENV_NAME = f"{ENV_PREFIX}ENV"
ENV_CONFIG_PATH = f"{ENV_PREFIX}CONFIG_PATH"

DEFAULT_ENV = os.getenv(ENV_ENV_NAME, "dev").lower()
DEFAULT_CONFIG_FILENAMES = ("config.yaml", "config.yml")

StrategyName = Literal["sequential", "parallel_batch", "parallel_pool"]
ClassifierKind = Literal[
    "logistic_regression",
    "random_forest",
    "decision_tree",
    "gradient_boosting",
]


# ----------------------------------------------------------------------
# Section models
# ----------------------------------------------------------------------


class PathsConfig(BaseModel):
    """Filesystem-related configuration: where inputs are resolved and outputs go."""

    model_config = ConfigDict(frozen=True)

    base_dir: Path = Path(".")
    data_dir: Path = Path("data")
    output_dir: Path = Path("data/output")

    def resolve(self, base: Path | None = None) -> PathsConfig:
        """Return a copy of this config with all paths made absolute."""
        base_dir = Path(base) if base is not None else self.base_dir
        return PathsConfig(
            base_dir=base_dir,
            data_dir=(base_dir / self.data_dir).resolve(),
            output_dir=(base_dir / self.output_dir).resolve(),
        )


class InputsConfig(BaseModel):
    """Locations of the dataset and of the feature / label step definitions."""

    model_config = ConfigDict(frozen=True)

    data: Path | None = Field(None, description="CSV or Parquet dataset.")
    features: Path | None = Field(None, description="Feature pipeline YAML.")
    labels: Path | None = Field(None, description="Labels pipeline YAML.")
    separator: str = Field(",", min_length=1, description="CSV separator of the dataset.")


class EngineConfig(BaseModel):
    """How the TransformEngine executes independent feature steps."""

    model_config = ConfigDict(frozen=True)

    strategy: StrategyName = "sequential"
    max_workers: int = Field(4, gt=0, description="Thread count for the parallel_pool strategy.")
    n_jobs: int = Field(-1, description="joblib n_jobs for the parallel_batch strategy.")

    @model_validator(mode="after")
    def _check_n_jobs(self) -> EngineConfig:
        if self.n_jobs == 0:
            raise ValueError("engine.n_jobs must be non-zero (use -1 for all cores).")
        return self


class TrainingConfig(BaseModel):
    """Train/test split settings."""

    model_config = ConfigDict(frozen=True)

    random_seed: int = Field(42, ge=0, description="Random seed for reproducibility.")
    test_size: float = Field(
        0.2,
        gt=0.0,
        le=0.9,
        description="Fraction of rows reserved for the test partition.",
    )
    stratify: bool = Field(True, description="Stratify the split on the encoded label.")


class ClassifierConfig(BaseModel):
    """Which scikit-learn estimator backs the classifier capability."""

    model_config = ConfigDict(frozen=True)

    kind: ClassifierKind = "logistic_regression"
    params: dict[str, Any] = Field(default_factory=dict)
    feature_columns: list[str] | None = Field(
        None,
        description="Explicit feature matrix columns. If None, numeric/boolean columns are used.",
    )
    exclude_columns: list[str] = Field(default_factory=list)


class OutputConfig(BaseModel):
    """Run-directory artifacts."""

    model_config = ConfigDict(frozen=True)

    write_outputs: bool = True
    separator: str = Field(";", min_length=1)


class MlflowConfig(BaseModel):
    """Configuration for MLflow tracking (optional)."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(
        False,
        description="If True, pipeline runs log params/metrics to MLflow.",
    )
    tracking_uri: str | None = Field(
        None,
        description="MLflow tracking URI. If None, MLflow's default (./mlruns) is used.",
    )
    experiment_name: str | None = None
    run_name: str | None = None
    log_artifacts: bool = True


# ----------------------------------------------------------------------
# Top-level settings
# ----------------------------------------------------------------------


class AppConfig(BaseSettings):
    """Top-level application configuration.

    This reads values from (in order of precedence):

    1. Keyword arguments passed to the constructor (e.g. from a YAML file).
    2. Environment variables (prefixed with FEATURES_PIPELINE_).
    3. A .env file (if present).
    4. Default values declared in the model fields.

    Nested fields can be overridden via environment variables using the
    `env_nested_delimiter`:

        FEATURES_PIPELINE_ENGINE__STRATEGY=parallel_pool
        FEATURES_PIPELINE_ENGINE__MAX_WORKERS=8
        FEATURES_PIPELINE_TRAINING__TEST_SIZE=0.3
        FEATURES_PIPELINE_MLFLOW__ENABLED=true

    A YAML config file can either be flat:

        env: "prod"
        inputs:
          data: "data/adult.csv"
          features: "config/features.yaml"
          labels: "config/labels.yaml"
        engine:
          strategy: "parallel_batch"

    or hold environment-specific profiles (`dev:`, `prod:`, ...), in which
    case FEATURES_PIPELINE_ENV (or the `env` argument) selects the profile.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
        frozen=True,
    )

    _source_path: Path | None = PrivateAttr(default=None)
    _loaded_env: str | None = PrivateAttr(default=None)

    env: str = Field("dev", description="Environment name, e.g. 'dev', 'prod', 'test'.")
    log_level: str = Field("INFO", description="Default log level for the application.")
    experiment_name: str = Field(
        "features_pipeline",
        description="Human-readable name for the current experiment/run.",
    )

    paths: PathsConfig = PathsConfig()
    inputs: InputsConfig = InputsConfig()
    engine: EngineConfig = EngineConfig()
    training: TrainingConfig = TrainingConfig()
    classifier: ClassifierConfig = ClassifierConfig()
    output: OutputConfig = OutputConfig()
    mlflow: MlflowConfig = MlflowConfig()

    @model_validator(mode="after")
    def _check_invariants(self) -> AppConfig:
        """Cross-field validation and invariants."""
        if self.env.lower() in {"prod", "production"} and self.log_level.upper() == "DEBUG":
            raise ValueError(
                "In production environment, log_level should not be DEBUG. "
                "Use INFO or higher."
            )
        return self

    def resolved_paths(self) -> PathsConfig:
        """Return a PathsConfig with all paths fully resolved."""
        return self.paths.resolve(self.paths.base_dir)

    def resolve_input(self, kind: Literal["data", "features", "labels"]) -> Path:
        """Return the absolute path of an input file, checking that it exists.

        Relative paths are interpreted against `paths.base_dir`.

        Raises
        ------
        ConfigError
            If the input is not configured or the file does not exist.
        """
        raw = getattr(self.inputs, kind)
        if raw is None:
            raise ConfigError(
                f"No {kind} file configured (inputs.{kind})",
                code="config_missing_input",
                context={"kind": kind},
                location="features_pipeline.config.AppConfig.resolve_input",
            )

        path = Path(raw)
        if not path.is_absolute():
            path = (Path(self.paths.base_dir) / path).resolve()

        if not path.exists():
            raise ConfigError(
                f"{kind} file not found: {path}",
                code="config_file_not_found",
                context={"kind": kind, "path": str(path)},
                location="features_pipeline.config.AppConfig.resolve_input",
            )
        return path

    def to_dict(self, *, include_private: bool = False) -> dict[str, Any]:
        """Return a plain dict representation of the effective configuration."""
        data = self.model_dump(mode="json")
        if include_private:
            data["_source_path"] = str(self._source_path) if self._source_path else None
            data["_loaded_env"] = self._loaded_env
        return data

    def to_yaml(self, path: Path | str, *, include_private: bool = False) -> None:
        """Write the effective configuration to a YAML file.

        The run directory keeps a copy so every output can be traced back to
        the exact settings that produced it.
        """
        target = Path(path)
        dump_data = self.to_dict(include_private=include_private)
        target.write_text(
            yaml.safe_dump(dump_data, sort_keys=False),
            encoding="utf-8",
        )


# ----------------------------------------------------------------------
# Loading + caching
# ----------------------------------------------------------------------

_config_cache: AppConfig | None = None


def _discover_default_config_path() -> Path | None:
    """Return a default config path if one can be discovered.

    Priority:
    1. FEATURES_PIPELINE_CONFIG_PATH environment variable.
    2. ./config.yaml or ./config.yml in the current working directory.
    3. None, if nothing is found (env + defaults will be used).
    """
    env_path = os.getenv(ENV_CONFIG_PATH)
    if env_path:
        # A non-existent explicit path is reported by load_config.
        return Path(env_path)

    cwd = Path.cwd()
    for name in DEFAULT_CONFIG_FILENAMES:
        candidate = cwd / name
        if candidate.exists():
            return candidate

    return None


def _select_profile_from_yaml(
    loaded: Mapping[str, Any],
    effective_env: str,
) -> Mapping[str, Any]:
    """Use the `effective_env` subtree when present, else the whole mapping."""
    section = loaded.get(effective_env)
    if isinstance(section, Mapping):
        return section
    return loaded


def load_yaml_mapping(path: Path, *, location: str, extra_context: Mapping[str, Any] | None = None) -> Mapping[str, Any]:
    """Read a YAML file whose top level must be a mapping.

    Shared by the application config and the feature / labels step loaders.

    Raises
    ------
    ConfigError
        If the file is missing, unreadable, not valid YAML, or not a mapping.
    """
    context = {"config_path": str(path), **dict(extra_context or {})}

    if not path.exists():
        raise ConfigError(
            f"Config file not found: {path}",
            code="config_file_not_found",
            context=context,
            location=location,
        )

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(
            f"Failed to read config file: {path}",
            code="config_read_error",
            cause=exc,
            context=context,
            location=location,
        ) from exc

    try:
        loaded = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(
            f"Failed to parse YAML config file: {path}",
            code="config_parse_error",
            cause=exc,
            context=context,
            location=location,
        ) from exc

    if not isinstance(loaded, Mapping):
        raise ConfigError(
            f"Top-level config in {path} must be a mapping/object, got {type(loaded)}",
            code="config_structure_error",
            context=context,
            location=location,
        )

    return loaded


def load_config(
    config_path: str | Path | None = None,
    *,
    env: str | None = None,
) -> AppConfig:
    """Load and validate application configuration.

    Parameters
    ----------
    config_path:
        Optional path to a YAML config file. If omitted, attempts to discover a
        config file using FEATURES_PIPELINE_CONFIG_PATH or ./config.yaml.
    env:
        Optional environment name used to select a YAML profile.

    Raises
    ------
    ConfigError
        If the config file does not exist, cannot be parsed, or fails validation.
    """
    effective_env = (env or os.getenv(ENV_ENV_NAME) or DEFAULT_ENV).lower()
    config_data: dict[str, Any] = {}

    path: Path | None
    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_default_config_path()

    if path is not None:
        loaded = load_yaml_mapping(
            path,
            location="features_pipeline.config.load_config",
            extra_context={"env": effective_env},
        )

        profile = _select_profile_from_yaml(loaded, effective_env)
        config_data.update(dict(profile))

    try:
        cfg = AppConfig(**config_data)
    except ValidationError as exc:
        raise ConfigError(
            "Configuration validation failed",
            code="config_validation_error",
            cause=exc,
            context={
                "config_path": str(path) if path is not None else None,
                "env": effective_env,
                "errors": exc.errors(),
            },
            location="features_pipeline.config.load_config",
        ) from exc

    cfg._source_path = path
    cfg._loaded_env = effective_env

    return cfg


def get_config(
    config_path: str | Path | None = None,
    *,
    env: str | None = None,
    force_reload: bool = False,
) -> AppConfig:
    """Return the cached AppConfig instance, loading it if necessary.

        from features_pipeline.config import get_config

        cfg = get_config()
        paths = cfg.resolved_paths()
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path=config_path, env=env)

    return _config_cache


def get_paths(
    config_path: str | Path | None = None,
    *,
    env: str | None = None,
    force_reload: bool = False,
) -> PathsConfig:
    """Convenience helper to get resolved PathsConfig directly."""
    cfg = get_config(config_path=config_path, env=env, force_reload=force_reload)
    return cfg.resolved_paths()
