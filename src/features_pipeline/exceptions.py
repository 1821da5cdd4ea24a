from __future__ import annotations

from typing import Any, Mapping, Sequence


class AppError(Exception):
    """Base class for all features_pipeline exceptions.

    Attributes
    ----------
    message:
        Human-readable error message.
    code:
        Stable, machine-friendly identifier for this error type
        (e.g. "config_error", "column_not_found").
    cause:
        Optional underlying exception that triggered this error.
    context:
        Lightweight dictionary with extra debugging information
        (step name, column name, available columns, ...).
    location:
        Optional string describing where the error occurred
        (e.g. "features_pipeline.features.engine.apply").
    """

    # Subclasses override this to give themselves a stable default code.
    default_code: str = "app_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        cause: BaseException | None = None,
        context: Mapping[str, Any] | None = None,
        location: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code: str = code or self.default_code
        self.cause = cause
        self.context: dict[str, Any] = dict(context or {})
        self.location = location

        if cause is not None:
            self.__cause__ = cause  # type: ignore[assignment]

    def __str__(self) -> str:
        parts: list[str] = [f"[{self.code}] {self.message}"]

        if self.location:
            parts.append(f"(at {self.location})")

        if self.cause is not None:
            parts.append(f"(cause: {self.cause!r})")

        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}("
            f"code={self.code!r}, "
            f"message={self.message!r}, "
            f"location={self.location!r}"
            ")"
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation of the error."""
        data: dict[str, Any] = {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
        }

        if self.location:
            data["location"] = self.location

        if self.context:
            data["context"] = dict(self.context)

        if self.cause is not None:
            data["cause"] = {
                "type": type(self.cause).__name__,
                "repr": repr(self.cause),
            }

        return data

    def add_context(self, **extra: Any) -> AppError:
        """Add or update context fields on this error and return self.

        Used when an error bubbles up through the engine and the step name /
        index should be attached without changing the error type.
        """
        self.context.update(extra)
        return self

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        *,
        message: str | None = None,
        code: str | None = None,
        context: Mapping[str, Any] | None = None,
        location: str | None = None,
    ) -> AppError:
        """Construct an AppError (or subclass) from an existing exception.

        Examples
        --------
        >>> try:
        ...     step.compute(table)
        ... except Exception as exc:
        ...     raise ComputationError.from_exception(
        ...         exc,
        ...         context={"step": "mean:avg_age"},
        ...         location="features_pipeline.features.engine._run_step",
        ...     ) from exc
        """
        base_message = message or str(exc) or cls.__name__
        return cls(
            base_message,
            code=code,
            cause=exc,
            context=context,
            location=location,
        )


class ConfigError(AppError):
    """Configuration errors: duplicate feature names, malformed steps, missing files."""

    default_code = "config_error"


class DataError(AppError):
    """Data loading, validation, or transformation errors."""

    default_code = "data_error"


class ColumnNotFoundError(DataError):
    """A step referenced a column that is absent from the current Table.

    The list of available columns is always carried so the failure can be
    diagnosed without re-running with extra logging.
    """

    default_code = "column_not_found"

    def __init__(
        self,
        column: str,
        available: Sequence[str],
        *,
        code: str | None = None,
        context: Mapping[str, Any] | None = None,
        location: str | None = None,
    ) -> None:
        self.column = column
        self.available = list(available)
        merged: dict[str, Any] = {"column": column, "available_columns": self.available}
        merged.update(context or {})
        super().__init__(
            f"Column '{column}' not found. Available: {self.available}",
            code=code,
            context=merged,
            location=location,
        )


class ComputationError(DataError):
    """A feature step could not be computed (type mismatch, shape mismatch, ...)."""

    default_code = "computation_error"


class EncodingError(DataError):
    """The target column could not be label-encoded."""

    default_code = "encoding_error"


class ModelError(AppError):
    """Errors during classifier fitting or prediction."""

    default_code = "model_error"


class EvaluationError(ModelError):
    """Invalid inputs to the evaluator (length mismatch, non-binary labels)."""

    default_code = "evaluation_error"


class PipelineError(AppError):
    """High-level orchestration / pipeline wiring errors."""

    default_code = "pipeline_error"


class ConcurrencyError(PipelineError):
    """The parallel runtime failed while executing a batch of feature steps."""

    default_code = "concurrency_error"
