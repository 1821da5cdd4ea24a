from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Sequence

import pandas as pd
from joblib import Parallel, delayed

from features_pipeline.exceptions import (
    AppError,
    ComputationError,
    ConcurrencyError,
    ConfigError,
)
from features_pipeline.features.plan import ExecutionPlan
from features_pipeline.features.steps import FeatureStep, validate_steps
from features_pipeline.logging_config import get_logger
from features_pipeline.table import append_columns

logger = get_logger(__name__)
_LOCATION_PREFIX = __name__


class ExecutionStrategy(str, Enum):
    """How independent feature steps are executed.

    All strategies return identical Tables; only wall-clock time differs.
    """

    SEQUENTIAL = "sequential"
    PARALLEL_BATCH = "parallel_batch"
    PARALLEL_POOL = "parallel_pool"


@dataclass(frozen=True)
class _StepOutcome:
    """Result of one step run in isolation: exactly one of frame / error is set."""

    index: int
    frame: pd.DataFrame | None = None
    error: AppError | None = None


class TransformEngine:
    """Apply an ordered sequence of feature steps to a Table.

    Parameters
    ----------
    steps:
        Feature steps in declared order. Names must be unique.
    strategy:
        Default execution strategy for `apply`.
    max_workers:
        Size of the fixed thread pool used by the parallel_pool strategy.
    n_jobs:
        joblib `n_jobs` for the parallel_batch strategy (-1 = all cores).

    Notes
    -----
    The output Table always holds the input columns first, then every
    step's output columns in declared step order. This ordering is what
    makes the three strategies return equal frames.
    """

    def __init__(
        self,
        steps: Sequence[FeatureStep],
        *,
        strategy: ExecutionStrategy | str = ExecutionStrategy.SEQUENTIAL,
        max_workers: int = 4,
        n_jobs: int = -1,
    ) -> None:
        self.steps: tuple[FeatureStep, ...] = tuple(steps)
        validate_steps(self.steps)
        self.strategy = _coerce_strategy(strategy)

        if max_workers <= 0:
            raise ConfigError(
                f"max_workers must be positive, got {max_workers}",
                code="config_invalid_engine",
                context={"max_workers": max_workers},
                location=f"{_LOCATION_PREFIX}.TransformEngine.__init__",
            )
        if n_jobs == 0:
            raise ConfigError(
                "n_jobs must be non-zero",
                code="config_invalid_engine",
                context={"n_jobs": n_jobs},
                location=f"{_LOCATION_PREFIX}.TransformEngine.__init__",
            )
        self.max_workers = max_workers
        self.n_jobs = n_jobs

    @classmethod
    def from_config(cls, steps: Sequence[FeatureStep], engine_config: Any) -> TransformEngine:
        """Build an engine from an `EngineConfig` section."""
        return cls(
            steps,
            strategy=engine_config.strategy,
            max_workers=engine_config.max_workers,
            n_jobs=engine_config.n_jobs,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def plan(self, table: pd.DataFrame) -> ExecutionPlan:
        return ExecutionPlan.build(self.steps, table.columns)

    def apply(
        self,
        table: pd.DataFrame,
        *,
        strategy: ExecutionStrategy | str | None = None,
    ) -> pd.DataFrame:
        """Return a new Table with every step's output appended.

        Raises
        ------
        ConfigError
            If outputs collide with existing columns (checked before computing).
        ColumnNotFoundError
            If a step references a column absent from the Table it runs on.
        ComputationError
            If a step cannot be computed.
        ConcurrencyError
            If the parallel runtime itself fails.
        """
        effective = self.strategy if strategy is None else _coerce_strategy(strategy)
        runners: dict[ExecutionStrategy, Callable[[pd.DataFrame], pd.DataFrame]] = {
            ExecutionStrategy.SEQUENTIAL: self.apply_sequential,
            ExecutionStrategy.PARALLEL_BATCH: self.apply_parallel_batch,
            ExecutionStrategy.PARALLEL_POOL: self.apply_parallel_pool,
        }

        logger.info(
            "Applying feature steps",
            extra={
                "strategy": effective.value,
                "n_steps": len(self.steps),
                "n_rows": int(table.shape[0]),
                "n_cols": int(table.shape[1]),
            },
        )
        started = time.perf_counter()
        result = runners[effective](table)
        logger.info(
            "Finished feature steps",
            extra={
                "strategy": effective.value,
                "n_cols": int(result.shape[1]),
                "elapsed_s": round(time.perf_counter() - started, 4),
            },
        )
        return result

    def apply_sequential(self, table: pd.DataFrame) -> pd.DataFrame:
        """Run every step in declared order on the progressively augmented Table."""
        self.plan(table)

        result = table
        outputs: dict[int, list[str]] = {}
        for index in range(len(self.steps)):
            frame = self._run_step(index, result)
            result = self._merge(result, [(index, frame)])
            outputs[index] = list(frame.columns)

        return self._finalize(table, result, outputs)

    def apply_parallel_batch(self, table: pd.DataFrame) -> pd.DataFrame:
        """Run independent steps through joblib threads, then dependent steps in order."""
        plan = self.plan(table)
        self._log_plan(plan, ExecutionStrategy.PARALLEL_BATCH)

        outcomes: list[_StepOutcome] = []
        if plan.independent:
            try:
                outcomes = Parallel(n_jobs=self.n_jobs, prefer="threads")(
                    delayed(self._run_isolated)(index, table) for index in plan.independent
                )
            except Exception as exc:
                raise ConcurrencyError.from_exception(
                    exc,
                    message="joblib batch execution of feature steps failed",
                    context={"n_jobs": self.n_jobs, "steps": list(plan.independent)},
                    location=f"{_LOCATION_PREFIX}.TransformEngine.apply_parallel_batch",
                ) from exc

        return self._complete(table, plan, outcomes)

    def apply_parallel_pool(self, table: pd.DataFrame) -> pd.DataFrame:
        """Same contract as apply_parallel_batch, on a fixed-size thread pool."""
        plan = self.plan(table)
        self._log_plan(plan, ExecutionStrategy.PARALLEL_POOL)

        outcomes: list[_StepOutcome] = []
        if plan.independent:
            try:
                with ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="feature-step",
                ) as executor:
                    futures = [
                        executor.submit(self._run_isolated, index, table)
                        for index in plan.independent
                    ]
                    # Barrier: every dispatched step completes before merging.
                    wait(futures)
                outcomes = [future.result() for future in futures]
            except Exception as exc:
                raise ConcurrencyError.from_exception(
                    exc,
                    message="thread-pool execution of feature steps failed",
                    context={"max_workers": self.max_workers, "steps": list(plan.independent)},
                    location=f"{_LOCATION_PREFIX}.TransformEngine.apply_parallel_pool",
                ) from exc

        return self._complete(table, plan, outcomes)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run_step(self, index: int, table: pd.DataFrame) -> pd.DataFrame:
        """Compute one step, attaching step context to any failure."""
        step = self.steps[index]
        logger.debug("Computing feature step", extra={"step": step.label, "step_index": index})

        try:
            frame = step.compute(table)
        except AppError as exc:
            raise exc.add_context(step=step.label, step_index=index)
        except Exception as exc:
            raise ComputationError.from_exception(
                exc,
                message=f"Feature step '{step.label}' failed: {exc}",
                context={"step": step.label, "step_index": index},
                location=f"{_LOCATION_PREFIX}.TransformEngine._run_step",
            ) from exc

        if len(frame) != len(table) or not frame.index.equals(table.index):
            raise ComputationError(
                f"Feature step '{step.label}' changed the row count or index",
                code="computation_row_mismatch",
                context={
                    "step": step.label,
                    "step_index": index,
                    "n_rows_in": int(len(table)),
                    "n_rows_out": int(len(frame)),
                },
                location=f"{_LOCATION_PREFIX}.TransformEngine._run_step",
            )
        return frame

    def _run_isolated(self, index: int, table: pd.DataFrame) -> _StepOutcome:
        """Worker entry point: capture the failure so the merge step can pick the earliest."""
        try:
            return _StepOutcome(index=index, frame=self._run_step(index, table))
        except AppError as exc:
            return _StepOutcome(index=index, error=exc)

    def _complete(
        self,
        table: pd.DataFrame,
        plan: ExecutionPlan,
        outcomes: Sequence[_StepOutcome],
    ) -> pd.DataFrame:
        """Merge the independent tier in declared order, then run the dependent tier.

        When an independent step failed, dependent steps declared before it
        still run so that the reported failure is the one sequential
        execution would hit first.
        """
        ordered = sorted(outcomes, key=lambda outcome: outcome.index)
        failures: list[tuple[int, AppError]] = []
        indexed: list[tuple[int, pd.DataFrame]] = []
        for outcome in ordered:
            if outcome.error is not None:
                failures.append((outcome.index, outcome.error))
            elif outcome.frame is not None:
                indexed.append((outcome.index, outcome.frame))

        limit = failures[0][0] if failures else len(self.steps)
        result = self._merge(table, [(index, frame) for index, frame in indexed if index < limit])
        outputs = {index: list(frame.columns) for index, frame in indexed if index < limit}

        for index in plan.dependent:
            if index >= limit:
                break
            try:
                frame = self._run_step(index, result)
            except AppError as exc:
                if not failures:
                    raise
                failures.append((index, exc))
                break
            result = self._merge(result, [(index, frame)])
            outputs[index] = list(frame.columns)

        if failures:
            self._raise_first_failure(failures)
        return self._finalize(table, result, outputs)

    def _raise_first_failure(self, failures: Sequence[tuple[int, AppError]]) -> None:
        first_index, first_error = min(failures, key=lambda failure: failure[0])
        failed_steps = [self.steps[index].label for index, _ in sorted(failures, key=lambda f: f[0])]
        logger.error(
            "Feature step(s) failed in parallel execution",
            extra={"failed_steps": failed_steps, "reported_step": self.steps[first_index].label},
        )
        raise first_error.add_context(failed_steps=failed_steps)

    def _merge(
        self,
        table: pd.DataFrame,
        indexed_frames: Sequence[tuple[int, pd.DataFrame]],
    ) -> pd.DataFrame:
        try:
            return append_columns(
                table,
                [frame for _, frame in indexed_frames],
                location=f"{_LOCATION_PREFIX}.TransformEngine._merge",
            )
        except ComputationError as exc:
            clashing = set(exc.context.get("columns", ()))
            owner = next(
                (index for index, frame in indexed_frames if clashing & set(frame.columns)),
                None,
            )
            if owner is not None:
                exc.add_context(step=self.steps[owner].label, step_index=owner)
            raise

    @staticmethod
    def _finalize(
        base: pd.DataFrame,
        result: pd.DataFrame,
        outputs: dict[int, list[str]],
    ) -> pd.DataFrame:
        """Order columns as base columns, then step outputs in declared order."""
        order = list(base.columns)
        for index in sorted(outputs):
            order.extend(outputs[index])
        return result.loc[:, order]

    def _log_plan(self, plan: ExecutionPlan, strategy: ExecutionStrategy) -> None:
        logger.info(
            "Execution plan",
            extra={
                "strategy": strategy.value,
                "independent": [self.steps[i].label for i in plan.independent],
                "dependent": [self.steps[i].label for i in plan.dependent],
            },
        )


def _coerce_strategy(strategy: ExecutionStrategy | str) -> ExecutionStrategy:
    try:
        return ExecutionStrategy(strategy)
    except ValueError as exc:
        raise ConfigError(
            f"Unknown execution strategy: {strategy!r}",
            code="config_invalid_engine",
            cause=exc,
            context={
                "strategy": str(strategy),
                "allowed": [s.value for s in ExecutionStrategy],
            },
            location=f"{_LOCATION_PREFIX}._coerce_strategy",
        ) from exc
