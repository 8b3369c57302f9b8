"""Execution builder: the capture protocol pipeline code drives."""

from __future__ import annotations

import copy
import logging
import time
import uuid
from collections.abc import Callable, Iterable, Mapping
from types import TracebackType
from typing import Any

from decision_xray.config import XRayConfig
from decision_xray.errors import InvalidBuilderStateError, TraceValidationError
from decision_xray.store.trace_store import TraceStore
from decision_xray.types import (
    CandidateEvaluation,
    Execution,
    FilterSpec,
    Step,
    StepMetrics,
    StepType,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def generate_execution_id(now_ms: int) -> str:
    """Time component plus a random suffix, e.g. `1718000000000-3f9c2a1bd`."""
    return f"{now_ms}-{uuid.uuid4().hex[:9]}"


def create_xray(
    config: XRayConfig | None = None,
    *,
    store: TraceStore | None = None,
    clock: Clock | None = None,
    **options: Any,
) -> ExecutionBuilder:
    """Start tracing a new execution.

    Pass an `XRayConfig`, its fields as keyword arguments, or both; keyword
    arguments override the matching fields of `config`.
    """
    if config is None:
        config = XRayConfig(**options)
    elif options:
        config = XRayConfig.model_validate({**config.model_dump(), **options})
    return ExecutionBuilder(config, store=store, clock=clock)


def create_execution(
    name: str,
    *,
    store: TraceStore | None = None,
    clock: Clock | None = None,
    **options: Any,
) -> ExecutionBuilder:
    return ExecutionBuilder(
        XRayConfig(execution_name=name, **options), store=store, clock=clock
    )


class ExecutionBuilder:
    """Records one execution step by step.

    The builder owns the authoritative `Execution`; everything handed out
    (snapshots, finished steps, callback arguments) is a deep copy. When
    `auto_save` is enabled and a store is attached, every mutation is pushed
    to the store immediately, so an in-progress step is visible while it runs.

    `finalize` may be called more than once: each call recomputes `status`
    and `end_time` from the current steps.
    """

    def __init__(
        self,
        config: XRayConfig | None = None,
        *,
        store: TraceStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or XRayConfig()
        self._store = store
        self._clock = clock or _now_ms
        self._finalized = False

        start_time = self._clock()
        self._execution = Execution(
            id=self.config.execution_id or generate_execution_id(start_time),
            name=self.config.execution_name,
            description=self.config.description,
            start_time=start_time,
            context=copy.deepcopy(dict(self.config.context)),
            tags=tuple(self.config.tags),
        )
        logger.debug("Execution %s started: %s", self._execution.id, self._execution.name)
        self._save()

    @property
    def id(self) -> str:
        return self._execution.id

    @property
    def finalized(self) -> bool:
        return self._finalized

    def step(self, name: str, step_type: StepType = "custom") -> StepBuilder:
        """Open a new step in `running` state and return its sub-builder."""
        self._ensure_open(f"open step {name!r}")
        step = Step(
            id=f"step-{len(self._execution.steps) + 1}",
            name=name,
            type=step_type,
            start_time=self._clock(),
        )
        self._execution.steps.append(step)
        logger.debug("Execution %s opened %s (%s)", self.id, step.id, name)
        self._fire(self.config.on_step_start, step)
        self._save()
        return StepBuilder(self, step)

    open_step = step

    def add_context(self, key: str, value: Any) -> ExecutionBuilder:
        self._ensure_open(f"add context {key!r}")
        self._execution.context[key] = value
        self._save()
        return self

    def finalize(self, final_output: Any = None) -> Execution:
        execution = self._execution
        has_failed_step = any(step.status == "failed" for step in execution.steps)

        execution.end_time = self._end_time(execution.start_time)
        execution.status = "failed" if has_failed_step else "completed"
        execution.final_output = final_output
        if self._finalized:
            logger.debug("Execution %s finalized again; recomputing", self.id)
        self._finalized = True
        logger.debug("Execution %s finalized as %s", self.id, execution.status)

        self._fire(self.config.on_execution_complete, execution)
        self._save()
        return self.snapshot()

    finish = finalize

    def snapshot(self) -> Execution:
        """Deep copy of the execution as it stands right now."""
        return copy.deepcopy(self._execution)

    get_snapshot = snapshot

    def steps(self) -> list[Step]:
        return copy.deepcopy(self._execution.steps)

    def _step_finished(self, step: Step) -> None:
        logger.debug(
            "Execution %s %s %s in %sms",
            self.id,
            step.id,
            step.status,
            step.metrics.duration if step.metrics else None,
        )
        self._fire(self.config.on_step_complete, step)
        self._save()

    def _end_time(self, start_time: int) -> int:
        # Wall clocks can step backwards; an end never precedes its start.
        return max(self._clock(), start_time)

    def _ensure_open(self, action: str) -> None:
        if self._finalized:
            raise InvalidBuilderStateError(
                f"Cannot {action}: execution {self.id} is already finalized"
            )

    def _save(self) -> None:
        if self.config.auto_save and self._store is not None:
            self._store.save(self._execution)

    def _fire(self, callback: Callable[[Any], None] | None, record: Step | Execution) -> None:
        if callback is None:
            return
        try:
            callback(copy.deepcopy(record))
        except Exception:
            logger.exception("Lifecycle callback failed for execution %s", self.id)


class StepBuilder:
    """Stages fields on one open step until `complete` or `fail` spends it.

    Setters overwrite on repeat calls and return the builder for chaining.
    Used as a context manager, an exception inside the block fails the step
    (and propagates); a clean exit completes it if nothing else did.
    """

    def __init__(self, owner: ExecutionBuilder, step: Step) -> None:
        self._owner = owner
        self._step = step
        self._spent = False

    @property
    def step_id(self) -> str:
        return self._step.id

    @property
    def spent(self) -> bool:
        return self._spent

    def with_input(self, payload: Any) -> StepBuilder:
        self._ensure_pending("set input on")
        self._step.input = payload
        return self

    def with_filters(self, filters: Mapping[str, FilterSpec | Mapping[str, Any]]) -> StepBuilder:
        self._ensure_pending("set filters on")
        self._step.filters_applied = {
            name: FilterSpec.coerce(spec) for name, spec in filters.items()
        }
        return self

    def with_evaluations(
        self, evaluations: Iterable[CandidateEvaluation | Mapping[str, Any]]
    ) -> StepBuilder:
        self._ensure_pending("set evaluations on")
        staged = [
            item if isinstance(item, CandidateEvaluation) else CandidateEvaluation(**item)
            for item in evaluations
        ]
        _check_evaluations(self._step.id, staged)
        self._step.evaluations = staged
        return self

    def with_reasoning(self, reasoning: str) -> StepBuilder:
        self._ensure_pending("set reasoning on")
        self._step.reasoning = reasoning
        return self

    def with_metadata(self, metadata: Mapping[str, Any]) -> StepBuilder:
        self._ensure_pending("set metadata on")
        self._step.metadata = dict(metadata)
        return self

    def complete(
        self,
        output: Any = None,
        metrics: StepMetrics | Mapping[str, Any] | None = None,
    ) -> Step:
        """Close the step as completed.

        Counts derivable from staged evaluations fill in whatever the caller
        did not supply; `duration` is always `end_time - start_time`.
        """
        self._ensure_pending("complete")
        supplied = StepMetrics.coerce(metrics)
        step = self._step
        end_time = self._owner._end_time(step.start_time)

        step.metrics = (
            _evaluation_metrics(step.evaluations)
            .merged(supplied)
            .merged(StepMetrics(duration=end_time - step.start_time))
        )
        step.output = output
        step.status = "completed"
        step.end_time = end_time
        return self._finish()

    def fail(self, error: str) -> Step:
        self._ensure_pending("fail")
        step = self._step
        end_time = self._owner._end_time(step.start_time)

        step.metrics = StepMetrics(duration=end_time - step.start_time)
        step.status = "failed"
        step.end_time = end_time
        step.error = error
        return self._finish()

    def __enter__(self) -> StepBuilder:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._spent:
            return
        if exc is not None:
            self.fail(f"{exc_type.__name__ if exc_type else 'Error'}: {exc}")
        else:
            self.complete()

    def _finish(self) -> Step:
        self._spent = True
        self._owner._step_finished(self._step)
        return copy.deepcopy(self._step)

    def _ensure_pending(self, action: str) -> None:
        if self._spent:
            raise InvalidBuilderStateError(
                f"Cannot {action} step {self._step.id}: it is already {self._step.status}"
            )
        self._owner._ensure_open(f"{action} step {self._step.id}")


def _check_evaluations(step_id: str, evaluations: list[CandidateEvaluation]) -> None:
    seen_ids: set[str] = set()
    seen_ranks: set[int] = set()
    for evaluation in evaluations:
        if evaluation.id in seen_ids:
            raise TraceValidationError(
                f"Duplicate candidate {evaluation.id!r} in step {step_id}"
            )
        seen_ids.add(evaluation.id)
        if evaluation.rank is not None:
            if evaluation.rank in seen_ranks:
                raise TraceValidationError(f"Duplicate rank {evaluation.rank} in step {step_id}")
            seen_ranks.add(evaluation.rank)


def _evaluation_metrics(evaluations: list[CandidateEvaluation] | None) -> StepMetrics:
    if evaluations is None:
        return StepMetrics()
    passed = sum(1 for evaluation in evaluations if evaluation.qualified)
    return StepMetrics(
        input_count=len(evaluations),
        passed_count=passed,
        failed_count=len(evaluations) - passed,
    )
