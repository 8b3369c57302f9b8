"""Trace data model shared by the capture builder and the store."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Literal

from decision_xray.errors import TraceValidationError

Status = Literal["pending", "running", "completed", "failed"]
StepType = Literal["llm", "search", "filter", "rank", "transform", "custom"]

STATUSES: tuple[Status, ...] = ("pending", "running", "completed", "failed")
STEP_TYPES: tuple[StepType, ...] = ("llm", "search", "filter", "rank", "transform", "custom")


@dataclass(slots=True)
class FilterResult:
    """One filter's verdict on one candidate."""

    passed: bool
    detail: str


@dataclass(slots=True)
class FilterSpec:
    """Threshold/configuration of a filter and its human-readable rule."""

    value: Any
    rule: str

    @classmethod
    def coerce(cls, raw: FilterSpec | Mapping[str, Any]) -> FilterSpec:
        if isinstance(raw, FilterSpec):
            return raw
        try:
            return cls(value=raw["value"], rule=str(raw["rule"]))
        except KeyError as exc:
            raise TraceValidationError(f"Filter spec is missing {exc.args[0]!r}") from exc


@dataclass(slots=True)
class CandidateEvaluation:
    """Why one candidate was kept or dropped during a step.

    `rank` is only meaningful for qualified candidates (1 = best). When a
    `score_breakdown` is present, `score` is expected to be derivable from it,
    but that relationship is not checked here.
    """

    id: str
    data: Any
    filter_results: dict[str, FilterResult] = field(default_factory=dict)
    qualified: bool = False
    score: float | None = None
    score_breakdown: dict[str, float] | None = None
    rank: int | None = None

    def __post_init__(self) -> None:
        self.filter_results = {
            name: result if isinstance(result, FilterResult) else FilterResult(**result)
            for name, result in self.filter_results.items()
        }
        if self.rank is not None:
            if self.rank < 1:
                raise TraceValidationError(
                    f"Candidate {self.id!r} has rank {self.rank}; ranks start at 1"
                )
            if not self.qualified:
                raise TraceValidationError(
                    f"Candidate {self.id!r} is ranked but not qualified"
                )


@dataclass(slots=True)
class StepMetrics:
    """Counters captured for a step; `duration` is in milliseconds."""

    input_count: int | None = None
    output_count: int | None = None
    passed_count: int | None = None
    failed_count: int | None = None
    duration: int | None = None

    @classmethod
    def coerce(cls, raw: StepMetrics | Mapping[str, Any] | None) -> StepMetrics:
        if raw is None:
            return cls()
        if isinstance(raw, StepMetrics):
            return cls(**asdict(raw))
        known = {f.name for f in fields(cls)}
        unknown = set(raw) - known
        if unknown:
            raise TraceValidationError(f"Unknown step metrics: {sorted(unknown)}")
        return cls(**dict(raw))

    def merged(self, other: StepMetrics) -> StepMetrics:
        """Return a copy where every field set on `other` wins."""
        values = asdict(self)
        values.update({k: v for k, v in asdict(other).items() if v is not None})
        return StepMetrics(**values)


@dataclass(slots=True)
class Step:
    """One unit of pipeline work inside an execution."""

    id: str
    name: str
    type: StepType
    start_time: int
    status: Status = "running"
    end_time: int | None = None
    input: Any = None
    output: Any = None
    reasoning: str | None = None
    metrics: StepMetrics | None = None
    evaluations: list[CandidateEvaluation] | None = None
    filters_applied: dict[str, FilterSpec] | None = None
    metadata: dict[str, Any] | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        if self.type not in STEP_TYPES:
            raise TraceValidationError(f"Unknown step type: {self.type!r}")
        if self.status not in STATUSES:
            raise TraceValidationError(f"Unknown step status: {self.status!r}")
        if self.end_time is not None and self.end_time < self.start_time:
            raise TraceValidationError(f"Step {self.id!r} ends before it starts")
        if self.output is not None and self.status != "completed":
            raise TraceValidationError(f"Step {self.id!r} has output but is {self.status}")
        if self.error is not None and self.status != "failed":
            raise TraceValidationError(f"Step {self.id!r} has an error but is {self.status}")


@dataclass(slots=True)
class Execution:
    """One end-to-end pipeline run and the steps it owns."""

    id: str
    name: str
    start_time: int
    status: Status = "running"
    description: str | None = None
    end_time: int | None = None
    steps: list[Step] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    final_output: Any = None
    tags: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.status not in STATUSES:
            raise TraceValidationError(f"Unknown execution status: {self.status!r}")
        if self.end_time is not None and self.end_time < self.start_time:
            raise TraceValidationError(f"Execution {self.id!r} ends before it starts")
        self.tags = tuple(self.tags)

    @property
    def duration(self) -> int | None:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time


def to_dict(record: Execution | Step | CandidateEvaluation) -> dict[str, Any]:
    """Render a trace record as plain, JSON-friendly data."""
    return asdict(record)
