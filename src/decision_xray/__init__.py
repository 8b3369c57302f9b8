"""Decision X-Ray: capture why a multi-step pipeline produced its output."""

from .capture.builder import ExecutionBuilder, StepBuilder, create_execution, create_xray
from .config import QueryOptions, XRayConfig
from .errors import InvalidBuilderStateError, TraceValidationError, XRayError
from .store.trace_store import InMemoryTraceStore, TraceStore
from .types import (
    CandidateEvaluation,
    Execution,
    FilterResult,
    FilterSpec,
    Step,
    StepMetrics,
)

__all__ = [
    "CandidateEvaluation",
    "Execution",
    "ExecutionBuilder",
    "FilterResult",
    "FilterSpec",
    "InMemoryTraceStore",
    "InvalidBuilderStateError",
    "QueryOptions",
    "Step",
    "StepBuilder",
    "StepMetrics",
    "TraceStore",
    "TraceValidationError",
    "XRayConfig",
    "XRayError",
    "create_execution",
    "create_xray",
]
