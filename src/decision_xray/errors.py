"""Error types raised by the capture protocol and the trace model."""


class XRayError(Exception):
    """Base error for decision-xray."""


class InvalidBuilderStateError(XRayError):
    """Raised when a builder is driven after reaching a terminal state."""


class TraceValidationError(XRayError, ValueError):
    """Raised when a trace record violates a structural invariant."""
