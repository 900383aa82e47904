"""Exception types raised by the monitoring controller and the interpreter."""

from __future__ import annotations

from typing import Any, Optional


class MonitoringError(RuntimeError):
    """Base class for failures of the monitoring API."""


class ConflictError(MonitoringError):
    """Raised when event monitoring and legacy tracing would be engaged together."""


class InvalidArgument(MonitoringError, ValueError):
    """Raised for out-of-range marker ids, offsets or unknown event bits."""


class RewriteFailure(MonitoringError):
    """Raised when a unit cannot be re-instrumented; no state was changed."""

    def __init__(self, message: str, *, unit: Any = None) -> None:
        super().__init__(message)
        self.unit = unit


class CallbackFault(MonitoringError):
    """Raised inside the monitored program when a registered callback fails.

    The original exception is available as ``__cause__``.
    """

    def __init__(self, event: Any, unit: Any, offset: Optional[int], message: str = "") -> None:
        name = getattr(event, "name", None) or str(event)
        unit_name = getattr(unit, "name", "?")
        text = message or f"{name} callback failed in {unit_name} at offset {offset}"
        super().__init__(text)
        self.event = event
        self.unit = unit
        self.offset = offset


class VMError(RuntimeError):
    """Base class for interpreter faults that are not user exceptions."""


class VMRecursionError(VMError, RecursionError):
    """Raised when the per-thread frame depth exceeds the configured limit."""


class AssemblyError(ValueError):
    """Raised by the assembler, carrying the offending source line number."""

    def __init__(self, message: str, *, line: Optional[int] = None) -> None:
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)
        self.line = line
