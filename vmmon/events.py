#!/usr/bin/env python3
"""Catalogue of monitorable event kinds.

Numeric values are stable; tooling persists them in recorded traces. Each
kind maps to the argument shape its callback receives. The shapes are
documentation for callers and are used by the dispatcher to name the extra
argument; they are not enforced against callbacks.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, Tuple

from .errors import InvalidArgument


class EventKind(enum.IntFlag):
    """Monitorable event kinds; values combine into event sets.

    ``PY_CALL`` fires at the callee's ``RESUME 0`` and reports the callee's
    offset (always 0). The call site is ``current_frame().back.offset``
    inside the callback, or ``None`` for a call made from the host.
    """

    NONE = 0
    PY_CALL = 1 << 0
    PY_RESUME = 1 << 1
    PY_RETURN = 1 << 2
    PY_YIELD = 1 << 3
    C_CALL = 1 << 4
    C_RETURN = 1 << 5
    LINE = 1 << 6
    INSTRUCTION = 1 << 7
    JUMP = 1 << 8
    BRANCH = 1 << 9
    RAISE = 1 << 10
    EXCEPTION_HANDLED = 1 << 11
    PY_UNWIND = 1 << 12
    PY_THROW = 1 << 13
    C_RAISE = 1 << 14
    MARKER = 1 << 15


@dataclass(frozen=True)
class EventShape:
    """Callback signature for one event kind."""

    kind: EventKind
    family: str
    args: Tuple[str, ...]

    @property
    def extra(self) -> str | None:
        """Name of the kind-specific third argument, if any."""
        return self.args[2] if len(self.args) > 2 else None


_FAMILY_USER = ("user-function", ("unit", "offset"))
_FAMILY_NATIVE = ("native", ("unit", "offset", "callable"))
_FAMILY_EXCEPTION = ("exception", ("unit", "offset", "exception"))

EVENT_SHAPES: Dict[EventKind, EventShape] = {
    EventKind.PY_CALL: EventShape(EventKind.PY_CALL, *_FAMILY_USER),
    EventKind.PY_RESUME: EventShape(EventKind.PY_RESUME, *_FAMILY_USER),
    EventKind.PY_THROW: EventShape(EventKind.PY_THROW, *_FAMILY_USER),
    EventKind.PY_RETURN: EventShape(EventKind.PY_RETURN, *_FAMILY_USER),
    EventKind.PY_YIELD: EventShape(EventKind.PY_YIELD, *_FAMILY_USER),
    EventKind.PY_UNWIND: EventShape(EventKind.PY_UNWIND, *_FAMILY_USER),
    EventKind.C_CALL: EventShape(EventKind.C_CALL, *_FAMILY_NATIVE),
    EventKind.C_RETURN: EventShape(EventKind.C_RETURN, *_FAMILY_NATIVE),
    EventKind.C_RAISE: EventShape(EventKind.C_RAISE, *_FAMILY_NATIVE),
    EventKind.RAISE: EventShape(EventKind.RAISE, *_FAMILY_EXCEPTION),
    EventKind.EXCEPTION_HANDLED: EventShape(EventKind.EXCEPTION_HANDLED, *_FAMILY_EXCEPTION),
    EventKind.LINE: EventShape(EventKind.LINE, "line", ("unit", "line")),
    EventKind.JUMP: EventShape(EventKind.JUMP, "control-flow", ("unit", "offset", "destination")),
    EventKind.BRANCH: EventShape(EventKind.BRANCH, "control-flow", ("unit", "offset", "destination")),
    EventKind.INSTRUCTION: EventShape(EventKind.INSTRUCTION, "instruction", ("unit", "offset")),
    EventKind.MARKER: EventShape(EventKind.MARKER, "marker", ("unit", "offset", "marker_id")),
}

# Kinds that need a trap patched into the unit at every matching offset.
INSTRUMENTED_EVENTS = (
    EventKind.PY_CALL
    | EventKind.PY_RESUME
    | EventKind.PY_RETURN
    | EventKind.PY_YIELD
    | EventKind.C_CALL
    | EventKind.C_RETURN
    | EventKind.LINE
    | EventKind.INSTRUCTION
    | EventKind.JUMP
    | EventKind.BRANCH
)

# Kinds tested where they occur; toggling them never rewrites code.
CHECK_ONLY_EVENTS = (
    EventKind.RAISE
    | EventKind.EXCEPTION_HANDLED
    | EventKind.PY_UNWIND
    | EventKind.PY_THROW
    | EventKind.C_RAISE
)

# Everything an event set passed to set_global/set_local may contain.
ACTIVATABLE_EVENTS = INSTRUMENTED_EVENTS | CHECK_ONLY_EVENTS
ALL_EVENTS = ACTIVATABLE_EVENTS | EventKind.MARKER

MAX_MARKER_ID = 255


def iter_kinds(events: int) -> Iterator[EventKind]:
    """Yield the single-bit kinds in ``events`` in ascending value order."""
    value = int(events)
    for kind in EventKind:
        if kind.value and value & kind.value:
            yield kind


def validate_event_set(events: int) -> EventKind:
    """Return ``events`` as an :class:`EventKind`, rejecting unknown bits."""
    if isinstance(events, bool) or not isinstance(events, int):
        raise InvalidArgument(f"event set must be an integer, got {events!r}")
    value = int(events)
    if value < 0:
        raise InvalidArgument(f"event set must be non-negative, got {value}")
    unknown = value & ~int(ALL_EVENTS)
    if unknown:
        raise InvalidArgument(f"unrecognised event bits 0x{unknown:X}")
    if value & EventKind.MARKER:
        raise InvalidArgument("MARKER cannot be activated; it is driven by insert_marker()")
    return EventKind(value)


def validate_kind(kind: int) -> EventKind:
    """Return ``kind`` as a single :class:`EventKind`."""
    if isinstance(kind, bool) or not isinstance(kind, int):
        raise InvalidArgument(f"event kind must be an integer, got {kind!r}")
    value = int(kind)
    if value <= 0 or value & (value - 1) or not value & int(ALL_EVENTS):
        raise InvalidArgument(f"not a single event kind: {value}")
    return EventKind(value)


def shape_of(kind: int) -> EventShape:
    return EVENT_SHAPES[validate_kind(kind)]


def parse_event_names(names: Iterable[str]) -> EventKind:
    """Combine event names such as ``"LINE"`` or ``"py_call"`` into a set."""
    result = EventKind.NONE
    for name in names:
        key = name.strip().upper()
        if not key:
            continue
        try:
            result |= EventKind[key]
        except KeyError:
            valid = ", ".join(kind.name for kind in EVENT_SHAPES)
            raise InvalidArgument(f"unknown event '{name}'. Valid events: {valid}") from None
    return result


def format_event_set(events: int) -> str:
    kinds = [kind.name for kind in iter_kinds(events)]
    return "|".join(kinds) if kinds else "NONE"
