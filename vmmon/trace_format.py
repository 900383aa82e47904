#!/usr/bin/env python3
"""Recording and normalising monitoring events.

Event records are exchanged as JSON dictionaries using the ``vmmon.events/1``
format::

    {"seq": 3, "event": "BRANCH", "unit": "fib", "offset": 7, "destination": 12}

:class:`EventRecorder` registers callbacks that append such records, and
:func:`normalise_event_record` makes sure the required fields are present,
coerces integers and turns live objects (callables, exceptions) into text so
recorded traces stay JSON-friendly.
"""

from __future__ import annotations

import itertools
import threading
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .events import EVENT_SHAPES, EventKind, iter_kinds
from .monitor import Monitor, get_monitor

TRACE_FORMAT_VERSION = "vmmon.events/1"

_REQUIRED_FIELDS = ("seq", "event", "unit")
_POSITION_FIELDS = ("offset", "line")
_OPTIONAL_INT_FIELDS = ("destination", "marker", "thread")
_TEXT_FIELDS = ("callable", "exception")


def _coerce_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{field} must be an integer, got boolean")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        value = value.strip()
        base = 16 if value.lower().startswith("0x") else 10
        return int(value, base)
    raise ValueError(f"{field} must be integer-compatible (got {value!r})")


def _coerce_event(value: Any) -> str:
    if isinstance(value, EventKind):
        return value.name
    if isinstance(value, int) and not isinstance(value, bool):
        try:
            kind = EventKind(value)
        except ValueError:
            raise ValueError(f"unknown event value {value}") from None
        if kind not in EVENT_SHAPES:
            raise ValueError(f"event must be a single kind (got {value})")
        return kind.name
    text = str(value).strip().upper()
    if text not in EventKind.__members__ or text == "NONE":
        raise ValueError(f"unknown event '{value}'")
    return text


def _coerce_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}" if str(value) else type(value).__name__
    name = getattr(value, "__qualname__", None) or getattr(value, "__name__", None)
    return name if isinstance(name, str) else repr(value)


def normalise_event_record(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a JSON-friendly copy of ``record`` with the canonical schema.

    ``unit`` may be a unit object or its name; ``event`` may be a kind, its
    value or its name. A record must carry an ``offset`` or, for line events,
    a ``line`` (which may be ``None`` for code without line information).
    Unknown fields are preserved.
    """

    normalized: Dict[str, Any] = {}
    for field in _REQUIRED_FIELDS:
        if field not in record:
            raise ValueError(f"event record missing required field '{field}'")
    normalized["seq"] = _coerce_int(record["seq"], "seq")
    normalized["event"] = _coerce_event(record["event"])
    unit = record["unit"]
    normalized["unit"] = getattr(unit, "name", None) or str(unit)

    if not any(field in record for field in _POSITION_FIELDS):
        raise ValueError("event record needs an 'offset' or a 'line'")
    if "offset" in record:
        normalized["offset"] = _coerce_int(record["offset"], "offset")
    if "line" in record:
        line = record["line"]
        normalized["line"] = None if line is None else _coerce_int(line, "line")

    for field in _OPTIONAL_INT_FIELDS:
        if field in record and record[field] is not None:
            normalized[field] = _coerce_int(record[field], field)
    if "marker" in normalized and not 0 <= normalized["marker"] <= 255:
        raise ValueError(f"marker id out of range: {normalized['marker']}")
    for field in _TEXT_FIELDS:
        if field in record and record[field] is not None:
            normalized[field] = _coerce_text(record[field])

    for key, value in record.items():
        if key in normalized or key in _REQUIRED_FIELDS or key in _POSITION_FIELDS:
            continue
        normalized[key] = value
    return normalized


def encode_event_records(records: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Return a list of normalised event records suitable for JSON encoding."""

    return [normalise_event_record(record) for record in records]


def decode_event_records(records: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Parse records produced by :func:`encode_event_records`, ``event`` as :class:`EventKind`."""

    parsed: List[Dict[str, Any]] = []
    for record in records:
        normalized = normalise_event_record(record)
        normalized["event"] = EventKind[normalized["event"]]
        parsed.append(normalized)
    return parsed


def format_event_record(record: Mapping[str, Any]) -> str:
    """One-line human readable rendering used by the CLI and shell."""
    where = f"{record['unit']}"
    if "offset" in record:
        where += f"@{record['offset']}"
    if "line" in record:
        where += f" line {record['line']}"
    parts = [f"{record['seq']:>5}", f"{record['event']:<17}", where]
    for field in ("destination", "marker", "callable", "exception"):
        if field in record:
            parts.append(f"{field}={record[field]}")
    return " ".join(parts)


class EventRecorder:
    """Registers a callback per kind that appends normalised records.

    The recorder replaces whatever callbacks were registered for its kinds and
    restores them on :meth:`detach`. ``sink`` receives each record as it is
    produced (the CLI uses it to stream output).
    """

    def __init__(
        self,
        events: int,
        *,
        monitor: Optional[Monitor] = None,
        sink: Optional[Callable[[Dict[str, Any]], None]] = None,
        with_thread: bool = False,
    ) -> None:
        self.monitor = monitor or get_monitor()
        self.kinds = list(iter_kinds(events))
        self.sink = sink
        self.with_thread = with_thread
        self.records: List[Dict[str, Any]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._previous: Dict[EventKind, Optional[Callable[..., Any]]] = {}

    def __enter__(self) -> "EventRecorder":
        self.attach()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.detach()

    def _make_callback(self, kind: EventKind) -> Callable[..., None]:
        shape = EVENT_SHAPES[kind]

        def callback(unit: Any, position: Any, *extra: Any) -> None:
            record: Dict[str, Any] = {"event": kind, "unit": unit}
            record[shape.args[1]] = position
            if extra:
                key = shape.extra
                record["marker" if key == "marker_id" else key] = extra[0]
            if self.with_thread:
                record["thread"] = threading.get_ident()
            self._append(record)

        return callback

    def _append(self, record: Dict[str, Any]) -> None:
        with self._lock:
            record["seq"] = next(self._seq)
            normalized = normalise_event_record(record)
            self.records.append(normalized)
        if self.sink is not None:
            self.sink(normalized)

    def attach(self) -> None:
        for kind in self.kinds:
            self._previous[kind] = self.monitor.register_callback(kind, self._make_callback(kind))

    def detach(self) -> None:
        for kind, previous in self._previous.items():
            self.monitor.register_callback(kind, previous)
        self._previous.clear()

    def of_kind(self, kind: EventKind) -> List[Dict[str, Any]]:
        return [record for record in self.records if record["event"] == kind.name]
