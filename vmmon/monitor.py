#!/usr/bin/env python3
"""The monitoring service.

:class:`Monitor` owns every piece of shared monitoring state: the global
and local event sets, the marker tables, the callback registry and the
legacy tracing facility. All mutation goes through its methods under one
re-entrant lock; dispatch reads the state without taking it. A process has
one default instance (:func:`get_monitor`), and the module-level functions
below operate on it.

Every change follows the same shape: validate, ask the guard, plan the new
executables for every affected unit, audit, then commit state and swap the
executables. Anything that fails before the commit leaves the previous state
exactly as it was.
"""

from __future__ import annotations

import logging
import threading
import weakref
from typing import Any, Callable, Dict, List, Optional

from . import audit
from .activation import ActivationState
from .code import CodeUnit, Executable
from .dispatch import Callback, CallbackRegistry, Dispatcher
from .errors import InvalidArgument
from .events import CHECK_ONLY_EVENTS, EventKind, format_event_set, validate_event_set, validate_kind
from .legacy import CompatibilityGuard, LegacyTracing, Mode
from .markers import MarkerTable, validate_marker
from .rewriter import Rewriter

LOGGER = logging.getLogger("vmmon.monitor")


def _require_unit(unit: Any) -> CodeUnit:
    if not isinstance(unit, CodeUnit):
        raise InvalidArgument(f"expected a CodeUnit, got {type(unit).__name__}")
    return unit


class Monitor:
    """Lock-guarded owner of activation, markers, callbacks and legacy hooks."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.activation = ActivationState()
        self.markers = MarkerTable()
        self.callbacks = CallbackRegistry()
        self.dispatcher = Dispatcher(self.callbacks)
        self.rewriter = Rewriter()
        self._units: "weakref.WeakSet[CodeUnit]" = weakref.WeakSet()
        self.legacy = LegacyTracing(self._lock)
        self.guard = CompatibilityGuard(self.engaged, self.legacy.engaged)
        self.legacy.guard = self.guard
        # Union of check-only kinds active anywhere; lets the interpreter skip
        # the per-unit lookup entirely when nothing of the sort is on.
        self.check_only_any = EventKind.NONE

    # ------------------------------------------------------------------ queries

    def engaged(self) -> bool:
        return not self.activation.is_empty() or not self.markers.is_empty()

    @property
    def mode(self) -> Mode:
        return self.guard.mode

    def get_global_events(self) -> EventKind:
        return self.activation.get_global()

    def get_local_events(self, unit: CodeUnit) -> EventKind:
        return self.activation.get_local(_require_unit(unit))

    def is_active(self, unit: CodeUnit, kind: EventKind) -> bool:
        return bool(self.activation.effective(unit) & kind)

    def tracked_units(self) -> List[CodeUnit]:
        return list(self._units)

    def markers_for(self, unit: CodeUnit) -> Dict[int, int]:
        return self.markers.markers(_require_unit(unit))

    def describe(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "global": format_event_set(self.activation.get_global()),
            "local": {unit.name: format_event_set(events) for unit, events in self.activation.local_units()},
            "markers": {unit.name: table for unit, table in self.markers.units()},
            "callbacks": sorted(kind.name for kind in self.callbacks.snapshot()),
            "units": len(self._units),
            "rewrites": self.rewriter.rewrites,
        }

    # ------------------------------------------------------------------ helpers

    def _refresh(self) -> None:
        union = self.activation.get_global()
        for _unit, events in self.activation.local_units():
            union |= events
        self.check_only_any = union & CHECK_ONLY_EVENTS

    def _plan_all(self, global_events: EventKind) -> Dict[CodeUnit, Executable]:
        plans: Dict[CodeUnit, Executable] = {}
        for unit in list(self._units):
            if unit.executable is None:
                continue
            events = global_events | self.activation.get_local(unit)
            plan = self.rewriter.plan(unit, events, self.markers.markers(unit))
            if plan is not None:
                plans[unit] = plan
        return plans

    def _plan_one(self, unit: CodeUnit, events: EventKind, markers: Dict[int, int]) -> Dict[CodeUnit, Executable]:
        plan = self.rewriter.plan(unit, events, markers, adopt=unit.executable is None)
        return {unit: plan} if plan is not None else {}

    def adopt(self, unit: CodeUnit) -> Executable:
        """Build the first executable form of a unit that is about to run."""
        with self._lock:
            if unit.executable is None:
                plan = self.rewriter.plan(
                    unit,
                    self.activation.effective(unit),
                    self.markers.markers(unit),
                    adopt=True,
                )
                self.rewriter.commit({unit: plan})
                self._units.add(unit)
            return unit.executable

    # ------------------------------------------------------------------ activation

    def set_global_events(self, events: int) -> None:
        events = validate_event_set(events)
        with self._lock:
            if events:
                self.guard.check_enter_monitoring("activate global events")
            old = self.activation.get_global()
            plans = self._plan_all(events)
            audit.audit(audit.SET_GLOBAL_EVENTS, old, events)
            self.activation.set_global(events)
            self.rewriter.commit(plans)
            self._refresh()
        LOGGER.info(
            "global events %s -> %s (%d unit(s) rewritten)",
            format_event_set(old),
            format_event_set(events),
            len(plans),
        )

    def set_local_events(self, unit: CodeUnit, events: int) -> None:
        unit = _require_unit(unit)
        events = validate_event_set(events)
        with self._lock:
            if events:
                self.guard.check_enter_monitoring(f"activate local events on {unit.name}")
            old = self.activation.get_local(unit)
            effective = self.activation.get_global() | events
            plans = self._plan_one(unit, effective, self.markers.markers(unit))
            audit.audit(audit.SET_LOCAL_EVENTS, unit, old, events)
            self.activation.set_local(unit, events)
            self.rewriter.commit(plans)
            self._units.add(unit)
            self._refresh()
        LOGGER.info("local events for %s %s -> %s", unit.name, format_event_set(old), format_event_set(events))

    # ------------------------------------------------------------------ callbacks

    def register_callback(self, kind: int, callback: Optional[Callback]) -> Optional[Callback]:
        kind = validate_kind(kind)
        if callback is not None and not callable(callback):
            raise InvalidArgument(f"callback for {kind.name} is not callable: {callback!r}")
        with self._lock:
            audit.audit(audit.REGISTER_CALLBACK, kind, callback)
            previous = self.callbacks.register(kind, callback)
        LOGGER.debug("callback for %s %s", kind.name, "registered" if callback is not None else "cleared")
        return previous

    # ------------------------------------------------------------------ markers

    def insert_marker(self, unit: CodeUnit, offset: int, marker_id: int = 0) -> None:
        unit = _require_unit(unit)
        validate_marker(unit, offset, marker_id)
        with self._lock:
            self.guard.check_enter_monitoring(f"insert a marker into {unit.name}")
            table = self.markers.with_marker(unit, offset, marker_id)
            plans = self._plan_one(unit, self.activation.effective(unit), table)
            audit.audit(audit.INSERT_MARKER, unit, offset, marker_id)
            self.markers.replace(unit, table)
            self.rewriter.commit(plans)
            self._units.add(unit)
        LOGGER.debug("marker %d inserted at %s@%d", marker_id, unit.name, offset)

    def remove_marker(self, unit: CodeUnit, offset: int) -> None:
        unit = _require_unit(unit)
        if isinstance(offset, bool) or not isinstance(offset, int):
            raise InvalidArgument(f"offset must be an integer, got {offset!r}")
        with self._lock:
            if self.markers.get(unit, offset) is None:
                return
            table = self.markers.without_marker(unit, offset)
            plans = self._plan_one(unit, self.activation.effective(unit), table)
            audit.audit(audit.REMOVE_MARKER, unit, offset)
            self.markers.replace(unit, table)
            self.rewriter.commit(plans)
        LOGGER.debug("marker removed from %s@%d", unit.name, offset)

    # ------------------------------------------------------------------ teardown

    def reset(self) -> None:
        """Drop every activation, marker, callback and legacy hook.

        Tracked units are detached and will be adopted again when they next
        run, so a frozen unit can take its first form anew.
        """
        with self._lock:
            self.activation.clear()
            self.markers.clear()
            self.callbacks.clear()
            self.legacy.clear()
            for unit in list(self._units):
                unit.executable = None
            self._units.clear()
            self._refresh()
        LOGGER.debug("monitor reset")


_default_monitor: Optional[Monitor] = None
_default_lock = threading.Lock()


def get_monitor() -> Monitor:
    global _default_monitor
    if _default_monitor is None:
        with _default_lock:
            if _default_monitor is None:
                _default_monitor = Monitor()
    return _default_monitor


def get_global_events() -> EventKind:
    return get_monitor().get_global_events()


def set_global_events(events: int) -> None:
    get_monitor().set_global_events(events)


def get_local_events(unit: CodeUnit) -> EventKind:
    return get_monitor().get_local_events(unit)


def set_local_events(unit: CodeUnit, events: int) -> None:
    get_monitor().set_local_events(unit, events)


def register_callback(kind: int, callback: Optional[Callable[..., Any]]) -> Optional[Callable[..., Any]]:
    return get_monitor().register_callback(kind, callback)


def insert_marker(unit: CodeUnit, offset: int, marker_id: int = 0) -> None:
    get_monitor().insert_marker(unit, offset, marker_id)


def remove_marker(unit: CodeUnit, offset: int) -> None:
    get_monitor().remove_marker(unit, offset)
