#!/usr/bin/env python3
"""Legacy single-hook tracing and its exclusion from event monitoring.

The legacy facility is the classic model: one trace function and one
profile function per thread (with an all-threads default), plus an
optional frame-evaluation override. It and event monitoring both intercept
the same units, so the process is in at most one of the two modes at a
time; :class:`CompatibilityGuard` enforces that before any state changes.
"""

from __future__ import annotations

import enum
import logging
import threading
from typing import Any, Callable, Dict, Optional, Tuple

from .errors import ConflictError

LOGGER = logging.getLogger("vmmon.legacy")

TraceFunc = Callable[[Any, str, Any], Any]
FrameEvalFunc = Callable[[Any, Any, Callable[[Any], Any]], Any]


class Mode(enum.Enum):
    IDLE = "idle"
    LEGACY_TRACE = "legacy_trace"
    EVENT_MONITORING = "event_monitoring"


class CompatibilityGuard:
    """Decides whether a mode may be entered.

    ``monitoring_engaged`` and ``legacy_engaged`` are queried live; the guard
    keeps no state of its own so it cannot disagree with its sources.
    """

    def __init__(self, monitoring_engaged: Callable[[], bool], legacy_engaged: Callable[[], bool]) -> None:
        self._monitoring_engaged = monitoring_engaged
        self._legacy_engaged = legacy_engaged

    @property
    def mode(self) -> Mode:
        if self._legacy_engaged():
            return Mode.LEGACY_TRACE
        if self._monitoring_engaged():
            return Mode.EVENT_MONITORING
        return Mode.IDLE

    def check_enter_monitoring(self, what: str) -> None:
        if self._legacy_engaged():
            LOGGER.warning("refusing %s: legacy tracing is engaged", what)
            raise ConflictError(f"cannot {what} while legacy tracing or a frame-eval override is engaged")

    def check_enter_legacy(self, what: str) -> None:
        if self._monitoring_engaged():
            LOGGER.warning("refusing %s: event monitoring is engaged", what)
            raise ConflictError(f"cannot {what} while event monitoring is engaged")


class LegacyTracing:
    """Per-thread trace/profile hooks and the frame-eval override point."""

    def __init__(self, lock: threading.RLock, guard: Optional[CompatibilityGuard] = None) -> None:
        self._lock = lock
        self.guard = guard
        # ident -> (owning thread, hook); entries die with their thread.
        self._trace: Dict[int, Tuple[threading.Thread, TraceFunc]] = {}
        self._profile: Dict[int, Tuple[threading.Thread, TraceFunc]] = {}
        self._trace_all: Optional[TraceFunc] = None
        self._profile_all: Optional[TraceFunc] = None
        self._frame_eval: Optional[FrameEvalFunc] = None
        # Fast flag for the interpreter's per-frame check.
        self.active = False

    # ------------------------------------------------------------------ state

    def engaged(self) -> bool:
        with self._lock:
            self._prune_dead_threads()
            engaged = self._engaged()
            self.active = engaged
        return engaged

    def _engaged(self) -> bool:
        return bool(
            self._trace
            or self._profile
            or self._trace_all is not None
            or self._profile_all is not None
            or self._frame_eval is not None
        )

    def _update(self, what: str, func: Optional[Callable[..., Any]], apply: Callable[[], None]) -> None:
        with self._lock:
            if func is not None and self.guard is not None:
                self.guard.check_enter_legacy(what)
            apply()
            self._prune_dead_threads()
            self.active = self._engaged()
        LOGGER.info("%s %s", what, "set" if func is not None else "cleared")

    def _prune_dead_threads(self) -> None:
        for table in (self._trace, self._profile):
            for ident, (thread, _func) in list(table.items()):
                if not thread.is_alive():
                    del table[ident]
                    LOGGER.debug("dropped hook of finished thread %d", ident)

    @staticmethod
    def _set_slot(table: Dict[int, Tuple[threading.Thread, TraceFunc]], func: Optional[TraceFunc]) -> None:
        ident = threading.get_ident()
        if func is None:
            table.pop(ident, None)
        else:
            table[ident] = (threading.current_thread(), func)

    # ------------------------------------------------------------------ hooks

    def settrace(self, func: Optional[TraceFunc]) -> None:
        self._update("settrace", func, lambda: self._set_slot(self._trace, func))

    def setprofile(self, func: Optional[TraceFunc]) -> None:
        self._update("setprofile", func, lambda: self._set_slot(self._profile, func))

    def settrace_all_threads(self, func: Optional[TraceFunc]) -> None:
        def apply() -> None:
            self._trace_all = func
            if func is None:
                self._trace.clear()

        self._update("settrace_all_threads", func, apply)

    def setprofile_all_threads(self, func: Optional[TraceFunc]) -> None:
        def apply() -> None:
            self._profile_all = func
            if func is None:
                self._profile.clear()

        self._update("setprofile_all_threads", func, apply)

    def set_frame_eval(self, func: Optional[FrameEvalFunc]) -> None:
        def apply() -> None:
            self._frame_eval = func

        self._update("set_frame_eval", func, apply)

    @staticmethod
    def _own_slot(table: Dict[int, Tuple[threading.Thread, TraceFunc]]) -> Optional[TraceFunc]:
        entry = table.get(threading.get_ident())
        if entry is None or entry[0] is not threading.current_thread():
            return None
        return entry[1]

    def gettrace(self) -> Optional[TraceFunc]:
        func = self._own_slot(self._trace)
        return func if func is not None else self._trace_all

    def getprofile(self) -> Optional[TraceFunc]:
        func = self._own_slot(self._profile)
        return func if func is not None else self._profile_all

    def get_frame_eval(self) -> Optional[FrameEvalFunc]:
        return self._frame_eval

    def clear(self) -> None:
        with self._lock:
            self._trace.clear()
            self._profile.clear()
            self._trace_all = None
            self._profile_all = None
            self._frame_eval = None
            self.active = False
