"""Callback registration and synchronous event delivery."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

from .code import CodeUnit
from .errors import CallbackFault
from .events import EventKind

LOGGER = logging.getLogger("vmmon.dispatch")

Callback = Callable[..., Any]

NO_EXTRA = object()


class CallbackRegistry:
    """At most one callback per event kind."""

    def __init__(self) -> None:
        self._callbacks: Dict[EventKind, Callback] = {}

    def get(self, kind: EventKind) -> Optional[Callback]:
        return self._callbacks.get(kind)

    def register(self, kind: EventKind, callback: Optional[Callback]) -> Optional[Callback]:
        previous = self._callbacks.get(kind)
        if callback is None:
            self._callbacks.pop(kind, None)
        else:
            self._callbacks[kind] = callback
        return previous

    def snapshot(self) -> Dict[EventKind, Callback]:
        return dict(self._callbacks)

    def clear(self) -> None:
        self._callbacks.clear()


class Dispatcher:
    """Invokes callbacks on the thread that hit the event.

    While a callback runs, further events raised on the same thread are
    dropped, so a callback that calls back into the interpreter does not
    re-enter itself. Failures are wrapped in :class:`CallbackFault` and
    raised at the point of the event.
    """

    def __init__(self, registry: CallbackRegistry) -> None:
        self.registry = registry
        self._state = threading.local()

    def in_callback(self) -> bool:
        return getattr(self._state, "busy", False)

    def fire(self, kind: EventKind, unit: CodeUnit, offset: int, extra: Any = NO_EXTRA) -> None:
        callback = self.registry.get(kind)
        if callback is None:
            return
        state = self._state
        if getattr(state, "busy", False):
            return
        if kind == EventKind.LINE:
            args: tuple = (unit, unit.line_for(offset))
        elif extra is NO_EXTRA:
            args = (unit, offset)
        else:
            args = (unit, offset, extra)
        state.busy = True
        try:
            callback(*args)
        except Exception as exc:
            LOGGER.debug("%s callback raised %r in %s@%d", kind.name, exc, unit.name, offset)
            raise CallbackFault(kind, unit, offset) from exc
        finally:
            state.busy = False
