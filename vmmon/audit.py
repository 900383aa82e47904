"""Audit notifications for state-changing monitoring calls.

Each event is raised through :func:`sys.audit` (so ``sys.addaudithook``
observers see it) and then handed to hooks registered here. Hooks run
before the change is committed; an exception from a hook aborts the call
and leaves the monitoring state untouched, mirroring ``sys.audit``.
"""

from __future__ import annotations

import logging
import sys
import threading
from typing import Any, Callable, List

LOGGER = logging.getLogger("vmmon.audit")

AuditHook = Callable[[str, tuple], None]

SET_GLOBAL_EVENTS = "vmmon.set_global_events"
SET_LOCAL_EVENTS = "vmmon.set_local_events"
REGISTER_CALLBACK = "vmmon.register_callback"
INSERT_MARKER = "vmmon.insert_marker"
REMOVE_MARKER = "vmmon.remove_marker"

_hooks: List[AuditHook] = []
_hooks_lock = threading.Lock()


def add_audit_hook(hook: AuditHook) -> None:
    with _hooks_lock:
        _hooks.append(hook)


def remove_audit_hook(hook: AuditHook) -> None:
    with _hooks_lock:
        try:
            _hooks.remove(hook)
        except ValueError:
            pass


def clear_audit_hooks() -> None:
    with _hooks_lock:
        _hooks.clear()


def audit(event: str, *args: Any) -> None:
    sys.audit(event, *args)
    with _hooks_lock:
        hooks = list(_hooks)
    LOGGER.debug("audit %s %r", event, args)
    for hook in hooks:
        hook(event, args)
