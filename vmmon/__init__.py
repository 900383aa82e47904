"""Low-overhead event monitoring for a small bytecode VM.

The public surface mirrors the classic monitoring API: activate event kinds
globally or per unit, register one callback per kind, and place markers.
"""

from .asm import assemble, assemble_file
from .audit import add_audit_hook, remove_audit_hook
from .code import CodeUnit, Function, Module
from .errors import (
    AssemblyError,
    CallbackFault,
    ConflictError,
    InvalidArgument,
    MonitoringError,
    RewriteFailure,
    VMError,
    VMRecursionError,
)
from .events import EventKind
from .legacy import Mode
from .monitor import (
    Monitor,
    get_global_events,
    get_local_events,
    get_monitor,
    insert_marker,
    register_callback,
    remove_marker,
    set_global_events,
    set_local_events,
)
from .vm import Interpreter, current_frame

__version__ = "0.1.0"

__all__ = [
    "AssemblyError",
    "CallbackFault",
    "CodeUnit",
    "ConflictError",
    "EventKind",
    "Function",
    "Interpreter",
    "InvalidArgument",
    "Mode",
    "Module",
    "Monitor",
    "MonitoringError",
    "RewriteFailure",
    "VMError",
    "VMRecursionError",
    "add_audit_hook",
    "assemble",
    "assemble_file",
    "current_frame",
    "get_global_events",
    "get_local_events",
    "get_monitor",
    "insert_marker",
    "register_callback",
    "remove_audit_hook",
    "remove_marker",
    "set_global_events",
    "set_local_events",
]
