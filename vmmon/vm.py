#!/usr/bin/env python3
"""Stack-based interpreter for vmmon units.

Each Python thread that enters an :class:`Interpreter` gets its own frame
chain; module globals are shared. Frames run against a pinned
:class:`~vmmon.code.Executable` and pick up re-instrumentation only at
synchronisation points (frame entry, generator resumption, backward
jumps), so a stretch of code between two such points never observes a
half-applied rewrite.
"""

from __future__ import annotations

import builtins as _py_builtins
import logging
import operator
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from . import opcodes as op
from .code import CodeUnit, Executable, Function, Module, Trap
from .dispatch import NO_EXTRA
from .errors import VMRecursionError
from .events import EventKind
from .monitor import Monitor, get_monitor

LOGGER = logging.getLogger("vmmon.vm")

DEFAULT_RECURSION_LIMIT = 100

_BINARY: Tuple[Callable[[Any, Any], Any], ...] = (
    operator.add,
    operator.sub,
    operator.mul,
    operator.floordiv,
    operator.mod,
    operator.truediv,
    operator.and_,
    operator.or_,
    operator.xor,
    operator.lshift,
    operator.rshift,
)

_COMPARE: Tuple[Callable[[Any, Any], Any], ...] = (
    operator.lt,
    operator.le,
    operator.eq,
    operator.ne,
    operator.gt,
    operator.ge,
    operator.is_,
    operator.is_not,
    lambda a, b: a in b,
    lambda a, b: a not in b,
)

_BUILTIN_NAMES = (
    "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "float", "int", "isinstance",
    "len", "list", "max", "min", "print", "range", "repr", "reversed", "sorted", "str", "sum",
    "tuple", "zip", "BaseException", "Exception", "ArithmeticError", "IndexError", "KeyError",
    "LookupError", "RuntimeError", "StopIteration", "TypeError", "ValueError", "ZeroDivisionError",
)

DEFAULT_BUILTINS: Dict[str, Any] = {name: getattr(_py_builtins, name) for name in _BUILTIN_NAMES}

_RETURN = "return"
_YIELD = "yield"

_UNBOUND = object()

_tls = threading.local()


def current_frame() -> Optional["Frame"]:
    """Innermost VM frame executing on the calling thread."""
    return getattr(_tls, "frame", None)


class Frame:
    """Activation record of one unit."""

    __slots__ = (
        "function",
        "unit",
        "locals",
        "stack",
        "offset",
        "back",
        "executable",
        "f_trace",
        "generator",
        "__weakref__",
    )

    def __init__(self, function: Function, args: Sequence[Any]) -> None:
        unit = function.unit
        self.function = function
        self.unit = unit
        self.locals: List[Any] = list(args) + [_UNBOUND] * (unit.nlocals - len(args))
        self.stack: List[Any] = []
        self.offset = 0
        self.back: Optional[Frame] = None
        self.executable: Optional[Executable] = None
        self.f_trace: Optional[Callable[..., Any]] = None
        self.generator: Optional[Generator] = None

    def __repr__(self) -> str:
        return f"<Frame {self.unit.name} offset={self.offset} line={self.line}>"

    @property
    def line(self) -> Optional[int]:
        return self.unit.line_for(self.offset)

    @property
    def globals(self) -> Dict[str, Any]:
        return self.function.globals

    def local_dict(self) -> Dict[str, Any]:
        return {
            name: value
            for name, value in zip(self.unit.varnames, self.locals)
            if value is not _UNBOUND
        }


class Generator:
    """Suspended execution of a generator unit; a regular Python iterator."""

    def __init__(self, interpreter: "Interpreter", frame: Frame) -> None:
        self._interpreter = interpreter
        self.frame = frame
        frame.generator = self
        self.started = False
        self.finished = False
        self.running = False

    def __repr__(self) -> str:
        return f"<vm generator {self.frame.unit.name}>"

    def __iter__(self) -> "Generator":
        return self

    def __next__(self) -> Any:
        return self.send(None)

    def send(self, value: Any) -> Any:
        if self.finished:
            raise StopIteration
        if not self.started and value is not None:
            raise TypeError("can't send non-None value to a just-started generator")
        if self.started:
            self.frame.stack.append(value)
        return self._resume(None)

    def throw(self, exc: BaseException) -> Any:
        if isinstance(exc, type):
            exc = exc()
        if self.finished or not self.started:
            # the body never ran; raise at the call site
            self.finished = True
            raise exc
        return self._resume(exc)

    def close(self) -> None:
        self.finished = True

    def _resume(self, throw: Optional[BaseException]) -> Any:
        if self.running:
            raise ValueError("generator already executing")
        self.started = True
        self.running = True
        try:
            kind, value = self._interpreter._execute(self.frame, throw=throw)
        except BaseException:
            self.finished = True
            raise
        finally:
            self.running = False
        if kind == _RETURN:
            self.finished = True
            raise StopIteration(value)
        return value


class Interpreter:
    """Executes functions produced by the assembler.

    ``monitor`` defaults to the process-wide :func:`~vmmon.monitor.get_monitor`
    instance; its legacy tracing facility is consulted for trace, profile and
    frame-eval hooks.
    """

    def __init__(
        self,
        *,
        monitor: Optional[Monitor] = None,
        builtins: Optional[Dict[str, Any]] = None,
        recursion_limit: int = DEFAULT_RECURSION_LIMIT,
    ) -> None:
        self.monitor = monitor or get_monitor()
        self.legacy = self.monitor.legacy
        self.dispatcher = self.monitor.dispatcher
        self.builtins: Dict[str, Any] = dict(DEFAULT_BUILTINS if builtins is None else builtins)
        if recursion_limit < 1:
            raise ValueError("recursion_limit must be positive")
        self.recursion_limit = recursion_limit

    # ------------------------------------------------------------------ entry points

    def call(self, func: Any, *args: Any) -> Any:
        """Call a VM function (or any Python callable) from the host."""
        if isinstance(func, Function):
            return self._call_function(func, list(args))
        return func(*args)

    def run(self, module: Module, entry: str = "main", *args: Any) -> Any:
        return self.call(module.function(entry), *args)

    # ------------------------------------------------------------------ frames

    def _call_function(self, func: Function, args: List[Any]) -> Any:
        unit = func.unit
        if len(args) != unit.argcount:
            raise TypeError(f"{unit.name}() takes {unit.argcount} argument(s) but {len(args)} were given")
        frame = Frame(func, args)
        if unit.is_generator:
            return Generator(self, frame)
        evaluator = self.legacy.get_frame_eval() if self.legacy.active else None
        if evaluator is not None:
            return evaluator(self, frame, self.eval_frame)
        return self.eval_frame(frame)

    def eval_frame(self, frame: Frame) -> Any:
        """Run a non-generator frame to completion and return its value."""
        kind, value = self._execute(frame)
        if kind != _RETURN:
            raise RuntimeError(f"{frame.unit.name} yielded outside a generator")
        return value

    def _execute(self, frame: Frame, throw: Optional[BaseException] = None) -> Tuple[str, Any]:
        depth = getattr(_tls, "depth", 0)
        if depth >= self.recursion_limit:
            raise VMRecursionError(f"maximum VM recursion depth ({self.recursion_limit}) exceeded in {frame.unit.name}")
        frame.back = getattr(_tls, "frame", None)
        _tls.frame = frame
        _tls.depth = depth + 1
        try:
            if self.legacy.active:
                self._legacy_call(frame)
            return self._loop(frame, throw)
        finally:
            _tls.frame = frame.back
            _tls.depth = depth
            if frame.generator is not None:
                frame.back = None

    # ------------------------------------------------------------------ main loop

    def _loop(self, frame: Frame, throw: Optional[BaseException]) -> Tuple[str, Any]:
        unit = frame.unit
        legacy = self.legacy
        executable = unit.executable or self.monitor.adopt(unit)
        frame.executable = executable
        ops = executable.ops
        stack = frame.stack
        fast = frame.locals
        consts = unit.consts
        names = unit.names
        line_starts = unit.line_start_set
        pending = throw

        while True:
            offset = frame.offset
            try:
                if pending is not None:
                    exc, pending = pending, None
                    self._check_event(unit, EventKind.PY_THROW, offset)
                    raise exc

                opcode, arg = ops[offset]
                if legacy.active and frame.f_trace is not None and offset in line_starts:
                    frame.f_trace = frame.f_trace(frame, "line", None)

                events = EventKind.NONE
                truth: Optional[bool] = None
                if opcode == op.TRAP:
                    trap = executable.traps[arg]
                    truth = self._fire_trap(frame, trap)
                    opcode = trap.original.opcode
                    arg = trap.original.arg
                    events = trap.events

                if opcode == op.LOAD_FAST:
                    value = fast[arg]
                    if value is _UNBOUND:
                        raise UnboundLocalError(f"local variable '{unit.varnames[arg]}' referenced before assignment")
                    stack.append(value)
                    frame.offset = offset + 1
                elif opcode == op.LOAD_CONST:
                    stack.append(consts[arg])
                    frame.offset = offset + 1
                elif opcode == op.STORE_FAST:
                    fast[arg] = stack.pop()
                    frame.offset = offset + 1
                elif opcode == op.BINARY_OP:
                    right = stack.pop()
                    left = stack.pop()
                    stack.append(_BINARY[arg](left, right))
                    frame.offset = offset + 1
                elif opcode == op.COMPARE_OP:
                    right = stack.pop()
                    left = stack.pop()
                    stack.append(_COMPARE[arg](left, right))
                    frame.offset = offset + 1
                elif opcode in (op.POP_JUMP_IF_FALSE, op.POP_JUMP_IF_TRUE):
                    value = stack.pop()
                    if truth is None:
                        truth = bool(value)
                    taken = truth if opcode == op.POP_JUMP_IF_TRUE else not truth
                    if taken:
                        frame.offset = arg
                        if arg <= offset:
                            executable = frame.executable = unit.executable or self.monitor.adopt(unit)
                            ops = executable.ops
                    else:
                        frame.offset = offset + 1
                elif opcode == op.JUMP:
                    frame.offset = arg
                    if arg <= offset:
                        executable = frame.executable = unit.executable or self.monitor.adopt(unit)
                        ops = executable.ops
                elif opcode == op.CALL:
                    stack.append(self._do_call(frame, arg, events, offset))
                    frame.offset = offset + 1
                elif opcode == op.LOAD_GLOBAL:
                    name = names[arg]
                    globals_ = frame.function.globals
                    if name in globals_:
                        stack.append(globals_[name])
                    elif name in self.builtins:
                        stack.append(self.builtins[name])
                    else:
                        raise NameError(f"name '{name}' is not defined")
                    frame.offset = offset + 1
                elif opcode == op.STORE_GLOBAL:
                    frame.function.globals[names[arg]] = stack.pop()
                    frame.offset = offset + 1
                elif opcode == op.RETURN_VALUE:
                    value = stack.pop()
                    if legacy.active:
                        self._legacy_return(frame, value)
                    return _RETURN, value
                elif opcode == op.YIELD_VALUE:
                    value = stack.pop()
                    frame.offset = offset + 1
                    if legacy.active:
                        self._legacy_return(frame, value)
                    return _YIELD, value
                elif opcode == op.RESUME or opcode == op.NOP:
                    frame.offset = offset + 1
                elif opcode == op.POP_TOP:
                    stack.pop()
                    frame.offset = offset + 1
                elif opcode == op.DUP_TOP:
                    stack.append(stack[-1])
                    frame.offset = offset + 1
                elif opcode == op.UNARY_NOT:
                    stack.append(not stack.pop())
                    frame.offset = offset + 1
                elif opcode == op.BUILD_LIST:
                    if arg:
                        items = stack[-arg:]
                        del stack[-arg:]
                    else:
                        items = []
                    stack.append(items)
                    frame.offset = offset + 1
                elif opcode == op.RAISE:
                    raise self._make_exception(stack.pop())
                else:
                    raise RuntimeError(f"bad opcode 0x{opcode:02X} at {unit.name}@{offset}")
            except Exception as exc:
                self._handle_exception(frame, exc, offset)

    # ------------------------------------------------------------------ instructions

    def _fire_trap(self, frame: Frame, trap: Trap) -> Optional[bool]:
        """Deliver the events of one trap in their fixed order.

        Returns the branch condition when it had to be evaluated early to
        report the destination, so the instruction does not evaluate it twice.
        """
        unit = frame.unit
        offset = trap.offset
        events = trap.events
        fire = self.dispatcher.fire
        truth: Optional[bool] = None
        if events & EventKind.LINE:
            fire(EventKind.LINE, unit, offset)
        if events & EventKind.INSTRUCTION:
            fire(EventKind.INSTRUCTION, unit, offset)
        original = trap.original
        opcode = original.opcode
        if opcode == op.RESUME:
            kind = EventKind.PY_CALL if original.arg == op.RESUME_START else EventKind.PY_RESUME
            if events & kind:
                fire(kind, unit, offset)
        elif opcode == op.RETURN_VALUE:
            if events & EventKind.PY_RETURN:
                fire(EventKind.PY_RETURN, unit, offset)
        elif opcode == op.YIELD_VALUE:
            if events & EventKind.PY_YIELD:
                fire(EventKind.PY_YIELD, unit, offset)
        elif opcode == op.JUMP:
            if events & EventKind.JUMP:
                fire(EventKind.JUMP, unit, offset, original.arg)
        elif opcode in (op.POP_JUMP_IF_FALSE, op.POP_JUMP_IF_TRUE):
            if events & EventKind.BRANCH:
                truth = bool(frame.stack[-1])
                taken = truth if opcode == op.POP_JUMP_IF_TRUE else not truth
                fire(EventKind.BRANCH, unit, offset, original.arg if taken else offset + 1)
        elif opcode == op.CALL:
            if events & EventKind.C_CALL:
                callee = frame.stack[-(original.arg + 1)]
                if callable(callee) and not isinstance(callee, Function):
                    fire(EventKind.C_CALL, unit, offset, callee)
        if trap.marker is not None:
            fire(EventKind.MARKER, unit, offset, trap.marker)
        return truth

    def _do_call(self, frame: Frame, argc: int, events: EventKind, offset: int) -> Any:
        stack = frame.stack
        if argc:
            args = stack[-argc:]
            del stack[-argc:]
        else:
            args = []
        callee = stack.pop()
        if isinstance(callee, Function):
            return self._call_function(callee, args)
        if not callable(callee):
            raise TypeError(f"'{type(callee).__name__}' object is not callable")
        unit = frame.unit
        profile = self.legacy.getprofile() if self.legacy.active else None
        if profile is not None:
            profile(frame, "c_call", callee)
        try:
            result = callee(*args)
        except Exception:
            self._check_event(unit, EventKind.C_RAISE, offset, callee)
            if profile is not None:
                profile(frame, "c_exception", callee)
            raise
        if events & EventKind.C_RETURN:
            self.dispatcher.fire(EventKind.C_RETURN, unit, offset, callee)
        if profile is not None:
            profile(frame, "c_return", callee)
        return result

    @staticmethod
    def _make_exception(value: Any) -> BaseException:
        if isinstance(value, type) and issubclass(value, BaseException):
            return value()
        if isinstance(value, BaseException):
            return value
        return TypeError("exceptions must derive from BaseException")

    # ------------------------------------------------------------------ exceptions

    def _check_event(self, unit: CodeUnit, kind: EventKind, offset: int, extra: Any = NO_EXTRA) -> None:
        monitor = self.monitor
        if monitor.check_only_any & kind and monitor.is_active(unit, kind):
            self.dispatcher.fire(kind, unit, offset, extra)

    def _handle_exception(self, frame: Frame, exc: Exception, offset: int) -> None:
        """Route ``exc`` to a handler in ``frame`` or re-raise it to the caller."""
        unit = frame.unit
        try:
            self._check_event(unit, EventKind.RAISE, offset, exc)
            if self.legacy.active and frame.f_trace is not None:
                frame.f_trace = frame.f_trace(frame, "exception", exc)
        except Exception as fault:
            exc = fault
        entry = unit.handler_for(offset)
        if entry is None:
            self._check_event(unit, EventKind.PY_UNWIND, offset)
            if self.legacy.active:
                self._legacy_return(frame, None)
            raise exc
        del frame.stack[entry.depth:]
        frame.stack.append(exc)
        frame.offset = entry.target
        try:
            self._check_event(unit, EventKind.EXCEPTION_HANDLED, entry.target, exc)
        except Exception as fault:
            del frame.stack[entry.depth:]
            self._handle_exception(frame, fault, entry.target)

    # ------------------------------------------------------------------ legacy hooks

    def _legacy_call(self, frame: Frame) -> None:
        trace = self.legacy.gettrace()
        if trace is not None:
            frame.f_trace = trace(frame, "call", None)
        profile = self.legacy.getprofile()
        if profile is not None:
            profile(frame, "call", None)

    def _legacy_return(self, frame: Frame, value: Any) -> None:
        if frame.f_trace is not None:
            frame.f_trace(frame, "return", value)
        profile = self.legacy.getprofile()
        if profile is not None:
            profile(frame, "return", value)
