"""Shared state and argument helpers for the vmmon CLI and shell."""

from __future__ import annotations

import ast
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .asm import assemble_file
from .code import CodeUnit, Module
from .errors import InvalidArgument
from .events import EventKind
from .monitor import Monitor, get_monitor
from .trace_format import EventRecorder, format_event_record
from .vm import DEFAULT_RECURSION_LIMIT, Interpreter

LOGGER = logging.getLogger("vmmon.context")


def parse_value(text: str) -> Any:
    """Literal for a command line argument; bare words stay strings."""
    try:
        return ast.literal_eval(text)
    except (ValueError, SyntaxError):
        return text


def parse_marker_spec(module: Module, spec: str) -> Tuple[CodeUnit, int, int]:
    """Resolve ``function:offset[:marker_id]``."""
    parts = spec.split(":")
    if len(parts) not in (2, 3):
        raise InvalidArgument(f"marker spec must be function:offset[:id], got '{spec}'")
    try:
        unit = module.unit(parts[0])
    except KeyError:
        raise InvalidArgument(f"no function '{parts[0]}' in {module.name}") from None
    try:
        offset = int(parts[1], 0)
        marker_id = int(parts[2], 0) if len(parts) == 3 else 0
    except ValueError:
        raise InvalidArgument(f"bad marker spec '{spec}'") from None
    return unit, offset, marker_id


@dataclass
class ShellContext:
    """A loaded program plus the monitor and interpreter it runs on."""

    module: Module
    monitor: Monitor = field(default_factory=get_monitor)
    json_output: bool = False
    recursion_limit: int = DEFAULT_RECURSION_LIMIT
    interpreter: Interpreter = field(init=False)
    recorder: Optional[EventRecorder] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self.interpreter = Interpreter(monitor=self.monitor, recursion_limit=self.recursion_limit)

    @classmethod
    def load(cls, path: Path | str, **kwargs: Any) -> "ShellContext":
        module = assemble_file(path)
        LOGGER.info("loaded %s: %s", path, ", ".join(module.units))
        return cls(module, **kwargs)

    def unit(self, name: str) -> CodeUnit:
        try:
            return self.module.unit(name)
        except KeyError:
            raise InvalidArgument(f"no function '{name}' in {self.module.name}") from None

    def watched_events(self) -> int:
        events = self.monitor.get_global_events()
        for unit in self.module.units.values():
            events |= self.monitor.get_local_events(unit)
        return events

    def emit(self, record: Mapping[str, Any]) -> None:
        if self.json_output:
            print(json.dumps(record, sort_keys=True))
        else:
            print(format_event_record(record))

    def run(self, entry: str, args: Sequence[Any] = ()) -> Tuple[Any, List[Dict[str, Any]]]:
        """Call ``entry`` recording every event that is currently active."""
        events = self.watched_events()
        if any(self.monitor.markers_for(unit) for unit in self.module.units.values()):
            events |= EventKind.MARKER
        recorder = EventRecorder(events, monitor=self.monitor, sink=self.emit)
        self.recorder = recorder
        with recorder:
            result = self.interpreter.run(self.module, entry, *args)
        return result, recorder.records
