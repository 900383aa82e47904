#!/usr/bin/env python3
"""Executable units and their instrumented forms.

A :class:`CodeUnit` is the compiled body of one function. Its pristine
instructions never change. What the interpreter actually runs is
``unit.executable``: an immutable :class:`Executable` that is either the
plain instruction stream or a copy with some offsets replaced by ``TRAP``.
Re-instrumentation builds a new ``Executable`` and swaps the reference, so
a frame holding the old one keeps running a consistent program.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

from . import opcodes as op
from .events import EventKind


@dataclass(frozen=True)
class Instruction:
    opcode: int
    arg: int = 0
    line: Optional[int] = None

    @property
    def name(self) -> str:
        return op.OPCODE_NAMES.get(self.opcode, f"0x{self.opcode:02X}")


@dataclass(frozen=True)
class ExceptionEntry:
    """Handler covering offsets ``start <= o < end``."""

    start: int
    end: int
    target: int
    depth: int = 0

    def covers(self, offset: int) -> bool:
        return self.start <= offset < self.end


@dataclass(frozen=True)
class Trap:
    offset: int
    original: Instruction
    events: EventKind = EventKind.NONE
    marker: Optional[int] = None


@dataclass(frozen=True)
class Executable:
    """One version of a unit's runnable form."""

    version: int
    ops: Tuple[Tuple[int, int], ...]
    traps: Tuple[Trap, ...] = ()
    events: EventKind = EventKind.NONE

    def trap_at(self, offset: int) -> Optional[Trap]:
        opcode, arg = self.ops[offset]
        if opcode != op.TRAP:
            return None
        return self.traps[arg]

    def trapped_offsets(self) -> List[int]:
        return [trap.offset for trap in self.traps]


_unit_ids = itertools.count(1)


class CodeUnit:
    """Compiled representation of one function body."""

    def __init__(
        self,
        name: str,
        instructions: Sequence[Instruction],
        *,
        consts: Sequence[Any] = (),
        names: Sequence[str] = (),
        varnames: Sequence[str] = (),
        argcount: int = 0,
        exception_table: Sequence[ExceptionEntry] = (),
        is_generator: bool = False,
        first_line: Optional[int] = None,
        filename: str = "<vmmon>",
        frozen: bool = False,
    ) -> None:
        if not instructions:
            raise ValueError(f"unit {name!r} has no instructions")
        self.id = next(_unit_ids)
        self.name = name
        self.instructions: Tuple[Instruction, ...] = tuple(instructions)
        self.consts: Tuple[Any, ...] = tuple(consts)
        self.names: Tuple[str, ...] = tuple(names)
        self.varnames: Tuple[str, ...] = tuple(varnames)
        self.argcount = argcount
        self.exception_table: Tuple[ExceptionEntry, ...] = tuple(exception_table)
        self.is_generator = is_generator
        self.filename = filename
        self.first_line = first_line if first_line is not None else self._first_line()
        # Units that must not be rewritten; the rewriter refuses to change them.
        self.frozen = frozen
        self.plain_ops: Tuple[Tuple[int, int], ...] = tuple((ins.opcode, ins.arg) for ins in self.instructions)
        self.executable: Optional[Executable] = None
        self._line_starts = self._compute_line_starts()
        self.line_start_set: FrozenSet[int] = frozenset(self._line_starts)

    def __repr__(self) -> str:
        return f"<CodeUnit {self.name} #{self.id} ({len(self.instructions)} instructions)>"

    def __len__(self) -> int:
        return len(self.instructions)

    def _first_line(self) -> Optional[int]:
        for ins in self.instructions:
            if ins.line is not None:
                return ins.line
        return None

    @property
    def nlocals(self) -> int:
        return len(self.varnames)

    def line_for(self, offset: int) -> Optional[int]:
        if 0 <= offset < len(self.instructions):
            return self.instructions[offset].line
        return None

    def line_starts(self) -> Tuple[int, ...]:
        """Offsets whose instruction begins a new source line."""
        return self._line_starts

    def _compute_line_starts(self) -> Tuple[int, ...]:
        starts: List[int] = []
        previous: Optional[int] = None
        for offset, ins in enumerate(self.instructions):
            if ins.line is not None and ins.line != previous:
                starts.append(offset)
            previous = ins.line
        return tuple(starts)

    def handler_for(self, offset: int) -> Optional[ExceptionEntry]:
        """Innermost handler covering ``offset`` (the narrowest range wins)."""
        best: Optional[ExceptionEntry] = None
        for entry in self.exception_table:
            if entry.covers(offset):
                if best is None or (entry.end - entry.start) < (best.end - best.start):
                    best = entry
        return best

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "instructions": len(self.instructions),
            "argcount": self.argcount,
            "generator": self.is_generator,
            "first_line": self.first_line,
        }


@dataclass
class Function:
    """A callable VM function: a unit bound to the globals it runs against."""

    unit: CodeUnit
    globals: Dict[str, Any]
    name: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.unit.name

    def __repr__(self) -> str:
        return f"<vm function {self.name}>"


@dataclass
class Module:
    """Result of assembling a source file."""

    name: str
    units: Dict[str, CodeUnit] = field(default_factory=dict)
    globals: Dict[str, Any] = field(default_factory=dict)

    def function(self, name: str) -> Function:
        value = self.globals.get(name)
        if not isinstance(value, Function):
            raise KeyError(f"no function {name!r} in module {self.name}")
        return value

    def unit(self, name: str) -> CodeUnit:
        return self.units[name]
