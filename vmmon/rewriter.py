#!/usr/bin/env python3
"""Trap placement for executable units.

The rewriter turns ``(instrumented events, marker table)`` for a unit into an
:class:`~vmmon.code.Executable` where every offset that needs interception
holds ``TRAP <index>``. Planning is pure: it never touches the unit, so a
batch of plans can be discarded when any one of them fails and nothing has
changed. Committing swaps ``unit.executable`` in a single assignment.
"""

from __future__ import annotations

import itertools
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from . import opcodes as op
from .code import CodeUnit, Executable, Trap
from .errors import RewriteFailure
from .events import INSTRUMENTED_EVENTS, EventKind, format_event_set

LOGGER = logging.getLogger("vmmon.rewriter")

TrapLayout = Tuple[Tuple[int, EventKind, Optional[int]], ...]


def _sites(unit: CodeUnit, kind: EventKind) -> Iterable[int]:
    """Offsets in ``unit`` where ``kind`` can occur."""
    if kind == EventKind.LINE:
        return unit.line_starts()
    if kind == EventKind.INSTRUCTION:
        return range(len(unit))
    matches: List[int] = []
    for offset, ins in enumerate(unit.instructions):
        opcode = ins.opcode
        if kind == EventKind.PY_CALL:
            hit = opcode == op.RESUME and ins.arg == op.RESUME_START
        elif kind == EventKind.PY_RESUME:
            hit = opcode == op.RESUME and ins.arg != op.RESUME_START
        elif kind == EventKind.PY_RETURN:
            hit = opcode == op.RETURN_VALUE
        elif kind == EventKind.PY_YIELD:
            hit = opcode == op.YIELD_VALUE
        elif kind in (EventKind.C_CALL, EventKind.C_RETURN):
            hit = opcode == op.CALL
        elif kind == EventKind.JUMP:
            hit = opcode in op.JUMP_OPS
        elif kind == EventKind.BRANCH:
            hit = opcode in op.BRANCH_OPS
        else:
            hit = False
        if hit:
            matches.append(offset)
    return matches


def trap_layout(unit: CodeUnit, events: EventKind, markers: Mapping[int, int]) -> TrapLayout:
    """Return the sorted ``(offset, events, marker)`` triples ``unit`` needs."""
    per_offset: Dict[int, EventKind] = {}
    for kind in EventKind:
        if not kind.value or not (events & kind & INSTRUMENTED_EVENTS):
            continue
        for offset in _sites(unit, kind):
            per_offset[offset] = per_offset.get(offset, EventKind.NONE) | kind
    offsets = sorted(set(per_offset) | set(markers))
    return tuple((offset, per_offset.get(offset, EventKind.NONE), markers.get(offset)) for offset in offsets)


def layout_of(executable: Optional[Executable]) -> Optional[TrapLayout]:
    if executable is None:
        return None
    return tuple((trap.offset, trap.events, trap.marker) for trap in executable.traps)


class Rewriter:
    """Builds and installs instrumented executables."""

    def __init__(self) -> None:
        self._versions = itertools.count(1)
        self.rewrites = 0

    def build(self, unit: CodeUnit, layout: TrapLayout, events: EventKind) -> Executable:
        version = next(self._versions)
        if not layout:
            return Executable(version, unit.plain_ops, (), EventKind.NONE)
        ops = list(unit.plain_ops)
        traps: List[Trap] = []
        for offset, kinds, marker in layout:
            ops[offset] = (op.TRAP, len(traps))
            traps.append(Trap(offset, unit.instructions[offset], kinds, marker))
        return Executable(version, tuple(ops), tuple(traps), events & INSTRUMENTED_EVENTS)

    def plan(
        self,
        unit: CodeUnit,
        events: EventKind,
        markers: Mapping[int, int],
        *,
        adopt: bool = False,
    ) -> Optional[Executable]:
        """Plan the executable ``unit`` needs; ``None`` when it already has it.

        Raises :class:`RewriteFailure` when a change is needed but the unit
        refuses modification. ``adopt`` builds the first form of a unit that
        has never run; that is compilation, not rewriting, so frozen units
        accept it.
        """
        layout = trap_layout(unit, events, markers)
        current = unit.executable
        if current is not None and layout_of(current) == layout:
            return None
        if current is not None and unit.frozen and not adopt:
            raise RewriteFailure(f"unit {unit.name} is frozen and cannot be re-instrumented", unit=unit)
        return self.build(unit, layout, events)

    def commit(self, plans: Mapping[CodeUnit, Executable]) -> None:
        for unit, executable in plans.items():
            unit.executable = executable
            self.rewrites += 1
            LOGGER.debug(
                "instrumented %s v%d: %d trap(s) [%s]",
                unit.name,
                executable.version,
                len(executable.traps),
                format_event_set(executable.events),
            )
