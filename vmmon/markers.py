"""Sparse per-unit marker tables."""

from __future__ import annotations

import weakref
from typing import Dict, Iterator, Optional, Tuple

from .code import CodeUnit
from .errors import InvalidArgument
from .events import MAX_MARKER_ID


def validate_marker(unit: CodeUnit, offset: int, marker_id: int) -> None:
    if isinstance(marker_id, bool) or not isinstance(marker_id, int):
        raise InvalidArgument(f"marker id must be an integer, got {marker_id!r}")
    if not 0 <= marker_id <= MAX_MARKER_ID:
        raise InvalidArgument(f"marker id {marker_id} outside 0..{MAX_MARKER_ID}")
    validate_offset(unit, offset)


def validate_offset(unit: CodeUnit, offset: int) -> None:
    if isinstance(offset, bool) or not isinstance(offset, int):
        raise InvalidArgument(f"offset must be an integer, got {offset!r}")
    if not 0 <= offset < len(unit):
        raise InvalidArgument(f"offset {offset} outside {unit.name} (0..{len(unit) - 1})")


class MarkerTable:
    """At most one marker id per (unit, offset).

    Tables are keyed weakly by unit. Markers carry no meaning beyond the id
    reported to the MARKER callback. Callers serialise mutation.
    """

    def __init__(self) -> None:
        self._tables: "weakref.WeakKeyDictionary[CodeUnit, Dict[int, int]]" = weakref.WeakKeyDictionary()

    def get(self, unit: CodeUnit, offset: int) -> Optional[int]:
        table = self._tables.get(unit)
        if table is None:
            return None
        return table.get(offset)

    def markers(self, unit: CodeUnit) -> Dict[int, int]:
        return dict(self._tables.get(unit, {}))

    def with_marker(self, unit: CodeUnit, offset: int, marker_id: int) -> Dict[int, int]:
        """Return the table ``unit`` would have after an insert, without applying it."""
        table = self.markers(unit)
        table[offset] = marker_id
        return table

    def without_marker(self, unit: CodeUnit, offset: int) -> Dict[int, int]:
        table = self.markers(unit)
        table.pop(offset, None)
        return table

    def replace(self, unit: CodeUnit, table: Dict[int, int]) -> None:
        if table:
            self._tables[unit] = dict(table)
        else:
            self._tables.pop(unit, None)

    def units(self) -> Iterator[Tuple[CodeUnit, Dict[int, int]]]:
        return iter([(unit, dict(table)) for unit, table in self._tables.items()])

    def is_empty(self) -> bool:
        return not any(self._tables.values())

    def clear(self) -> None:
        self._tables.clear()
