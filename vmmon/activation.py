"""Process-wide and per-unit activation sets."""

from __future__ import annotations

import weakref
from typing import Iterator, Tuple

from .code import CodeUnit
from .events import EventKind


class ActivationState:
    """Global event set plus sparse per-unit local sets.

    The effective set for a unit is always ``global | local``; it is never
    cached, so the two sources cannot drift apart. Local sets are held weakly
    and disappear with their unit. Callers serialise mutation.
    """

    def __init__(self) -> None:
        self._global = EventKind.NONE
        self._local: "weakref.WeakKeyDictionary[CodeUnit, EventKind]" = weakref.WeakKeyDictionary()

    def get_global(self) -> EventKind:
        return self._global

    def set_global(self, events: EventKind) -> None:
        self._global = EventKind(events)

    def get_local(self, unit: CodeUnit) -> EventKind:
        return self._local.get(unit, EventKind.NONE)

    def set_local(self, unit: CodeUnit, events: EventKind) -> None:
        if events:
            self._local[unit] = EventKind(events)
        else:
            self._local.pop(unit, None)

    def effective(self, unit: CodeUnit) -> EventKind:
        return self._global | self._local.get(unit, EventKind.NONE)

    def local_units(self) -> Iterator[Tuple[CodeUnit, EventKind]]:
        return iter(list(self._local.items()))

    def is_empty(self) -> bool:
        return not self._global and not any(self._local.values())

    def clear(self) -> None:
        self._global = EventKind.NONE
        self._local.clear()
