"""Interactive monitor shell for vmmon programs."""

from __future__ import annotations

import json
import logging
import shlex
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.history import InMemoryHistory
from prompt_toolkit.patch_stdout import patch_stdout

from .context import ShellContext, parse_marker_spec, parse_value
from .disassemble import format_listing
from .errors import MonitoringError, VMError
from .events import EVENT_SHAPES, EventKind, format_event_set, parse_event_names

LOGGER = logging.getLogger("vmmon.repl")


def split_command(line: str) -> List[str]:
    """Tokenise a shell line; unbalanced quotes yield a trailing parse-error token."""
    if not line:
        return []
    try:
        return shlex.split(line, posix=True)
    except ValueError as exc:
        return [line, f"#parse-error:{exc}"]


def _event_arg(tokens: Sequence[str]) -> EventKind:
    names: List[str] = []
    for token in tokens:
        names.extend(token.replace("|", ",").split(","))
    if [name.strip().lower() for name in names if name.strip()] == ["none"]:
        return EventKind.NONE
    return parse_event_names(names)


@dataclass
class Command:
    """One shell command; subclasses implement :meth:`run`."""

    name: str
    description: str
    aliases: Sequence[str] = field(default_factory=tuple)

    def run(self, ctx: ShellContext, argv: List[str]) -> int:
        raise NotImplementedError(f"{type(self).__name__}.run")

    def format_help(self) -> str:
        names = ", ".join((self.name, *self.aliases))
        return f"{names:<18} {self.description}"


class CommandRegistry:
    """Command lookup by name or alias, in registration order."""

    def __init__(self) -> None:
        self._lookup: Dict[str, Command] = {}
        self._commands: List[Command] = []

    def register(self, command: Command) -> None:
        self._commands.append(command)
        for name in (command.name, *command.aliases):
            self._lookup[name] = command

    def get(self, name: str) -> Optional[Command]:
        return self._lookup.get(name.lower())

    def __iter__(self) -> Iterator[Command]:
        return iter(self._commands)

    def names(self) -> List[str]:
        return sorted(self._lookup)


class HelpCommand(Command):
    def __init__(self, registry: CommandRegistry) -> None:
        super().__init__("help", "List commands", aliases=("?",))
        self.registry = registry

    def run(self, ctx: ShellContext, argv: List[str]) -> int:
        for command in self.registry:
            print(command.format_help())
        return 0


class EventsCommand(Command):
    def __init__(self) -> None:
        super().__init__("events", "Show or set global events: events [KIND,...|none]")

    def run(self, ctx: ShellContext, argv: List[str]) -> int:
        if argv:
            ctx.monitor.set_global_events(_event_arg(argv))
        print(f"global: {format_event_set(ctx.monitor.get_global_events())}")
        return 0


class LocalCommand(Command):
    def __init__(self) -> None:
        super().__init__("local", "Show or set a function's local events: local FUNC [KIND,...|none]")

    def run(self, ctx: ShellContext, argv: List[str]) -> int:
        if not argv:
            for unit in ctx.module.units.values():
                print(f"{unit.name:<16} {format_event_set(ctx.monitor.get_local_events(unit))}")
            return 0
        unit = ctx.unit(argv[0])
        if len(argv) > 1:
            ctx.monitor.set_local_events(unit, _event_arg(argv[1:]))
        print(f"{unit.name}: {format_event_set(ctx.monitor.get_local_events(unit))}")
        return 0


class MarkerCommand(Command):
    def __init__(self) -> None:
        super().__init__("marker", "Insert a marker: marker FUNC:OFFSET[:ID]", aliases=("mark",))

    def run(self, ctx: ShellContext, argv: List[str]) -> int:
        if not argv:
            for unit in ctx.module.units.values():
                for offset, marker_id in sorted(ctx.monitor.markers_for(unit).items()):
                    print(f"{unit.name}:{offset} id={marker_id}")
            return 0
        unit, offset, marker_id = parse_marker_spec(ctx.module, argv[0])
        ctx.monitor.insert_marker(unit, offset, marker_id)
        print(f"marker {marker_id} at {unit.name}:{offset}")
        return 0


class UnmarkCommand(Command):
    def __init__(self) -> None:
        super().__init__("unmark", "Remove a marker: unmark FUNC:OFFSET")

    def run(self, ctx: ShellContext, argv: List[str]) -> int:
        if len(argv) != 1:
            print("usage: unmark FUNC:OFFSET")
            return 1
        unit, offset, _marker_id = parse_marker_spec(ctx.module, argv[0])
        ctx.monitor.remove_marker(unit, offset)
        return 0


class RunCommand(Command):
    def __init__(self) -> None:
        super().__init__("run", "Call a function and print its events: run [FUNC] [ARGS...]", aliases=("r",))

    def run(self, ctx: ShellContext, argv: List[str]) -> int:
        entry = argv[0] if argv else "main"
        args = [parse_value(token) for token in argv[1:]]
        result, records = ctx.run(entry, args)
        if ctx.json_output:
            print(json.dumps({"result": repr(result), "events": len(records)}))
        else:
            print(f"=> {result!r} ({len(records)} event(s))")
        return 0


class DisCommand(Command):
    def __init__(self) -> None:
        super().__init__("dis", "Disassemble the current form: dis [FUNC...]")

    def run(self, ctx: ShellContext, argv: List[str]) -> int:
        units = [ctx.unit(name) for name in argv] if argv else list(ctx.module.units.values())
        for unit in units:
            for line in format_listing(unit):
                print(line)
        return 0


class StatusCommand(Command):
    def __init__(self) -> None:
        super().__init__("status", "Show monitor state")

    def run(self, ctx: ShellContext, argv: List[str]) -> int:
        state = ctx.monitor.describe()
        if ctx.json_output:
            print(json.dumps(state, indent=2, sort_keys=True))
            return 0
        for key, value in state.items():
            print(f"  {key:<10}: {value}")
        return 0


class KindsCommand(Command):
    def __init__(self) -> None:
        super().__init__("kinds", "List event kinds and callback arguments")

    def run(self, ctx: ShellContext, argv: List[str]) -> int:
        for kind, shape in EVENT_SHAPES.items():
            print(f"{kind.name:<18} {kind.value:>6}  ({', '.join(shape.args)})")
        return 0


class QuitCommand(Command):
    def __init__(self) -> None:
        super().__init__("quit", "Leave the shell", aliases=("exit", "q"))

    def run(self, ctx: ShellContext, argv: List[str]) -> int:
        raise SystemExit(0)


def build_registry() -> CommandRegistry:
    registry = CommandRegistry()
    registry.register(HelpCommand(registry))
    for command_cls in (
        EventsCommand,
        LocalCommand,
        MarkerCommand,
        UnmarkCommand,
        RunCommand,
        DisCommand,
        StatusCommand,
        KindsCommand,
        QuitCommand,
    ):
        registry.register(command_cls())
    return registry


class MonitorShell:
    """prompt_toolkit REPL driving a :class:`ShellContext`."""

    def __init__(self, ctx: ShellContext, registry: Optional[CommandRegistry] = None) -> None:
        self.ctx = ctx
        self.registry = registry if registry is not None else build_registry()

    def completer(self) -> WordCompleter:
        words = self.registry.names() + list(self.ctx.module.units) + [kind.name for kind in EVENT_SHAPES]
        return WordCompleter(words, ignore_case=True)

    def run(self, session: Optional[PromptSession] = None) -> int:
        if session is None:
            session = PromptSession(
                "vmmon> ",
                history=InMemoryHistory(),
                completer=self.completer(),
                complete_while_typing=True,
            )
        while True:
            try:
                with patch_stdout():
                    line = session.prompt()
            except (EOFError, KeyboardInterrupt):
                print()
                return 0
            try:
                self.dispatch(line)
            except SystemExit as stop:
                LOGGER.debug("shell exiting with %r", stop.code)
                return int(stop.code or 0)

    def dispatch(self, line: str) -> int:
        tokens = split_command(line.strip())
        if not tokens:
            return 0
        if tokens[-1].startswith("#parse-error:"):
            print(f"Parse error: {tokens[-1].partition(':')[2]}")
            return 1
        name, args = tokens[0], tokens[1:]
        command = self.registry.get(name)
        if command is None:
            print(f"Unknown command: {name}")
            return 1
        try:
            return command.run(self.ctx, args)
        except (MonitoringError, VMError) as exc:
            print(f"error: {exc}")
            return 1
        except Exception as exc:
            LOGGER.debug("command %s failed", name, exc_info=True)
            print(f"Command '{name}' failed: {type(exc).__name__}: {exc}")
            return 1


__all__ = ["Command", "CommandRegistry", "MonitorShell", "build_registry", "split_command"]
