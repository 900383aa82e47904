"""vmmon command line entry point."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List

from .context import ShellContext, parse_marker_spec, parse_value
from .disassemble import main as dis_main
from .errors import AssemblyError, MonitoringError
from .events import EVENT_SHAPES, parse_event_names
from .repl import MonitorShell
from .vm import DEFAULT_RECURSION_LIMIT

LOG = logging.getLogger("vmmon.cli")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw, 0)
    except ValueError:
        LOG.warning("ignoring %s=%r (not an integer)", name, raw)
        return default


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vmmon", description="Event monitoring for the vmmon bytecode VM")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("VMMON_LOG", "WARNING"),
        help="Logging level (default $VMMON_LOG or WARNING)",
    )
    sub = parser.add_subparsers(dest="command")
    sub.required = True

    run = sub.add_parser("run", help="run a program with events recorded")
    run.add_argument("source", type=Path, help=".vasm program")
    run.add_argument("args", nargs="*", help="arguments passed to the entry function")
    run.add_argument("--entry", default="main", help="function to call (default main)")
    run.add_argument("--events", default="", help="comma separated event kinds to activate globally")
    run.add_argument(
        "--local",
        action="append",
        default=[],
        metavar="FUNC=KINDS",
        help="activate events for one function only (repeatable)",
    )
    run.add_argument("--marker", action="append", default=[], metavar="FUNC:OFFSET[:ID]", help="insert a marker (repeatable)")
    run.add_argument("--json", action="store_true", help="emit events as JSON lines")
    run.add_argument(
        "--recursion-limit",
        type=int,
        default=_env_int("VMMON_RECURSION_LIMIT", DEFAULT_RECURSION_LIMIT),
        help="maximum VM frame depth (default $VMMON_RECURSION_LIMIT or %(default)s)",
    )

    dis = sub.add_parser("dis", help="disassemble a program")
    dis.add_argument("source", type=Path)
    dis.add_argument("--events", default="", help="show the instrumented form for these kinds")
    dis.add_argument("--function", "-f", action="append", help="only list these functions")

    sub.add_parser("events", help="list event kinds")

    shell = sub.add_parser("shell", help="interactive monitor shell")
    shell.add_argument("source", type=Path)
    shell.add_argument("--json", action="store_true", help="emit JSON output when supported")
    return parser


def _cmd_run(args: argparse.Namespace) -> int:
    ctx = ShellContext.load(args.source, json_output=args.json, recursion_limit=args.recursion_limit)
    monitor = ctx.monitor
    monitor.set_global_events(parse_event_names(args.events.split(",")))
    for spec in args.local:
        name, sep, kinds = spec.partition("=")
        if not sep:
            raise MonitoringError(f"--local expects FUNC=KINDS, got '{spec}'")
        monitor.set_local_events(ctx.unit(name), parse_event_names(kinds.split(",")))
    for spec in args.marker:
        unit, offset, marker_id = parse_marker_spec(ctx.module, spec)
        monitor.insert_marker(unit, offset, marker_id)
    call_args = [parse_value(token) for token in args.args]
    try:
        result, records = ctx.run(args.entry, call_args)
    except Exception as exc:
        LOG.debug("program failed", exc_info=True)
        if args.json:
            print(json.dumps({"status": "error", "error": f"{type(exc).__name__}: {exc}"}))
        else:
            print(f"error: {type(exc).__name__}: {exc}", file=sys.stderr)
        return 1
    if args.json:
        print(json.dumps({"status": "ok", "result": repr(result), "events": len(records)}))
    else:
        print(f"=> {result!r}")
    return 0


def _cmd_dis(args: argparse.Namespace) -> int:
    argv = [str(args.source)]
    if args.events:
        argv += ["--events", args.events]
    for name in args.function or []:
        argv += ["--function", name]
    return dis_main(argv)


def _cmd_events(args: argparse.Namespace) -> int:
    for kind, shape in EVENT_SHAPES.items():
        print(f"{kind.name:<18} {kind.value:>6}  {shape.family:<14} ({', '.join(shape.args)})")
    return 0


def _cmd_shell(args: argparse.Namespace) -> int:
    ctx = ShellContext.load(args.source, json_output=args.json)
    try:
        return MonitorShell(ctx).run()
    except KeyboardInterrupt:
        print()
        return 0


def main(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    handlers = {
        "run": _cmd_run,
        "dis": _cmd_dis,
        "events": _cmd_events,
        "shell": _cmd_shell,
    }
    try:
        return handlers[args.command](args)
    except (AssemblyError, MonitoringError, OSError) as exc:
        print(f"vmmon: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
