"""Tests for the interactive monitor shell."""

from __future__ import annotations

import contextlib
import json
from dataclasses import dataclass, field
from typing import List

import pytest
from prompt_toolkit.document import Document

from vmmon import repl
from vmmon.context import ShellContext, parse_marker_spec, parse_value
from vmmon.errors import InvalidArgument
from vmmon.events import EventKind
from vmmon.repl import MonitorShell, split_command


@dataclass
class DummySession:
    lines: List[str] = field(default_factory=list)

    def prompt(self) -> str:
        if not self.lines:
            raise EOFError
        return self.lines.pop(0)


@pytest.fixture
def shell(monitor, programs):
    return MonitorShell(ShellContext(programs, monitor=monitor))


@pytest.fixture(autouse=True)
def plain_stdout(monkeypatch):
    monkeypatch.setattr(repl, "patch_stdout", contextlib.nullcontext)


def test_split_command_reports_parse_errors():
    assert split_command('run classify "a b"') == ["run", "classify", "a b"]
    tokens = split_command('run "unterminated')
    assert tokens[-1].startswith("#parse-error")


def test_parse_helpers(programs):
    assert parse_value("3") == 3
    assert parse_value("[1, 2]") == [1, 2]
    assert parse_value("word") == "word"
    unit, offset, marker_id = parse_marker_spec(programs, "body:0x5:7")
    assert (unit.name, offset, marker_id) == ("body", 5, 7)
    with pytest.raises(InvalidArgument):
        parse_marker_spec(programs, "nobody:1")
    with pytest.raises(InvalidArgument):
        parse_marker_spec(programs, "body")


def test_events_and_run(shell, monitor, capsys):
    assert shell.dispatch("events LINE") == 0
    assert monitor.get_global_events() == EventKind.LINE
    assert shell.dispatch("run classify 1") == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0] == "global: LINE"
    assert out[-1] == "=> 'pos' (3 event(s))"
    assert shell.dispatch("events none") == 0
    assert monitor.get_global_events() == EventKind.NONE


def test_local_and_marker_commands(shell, monitor, programs, capsys):
    unit = programs.unit("classify")
    assert shell.dispatch("local classify BRANCH|JUMP") == 0
    assert monitor.get_local_events(unit) == EventKind.BRANCH | EventKind.JUMP
    assert shell.dispatch("mark classify:4:9") == 0
    assert monitor.markers_for(unit) == {4: 9}
    capsys.readouterr()
    assert shell.dispatch("r classify -1") == 0
    events = [line.split()[1] for line in capsys.readouterr().out.splitlines()[:-1]]
    assert events == ["BRANCH", "MARKER", "JUMP"]
    assert shell.dispatch("unmark classify:4") == 0
    assert monitor.markers_for(unit) == {}


def test_json_output(monitor, programs, capsys):
    shell = MonitorShell(ShellContext(programs, monitor=monitor, json_output=True))
    monitor.set_local_events(programs.unit("fact"), EventKind.PY_RETURN)
    assert shell.dispatch("run fact 2") == 0
    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert [record["event"] for record in lines[:-1]] == ["PY_RETURN", "PY_RETURN"]
    assert lines[-1] == {"result": "2", "events": 2}


def test_errors_are_reported(shell, monitor, capsys):
    assert shell.dispatch("frobnicate") == 1
    assert shell.dispatch("events BOGUS") == 1
    assert shell.dispatch("marker body:99") == 1
    assert shell.dispatch("run use_len 5") == 1
    assert shell.dispatch('run "open') == 1
    out = capsys.readouterr().out
    assert "Unknown command: frobnicate" in out
    assert "error: unknown event 'BOGUS'" in out
    assert "Command 'run' failed: TypeError" in out
    assert "Parse error" in out
    monitor.legacy.settrace(lambda frame, event, arg: None)
    assert shell.dispatch("events LINE") == 1
    assert "error:" in capsys.readouterr().out


def test_quit_raises_system_exit(shell):
    with pytest.raises(SystemExit):
        shell.dispatch("quit")


def test_shell_loop(shell, monitor, programs):
    session = DummySession(["events PY_CALL", "", "local body INSTRUCTION", "status", "q", "events NONE"])
    assert shell.run(session) == 0
    assert monitor.get_global_events() == EventKind.PY_CALL
    assert monitor.get_local_events(programs.unit("body")) == EventKind.INSTRUCTION
    # the command after quit never ran
    assert session.lines == ["events NONE"]


def test_shell_loop_ends_on_eof(shell, capsys):
    assert shell.run(DummySession(["help"])) == 0
    out = capsys.readouterr().out
    assert "marker" in out
    assert "quit" in out


def test_completer_offers_commands_functions_and_kinds(shell):
    completer = shell.completer()
    for text, expected in (("ma", "marker"), ("cla", "classify"), ("PY_R", "PY_RETURN")):
        doc = Document(text, cursor_position=len(text))
        results = {c.text for c in completer.get_completions(doc, None)}
        assert expected in results
