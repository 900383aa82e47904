import threading

import pytest

from vmmon.errors import ConflictError
from vmmon.events import EventKind
from vmmon.legacy import Mode


def test_settrace_reports_call_line_return(monitor, interp, programs):
    seen = []

    def tracer(frame, event, arg):
        seen.append((event, frame.unit.name, frame.line, arg))
        return tracer

    monitor.legacy.settrace(tracer)
    assert monitor.mode is Mode.LEGACY_TRACE
    assert interp.run(programs, "classify", 1) == "pos"
    assert [(event, line) for event, _name, line, _arg in seen] == [
        ("call", 1),
        ("line", 1),
        ("line", 3),
        ("line", 4),
        ("return", 4),
    ]
    assert seen[-1][3] == "pos"
    for unit in programs.units.values():
        assert unit.executable is None or unit.executable.traps == ()


def test_global_tracer_without_local_tracer_sees_only_calls(monitor, interp, programs):
    events = []
    monitor.legacy.settrace(lambda frame, event, arg: events.append(event))
    interp.run(programs, "fact", 3)
    assert events == ["call", "call", "call"]


def test_trace_exception_event(monitor, interp, programs):
    seen = []

    def tracer(frame, event, arg):
        if event == "exception":
            seen.append((frame.offset, type(arg)))
        return tracer

    monitor.legacy.settrace(tracer)
    assert interp.run(programs, "safe_div", 1, 0) == -1
    assert seen == [(3, ZeroDivisionError)]


def test_setprofile_reports_native_calls(monitor, interp, programs):
    seen = []
    monitor.legacy.setprofile(lambda frame, event, arg: seen.append((event, arg)))
    assert interp.run(programs, "use_len", [1, 2]) == 2
    with pytest.raises(TypeError):
        interp.run(programs, "use_len", 1)
    assert seen == [
        ("call", None),
        ("c_call", len),
        ("c_return", len),
        ("return", 2),
        ("call", None),
        ("c_call", len),
        ("c_exception", len),
        ("return", None),
    ]


def test_per_thread_hooks_stay_on_their_thread(monitor, interp, programs):
    seen = []
    monitor.legacy.settrace(lambda frame, event, arg: seen.append(threading.get_ident()))
    other = threading.Thread(target=interp.run, args=(programs, "body", 1))
    other.start()
    other.join()
    assert seen == []
    interp.run(programs, "body", 1)
    assert seen == [threading.get_ident()]


def test_all_threads_hooks(monitor, interp, programs):
    seen = []
    monitor.legacy.settrace_all_threads(lambda frame, event, arg: seen.append(threading.get_ident()))
    other = threading.Thread(target=interp.run, args=(programs, "body", 1))
    other.start()
    other.join()
    assert len(seen) == 1 and seen[0] != threading.get_ident()
    monitor.legacy.settrace_all_threads(None)
    assert monitor.mode is Mode.IDLE


def test_frame_eval_override(monitor, interp, programs):
    evaluated = []

    def evaluator(interpreter, frame, default_eval):
        evaluated.append(frame.unit.name)
        if frame.unit.name == "body":
            return "replaced"
        return default_eval(frame)

    monitor.legacy.set_frame_eval(evaluator)
    assert monitor.legacy.get_frame_eval() is evaluator
    assert interp.run(programs, "fact", 3) == 6
    assert evaluated == ["fact", "fact", "fact"]
    assert interp.run(programs, "body", 2) == "replaced"
    with pytest.raises(ConflictError):
        monitor.insert_marker(programs.unit("body"), 0)
    monitor.legacy.set_frame_eval(None)
    assert interp.run(programs, "body", 2) == 6


def test_clearing_a_hook_while_monitoring_is_allowed(monitor, programs):
    monitor.set_local_events(programs.unit("body"), 1)
    monitor.legacy.settrace(None)
    monitor.legacy.setprofile(None)
    assert monitor.mode is Mode.EVENT_MONITORING


def test_hooks_of_finished_threads_are_dropped(monitor, interp, programs):
    tracer = lambda frame, event, arg: None  # noqa: E731

    def worker():
        monitor.legacy.settrace(tracer)
        monitor.legacy.setprofile(tracer)

    other = threading.Thread(target=worker)
    other.start()
    other.join()
    assert monitor.mode is Mode.IDLE
    assert monitor.legacy.gettrace() is None
    monitor.set_global_events(EventKind.LINE)
    assert monitor.mode is Mode.EVENT_MONITORING
    assert interp.run(programs, "body", 1) == 4


def test_live_thread_hook_still_blocks_monitoring(monitor):
    hooked = threading.Event()
    release = threading.Event()

    def worker():
        monitor.legacy.settrace(lambda frame, event, arg: None)
        hooked.set()
        release.wait(5)

    other = threading.Thread(target=worker)
    other.start()
    try:
        assert hooked.wait(5)
        with pytest.raises(ConflictError):
            monitor.set_global_events(EventKind.LINE)
    finally:
        release.set()
        other.join()
    monitor.set_global_events(EventKind.LINE)
