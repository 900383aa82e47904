import json

import pytest

from vmmon.events import EventKind
from vmmon.trace_format import (
    TRACE_FORMAT_VERSION,
    EventRecorder,
    decode_event_records,
    encode_event_records,
    format_event_record,
    normalise_event_record,
)


def test_normalise_coerces_fields(programs):
    unit = programs.unit("use_len")
    record = normalise_event_record(
        {"seq": "0x10", "event": EventKind.C_CALL, "unit": unit, "offset": "3", "callable": len, "note": "kept"}
    )
    assert record == {"seq": 16, "event": "C_CALL", "unit": "use_len", "offset": 3, "callable": "len", "note": "kept"}
    assert json.loads(json.dumps(record)) == record


def test_normalise_accepts_line_records_and_event_values():
    record = normalise_event_record({"seq": 1, "event": 64, "unit": "f", "line": None})
    assert record == {"seq": 1, "event": "LINE", "unit": "f", "line": None}
    record = normalise_event_record({"seq": 2, "event": "raise", "unit": "f", "offset": 1, "exception": KeyError("k")})
    assert record["exception"] == "KeyError: 'k'"


@pytest.mark.parametrize(
    "record, message",
    [
        ({"event": "LINE", "unit": "f", "line": 1}, "missing required field 'seq'"),
        ({"seq": 0, "event": "LINE", "unit": "f"}, "offset"),
        ({"seq": 0, "event": "BOGUS", "unit": "f", "offset": 0}, "unknown event"),
        ({"seq": 0, "event": 3, "unit": "f", "offset": 0}, "single kind"),
        ({"seq": True, "event": "LINE", "unit": "f", "line": 1}, "boolean"),
        ({"seq": 0, "event": "MARKER", "unit": "f", "offset": 0, "marker": 300}, "marker id"),
    ],
)
def test_normalise_rejects_bad_records(record, message):
    with pytest.raises(ValueError, match=message):
        normalise_event_record(record)


def test_encode_decode():
    records = [{"seq": 0, "event": "JUMP", "unit": "f", "offset": 6, "destination": 8}]
    encoded = encode_event_records(records)
    assert encoded == [{"seq": 0, "event": "JUMP", "unit": "f", "offset": 6, "destination": 8}]
    decoded = decode_event_records(encoded)
    assert decoded[0]["event"] is EventKind.JUMP
    assert TRACE_FORMAT_VERSION == "vmmon.events/1"


def test_format_event_record():
    text = format_event_record({"seq": 3, "event": "MARKER", "unit": "f", "offset": 2, "marker": 7})
    assert "MARKER" in text
    assert "f@2" in text
    assert text.endswith("marker=7")


def test_recorder_restores_previous_callbacks(monitor, interp, programs):
    previous = lambda unit, offset, destination: None  # noqa: E731
    monitor.register_callback(EventKind.BRANCH, previous)
    monitor.set_global_events(EventKind.BRANCH | EventKind.LINE)
    streamed = []
    with EventRecorder(EventKind.BRANCH | EventKind.LINE, monitor=monitor, sink=streamed.append) as recorder:
        interp.run(programs, "classify", 1)
    assert [record["seq"] for record in recorder.records] == list(range(len(recorder.records)))
    assert streamed == recorder.records
    assert recorder.of_kind(EventKind.BRANCH) == [
        {"seq": 1, "event": "BRANCH", "unit": "classify", "offset": 4, "destination": 7}
    ]
    assert [record["line"] for record in recorder.of_kind(EventKind.LINE)] == [1, 3, 4]
    assert monitor.callbacks.get(EventKind.BRANCH) is previous
    assert monitor.callbacks.get(EventKind.LINE) is None


def test_recorder_marker_records(monitor, interp, programs):
    monitor.insert_marker(programs.unit("body"), 5, 42)
    with EventRecorder(EventKind.MARKER, monitor=monitor, with_thread=True) as recorder:
        interp.run(programs, "body", 0)
    (record,) = recorder.records
    assert record["marker"] == 42
    assert record["offset"] == 5
    assert isinstance(record["thread"], int)
