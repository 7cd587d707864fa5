"""
Tests for the trace sink.
"""

import json
import os

import pytest

from adaptive_ocr import tracing
from adaptive_ocr.tracing import TraceSink


class TestTraceSink:

    def test_events_are_recorded_in_order(self, sink):
        sink.emit(tracing.DECISION, image_id="a", enable_two_pass=True)
        sink.emit(tracing.PASS, image_id="a", pass_name="pass1", duration=0.1)

        assert len(sink) == 2
        assert [e.name for e in sink.events()] == [tracing.DECISION, tracing.PASS]
        assert sink.events(tracing.PASS)[0].payload["pass_name"] == "pass1"

    def test_payload_must_be_flat(self, sink):
        with pytest.raises(TypeError):
            sink.emit(tracing.PASS, details={"nested": True})
        with pytest.raises(TypeError):
            sink.emit(tracing.PASS, passes=["pass1", "pass2"])
        assert len(sink) == 0

    def test_emitting_from_another_process_is_rejected(self, sink):
        sink.owner_pid = os.getpid() + 1
        with pytest.raises(RuntimeError):
            sink.emit(tracing.PASS, pass_name="pass1")

    def test_events_are_written_as_json_lines(self, temp_directory):
        path = temp_directory / "trace" / "events.jsonl"
        sink = TraceSink(path, run_id="run-1")
        sink.emit(tracing.DOWNSCALE, image_id="a", triggered=False, reason="dpi_unknown")
        sink.emit(tracing.BATCH_COMPLETED, images=1, failed=0)
        sink.close()

        lines = path.read_text().splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["event"] == tracing.DOWNSCALE
        assert first["run_id"] == "run-1"
        assert first["triggered"] is False

    def test_events_snapshot_is_a_copy(self, sink):
        sink.emit(tracing.PASS, pass_name="pass1")
        snapshot = sink.events()
        sink.emit(tracing.PASS, pass_name="pass2")
        assert len(snapshot) == 1

    def test_event_to_dict(self):
        event = tracing.TraceEvent(name="x", payload={"a": 1}, timestamp=10.0)
        assert event.to_dict() == {"event": "x", "timestamp": 10.0, "a": 1}
