"""
Tests for telemetry sinks.
"""
from decision_gate.sinks import (
    TELEMETRY_PATH_ENV,
    JsonlTelemetrySink,
    NoopTelemetrySink,
    create_telemetry_sink,
)
from decision_gate.telemetry import TelemetrySystem


class TestJsonlTelemetrySink:
    """Test the JSON-lines journal."""

    def test_writes_events(self, tmp_path, clock):
        sink = JsonlTelemetrySink(str(tmp_path / "telemetry.jsonl"))
        telemetry = TelemetrySystem(sink=sink, clock=clock)

        event = telemetry.emit("decision_assessed", {"risk_score": 36.4}, trace_id="t1")
        entries = sink.read()
        sink.close()

        assert len(entries) == 1
        assert entries[0]["kind"] == "event"
        assert entries[0]["event_id"] == event.event_id
        assert entries[0]["event_type"] == "decision_assessed"
        assert entries[0]["data"] == {"risk_score": 36.4}
        assert entries[0]["trace_id"] == "t1"

    def test_writes_incidents(self, tmp_path, clock):
        sink = JsonlTelemetrySink(str(tmp_path / "telemetry.jsonl"))
        telemetry = TelemetrySystem(sink=sink, clock=clock)
        telemetry.track_entity_state_change("e1")
        clock.advance(31_000)

        report = telemetry.detect_anomaly(trace_id="t2")
        kinds = [entry["kind"] for entry in sink.read()]
        incident = next(e for e in sink.read() if e["kind"] == "incident")
        sink.close()

        assert kinds == ["incident", "event"]
        assert incident["anomaly"]["id"] == report.id
        assert incident["anomaly"]["type"] == "STUCK_AI"
        assert incident["trace_id"] == "t2"

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "telemetry.jsonl"
        JsonlTelemetrySink(str(path))
        assert path.parent.is_dir()

    def test_read_skips_corrupt_lines(self, tmp_path):
        path = tmp_path / "telemetry.jsonl"
        path.write_text('{"kind": "event"}\nnot json\n{"kind": "incident"}\n')

        entries = JsonlTelemetrySink(str(path)).read()

        assert [e["kind"] for e in entries] == ["event", "incident"]

    def test_read_missing_file(self, tmp_path):
        assert JsonlTelemetrySink(str(tmp_path / "missing.jsonl")).read() == []

    def test_appends_across_instances(self, tmp_path, clock):
        path = str(tmp_path / "telemetry.jsonl")
        for _ in range(2):
            sink = JsonlTelemetrySink(path)
            TelemetrySystem(sink=sink, clock=clock).emit("decision_assessed")
            sink.close()

        assert len(JsonlTelemetrySink(path).read()) == 2


class TestCreateTelemetrySink:
    """Test sink selection from the environment."""

    def test_noop_by_default(self, monkeypatch):
        monkeypatch.delenv(TELEMETRY_PATH_ENV, raising=False)
        assert isinstance(create_telemetry_sink(), NoopTelemetrySink)

    def test_jsonl_when_path_set(self, monkeypatch, tmp_path):
        path = tmp_path / "journal.jsonl"
        monkeypatch.setenv(TELEMETRY_PATH_ENV, str(path))

        sink = create_telemetry_sink()

        assert isinstance(sink, JsonlTelemetrySink)
        assert sink.path == path
