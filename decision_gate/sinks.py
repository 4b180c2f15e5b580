"""
Telemetry sinks.

A sink receives every recorded telemetry event and every detected incident.
The default sink drops them; the JSONL sink appends one JSON object per line
for offline inspection. Sink failures are logged and never reach the caller.
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List

from .logging_config import get_logger
from .types import TelemetryEvent, TelemetryIncident

logger = get_logger(__name__, subsystem="telemetry")

TELEMETRY_PATH_ENV = "DECISION_GATE_TELEMETRY_PATH"


class TelemetrySink:
    """
    Sink contract. ``log_incident`` and ``flush`` are optional for custom
    sinks; the telemetry system only calls them when present.
    """

    def log_event(self, event: TelemetryEvent) -> None:
        pass

    def log_incident(self, incident: TelemetryIncident) -> None:
        pass

    def flush(self) -> None:
        pass


class NoopTelemetrySink(TelemetrySink):
    """Discards everything."""


class JsonlTelemetrySink(TelemetrySink):
    """
    Append-only JSON-lines journal of events and incidents.

    Each line is ``{"kind": "event" | "incident", ...record fields}``.

    Example:
        >>> sink = JsonlTelemetrySink("logs/telemetry.jsonl")
        >>> telemetry = TelemetrySystem(sink=sink)
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = None

    def _write(self, kind: str, record: Dict[str, Any]) -> None:
        if self._file is None:
            self._file = open(self.path, "a", encoding="utf-8")
        self._file.write(json.dumps({"kind": kind, **record}, default=str) + "\n")

    def log_event(self, event: TelemetryEvent) -> None:
        self._write("event", event.to_dict())

    def log_incident(self, incident: TelemetryIncident) -> None:
        self._write("incident", incident.to_dict())
        logger.warning(f"Incident logged: {incident.anomaly.type.value}")

    def flush(self) -> None:
        if self._file is not None:
            self._file.flush()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def read(self) -> List[Dict[str, Any]]:
        """Read back every journal entry, skipping corrupt lines."""
        self.flush()
        if not self.path.exists():
            return []

        entries = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return entries


def create_telemetry_sink() -> TelemetrySink:
    """JSONL sink when ``DECISION_GATE_TELEMETRY_PATH`` is set, otherwise no-op."""
    path = os.environ.get(TELEMETRY_PATH_ENV)
    if path:
        logger.info(f"Telemetry journal: {path}")
        return JsonlTelemetrySink(path)
    return NoopTelemetrySink()
