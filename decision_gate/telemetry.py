"""
Telemetry and anomaly detection.

Tracks:
- A bounded log of telemetry events
- Rolling decision, latency, rejection and autofix counters
- Spawn rate over a one-second window
- Per-entity state changes for stuck-AI detection
- Per-entity reasoning streams (debug mode only)

``detect_anomaly()`` checks the tracked data against the configured thresholds
and reports the first problem it finds.
"""
from __future__ import annotations

import dataclasses
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from .config import AnomalyThresholds, TelemetrySettings
from .logging_config import get_logger
from .sinks import NoopTelemetrySink, TelemetrySink
from .types import (
    AnomalyReport,
    AnomalySeverity,
    AnomalyType,
    DecisionType,
    PerformanceCounters,
    ReasoningEntry,
    TelemetryEvent,
    TelemetryEventType,
    TelemetryIncident,
)
from .util import generate_id, now_ms

logger = get_logger(__name__, subsystem="telemetry")

SPAWN_WINDOW_MS = 1000.0

# Rough per-record sizes for the memory estimate
EVENT_SIZE_BYTES = 200
REASONING_SIZE_BYTES = 300

EventListener = Callable[[TelemetryEvent], None]
AnomalyCallback = Callable[[AnomalyReport], None]


class TelemetrySystem:
    """
    Event log, rolling counters and anomaly detection.

    Example:
        >>> telemetry = TelemetrySystem()
        >>> telemetry.on_anomaly(autofix.trigger)
        >>> telemetry.emit("decision_executed", {"decision_type": "spawn"},
        ...                latency_ms=2.5, trace_id=trace_id)
        >>> report = telemetry.detect_anomaly()
    """

    def __init__(
        self,
        settings: Optional[TelemetrySettings] = None,
        thresholds: Optional[AnomalyThresholds] = None,
        sink: Optional[TelemetrySink] = None,
        clock: Callable[[], float] = now_ms,
    ):
        self.settings = dataclasses.replace(settings) if settings else TelemetrySettings()
        self.thresholds = dataclasses.replace(thresholds) if thresholds else AnomalyThresholds()
        self.sink: TelemetrySink = sink or NoopTelemetrySink()
        self._clock = clock

        self._events: List[TelemetryEvent] = []
        self._reasoning: Dict[str, List[ReasoningEntry]] = {}
        self._listeners: Dict[TelemetryEventType, List[EventListener]] = {}
        self._anomaly_callback: Optional[AnomalyCallback] = None
        self._active_trace_id: Optional[str] = None

        # Rolling counters, reset by maintain()
        self._decision_count = 0
        self._total_latency = 0.0
        self._rejection_count = 0
        self._autofix_count = 0
        self._last_counter_reset = self._clock()

        self._spawn_window: Deque[float] = deque()
        # Insertion order matters: the first stuck entity is reported
        self._entity_state_changes: Dict[str, float] = {}

    # Events

    def record(self, event: TelemetryEvent) -> None:
        """Record an event. No-op while telemetry is disabled."""
        if not self.settings.enabled:
            return

        self._events.append(event)
        self._trim_events()

        event_type = event.event_type
        if event_type in (
            TelemetryEventType.DECISION_EXECUTED,
            TelemetryEventType.DECISION_REJECTED,
        ):
            self._decision_count += 1
            if event.latency_ms:
                self._total_latency += event.latency_ms
        if event_type == TelemetryEventType.DECISION_REJECTED:
            self._rejection_count += 1
        if event_type == TelemetryEventType.AUTOFIX_TRIGGERED:
            self._autofix_count += 1

        if (
            event_type == TelemetryEventType.DECISION_EXECUTED
            and event.data.get("decision_type") == DecisionType.SPAWN.value
        ):
            self._spawn_window.append(self._clock())

        try:
            self.sink.log_event(event)
        except Exception as e:
            logger.warning(f"Telemetry sink failed to log event: {e}")

        self._notify_listeners(event)

    def emit(
        self,
        event_type: Union[TelemetryEventType, str],
        data: Optional[Dict[str, Any]] = None,
        latency_ms: Optional[float] = None,
        trace_id: Optional[str] = None,
    ) -> TelemetryEvent:
        """Build and record an event."""
        event = TelemetryEvent(
            event_id=generate_id(),
            event_type=TelemetryEventType(event_type),
            timestamp=self._clock(),
            data=dict(data or {}),
            latency_ms=latency_ms,
            trace_id=trace_id,
        )
        self.record(event)
        return event

    def get_recent_events(
        self,
        count: int = 100,
        event_type: Optional[Union[TelemetryEventType, str]] = None,
    ) -> List[TelemetryEvent]:
        """Get the most recent events, oldest first."""
        events = self._events
        if event_type is not None:
            wanted = TelemetryEventType(event_type)
            events = [e for e in events if e.event_type == wanted]
        return list(events[-count:]) if count > 0 else []

    def on(self, event_type: Union[TelemetryEventType, str], callback: EventListener) -> None:
        """Register a listener for one event type."""
        self._listeners.setdefault(TelemetryEventType(event_type), []).append(callback)

    def off(self, event_type: Union[TelemetryEventType, str], callback: EventListener) -> None:
        listeners = self._listeners.get(TelemetryEventType(event_type))
        if listeners and callback in listeners:
            listeners.remove(callback)

    def on_anomaly(self, callback: Optional[AnomalyCallback]) -> None:
        """Set the single anomaly callback (replaces any previous one)."""
        self._anomaly_callback = callback

    @property
    def active_trace_id(self) -> Optional[str]:
        """Trace id of the run whose anomaly callback is executing, if any."""
        return self._active_trace_id

    # Counters

    def maintain(self) -> bool:
        """
        Periodic upkeep: prune the spawn window and reset the rolling
        counters once the reset interval has elapsed.

        Returns:
            True if the counters were reset
        """
        now = self._clock()
        self._prune_spawn_window(now)
        if now - self._last_counter_reset >= self.settings.counter_reset_interval_ms:
            self._reset_counters()
            return True
        return False

    def snapshot_counters(self, pending_decisions: int = 0) -> PerformanceCounters:
        """Derive performance counters without changing any state."""
        elapsed_s = (self._clock() - self._last_counter_reset) / 1000.0
        count = self._decision_count

        return PerformanceCounters(
            decisions_per_second=max(0.0, count / elapsed_s) if elapsed_s > 0 else 0.0,
            average_latency_ms=max(0.0, self._total_latency / count) if count > 0 else 0.0,
            memory_usage_mb=max(0.0, self.estimate_memory_usage()),
            active_entities=len(self._entity_state_changes),
            pending_decisions=max(0, pending_decisions),
            total_decisions_processed=max(0, count),
            total_rejections_count=max(0, self._rejection_count),
            autofix_triggered_count=max(0, self._autofix_count),
        )

    def get_counters(self, pending_decisions: int = 0) -> PerformanceCounters:
        """Run ``maintain()`` then take a snapshot."""
        self.maintain()
        return self.snapshot_counters(pending_decisions)

    def estimate_memory_usage(self) -> float:
        """Rough size of the retained data in MB."""
        reasoning = sum(len(entries) for entries in self._reasoning.values())
        size = len(self._events) * EVENT_SIZE_BYTES + reasoning * REASONING_SIZE_BYTES
        return size / (1024 * 1024)

    # Anomalies

    def detect_anomaly(self, trace_id: Optional[str] = None) -> Optional[AnomalyReport]:
        """
        Check for the first anomaly, in priority order:
        excessive spawning, stuck AI, performance degradation.

        Returns:
            The report for the first anomaly found, or None
        """
        now = self._clock()
        thresholds = self.thresholds

        self._prune_spawn_window(now)
        spawn_count = len(self._spawn_window)
        if spawn_count > thresholds.excessive_spawning_per_second:
            return self._raise_anomaly(
                AnomalyType.EXCESSIVE_SPAWNING,
                AnomalySeverity.HIGH,
                [],
                {
                    "spawns_per_second": spawn_count,
                    "threshold": thresholds.excessive_spawning_per_second,
                },
                f"Excessive spawning detected: {spawn_count} spawns/second exceeds "
                f"threshold of {thresholds.excessive_spawning_per_second:g}",
                trace_id,
            )

        stuck_ms = thresholds.stuck_ai_seconds * 1000
        for entity_id, last_change in self._entity_state_changes.items():
            idle_ms = now - last_change
            if idle_ms > stuck_ms:
                return self._raise_anomaly(
                    AnomalyType.STUCK_AI,
                    AnomalySeverity.MEDIUM,
                    [entity_id],
                    {"last_state_change": last_change, "stuck_duration_ms": idle_ms},
                    f"AI entity {entity_id} has not changed state for "
                    f"{idle_ms / 1000:.1f} seconds",
                    trace_id,
                )

        if self._decision_count > 0:
            avg_latency = self._total_latency / self._decision_count
            if avg_latency > thresholds.performance_degradation_ms:
                return self._raise_anomaly(
                    AnomalyType.PERFORMANCE_DEGRADATION,
                    AnomalySeverity.MEDIUM,
                    [],
                    {
                        "average_latency_ms": avg_latency,
                        "threshold": thresholds.performance_degradation_ms,
                    },
                    f"Performance degradation detected: average latency {avg_latency:.1f}ms "
                    f"exceeds threshold of {thresholds.performance_degradation_ms:g}ms",
                    trace_id,
                )

        return None

    # Entities and reasoning

    def track_entity_state_change(self, entity_id: str) -> None:
        """Record that an entity just changed state."""
        self._entity_state_changes[entity_id] = self._clock()

    def remove_entity(self, entity_id: str) -> None:
        self._entity_state_changes.pop(entity_id, None)
        self._reasoning.pop(entity_id, None)

    def get_tracked_entities(self) -> List[str]:
        return list(self._entity_state_changes)

    def record_reasoning(self, entry: ReasoningEntry) -> None:
        """Store a reasoning entry. No-op outside debug mode."""
        if not self.settings.debug_mode:
            return
        entries = self._reasoning.setdefault(entry.entity_id, [])
        entries.append(entry)
        limit = self.settings.max_reasoning_entries
        if len(entries) > limit:
            del entries[:-limit]

    def get_reasoning_stream(self, entity_id: str) -> List[ReasoningEntry]:
        return list(self._reasoning.get(entity_id, []))

    def enable_debug_streaming(self, enabled: bool) -> None:
        self.settings = dataclasses.replace(self.settings, debug_mode=enabled)

    # Configuration and lifecycle

    def update_config(self, **changes: Any) -> None:
        """Shallow-merge telemetry settings (e.g. ``enabled=False``)."""
        self.settings = dataclasses.replace(self.settings, **changes)
        self._trim_events()
        limit = self.settings.max_reasoning_entries
        for entries in self._reasoning.values():
            if len(entries) > limit:
                del entries[:-limit]

    def update_thresholds(self, **changes: Any) -> None:
        """Shallow-merge anomaly thresholds."""
        self.thresholds = dataclasses.replace(self.thresholds, **changes)

    def clear(self) -> None:
        """Drop every event, reasoning entry, tracked entity and counter."""
        self._events.clear()
        self._reasoning.clear()
        self._entity_state_changes.clear()
        self._spawn_window.clear()
        self._reset_counters()

    def flush_sink(self) -> None:
        flush = getattr(self.sink, "flush", None)
        if flush is None:
            return
        try:
            flush()
        except Exception as e:
            logger.warning(f"Telemetry sink failed to flush: {e}")

    def stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.settings.enabled,
            "debug_mode": self.settings.debug_mode,
            "events_retained": len(self._events),
            "tracked_entities": len(self._entity_state_changes),
            "spawns_in_window": len(self._spawn_window),
        }

    def _raise_anomaly(
        self,
        anomaly_type: AnomalyType,
        severity: AnomalySeverity,
        affected: List[str],
        metrics: Dict[str, float],
        description: str,
        trace_id: Optional[str],
    ) -> AnomalyReport:
        report = AnomalyReport(
            id=generate_id(),
            type=anomaly_type,
            severity=severity,
            affected_entities=affected,
            detected_at=self._clock(),
            metrics=metrics,
            description=description,
        )
        logger.event(
            TelemetryEventType.ANOMALY_DETECTED.value,
            description,
            level=logging.WARNING,
            trace_id=trace_id,
            anomaly_type=anomaly_type.value,
            severity=severity.value,
        )

        if self._anomaly_callback is not None:
            self._active_trace_id = trace_id
            try:
                self._anomaly_callback(report)
            except Exception as e:
                logger.error(f"Anomaly callback failed: {e}")
            finally:
                self._active_trace_id = None

        log_incident = getattr(self.sink, "log_incident", None)
        if log_incident is not None:
            incident = TelemetryIncident(
                incident_id=generate_id(),
                anomaly=report,
                timestamp=report.detected_at,
                trace_id=trace_id,
            )
            try:
                log_incident(incident)
            except Exception as e:
                logger.warning(f"Telemetry sink failed to log incident: {e}")

        self.emit(
            TelemetryEventType.ANOMALY_DETECTED,
            {"report": report.to_dict()},
            trace_id=trace_id,
        )
        return report

    def _notify_listeners(self, event: TelemetryEvent) -> None:
        for callback in list(self._listeners.get(event.event_type, [])):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Telemetry listener failed: {e}")

    def _prune_spawn_window(self, now: float) -> None:
        while self._spawn_window and now - self._spawn_window[0] >= SPAWN_WINDOW_MS:
            self._spawn_window.popleft()

    def _trim_events(self) -> None:
        limit = self.settings.max_events_retained
        if len(self._events) > limit:
            del self._events[:-limit]

    def _reset_counters(self) -> None:
        self._decision_count = 0
        self._total_latency = 0.0
        self._rejection_count = 0
        self._autofix_count = 0
        self._last_counter_reset = self._clock()
