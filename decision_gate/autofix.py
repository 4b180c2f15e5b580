"""
Self-healing routines for detected anomalies.

One handler per anomaly type. A failed fix is retried once per anomaly; if it
still fails it is escalated for human review and never retried again here.

Default handlers:
- EXCESSIVE_SPAWNING: throttle spawning, released automatically after a delay
- STUCK_AI: reset every affected entity to idle
- PERFORMANCE_DEGRADATION: escalate (needs manual investigation)
- INVALID_STATE: reset affected entities
- MEMORY_THRESHOLD: run the garbage collector
- RATE_LIMIT_BREACH: nothing to do, limits already enforce themselves
"""
from __future__ import annotations

import dataclasses
import gc
import threading
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Union

from .logging_config import get_logger
from .scheduler import ScheduledTask, TaskScheduler
from .types import AnomalyReport, AnomalyType, AutofixResult
from .util import now_ms

logger = get_logger(__name__, subsystem="autofix")

DEFAULT_THROTTLE_DURATION_S = 5.0

# Oldest anomaly ids are forgotten first
MAX_TRACKED_RETRIES = 1000

AutofixHandler = Callable[[AnomalyReport], AutofixResult]
AutofixTelemetryCallback = Callable[[AutofixResult], None]
EntityResetCallback = Callable[[str], None]
SpawnThrottleCallback = Callable[[bool], None]


class AutofixHooks:
    """
    Type-keyed remediation handlers with retry-then-escalate.

    Example:
        >>> autofix = AutofixHooks(throttle_duration_s=5.0)
        >>> autofix.on_entity_reset(npc_manager.reset_to_idle)
        >>> result = autofix.trigger(report)
        >>> if result.escalated:
        ...     page_operator(result.details)
    """

    def __init__(
        self,
        max_retries: int = 1,
        throttle_duration_s: float = DEFAULT_THROTTLE_DURATION_S,
        scheduler: Optional[TaskScheduler] = None,
        clock: Callable[[], float] = now_ms,
    ):
        self.max_retries = max_retries
        self.throttle_duration_s = throttle_duration_s
        self.scheduler = scheduler or TaskScheduler()
        self._clock = clock

        self._handlers: Dict[AnomalyType, AutofixHandler] = {}
        self.max_tracked_retries = MAX_TRACKED_RETRIES
        self._retry_attempts: "OrderedDict[str, int]" = OrderedDict()
        self._telemetry_callback: Optional[AutofixTelemetryCallback] = None
        self._entity_reset_callback: Optional[EntityResetCallback] = None
        self._spawn_throttle_callback: Optional[SpawnThrottleCallback] = None

        # Guards the throttle flag and revert handle against the timer thread
        self._throttle_lock = threading.RLock()
        self._spawn_throttle_active = False
        self._throttle_revert: Optional[ScheduledTask] = None
        self._throttle_generation = 0

        self._register_default_handlers()

    def register(self, anomaly_type: Union[AnomalyType, str], handler: AutofixHandler) -> None:
        """Register (or replace) the handler for an anomaly type."""
        self._handlers[AnomalyType(anomaly_type)] = handler

    def unregister(self, anomaly_type: Union[AnomalyType, str]) -> bool:
        """
        Remove the handler for an anomaly type.

        Returns:
            True if a handler was removed
        """
        return self._handlers.pop(AnomalyType(anomaly_type), None) is not None

    def get_registered_hooks(self) -> List[AnomalyType]:
        return list(self._handlers)

    def trigger(self, report: AnomalyReport) -> AutofixResult:
        """
        Run the handler for an anomaly.

        Returns:
            Exactly one AutofixResult; failures come back escalated
        """
        handler = self._handlers.get(report.type)

        if handler is None:
            result = self._failure(
                report, "none", f"No handler registered for anomaly type: {report.type.value}"
            )
        else:
            try:
                result = self._run_with_retry(handler, report)
            except Exception as e:
                logger.error(f"Autofix handler for {report.type.value} failed: {e}")
                result = self._failure(report, "error", f"Handler error: {e}")

        if result.escalated:
            logger.warning(f"Autofix escalated for {report.type.value}: {result.details}")
        else:
            logger.info(f"Autofix {result.action_taken} for {report.type.value}")

        self._emit_telemetry(result)
        return result

    def _run_with_retry(self, handler: AutofixHandler, report: AnomalyReport) -> AutofixResult:
        result = handler(report)
        if result.success:
            return result

        attempts = self._retry_attempts.get(report.id, 0)
        if attempts < self.max_retries:
            self._retry_attempts[report.id] = attempts + 1
            self._retry_attempts.move_to_end(report.id)
            while len(self._retry_attempts) > self.max_tracked_retries:
                self._retry_attempts.popitem(last=False)
            logger.info(f"Retrying autofix for {report.type.value} (anomaly {report.id})")
            retry = handler(report)
            if retry.success:
                return retry
            return dataclasses.replace(
                retry,
                escalated=True,
                details=f"Autofix failed after {attempts + 2} attempts. {retry.details or ''}".strip(),
            )

        return dataclasses.replace(
            result,
            escalated=True,
            details=f"Autofix failed after {attempts + 1} attempts. {result.details or ''}".strip(),
        )

    def _failure(self, report: AnomalyReport, action: str, details: str) -> AutofixResult:
        return AutofixResult(
            success=False,
            anomaly_id=report.id,
            anomaly_type=report.type,
            action_taken=action,
            entities_affected=0,
            escalated=True,
            timestamp=self._clock(),
            details=details,
        )

    def _emit_telemetry(self, result: AutofixResult) -> None:
        if self._telemetry_callback is None:
            return
        try:
            self._telemetry_callback(result)
        except Exception as e:
            logger.error(f"Autofix telemetry callback failed: {e}")

    # Callbacks

    def on_telemetry(self, callback: Optional[AutofixTelemetryCallback]) -> None:
        self._telemetry_callback = callback

    def on_entity_reset(self, callback: Optional[EntityResetCallback]) -> None:
        self._entity_reset_callback = callback

    def on_spawn_throttle(self, callback: Optional[SpawnThrottleCallback]) -> None:
        self._spawn_throttle_callback = callback

    # State

    def is_spawn_throttle_active(self) -> bool:
        return self._spawn_throttle_active

    def clear_retry_attempts(self) -> None:
        self._retry_attempts.clear()

    def cancel_pending(self) -> int:
        """
        Cancel scheduled reverts. A cancelled throttle stays active until
        ``clear()`` or the next revert.

        Returns:
            Number of tasks cancelled
        """
        with self._throttle_lock:
            self._throttle_revert = None
            self._throttle_generation += 1
        return self.scheduler.cancel_all()

    def clear(self) -> None:
        """Cancel pending reverts, release the throttle and forget retries."""
        self.cancel_pending()
        with self._throttle_lock:
            self._spawn_throttle_active = False
        self._retry_attempts.clear()

    def stats(self) -> Dict:
        return {
            "registered_hooks": [t.value for t in self._handlers],
            "spawn_throttle_active": self._spawn_throttle_active,
            "pending_tasks": self.scheduler.pending_count(),
            "tracked_retries": len(self._retry_attempts),
        }

    # Default handlers

    def _register_default_handlers(self) -> None:
        self.register(AnomalyType.EXCESSIVE_SPAWNING, self._throttle_spawning)
        self.register(AnomalyType.STUCK_AI, self._reset_stuck_entities)
        self.register(AnomalyType.PERFORMANCE_DEGRADATION, self._escalate_performance)
        self.register(AnomalyType.INVALID_STATE, self._reset_invalid_entities)
        self.register(AnomalyType.MEMORY_THRESHOLD, self._collect_garbage)
        self.register(AnomalyType.RATE_LIMIT_BREACH, self._enforce_rate_limit)

    def _set_spawn_throttle(self, active: bool) -> None:
        self._spawn_throttle_active = active
        if self._spawn_throttle_callback is not None:
            self._spawn_throttle_callback(active)

    def _release_throttle(self, generation: int) -> None:
        with self._throttle_lock:
            # A newer throttle (or a cancel) superseded this revert
            if generation != self._throttle_generation:
                return
            self._throttle_revert = None
            self._set_spawn_throttle(False)
        logger.info("Spawn throttle released")

    def _throttle_spawning(self, report: AnomalyReport) -> AutofixResult:
        with self._throttle_lock:
            self._set_spawn_throttle(True)

            # Extend the throttle rather than stacking reverts
            if self._throttle_revert is not None:
                self._throttle_revert.cancel()
            self._throttle_generation += 1
            generation = self._throttle_generation
            self._throttle_revert = self.scheduler.schedule(
                "spawn_throttle_revert",
                self.throttle_duration_s,
                lambda: self._release_throttle(generation),
            )

        rate = report.metrics.get("spawns_per_second")
        return AutofixResult(
            success=True,
            anomaly_id=report.id,
            anomaly_type=report.type,
            action_taken="throttle_spawning",
            entities_affected=0,
            escalated=False,
            timestamp=self._clock(),
            details=f"Spawn throttle activated for {self.throttle_duration_s:g} seconds. "
                    f"Rate was {rate}/sec",
        )

    def _reset_entities(self, entity_ids: List[str]) -> int:
        for entity_id in entity_ids:
            if self._entity_reset_callback is not None:
                self._entity_reset_callback(entity_id)
        return len(entity_ids)

    def _reset_stuck_entities(self, report: AnomalyReport) -> AutofixResult:
        count = self._reset_entities(report.affected_entities)
        return AutofixResult(
            success=True,
            anomaly_id=report.id,
            anomaly_type=report.type,
            action_taken="reset_to_idle",
            entities_affected=count,
            escalated=False,
            timestamp=self._clock(),
            details=f"Reset {count} stuck AI entities to idle state",
        )

    def _escalate_performance(self, report: AnomalyReport) -> AutofixResult:
        latency = report.metrics.get("average_latency_ms")
        return AutofixResult(
            success=False,
            anomaly_id=report.id,
            anomaly_type=report.type,
            action_taken="log_and_escalate",
            entities_affected=0,
            escalated=True,
            timestamp=self._clock(),
            details=f"Performance degradation detected: {latency}ms avg latency. "
                    f"Manual investigation required.",
        )

    def _reset_invalid_entities(self, report: AnomalyReport) -> AutofixResult:
        count = self._reset_entities(report.affected_entities)
        return AutofixResult(
            success=count > 0,
            anomaly_id=report.id,
            anomaly_type=report.type,
            action_taken="reset_invalid_entities",
            entities_affected=count,
            escalated=count == 0,
            timestamp=self._clock(),
            details=f"Reset {count} entities with invalid state" if count else "No entities to reset",
        )

    def _collect_garbage(self, report: AnomalyReport) -> AutofixResult:
        collected = gc.collect()
        memory = report.metrics.get("memory_usage_mb")
        return AutofixResult(
            success=True,
            anomaly_id=report.id,
            anomaly_type=report.type,
            action_taken="trigger_gc",
            entities_affected=0,
            escalated=False,
            timestamp=self._clock(),
            details=f"Triggered garbage collection ({collected} objects). Memory was {memory}MB",
        )

    def _enforce_rate_limit(self, report: AnomalyReport) -> AutofixResult:
        return AutofixResult(
            success=True,
            anomaly_id=report.id,
            anomaly_type=report.type,
            action_taken="enforce_rate_limit",
            entities_affected=0,
            escalated=False,
            timestamp=self._clock(),
            details="Rate limit enforced for operation type",
        )
