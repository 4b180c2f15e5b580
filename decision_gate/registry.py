"""
Service registry: the composition root of the decision gate.

Builds every service from one configuration store, wires the feedback loop
between telemetry and autofix, and pushes configuration changes into the
live services without reconstructing them.

Feedback wiring:
- anomaly detected -> autofix.trigger -> autofix_completed / autofix_failed
- autofix result -> autofix_triggered
- entity reset by autofix -> refresh its tracking -> host reset handler
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from .authority import AuthorityValidator
from .autofix import DEFAULT_THROTTLE_DURATION_S, AutofixHooks, EntityResetCallback, SpawnThrottleCallback
from .config import ConfigurationStore, ServiceConfig, changed_keys
from .logging_config import get_logger
from .metrics import MetricsCollector
from .pipeline import DecisionExecutor, DecisionPipeline, GameStateProvider
from .risk import RiskAssessmentService
from .scheduler import TaskScheduler
from .sinks import TelemetrySink, create_telemetry_sink
from .telemetry import TelemetrySystem
from .types import (
    AnomalyReport,
    AutofixResult,
    Decision,
    PerformanceCounters,
    PipelineTrace,
    TelemetryEventType,
)
from .util import now_ms

logger = get_logger(__name__, subsystem="registry")


@dataclass
class ServiceStatus:
    """Which services are available."""
    config: bool
    telemetry: bool
    autofix: bool
    risk_assessment: bool
    authority_validator: bool
    pipeline: bool
    initialized: bool

    def to_dict(self) -> Dict[str, bool]:
        return dataclasses.asdict(self)


class ServiceRegistry:
    """
    Owns and wires all decision-gate services.

    Example:
        >>> registry = ServiceRegistry({"risk_threshold": 60})
        >>> registry.set_executor(game.apply_decision)
        >>> registry.set_game_state_provider(game.snapshot)
        >>> trace = registry.process(decision)
        >>> registry.config.update("risk_threshold", 80)  # hot reload
        >>> registry.shutdown()
    """

    def __init__(
        self,
        initial_config: Optional[Mapping[str, Any]] = None,
        sink: Optional[TelemetrySink] = None,
        strict: bool = False,
        throttle_duration_s: float = DEFAULT_THROTTLE_DURATION_S,
        clock: Callable[[], float] = now_ms,
    ):
        """
        Build the services in dependency order.

        Args:
            initial_config: Partial config merged onto the defaults
            sink: Telemetry sink (default from the environment)
            strict: Enable the extra world-rule checks in validation
            throttle_duration_s: How long a spawn throttle lasts
            clock: Millisecond clock shared by every service

        Raises:
            ValueError: If ``initial_config`` does not validate
        """
        self.config = ConfigurationStore(initial_config, clock=clock)
        cfg = self.config.get()

        self.telemetry = TelemetrySystem(
            cfg.telemetry,
            cfg.anomaly_thresholds,
            sink=sink if sink is not None else create_telemetry_sink(),
            clock=clock,
        )
        self.scheduler = TaskScheduler()
        self.autofix = AutofixHooks(
            throttle_duration_s=throttle_duration_s,
            scheduler=self.scheduler,
            clock=clock,
        )
        self.risk = RiskAssessmentService(
            threshold=cfg.risk_threshold,
            weights=cfg.risk_weights,
            cascade_multipliers=cfg.cascade_multipliers,
            clock=clock,
        )
        self.validator = AuthorityValidator(cfg.rate_limits, strict=strict, clock=clock)
        self.metrics = MetricsCollector()
        self.pipeline = DecisionPipeline(
            self.risk,
            self.validator,
            self.telemetry,
            metrics=self.metrics,
            clock=clock,
        )

        self._host_entity_reset: Optional[EntityResetCallback] = None

        self.telemetry.on_anomaly(self._handle_anomaly)
        self.autofix.on_telemetry(self._relay_autofix_result)
        self.autofix.on_entity_reset(self._handle_entity_reset)
        self.config.on_change(self._apply_config_changes)

        self._initialized = True
        logger.info("Decision gate services initialized")

    # Host hooks

    def set_executor(self, executor: Optional[DecisionExecutor]) -> None:
        self.pipeline.set_executor(executor)

    def set_game_state_provider(self, provider: Optional[GameStateProvider]) -> None:
        self.pipeline.set_game_state_provider(provider)

    def on_entity_reset(self, callback: Optional[EntityResetCallback]) -> None:
        """Set the host handler called after autofix resets an entity."""
        self._host_entity_reset = callback

    def on_spawn_throttle(self, callback: Optional[SpawnThrottleCallback]) -> None:
        self.autofix.on_spawn_throttle(callback)

    # Operations

    def process(self, decision: Decision) -> PipelineTrace:
        """Run a decision through the pipeline."""
        return self.pipeline.process(decision)

    def tick(self) -> Optional[AnomalyReport]:
        """
        Periodic upkeep for hosts with a main loop: counter maintenance
        followed by one anomaly check.
        """
        self.telemetry.maintain()
        return self.telemetry.detect_anomaly()

    def get_counters(self) -> PerformanceCounters:
        return self.telemetry.get_counters(pending_decisions=self.risk.get_queue_length())

    def get_status(self) -> ServiceStatus:
        return ServiceStatus(
            config=self.config is not None,
            telemetry=self.telemetry is not None,
            autofix=self.autofix is not None,
            risk_assessment=self.risk is not None,
            authority_validator=self.validator is not None,
            pipeline=self.pipeline is not None,
            initialized=self._initialized,
        )

    def is_initialized(self) -> bool:
        return self._initialized

    def shutdown(self) -> None:
        """
        Clear all bounded state across services. Safe to call repeatedly;
        service instances are kept.
        """
        cancelled = self.autofix.cancel_pending()
        self.autofix.clear()
        self.telemetry.clear()
        self.pipeline.clear_traces()
        self.risk.clear_logs()
        self.risk.clear_queue()
        self.validator.reset_rate_limits()
        self.metrics.reset()
        self.telemetry.flush_sink()

        if self._initialized:
            logger.info(f"Decision gate shut down ({cancelled} pending task(s) cancelled)")
        self._initialized = False

    def reset(self) -> None:
        """Shut down, restore the default configuration and come back up."""
        self.shutdown()
        self.config.reset()
        self._initialized = True

    # Wiring

    def _handle_anomaly(self, report: AnomalyReport) -> None:
        trace_id = self.telemetry.active_trace_id
        result = self.autofix.trigger(report)
        self.telemetry.emit(
            TelemetryEventType.AUTOFIX_COMPLETED if result.success else TelemetryEventType.AUTOFIX_FAILED,
            {
                "anomaly_id": report.id,
                "anomaly_type": report.type.value,
                "result": result.to_dict(),
            },
            trace_id=trace_id,
        )

    def _relay_autofix_result(self, result: AutofixResult) -> None:
        self.telemetry.emit(
            TelemetryEventType.AUTOFIX_TRIGGERED,
            {
                "fix_type": result.anomaly_type.value,
                "affected_entities": result.entities_affected,
                "success": result.success,
                "escalated": result.escalated,
            },
            trace_id=self.telemetry.active_trace_id,
        )

    def _handle_entity_reset(self, entity_id: str) -> None:
        self.telemetry.track_entity_state_change(entity_id)
        if self._host_entity_reset is not None:
            self._host_entity_reset(entity_id)

    def _apply_config_changes(self, old: ServiceConfig, new: ServiceConfig) -> None:
        changed = changed_keys(old, new)
        if not changed:
            return

        if "risk_threshold" in changed:
            self.risk.set_threshold(new.risk_threshold)
        if "risk_weights" in changed or "cascade_multipliers" in changed:
            self.risk.update_config(
                weights=new.risk_weights,
                cascade_multipliers=new.cascade_multipliers,
            )

        if "rate_limits" in changed:
            for op, limit in new.rate_limits.items():
                if old.rate_limits.get(op) != limit:
                    self.validator.set_rate_limit_config(op, limit)
            for op in old.rate_limits:
                if op not in new.rate_limits:
                    self.validator.remove_rate_limit_config(op)

        if "telemetry" in changed:
            self.telemetry.update_config(**dataclasses.asdict(new.telemetry))
        if "anomaly_thresholds" in changed:
            self.telemetry.update_thresholds(**dataclasses.asdict(new.anomaly_thresholds))

        self.telemetry.emit(TelemetryEventType.CONFIG_CHANGED, {"changed_keys": changed})


def create_service_registry(
    initial_config: Optional[Mapping[str, Any]] = None,
    **kwargs: Any,
) -> ServiceRegistry:
    """Create a registry with the given partial config."""
    return ServiceRegistry(initial_config, **kwargs)
