"""
The decision pipeline.

Every AI decision passes through a fixed sequence of stages:
1. risk_assessment - score the decision; stop if rejected
2. validation - check authority against the world snapshot; stop if invalid
3. execution - hand the decision to the host's executor
4. telemetry - run anomaly detection

Each run produces a ``PipelineTrace`` recording every stage that ran. Traces
are kept in a bounded table with insertion-order eviction.
"""
from __future__ import annotations

from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

from .authority import AuthorityValidator
from .logging_config import get_logger
from .metrics import MetricsCollector
from .risk import RiskAssessmentService
from .telemetry import TelemetrySystem
from .types import (
    Decision,
    GameState,
    PipelineStage,
    PipelineTrace,
    RiskAssessment,
    StageName,
    StageResult,
    TelemetryEventType,
    ValidationResult,
)
from .util import generate_id, now_ms

logger = get_logger(__name__, subsystem="pipeline")

DEFAULT_MAX_TRACES = 1000

DecisionExecutor = Callable[[Decision], Any]
GameStateProvider = Callable[[], GameState]


class DecisionPipeline:
    """
    Routes decisions through assessment, validation, execution and telemetry.

    Example:
        >>> pipeline = DecisionPipeline(risk, validator, telemetry)
        >>> pipeline.set_executor(game.apply_decision)
        >>> pipeline.set_game_state_provider(game.snapshot)
        >>> trace = pipeline.process(decision)
        >>> trace.executed, [s.name for s in trace.stages]
    """

    def __init__(
        self,
        risk: RiskAssessmentService,
        validator: AuthorityValidator,
        telemetry: TelemetrySystem,
        metrics: Optional[MetricsCollector] = None,
        max_traces: int = DEFAULT_MAX_TRACES,
        clock: Callable[[], float] = now_ms,
    ):
        self.risk = risk
        self.validator = validator
        self.telemetry = telemetry
        self.metrics = metrics or MetricsCollector()
        self.max_traces = max_traces
        self._clock = clock

        self._traces: "OrderedDict[str, PipelineTrace]" = OrderedDict()
        self._executor: Optional[DecisionExecutor] = None
        self._game_state_provider: Optional[GameStateProvider] = None

    def set_executor(self, executor: Optional[DecisionExecutor]) -> None:
        self._executor = executor

    def set_game_state_provider(self, provider: Optional[GameStateProvider]) -> None:
        self._game_state_provider = provider

    def process(self, decision: Decision) -> PipelineTrace:
        """
        Run one decision through the pipeline.

        Returns:
            The stored trace for this run
        """
        trace_id = generate_id()
        start = self._clock()
        stages: List[PipelineStage] = []

        def finish(
            assessment: Optional[RiskAssessment],
            validation: Optional[ValidationResult],
            executed: bool = False,
            result: Any = None,
        ) -> PipelineTrace:
            return self._store_trace(PipelineTrace(
                trace_id=trace_id,
                decision=decision,
                risk_assessment=assessment,
                validation=validation,
                executed=executed,
                execution_result=result,
                total_latency_ms=max(0.0, self._clock() - start),
                stages=stages,
                timestamp=start,
            ))

        # Stage 1: risk assessment
        stage_start = self._clock()
        try:
            assessment = self.risk.assess(decision)
        except Exception as e:
            logger.error(f"Risk assessment failed for {decision.id}: {e}", extra={"trace_id": trace_id})
            self.metrics.record_error("risk", type(e).__name__)
            stages.append(self._stage(StageName.RISK_ASSESSMENT, stage_start, StageResult.FAIL, f"Error: {e}"))
            return finish(None, None)

        stages.append(self._stage(
            StageName.RISK_ASSESSMENT,
            stage_start,
            StageResult.PASS if assessment.approved else StageResult.FAIL,
            assessment.rejection_reason,
        ))
        self.telemetry.emit(
            TelemetryEventType.DECISION_ASSESSED,
            {
                "decision_id": decision.id,
                "decision_type": decision.type.value,
                "risk_score": assessment.risk_score,
                "approved": assessment.approved,
            },
            trace_id=trace_id,
        )
        if not assessment.approved:
            self.metrics.increment("rejected", subsystem="risk")
            return finish(assessment, None)

        # Stage 2: authority validation
        stage_start = self._clock()
        try:
            validation = self.validator.validate(decision, self._get_game_state())
        except Exception as e:
            logger.error(f"Validation failed for {decision.id}: {e}", extra={"trace_id": trace_id})
            self.metrics.record_error("authority", type(e).__name__)
            stages.append(self._stage(StageName.VALIDATION, stage_start, StageResult.FAIL, f"Error: {e}"))
            return finish(assessment, None)

        stages.append(self._stage(
            StageName.VALIDATION,
            stage_start,
            StageResult.PASS if validation.valid else StageResult.FAIL,
            validation.details,
        ))
        self.telemetry.emit(
            TelemetryEventType.DECISION_VALIDATED,
            {
                "decision_id": decision.id,
                "decision_type": decision.type.value,
                "valid": validation.valid,
                "reason": validation.reason.value,
            },
            trace_id=trace_id,
        )
        if not validation.valid:
            self.telemetry.emit(
                TelemetryEventType.DECISION_REJECTED,
                {
                    "decision_id": decision.id,
                    "decision_type": decision.type.value,
                    "stage": StageName.VALIDATION.value,
                    "reason": validation.reason.value,
                    "details": validation.details,
                },
                trace_id=trace_id,
            )
            self.metrics.increment("rejected", subsystem="authority")
            return finish(assessment, validation)

        # Stage 3: execution
        stage_start = self._clock()
        executed = False
        result = None
        try:
            if self._executor is not None:
                result = self._executor(decision)
            executed = True
        except Exception as e:
            logger.error(f"Executor failed for {decision.id}: {e}", extra={"trace_id": trace_id})
            self.metrics.record_error("executor", type(e).__name__)
            stages.append(self._stage(StageName.EXECUTION, stage_start, StageResult.FAIL, f"Error: {e}"))

        if executed:
            stages.append(self._stage(StageName.EXECUTION, stage_start, StageResult.PASS))
            if decision.entity_id:
                self.telemetry.track_entity_state_change(decision.entity_id)
            latency = max(0.0, self._clock() - start)
            self.telemetry.emit(
                TelemetryEventType.DECISION_EXECUTED,
                {
                    "decision_id": decision.id,
                    "decision_type": decision.type.value,
                    "entity_id": decision.entity_id,
                },
                latency_ms=latency,
                trace_id=trace_id,
            )
            self.metrics.increment("executed", subsystem="pipeline")

        # Stage 4: telemetry
        stage_start = self._clock()
        stages.append(self._stage(StageName.TELEMETRY, stage_start, StageResult.PASS))
        self.telemetry.detect_anomaly(trace_id=trace_id)

        return finish(assessment, validation, executed, result)

    def get_trace(self, trace_id: str) -> Optional[PipelineTrace]:
        return self._traces.get(trace_id)

    def get_recent_traces(self, count: int = 10) -> List[PipelineTrace]:
        """Get the most recent traces, newest first."""
        if count <= 0:
            return []
        return list(reversed(self._traces.values()))[:count]

    def clear_traces(self) -> None:
        self._traces.clear()

    def get_stats(self) -> Dict[str, Any]:
        """
        Pipeline statistics over the retained traces.

        ``approved`` counts executed traces.
        """
        traces = list(self._traces.values())
        total = len(traces)
        approved = sum(1 for t in traces if t.executed)
        total_latency = sum(t.total_latency_ms for t in traces)

        return {
            "total_processed": total,
            "approved": approved,
            "rejected": total - approved,
            "average_latency_ms": total_latency / total if total else 0.0,
        }

    def get_metrics(self) -> MetricsCollector:
        return self.metrics

    def _get_game_state(self) -> GameState:
        if self._game_state_provider is not None:
            return self._game_state_provider()
        return GameState.empty(self._clock())

    def _stage(
        self,
        name: StageName,
        start: float,
        result: StageResult,
        details: Optional[str] = None,
    ) -> PipelineStage:
        end = max(start, self._clock())
        self.metrics.record_latency(name.value, end - start)
        return PipelineStage(name=name, start_time=start, end_time=end, result=result, details=details)

    def _store_trace(self, trace: PipelineTrace) -> PipelineTrace:
        self._traces[trace.trace_id] = trace
        while len(self._traces) > self.max_traces:
            self._traces.popitem(last=False)

        self.metrics.record_latency("total", trace.total_latency_ms)
        logger.latency(
            "pipeline",
            trace.total_latency_ms,
            trace_id=trace.trace_id,
            decision_id=trace.decision.id,
            entity_id=trace.decision.entity_id,
        )
        return trace
