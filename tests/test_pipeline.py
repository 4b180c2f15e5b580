"""
Tests for the decision pipeline.
"""
import pytest

from decision_gate.authority import AuthorityValidator
from decision_gate.pipeline import DecisionPipeline
from decision_gate.risk import RiskAssessmentService
from decision_gate.telemetry import TelemetrySystem
from decision_gate.types import (
    Decision,
    EntityState,
    GameState,
    RateLimitConfig,
    StageName,
    StageResult,
    TelemetryEventType,
    ValidationReason,
)


@pytest.fixture
def game_state():
    return GameState(
        entities={
            "enemy_1": EntityState(id="enemy_1"),
            "enemy_2": EntityState(id="enemy_2", alive=False),
        }
    )


@pytest.fixture
def telemetry(clock):
    return TelemetrySystem(clock=clock)


@pytest.fixture
def pipeline(clock, telemetry, game_state):
    pipeline = DecisionPipeline(
        RiskAssessmentService(clock=clock),
        AuthorityValidator({"spawn": RateLimitConfig(2)}, clock=clock),
        telemetry,
        clock=clock,
    )
    pipeline.set_game_state_provider(lambda: game_state)
    return pipeline


def stage_names(trace):
    return [stage.name for stage in trace.stages]


class TestProcess:
    """Test stage sequencing and outcomes."""

    def test_happy_path(self, pipeline, telemetry):
        executed = []
        pipeline.set_executor(lambda d: executed.append(d.id) or "done")
        decision = Decision.create("enemy_update", "enemy_1", parameters={"new_state": "aware"})

        trace = pipeline.process(decision)

        assert stage_names(trace) == [
            StageName.RISK_ASSESSMENT, StageName.VALIDATION, StageName.EXECUTION, StageName.TELEMETRY,
        ]
        assert all(stage.result == StageResult.PASS for stage in trace.stages)
        assert trace.executed
        assert trace.execution_result == "done"
        assert trace.validation.reason == ValidationReason.APPROVED
        assert executed == [decision.id]
        assert telemetry.get_tracked_entities() == ["enemy_1"]

    def test_risk_rejection_stops_pipeline(self, pipeline, telemetry):
        decision = Decision.create("spawn", "new", priority=9, parameters={"count": 5})

        trace = pipeline.process(decision)

        assert stage_names(trace) == [StageName.RISK_ASSESSMENT]
        assert trace.stages[0].result == StageResult.FAIL
        assert "73.0" in trace.stages[0].details
        assert not trace.executed
        assert trace.validation is None
        assert [e.event_type for e in telemetry.get_recent_events()] == [
            TelemetryEventType.DECISION_ASSESSED,
        ]
        assert pipeline.get_metrics().get_counter("risk.rejected") == 1

    def test_validation_rejection(self, pipeline, telemetry):
        trace = pipeline.process(Decision.create("enemy_update", "enemy_2"))

        assert stage_names(trace) == [StageName.RISK_ASSESSMENT, StageName.VALIDATION]
        assert trace.stages[1].result == StageResult.FAIL
        assert trace.validation.reason == ValidationReason.ENTITY_DEAD
        assert not trace.executed
        rejected = telemetry.get_recent_events(event_type="decision_rejected")[0]
        assert rejected.data["reason"] == "ENTITY_DEAD"
        assert rejected.data["stage"] == "validation"
        assert pipeline.get_metrics().get_counter("authority.rejected") == 1

    def test_rate_limited_third_spawn(self, pipeline):
        traces = [pipeline.process(Decision.create("spawn", f"s{i}")) for i in range(3)]

        assert [t.executed for t in traces] == [True, True, False]
        assert traces[2].validation.reason == ValidationReason.RATE_LIMITED

    def test_no_executor_still_executes(self, pipeline):
        trace = pipeline.process(Decision.create("despawn", "enemy_1"))
        assert trace.executed
        assert trace.execution_result is None

    def test_executor_failure(self, pipeline, telemetry):
        def boom(decision):
            raise RuntimeError("engine refused")

        pipeline.set_executor(boom)
        trace = pipeline.process(Decision.create("despawn", "enemy_1"))

        assert not trace.executed
        assert stage_names(trace)[-2:] == [StageName.EXECUTION, StageName.TELEMETRY]
        assert trace.stage("execution").result == StageResult.FAIL
        assert trace.stage("execution").details == "Error: engine refused"
        assert telemetry.get_recent_events(event_type="decision_executed") == []
        assert telemetry.get_tracked_entities() == []

    def test_risk_failure(self, pipeline):
        def boom(decision):
            raise RuntimeError("model offline")

        pipeline.risk.assess = boom
        trace = pipeline.process(Decision.create("despawn", "enemy_1"))

        assert stage_names(trace) == [StageName.RISK_ASSESSMENT]
        assert trace.stages[0].details == "Error: model offline"
        assert trace.risk_assessment is None

    def test_game_state_provider_failure(self, pipeline):
        def boom():
            raise RuntimeError("world unavailable")

        pipeline.set_game_state_provider(boom)
        trace = pipeline.process(Decision.create("despawn", "enemy_1"))

        assert stage_names(trace) == [StageName.RISK_ASSESSMENT, StageName.VALIDATION]
        assert trace.stages[1].result == StageResult.FAIL
        assert trace.stages[1].details == "Error: world unavailable"
        assert trace.validation is None
        assert not trace.executed

    def test_empty_world_without_provider(self, clock, telemetry):
        pipeline = DecisionPipeline(
            RiskAssessmentService(clock=clock), AuthorityValidator(clock=clock), telemetry, clock=clock
        )

        assert pipeline.process(Decision.create("spawn", "new")).executed
        trace = pipeline.process(Decision.create("despawn", "enemy_1"))
        assert trace.validation.reason == ValidationReason.ENTITY_NOT_FOUND

    def test_events_share_trace_id(self, pipeline, telemetry):
        trace = pipeline.process(Decision.create("despawn", "enemy_1"))

        events = telemetry.get_recent_events()
        assert [e.event_type for e in events] == [
            TelemetryEventType.DECISION_ASSESSED,
            TelemetryEventType.DECISION_VALIDATED,
            TelemetryEventType.DECISION_EXECUTED,
        ]
        assert {e.trace_id for e in events} == {trace.trace_id}

    def test_anomaly_detected_in_telemetry_stage(self, pipeline, telemetry):
        telemetry.update_thresholds(excessive_spawning_per_second=1)
        seen = []
        telemetry.on_anomaly(seen.append)

        pipeline.process(Decision.create("spawn", "s1"))
        trace = pipeline.process(Decision.create("spawn", "s2"))

        assert len(seen) == 1
        anomaly_event = telemetry.get_recent_events(event_type="anomaly_detected")[0]
        assert anomaly_event.trace_id == trace.trace_id

    def test_latency_recorded(self, pipeline, telemetry, clock):
        def slow(decision):
            clock.advance(25)

        pipeline.set_executor(slow)
        trace = pipeline.process(Decision.create("despawn", "enemy_1"))

        assert trace.total_latency_ms == pytest.approx(25)
        executed = telemetry.get_recent_events(event_type="decision_executed")[0]
        assert executed.latency_ms == pytest.approx(25)
        stage = trace.stage("execution")
        assert stage.end_time - stage.start_time == pytest.approx(25)
        assert pipeline.get_metrics().get_latency_stats("execution").max_ms == pytest.approx(25)


class TestTraces:
    """Test trace storage and statistics."""

    def test_get_trace(self, pipeline):
        trace = pipeline.process(Decision.create("despawn", "enemy_1"))
        assert pipeline.get_trace(trace.trace_id) is trace
        assert pipeline.get_trace("missing") is None

    def test_recent_traces_newest_first(self, pipeline):
        traces = [pipeline.process(Decision.create("despawn", "enemy_1")) for _ in range(3)]

        assert pipeline.get_recent_traces(2) == [traces[2], traces[1]]
        assert pipeline.get_recent_traces(0) == []

    def test_fifo_eviction(self, clock, telemetry, game_state):
        pipeline = DecisionPipeline(
            RiskAssessmentService(clock=clock),
            AuthorityValidator(clock=clock),
            telemetry,
            max_traces=3,
            clock=clock,
        )
        traces = [pipeline.process(Decision.create("spawn", f"s{i}")) for i in range(5)]

        assert pipeline.get_trace(traces[0].trace_id) is None
        assert pipeline.get_trace(traces[1].trace_id) is None
        assert pipeline.get_recent_traces(10) == traces[:1:-1]

    def test_stats(self, pipeline):
        pipeline.process(Decision.create("despawn", "enemy_1"))
        pipeline.process(Decision.create("despawn", "enemy_2"))
        pipeline.process(Decision.create("spawn", "new", priority=20))

        stats = pipeline.get_stats()

        assert stats["total_processed"] == 3
        assert stats["approved"] == 1
        assert stats["rejected"] == 2
        assert stats["average_latency_ms"] == 0

    def test_clear_traces(self, pipeline):
        pipeline.process(Decision.create("despawn", "enemy_1"))
        pipeline.clear_traces()
        assert pipeline.get_stats() == {
            "total_processed": 0,
            "approved": 0,
            "rejected": 0,
            "average_latency_ms": 0.0,
        }


class TestRecordShape:
    """Test traces and events are well formed on every outcome path."""

    @pytest.mark.parametrize("outcome,executed", [
        ("approved", True),
        ("risk_rejected", False),
        ("validation_rejected", False),
        ("executor_failure", False),
    ])
    def test_trace_and_events(self, pipeline, telemetry, clock, outcome, executed):
        def slow(decision):
            clock.advance(3)

        def broken(decision):
            clock.advance(1)
            raise RuntimeError("engine refused")

        decision, executor = {
            "approved": (Decision.create("despawn", "enemy_1"), slow),
            "risk_rejected": (Decision.create("spawn", "new", priority=9, parameters={"count": 5}), slow),
            "validation_rejected": (Decision.create("enemy_update", "enemy_2"), slow),
            "executor_failure": (Decision.create("despawn", "enemy_1"), broken),
        }[outcome]
        pipeline.set_executor(executor)

        trace = pipeline.process(decision)

        assert trace.executed is executed
        assert trace.trace_id
        assert trace.total_latency_ms >= 0
        assert trace.stages
        for stage in trace.stages:
            assert stage.end_time >= stage.start_time

        events = telemetry.get_recent_events(1000)
        assert events
        for event in events:
            assert event.event_id
            assert event.timestamp > 0
            assert isinstance(event.data, dict)
            assert event.trace_id == trace.trace_id
