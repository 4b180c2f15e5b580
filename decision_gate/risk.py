"""
Risk assessment for AI decisions.

Scores how disruptive a decision would be before it is allowed to run:
- Base risk from a per-type weight, the decision priority and its magnitude
- Predicted cascading effects on the faction, heat, squad and world systems
- Approval against a configurable threshold

Also keeps a priority queue for batch assessment and a bounded log of every
assessment made.
"""
from __future__ import annotations

from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from .config import DEFAULT_CASCADE_MULTIPLIERS, DEFAULT_RISK_THRESHOLD, DEFAULT_RISK_WEIGHTS
from .logging_config import get_logger
from .types import (
    AssessmentLogEntry,
    CascadeSystem,
    CascadingEffect,
    Decision,
    DespawnParams,
    EnemyUpdateParams,
    HeatChangeParams,
    RiskAssessment,
    SpawnParams,
    SquadTacticParams,
)
from .util import clamp, now_ms

logger = get_logger(__name__, subsystem="risk")


DEFAULT_TYPE_WEIGHT = 15.0
DEFAULT_MULTIPLIER = 1.0

# Heat swings at least this large are expected to move the faction escalation tier
ESCALATION_HEAT_DELTA = 20

AGGRESSIVE_TACTICS = ("assault", "flank")
COMBAT_STATES = ("engage", "flank")


class RiskAssessmentService:
    """
    Scores decisions and approves those at or below the risk threshold.

    Example:
        >>> risk = RiskAssessmentService(threshold=70)
        >>> decision = Decision.create("spawn", "enemy_1", priority=9,
        ...                            parameters={"count": 5})
        >>> assessment = risk.assess(decision)
        >>> assessment.approved
        False
        >>> assessment.rejection_reason
        'Risk score 74.4 exceeds threshold 70 (base 73.0, cascade +1.4)'
    """

    def __init__(
        self,
        threshold: float = DEFAULT_RISK_THRESHOLD,
        weights: Optional[Dict[str, float]] = None,
        cascade_multipliers: Optional[Dict[str, float]] = None,
        max_log_entries: int = 10000,
        clock: Callable[[], float] = now_ms,
    ):
        self._threshold = clamp(float(threshold), 0.0, 100.0)
        self._weights: Dict[str, float] = dict(DEFAULT_RISK_WEIGHTS)
        self._weights.update(weights or {})
        self._multipliers: Dict[str, float] = dict(DEFAULT_CASCADE_MULTIPLIERS)
        self._multipliers.update(cascade_multipliers or {})
        self._clock = clock

        self._queue: List[Decision] = []
        self._logs: Deque[AssessmentLogEntry] = deque(maxlen=max_log_entries)

    def assess(self, decision: Decision) -> RiskAssessment:
        """
        Assess a decision.

        Returns:
            RiskAssessment with a score in [0, 100]
        """
        timestamp = self._clock()

        base = self._base_risk(decision)
        effects = self.predict_cascade(decision)

        cascade = 0.0
        for effect in effects:
            multiplier = self._multipliers.get(effect.system.value, DEFAULT_MULTIPLIER)
            cascade += abs(effect.predicted_change) * multiplier * effect.confidence

        score = clamp(base + cascade, 0.0, 100.0)
        approved = score <= self._threshold

        rejection_reason = None
        if not approved:
            rejection_reason = (
                f"Risk score {score:.1f} exceeds threshold {self._threshold:g} "
                f"(base {base:.1f}, cascade +{cascade:.1f})"
            )

        assessment = RiskAssessment(
            decision_id=decision.id,
            decision_type=decision.type,
            risk_score=score,
            cascading_effects=effects,
            approved=approved,
            rejection_reason=rejection_reason,
            timestamp=timestamp,
        )
        self._log(assessment)
        return assessment

    def predict_cascade(self, decision: Decision) -> List[CascadingEffect]:
        """Predict the secondary changes a decision would cause."""
        params = decision.params
        effects: List[CascadingEffect] = []

        if isinstance(params, SpawnParams):
            effects.append(CascadingEffect(CascadeSystem.WORLD, "entity_count", 1, 1.0))
            if decision.faction_id:
                effects.append(CascadingEffect(CascadeSystem.FACTION, "member_count", 1, 0.9))

        elif isinstance(params, DespawnParams):
            effects.append(CascadingEffect(CascadeSystem.WORLD, "entity_count", -1, 1.0))
            if decision.faction_id:
                effects.append(CascadingEffect(CascadeSystem.FACTION, "member_count", -1, 0.9))
            if decision.squad_id:
                effects.append(CascadingEffect(CascadeSystem.SQUAD, "member_count", -1, 0.95))

        elif isinstance(params, HeatChangeParams):
            delta = params.delta or 0
            effects.append(CascadingEffect(CascadeSystem.HEAT, "heat_level", delta, 1.0))
            if abs(delta) >= ESCALATION_HEAT_DELTA:
                effects.append(CascadingEffect(
                    CascadeSystem.FACTION, "escalation_tier", 1 if delta > 0 else -1, 0.7
                ))

        elif isinstance(params, SquadTacticParams):
            effects.append(CascadingEffect(CascadeSystem.SQUAD, "tactic_change", 1, 0.85))
            if params.tactic_type in AGGRESSIVE_TACTICS:
                effects.append(CascadingEffect(CascadeSystem.HEAT, "combat_intensity", 10, 0.6))

        elif isinstance(params, EnemyUpdateParams):
            if params.new_state in COMBAT_STATES:
                effects.append(CascadingEffect(CascadeSystem.HEAT, "combat_activity", 5, 0.5))

        else:
            raise TypeError(f"Unhandled decision parameters: {type(params).__name__}")

        return effects

    def set_threshold(self, threshold: float) -> None:
        self._threshold = clamp(float(threshold), 0.0, 100.0)

    def get_threshold(self) -> float:
        return self._threshold

    def update_config(
        self,
        threshold: Optional[float] = None,
        weights: Optional[Dict[str, float]] = None,
        cascade_multipliers: Optional[Dict[str, float]] = None,
    ) -> None:
        """Clamp a new threshold and shallow-merge weights and multipliers."""
        if threshold is not None:
            self.set_threshold(threshold)
        if weights:
            self._weights.update(weights)
        if cascade_multipliers:
            self._multipliers.update(cascade_multipliers)

    def get_config(self) -> Dict:
        return {
            "threshold": self._threshold,
            "weights": dict(self._weights),
            "cascade_multipliers": dict(self._multipliers),
        }

    # Queueing

    def queue_decision(self, decision: Decision) -> None:
        """Queue a decision; higher priority first, FIFO within a priority."""
        for i, queued in enumerate(self._queue):
            if queued.priority < decision.priority:
                self._queue.insert(i, decision)
                return
        self._queue.append(decision)

    def process_queue(self) -> List[RiskAssessment]:
        """Assess and remove every queued decision, front to back."""
        results = []
        while self._queue:
            results.append(self.assess(self._queue.pop(0)))
        return results

    def get_queue_length(self) -> int:
        return len(self._queue)

    def clear_queue(self) -> None:
        self._queue.clear()

    # Logs

    def get_assessment_logs(self, count: Optional[int] = None) -> List[AssessmentLogEntry]:
        """Get assessment log entries, oldest first."""
        logs = list(self._logs)
        if count is None:
            return logs
        return logs[-count:] if count > 0 else []

    def clear_logs(self) -> None:
        self._logs.clear()

    def _base_risk(self, decision: Decision) -> float:
        risk = float(self._weights.get(decision.type.value, DEFAULT_TYPE_WEIGHT))
        risk += decision.priority * 2

        params = decision.params
        if isinstance(params, SpawnParams):
            risk += params.count * 5
        elif isinstance(params, HeatChangeParams):
            risk += abs(params.delta or 0) * 0.5

        return risk

    def _log(self, assessment: RiskAssessment) -> None:
        self._logs.append(AssessmentLogEntry(
            timestamp=assessment.timestamp,
            decision_id=assessment.decision_id,
            decision_type=assessment.decision_type,
            risk_score=assessment.risk_score,
            approved=assessment.approved,
            rejection_reason=assessment.rejection_reason,
        ))
        if not assessment.approved:
            logger.info(
                f"Decision {assessment.decision_id} rejected: {assessment.rejection_reason}",
                extra={"decision_id": assessment.decision_id},
            )
