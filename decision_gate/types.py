"""
Shared data model for the decision gate.

Everything that crosses a component boundary lives here:
- Decisions and their typed parameters
- Risk assessments and cascading effects
- Authority validation results and the world snapshot they are checked against
- Pipeline stages and traces
- Telemetry events, anomaly reports and autofix results

Records are plain dataclasses. Tags are ``str`` enums so they compare equal to
their wire strings (``DecisionType.SPAWN == "spawn"``).
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from .util import generate_id, now_ms


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, enums and containers into JSON-safe values."""
    if isinstance(value, Enum):
        return value.value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: to_jsonable(getattr(value, f.name))
            for f in dataclasses.fields(value)
        }
    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return value


# ============================================================================
# Decisions
# ============================================================================

class DecisionType(str, Enum):
    """Kinds of autonomous action an AI may request."""
    ENEMY_UPDATE = "enemy_update"
    SQUAD_TACTIC = "squad_tactic"
    HEAT_CHANGE = "heat_change"
    SPAWN = "spawn"
    DESPAWN = "despawn"


@dataclass(frozen=True)
class SpawnParams:
    count: int = 1


@dataclass(frozen=True)
class DespawnParams:
    pass


@dataclass(frozen=True)
class HeatChangeParams:
    delta: Optional[float] = None


@dataclass(frozen=True)
class SquadTacticParams:
    tactic_type: Optional[str] = None


@dataclass(frozen=True)
class EnemyUpdateParams:
    new_state: Optional[str] = None


DecisionParams = Union[
    SpawnParams, DespawnParams, HeatChangeParams, SquadTacticParams, EnemyUpdateParams
]

PARAMS_BY_TYPE: Dict[DecisionType, type] = {
    DecisionType.SPAWN: SpawnParams,
    DecisionType.DESPAWN: DespawnParams,
    DecisionType.HEAT_CHANGE: HeatChangeParams,
    DecisionType.SQUAD_TACTIC: SquadTacticParams,
    DecisionType.ENEMY_UPDATE: EnemyUpdateParams,
}

# Bag keys understood per decision type, camelCase aliases included
_BAG_KEYS: Dict[DecisionType, Dict[str, str]] = {
    DecisionType.SPAWN: {"count": "count"},
    DecisionType.DESPAWN: {},
    DecisionType.HEAT_CHANGE: {"delta": "delta"},
    DecisionType.SQUAD_TACTIC: {"tactic_type": "tactic_type", "tacticType": "tactic_type"},
    DecisionType.ENEMY_UPDATE: {"new_state": "new_state", "newState": "new_state"},
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def params_from_bag(
    decision_type: Union[DecisionType, str],
    bag: Optional[Mapping[str, Any]] = None,
) -> tuple:
    """
    Build the typed parameters for a decision from an untyped mapping.

    Returns:
        Tuple of (params, extra) where extra holds the keys the decision
        type does not interpret.
    """
    dtype = DecisionType(decision_type)
    bag = dict(bag or {})
    known = _BAG_KEYS[dtype]
    extra = {k: v for k, v in bag.items() if k not in known}
    values = {known[k]: v for k, v in bag.items() if k in known}

    if dtype == DecisionType.SPAWN:
        count = values.get("count")
        # A missing or zero count means a single spawn
        params: DecisionParams = SpawnParams(count=count if _is_number(count) and count else 1)
    elif dtype == DecisionType.HEAT_CHANGE:
        delta = values.get("delta")
        params = HeatChangeParams(delta=delta if _is_number(delta) else None)
    elif dtype == DecisionType.SQUAD_TACTIC:
        tactic = values.get("tactic_type")
        params = SquadTacticParams(tactic_type=tactic if isinstance(tactic, str) else None)
    elif dtype == DecisionType.ENEMY_UPDATE:
        state = values.get("new_state")
        params = EnemyUpdateParams(new_state=state if isinstance(state, str) else None)
    else:
        params = DespawnParams()

    return params, extra


@dataclass(frozen=True)
class Decision:
    """
    A proposed autonomous action submitted for gated execution.

    Decisions are produced outside the gate and never modified by it.

    Attributes:
        id: Unique decision id
        type: Decision kind
        entity_id: Entity the decision acts on
        action: Action name checked against faction doctrine
        params: Typed parameters matching ``type``
        priority: Larger values are served first; no enforced range
        faction_id: Owning faction, if any
        squad_id: Owning squad, if any
        timestamp: Creation time in ms
        extra: Parameters the gate does not interpret
    """
    id: str
    type: DecisionType
    entity_id: str
    action: str
    params: DecisionParams
    priority: int = 0
    faction_id: Optional[str] = None
    squad_id: Optional[str] = None
    timestamp: float = field(default_factory=now_ms)
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "type", DecisionType(self.type))
        expected = PARAMS_BY_TYPE[self.type]
        if not isinstance(self.params, expected):
            raise ValueError(
                f"{self.type.value} decision requires {expected.__name__}, "
                f"got {type(self.params).__name__}"
            )

    @classmethod
    def create(
        cls,
        type: Union[DecisionType, str],
        entity_id: str,
        action: str = "",
        parameters: Optional[Mapping[str, Any]] = None,
        priority: int = 0,
        faction_id: Optional[str] = None,
        squad_id: Optional[str] = None,
        decision_id: Optional[str] = None,
        timestamp: Optional[float] = None,
    ) -> "Decision":
        """Create a decision from an untyped parameter bag."""
        params, extra = params_from_bag(type, parameters)
        return cls(
            id=decision_id or generate_id(),
            type=DecisionType(type),
            entity_id=entity_id,
            action=action or DecisionType(type).value,
            params=params,
            priority=priority,
            faction_id=faction_id,
            squad_id=squad_id,
            timestamp=timestamp if timestamp is not None else now_ms(),
            extra=extra,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Decision":
        """Create from a dictionary (snake_case or camelCase keys)."""
        decision_type = data.get("type")
        try:
            dtype = DecisionType(decision_type)
        except ValueError:
            raise ValueError(f"Unknown decision type: {decision_type!r}")

        raw_priority = data.get("priority") or 0
        try:
            priority = int(raw_priority)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid priority: {raw_priority!r}")

        return cls.create(
            type=dtype,
            entity_id=data.get("entity_id", data.get("entityId", "")),
            action=data.get("action", ""),
            parameters=data.get("parameters") or {},
            priority=priority,
            faction_id=data.get("faction_id", data.get("factionId")),
            squad_id=data.get("squad_id", data.get("squadId")),
            decision_id=data.get("id"),
            timestamp=data.get("timestamp"),
        )

    @property
    def parameters(self) -> Dict[str, Any]:
        """Parameters as a flat bag (typed fields plus extras)."""
        bag = {
            k: v for k, v in dataclasses.asdict(self.params).items()
            if v is not None
        }
        bag.update(self.extra)
        return bag

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "entity_id": self.entity_id,
            "faction_id": self.faction_id,
            "squad_id": self.squad_id,
            "action": self.action,
            "parameters": to_jsonable(self.parameters),
            "priority": self.priority,
            "timestamp": self.timestamp,
        }


# ============================================================================
# Risk
# ============================================================================

class CascadeSystem(str, Enum):
    FACTION = "faction"
    HEAT = "heat"
    SQUAD = "squad"
    WORLD = "world"


@dataclass(frozen=True)
class CascadingEffect:
    """A predicted secondary change to another subsystem."""
    system: CascadeSystem
    variable: str
    predicted_change: float
    confidence: float  # 0.0..1.0


@dataclass(frozen=True)
class RiskAssessment:
    decision_id: str
    decision_type: DecisionType
    risk_score: float  # 0..100
    cascading_effects: List[CascadingEffect]
    approved: bool
    rejection_reason: Optional[str] = None
    timestamp: float = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


@dataclass(frozen=True)
class AssessmentLogEntry:
    timestamp: float
    decision_id: str
    decision_type: DecisionType
    risk_score: float
    approved: bool
    rejection_reason: Optional[str] = None


# ============================================================================
# Authority validation
# ============================================================================

class ValidationReason(str, Enum):
    APPROVED = "APPROVED"
    ENTITY_DEAD = "ENTITY_DEAD"
    DOCTRINE_VIOLATION = "DOCTRINE_VIOLATION"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_STATE = "INVALID_STATE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    ENTITY_NOT_FOUND = "ENTITY_NOT_FOUND"
    FACTION_NOT_FOUND = "FACTION_NOT_FOUND"


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: ValidationReason
    details: Optional[str] = None
    entity_id: Optional[str] = None
    timestamp: float = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


@dataclass
class EntityState:
    id: str
    alive: bool = True
    health: float = 100.0
    last_state_change: float = 0.0
    current_state: str = "idle"
    faction_id: Optional[str] = None


@dataclass
class FactionDoctrine:
    """Faction rules an action must comply with."""
    allowed_actions: List[str] = field(default_factory=list)
    forbidden_actions: List[str] = field(default_factory=list)
    max_escalation_tier: str = "war"  # calm, alert, hunting, war
    can_declare_war: bool = True
    can_form_alliance: bool = True


@dataclass
class FactionState:
    id: str
    doctrine: FactionDoctrine = field(default_factory=FactionDoctrine)
    territories: List[str] = field(default_factory=list)
    allies: List[str] = field(default_factory=list)
    enemies: List[str] = field(default_factory=list)


@dataclass
class SquadState:
    id: str
    member_ids: List[str] = field(default_factory=list)
    faction_id: Optional[str] = None
    is_active: bool = True


@dataclass
class GameState:
    """World snapshot a decision is validated against."""
    entities: Dict[str, EntityState] = field(default_factory=dict)
    factions: Dict[str, FactionState] = field(default_factory=dict)
    squads: Dict[str, SquadState] = field(default_factory=dict)
    world_time: float = 0.0
    active_anomalies: List[str] = field(default_factory=list)

    @classmethod
    def empty(cls, world_time: Optional[float] = None) -> "GameState":
        """No entities, factions or squads; used when no provider is set."""
        return cls(world_time=world_time if world_time is not None else now_ms())


@dataclass
class RateLimitConfig:
    """Fixed-window limit: at most ``max_per_second`` calls per ``window_ms``."""
    max_per_second: float
    window_ms: float = 1000.0


@dataclass
class RateLimitState:
    operation_type: str
    count: int
    window_start: float


# ============================================================================
# Pipeline
# ============================================================================

class StageName(str, Enum):
    RISK_ASSESSMENT = "risk_assessment"
    VALIDATION = "validation"
    EXECUTION = "execution"
    TELEMETRY = "telemetry"


class StageResult(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"


@dataclass(frozen=True)
class PipelineStage:
    name: StageName
    start_time: float
    end_time: float
    result: StageResult
    details: Optional[str] = None


@dataclass(frozen=True)
class PipelineTrace:
    """The full record of one decision's journey through the pipeline."""
    trace_id: str
    decision: Decision
    risk_assessment: Optional[RiskAssessment]
    validation: Optional[ValidationResult]
    executed: bool
    execution_result: Any
    total_latency_ms: float
    stages: List[PipelineStage]
    timestamp: float

    def stage(self, name: Union[StageName, str]) -> Optional[PipelineStage]:
        """Get a stage by name, or None if it was not recorded."""
        for s in self.stages:
            if s.name == name:
                return s
        return None

    def to_dict(self) -> Dict[str, Any]:
        data = to_jsonable(self)
        data["decision"] = self.decision.to_dict()
        return data


# ============================================================================
# Telemetry, anomalies, autofix
# ============================================================================

class TelemetryEventType(str, Enum):
    DECISION_ASSESSED = "decision_assessed"
    DECISION_VALIDATED = "decision_validated"
    DECISION_EXECUTED = "decision_executed"
    DECISION_REJECTED = "decision_rejected"
    ESCALATION_CHANGE = "escalation_change"
    SQUAD_FORMATION = "squad_formation"
    PLAYER_PREDICTION = "player_prediction"
    ANOMALY_DETECTED = "anomaly_detected"
    AUTOFIX_TRIGGERED = "autofix_triggered"
    AUTOFIX_COMPLETED = "autofix_completed"
    AUTOFIX_FAILED = "autofix_failed"
    CONFIG_CHANGED = "config_changed"
    PERFORMANCE_WARNING = "performance_warning"


@dataclass(frozen=True)
class TelemetryEvent:
    event_id: str
    event_type: TelemetryEventType
    timestamp: float
    data: Dict[str, Any]
    latency_ms: Optional[float] = None
    trace_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


@dataclass(frozen=True)
class PerformanceCounters:
    decisions_per_second: float
    average_latency_ms: float
    memory_usage_mb: float
    active_entities: int
    pending_decisions: int
    total_decisions_processed: int
    total_rejections_count: int
    autofix_triggered_count: int

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


class ReasoningType(str, Enum):
    PERCEPTION = "perception"
    TACTICS = "tactics"
    MORALE = "morale"
    AGGRESSION = "aggression"


@dataclass(frozen=True)
class ReasoningEntry:
    """One step of an NPC's reasoning, kept for debug streaming."""
    entity_id: str
    reasoning_type: ReasoningType
    decision: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=now_ms)


class AnomalyType(str, Enum):
    EXCESSIVE_SPAWNING = "EXCESSIVE_SPAWNING"
    MEMORY_THRESHOLD = "MEMORY_THRESHOLD"
    STUCK_AI = "STUCK_AI"
    INVALID_STATE = "INVALID_STATE"
    PERFORMANCE_DEGRADATION = "PERFORMANCE_DEGRADATION"
    RATE_LIMIT_BREACH = "RATE_LIMIT_BREACH"


class AnomalySeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AnomalyReport:
    id: str
    type: AnomalyType
    severity: AnomalySeverity
    affected_entities: List[str]
    detected_at: float
    metrics: Dict[str, float]
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


@dataclass(frozen=True)
class AutofixResult:
    success: bool
    anomaly_id: str
    anomaly_type: AnomalyType
    action_taken: str
    entities_affected: int
    escalated: bool
    timestamp: float = field(default_factory=now_ms)
    details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


@dataclass(frozen=True)
class TelemetryIncident:
    """What a sink receives for each detected anomaly."""
    incident_id: str
    anomaly: AnomalyReport
    timestamp: float
    trace_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)
