"""
Authority validation for AI decisions.

Deterministic rule checks run in a fixed order, stopping at the first failure:
1. Entity exists and is alive
2. Action complies with the faction's doctrine
3. Operation type is within its rate limit
4. Decision-specific world rules (``strict`` mode only)

Validation outcomes are returned as ``ValidationResult`` values, never raised.
"""
from __future__ import annotations

from typing import Callable, Dict, Optional

from .logging_config import get_logger
from .rate_limit import FixedWindowRateLimiter
from .types import (
    Decision,
    DecisionType,
    EnemyUpdateParams,
    GameState,
    HeatChangeParams,
    RateLimitConfig,
    RateLimitState,
    SpawnParams,
    ValidationReason,
    ValidationResult,
)
from .util import now_ms

logger = get_logger(__name__, subsystem="authority")


MAX_SPAWN_PER_DECISION = 50

VALID_ENEMY_STATES = (
    "idle",
    "aware",
    "searching",
    "engage",
    "flank",
    "retreat",
    "surrender",
)


class AuthorityValidator:
    """
    Validates AI decisions against the world snapshot and game rules.

    Identical inputs with identical rate-limiter state always produce the
    same (valid, reason) pair. Each rate-limit check counts against the
    window as a side effect.

    Example:
        >>> validator = AuthorityValidator({"spawn": RateLimitConfig(2)})
        >>> result = validator.validate(decision, game_state)
        >>> if not result.valid:
        ...     print(result.reason, result.details)
    """

    def __init__(
        self,
        rate_limits: Optional[Dict[str, RateLimitConfig]] = None,
        strict: bool = False,
        clock: Callable[[], float] = now_ms,
    ):
        """
        Initialize the validator.

        Args:
            rate_limits: Limits per operation type (decision type)
            strict: Also enforce squad, spawn, heat and enemy-state rules
            clock: Millisecond clock for rate windows and timestamps
        """
        self.strict = strict
        self._clock = clock
        self._limiter = FixedWindowRateLimiter(rate_limits, clock=clock)

    def validate(self, decision: Decision, game_state: GameState) -> ValidationResult:
        """Validate a decision against a world snapshot."""
        timestamp = self._clock()

        def reject(reason: ValidationReason, details: str) -> ValidationResult:
            logger.debug(f"Decision {decision.id} rejected: {reason.value} ({details})")
            return ValidationResult(
                valid=False,
                reason=reason,
                details=details,
                entity_id=decision.entity_id,
                timestamp=timestamp,
            )

        entity = game_state.entities.get(decision.entity_id)
        if entity is None:
            # A spawn creates its entity
            if decision.type != DecisionType.SPAWN:
                return reject(
                    ValidationReason.ENTITY_NOT_FOUND,
                    f"Entity not found: {decision.entity_id}",
                )
        elif not entity.alive:
            return reject(
                ValidationReason.ENTITY_DEAD,
                f"Entity is dead: {decision.entity_id}",
            )

        if decision.faction_id and not self.check_doctrine_compliance(
            decision.faction_id, decision.action, game_state
        ):
            return reject(
                ValidationReason.DOCTRINE_VIOLATION,
                f"Action '{decision.action}' violates faction doctrine "
                f"for faction: {decision.faction_id}",
            )

        if not self.check_rate_limit(decision.type.value):
            return reject(
                ValidationReason.RATE_LIMITED,
                f"Rate limit exceeded for operation type: {decision.type.value}",
            )

        if self.strict:
            failure = self._check_world_rules(decision, game_state)
            if failure is not None:
                return reject(*failure)

        return ValidationResult(
            valid=True,
            reason=ValidationReason.APPROVED,
            entity_id=decision.entity_id,
            timestamp=timestamp,
        )

    def check_entity_alive(self, entity_id: str, game_state: GameState) -> bool:
        """True if the entity exists and is alive."""
        entity = game_state.entities.get(entity_id)
        return entity is not None and entity.alive

    def check_doctrine_compliance(
        self,
        faction_id: str,
        action: str,
        game_state: GameState,
    ) -> bool:
        """
        Check an action against a faction's doctrine.

        Unknown factions carry no restrictions.
        """
        faction = game_state.factions.get(faction_id)
        if faction is None:
            return True

        doctrine = faction.doctrine
        if action in doctrine.forbidden_actions:
            return False
        if doctrine.allowed_actions and action not in doctrine.allowed_actions:
            return False
        if action == "declare_war" and not doctrine.can_declare_war:
            return False
        if action == "form_alliance" and not doctrine.can_form_alliance:
            return False
        return True

    def check_rate_limit(self, operation_type: str) -> bool:
        """Check and count one call of an operation type."""
        return self._limiter.allow(operation_type)

    def reset_rate_limits(self) -> None:
        """Clear every rate window."""
        self._limiter.reset()

    def set_rate_limit_config(self, operation_type: str, config: RateLimitConfig) -> None:
        self._limiter.configure(operation_type, config)

    def remove_rate_limit_config(self, operation_type: str) -> None:
        self._limiter.remove(operation_type)

    def get_rate_limit_config(self, operation_type: str) -> Optional[RateLimitConfig]:
        return self._limiter.get_config(operation_type)

    def get_rate_limit_state(self, operation_type: str) -> Optional[RateLimitState]:
        return self._limiter.state(operation_type)

    def get_rate_limit_stats(self) -> Dict:
        return self._limiter.stats()

    def _check_world_rules(self, decision: Decision, game_state: GameState):
        """Return (reason, details) for the first broken world rule, or None."""
        if decision.squad_id:
            squad = game_state.squads.get(decision.squad_id)
            if squad is None:
                return ValidationReason.INVALID_STATE, f"Squad not found: {decision.squad_id}"
            if not squad.is_active:
                return ValidationReason.INVALID_STATE, f"Squad is not active: {decision.squad_id}"

        params = decision.params

        if isinstance(params, SpawnParams):
            if params.count > MAX_SPAWN_PER_DECISION:
                return (
                    ValidationReason.INVALID_STATE,
                    f"Spawn count {params.count} exceeds maximum of "
                    f"{MAX_SPAWN_PER_DECISION} per decision",
                )
            if decision.faction_id and decision.faction_id not in game_state.factions:
                return ValidationReason.FACTION_NOT_FOUND, f"Faction not found: {decision.faction_id}"

        elif isinstance(params, HeatChangeParams):
            if params.delta is None:
                return ValidationReason.INVALID_STATE, "Heat change requires numeric delta parameter"
            if decision.faction_id and decision.faction_id not in game_state.factions:
                return ValidationReason.FACTION_NOT_FOUND, f"Faction not found: {decision.faction_id}"

        elif decision.type == DecisionType.SQUAD_TACTIC:
            if not decision.squad_id:
                return ValidationReason.INVALID_STATE, "Squad tactic requires squad_id"
            squad = game_state.squads[decision.squad_id]
            if not squad.member_ids:
                return ValidationReason.INVALID_STATE, f"Squad has no members: {decision.squad_id}"

        elif isinstance(params, EnemyUpdateParams):
            if params.new_state and params.new_state not in VALID_ENEMY_STATES:
                return ValidationReason.INVALID_STATE, f"Invalid enemy state: {params.new_state}"

        return None
