"""
Tests for authority validation.
"""
import pytest

from decision_gate.authority import AuthorityValidator
from decision_gate.types import (
    Decision,
    EntityState,
    FactionDoctrine,
    FactionState,
    GameState,
    RateLimitConfig,
    SquadState,
    ValidationReason,
)


@pytest.fixture
def game_state():
    return GameState(
        entities={
            "enemy_1": EntityState(id="enemy_1", faction_id="bandits"),
            "enemy_2": EntityState(id="enemy_2", alive=False),
        },
        factions={
            "bandits": FactionState(
                id="bandits",
                doctrine=FactionDoctrine(forbidden_actions=["surrender"], can_declare_war=False),
            ),
            "militia": FactionState(
                id="militia",
                doctrine=FactionDoctrine(allowed_actions=["patrol", "spawn"]),
            ),
        },
        squads={
            "alpha": SquadState(id="alpha", member_ids=["enemy_1"]),
            "empty": SquadState(id="empty"),
            "disbanded": SquadState(id="disbanded", member_ids=["enemy_1"], is_active=False),
        },
        world_time=0.0,
    )


@pytest.fixture
def validator(clock):
    return AuthorityValidator({"spawn": RateLimitConfig(50)}, clock=clock)


@pytest.fixture
def strict_validator(clock):
    return AuthorityValidator(strict=True, clock=clock)


class TestValidate:
    """Test the ordered rule checks."""

    def test_approved(self, validator, game_state):
        result = validator.validate(Decision.create("enemy_update", "enemy_1"), game_state)

        assert result.valid
        assert result.reason == ValidationReason.APPROVED
        assert result.details is None
        assert result.entity_id == "enemy_1"

    def test_missing_entity(self, validator, game_state):
        result = validator.validate(Decision.create("despawn", "ghost"), game_state)

        assert not result.valid
        assert result.reason == ValidationReason.ENTITY_NOT_FOUND
        assert "ghost" in result.details

    def test_spawn_may_target_missing_entity(self, validator, game_state):
        result = validator.validate(Decision.create("spawn", "new_enemy"), game_state)
        assert result.valid

    def test_dead_entity(self, validator, game_state):
        result = validator.validate(Decision.create("enemy_update", "enemy_2"), game_state)
        assert result.reason == ValidationReason.ENTITY_DEAD

    def test_dead_entity_spawn_is_rejected(self, validator, game_state):
        result = validator.validate(Decision.create("spawn", "enemy_2"), game_state)
        assert result.reason == ValidationReason.ENTITY_DEAD

    def test_forbidden_action(self, validator, game_state):
        decision = Decision.create(
            "enemy_update", "enemy_1", action="surrender", faction_id="bandits"
        )

        result = validator.validate(decision, game_state)

        assert result.reason == ValidationReason.DOCTRINE_VIOLATION
        assert "surrender" in result.details
        assert "bandits" in result.details

    def test_action_outside_allowed_list(self, validator, game_state):
        allowed = Decision.create("enemy_update", "enemy_1", action="patrol", faction_id="militia")
        denied = Decision.create("enemy_update", "enemy_1", action="raid", faction_id="militia")

        assert validator.validate(allowed, game_state).valid
        assert validator.validate(denied, game_state).reason == ValidationReason.DOCTRINE_VIOLATION

    def test_dead_check_runs_before_doctrine(self, validator, game_state):
        decision = Decision.create("enemy_update", "enemy_2", action="surrender", faction_id="bandits")
        assert validator.validate(decision, game_state).reason == ValidationReason.ENTITY_DEAD

    def test_rate_limited(self, clock, game_state):
        validator = AuthorityValidator({"spawn": RateLimitConfig(2)}, clock=clock)
        results = [
            validator.validate(Decision.create("spawn", f"s{i}"), game_state) for i in range(3)
        ]

        assert [r.valid for r in results] == [True, True, False]
        assert results[2].reason == ValidationReason.RATE_LIMITED
        assert "spawn" in results[2].details

    def test_earlier_failure_does_not_count_against_rate(self, clock, game_state):
        validator = AuthorityValidator({"despawn": RateLimitConfig(1)}, clock=clock)

        validator.validate(Decision.create("despawn", "ghost"), game_state)

        assert validator.validate(Decision.create("despawn", "enemy_1"), game_state).valid

    def test_deterministic_for_same_state(self, clock, game_state):
        decision = Decision.create("enemy_update", "enemy_1", action="surrender", faction_id="bandits")
        first = AuthorityValidator(clock=clock).validate(decision, game_state)
        second = AuthorityValidator(clock=clock).validate(decision, game_state)

        assert (first.valid, first.reason) == (second.valid, second.reason)

    def test_lenient_mode_skips_world_rules(self, validator, game_state):
        decision = Decision.create("spawn", "new", parameters={"count": 500}, squad_id="nowhere")
        assert validator.validate(decision, game_state).valid


class TestStrictWorldRules:
    """Test decision-specific rules only enforced in strict mode."""

    def test_unknown_squad(self, strict_validator, game_state):
        decision = Decision.create("enemy_update", "enemy_1", squad_id="nowhere")
        result = strict_validator.validate(decision, game_state)
        assert result.reason == ValidationReason.INVALID_STATE
        assert "nowhere" in result.details

    def test_inactive_squad(self, strict_validator, game_state):
        decision = Decision.create("enemy_update", "enemy_1", squad_id="disbanded")
        assert strict_validator.validate(decision, game_state).reason == ValidationReason.INVALID_STATE

    def test_spawn_count_limit(self, strict_validator, game_state):
        ok = Decision.create("spawn", "new", parameters={"count": 50})
        too_many = Decision.create("spawn", "new", parameters={"count": 51})

        assert strict_validator.validate(ok, game_state).valid
        result = strict_validator.validate(too_many, game_state)
        assert result.reason == ValidationReason.INVALID_STATE
        assert "51" in result.details

    def test_spawn_unknown_faction(self, strict_validator, game_state):
        decision = Decision.create("spawn", "new", faction_id="pirates")
        assert strict_validator.validate(decision, game_state).reason == ValidationReason.FACTION_NOT_FOUND

    def test_heat_change_requires_delta(self, strict_validator, game_state):
        missing = Decision.create("heat_change", "enemy_1")
        present = Decision.create("heat_change", "enemy_1", parameters={"delta": 5})

        assert strict_validator.validate(missing, game_state).reason == ValidationReason.INVALID_STATE
        assert strict_validator.validate(present, game_state).valid

    def test_squad_tactic_requires_members(self, strict_validator, game_state):
        no_squad = Decision.create("squad_tactic", "enemy_1", parameters={"tactic_type": "hold"})
        empty = Decision.create("squad_tactic", "enemy_1", squad_id="empty")
        staffed = Decision.create("squad_tactic", "enemy_1", squad_id="alpha")

        assert strict_validator.validate(no_squad, game_state).reason == ValidationReason.INVALID_STATE
        assert strict_validator.validate(empty, game_state).reason == ValidationReason.INVALID_STATE
        assert strict_validator.validate(staffed, game_state).valid

    def test_enemy_state_must_be_known(self, strict_validator, game_state):
        bad = Decision.create("enemy_update", "enemy_1", parameters={"new_state": "dancing"})
        good = Decision.create("enemy_update", "enemy_1", parameters={"new_state": "flank"})

        assert strict_validator.validate(bad, game_state).reason == ValidationReason.INVALID_STATE
        assert strict_validator.validate(good, game_state).valid


class TestChecks:
    """Test the individual check helpers."""

    def test_check_entity_alive(self, validator, game_state):
        assert validator.check_entity_alive("enemy_1", game_state)
        assert not validator.check_entity_alive("enemy_2", game_state)
        assert not validator.check_entity_alive("ghost", game_state)

    def test_doctrine_flags(self, validator, game_state):
        assert not validator.check_doctrine_compliance("bandits", "declare_war", game_state)
        assert validator.check_doctrine_compliance("bandits", "form_alliance", game_state)

    def test_unknown_faction_has_no_restrictions(self, validator, game_state):
        assert validator.check_doctrine_compliance("pirates", "surrender", game_state)

    def test_rate_limit_config_management(self, validator):
        validator.set_rate_limit_config("heat_change", RateLimitConfig(1))

        assert validator.check_rate_limit("heat_change")
        assert not validator.check_rate_limit("heat_change")
        assert validator.get_rate_limit_state("heat_change").count == 1

        validator.reset_rate_limits()
        assert validator.get_rate_limit_state("heat_change") is None

        validator.remove_rate_limit_config("heat_change")
        assert validator.get_rate_limit_config("heat_change") is None
        assert "spawn" in validator.get_rate_limit_stats()["limits"]
