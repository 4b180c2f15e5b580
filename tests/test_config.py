"""
Tests for the configuration store.
"""
import json

import pytest

from decision_gate.config import (
    AnomalyThresholds,
    ConfigurationStore,
    ServiceConfig,
    changed_keys,
    merge_config,
    read_config_file,
)
from decision_gate.types import RateLimitConfig


@pytest.fixture
def store(clock):
    return ConfigurationStore(clock=clock)


class TestServiceConfig:
    """Test the config record."""

    def test_defaults(self):
        config = ServiceConfig()

        assert config.risk_threshold == 70
        assert config.risk_weights["spawn"] == 30
        assert config.cascade_multipliers["world"] == 1.4
        assert config.rate_limits["spawn"] == RateLimitConfig(50, 1000)
        assert config.anomaly_thresholds.stuck_ai_seconds == 30
        assert config.telemetry.max_events_retained == 10000

    def test_defaults_are_independent(self):
        first, second = ServiceConfig(), ServiceConfig()
        first.risk_weights["spawn"] = 99
        first.rate_limits["spawn"].max_per_second = 1

        assert second.risk_weights["spawn"] == 30
        assert second.rate_limits["spawn"].max_per_second == 50

    def test_to_dict_round_trip(self):
        config = ServiceConfig.from_dict({"risk_threshold": 55, "telemetry": {"debug_mode": True}})
        data = config.to_dict()

        assert data["risk_threshold"] == 55
        assert data["telemetry"]["debug_mode"] is True
        assert data["rate_limits"]["spawn"] == {"max_per_second": 50, "window_ms": 1000}
        assert ServiceConfig.from_dict(data) == config

    def test_merge_is_key_by_key(self):
        base = ServiceConfig()
        merged = merge_config(base, {
            "risk_weights": {"spawn": 5},
            "rate_limits": {"spawn": {"window_ms": 2000}, "squad_tactic": {"max_per_second": 3}},
            "anomaly_thresholds": {"stuck_ai_seconds": 10},
        })

        assert merged.risk_weights["spawn"] == 5
        assert merged.risk_weights["despawn"] == 10
        assert merged.rate_limits["spawn"] == RateLimitConfig(50, 2000)
        assert merged.rate_limits["squad_tactic"] == RateLimitConfig(3, 1000)
        assert merged.anomaly_thresholds.stuck_ai_seconds == 10
        assert merged.anomaly_thresholds.memory_usage_mb == 512
        assert base.risk_weights["spawn"] == 30

    def test_changed_keys(self):
        old = ServiceConfig()
        new = merge_config(old, {"risk_threshold": 40, "telemetry": {"enabled": False}})
        assert changed_keys(old, new) == ["risk_threshold", "telemetry"]
        assert changed_keys(old, ServiceConfig()) == []


class TestValidate:
    """Test partial config validation."""

    def test_valid_partial(self, store):
        assert store.validate({"risk_threshold": 0, "risk_weights": {"spawn": 100}}) == []

    @pytest.mark.parametrize("partial,message", [
        ({"risk_threshold": 101}, "risk_threshold must be a number between 0 and 100"),
        ({"risk_threshold": "high"}, "risk_threshold must be a number between 0 and 100"),
        ({"risk_threshold": True}, "risk_threshold must be a number between 0 and 100"),
        ({"risk_weights": {"spawn": -1}}, "risk_weights.spawn must be a number between 0 and 100"),
        ({"risk_weights": [1, 2]}, "risk_weights must be a mapping"),
        ({"cascade_multipliers": {"heat": -0.5}}, "cascade_multipliers.heat must be a non-negative number"),
        ({"rate_limits": {"spawn": {"max_per_second": -1}}}, "rate_limits.spawn.max_per_second must be a non-negative number"),
        ({"rate_limits": {"teleport": {"window_ms": 100}}}, "rate_limits.teleport.max_per_second is required for a new limit"),
        ({"rate_limits": {"spawn": {"window_ms": 0}}}, "rate_limits.spawn.window_ms must be a positive number"),
        ({"rate_limits": {"spawn": {"burst": 3}}}, "unknown rate limit setting: rate_limits.spawn.burst"),
        ({"rate_limits": {"spawn": 5}}, "rate_limits.spawn must be a mapping"),
        ({"anomaly_thresholds": {"stuck_ai_seconds": 0}}, "anomaly_thresholds.stuck_ai_seconds must be a positive number"),
        ({"anomaly_thresholds": {"cpu": 5}}, "unknown anomaly threshold: cpu"),
        ({"telemetry": {"enabled": "yes"}}, "telemetry.enabled must be a boolean"),
        ({"telemetry": {"max_events_retained": 0}}, "telemetry.max_events_retained must be a positive integer"),
        ({"telemetry": {"max_events_retained": 5.5}}, "telemetry.max_events_retained must be a positive integer"),
        ({"telemetry": {"max_reasoning_entries": 100.0}}, "telemetry.max_reasoning_entries must be a positive integer"),
        ({"telemetry": {"counter_reset_interval_ms": float("inf")}}, "telemetry.counter_reset_interval_ms must be a positive number"),
        ({"risk_threshold": float("nan")}, "risk_threshold must be a number between 0 and 100"),
        ({"cascade_multipliers": {"heat": float("inf")}}, "cascade_multipliers.heat must be a non-negative number"),
        ({"rate_limits": {"spawn": {"window_ms": float("nan")}}}, "rate_limits.spawn.window_ms must be a positive number"),
        ({"telemetry": {"verbose": True}}, "unknown telemetry setting: verbose"),
        ({"colour": "blue"}, "unknown configuration key: colour"),
    ])
    def test_errors(self, store, partial, message):
        assert message in store.validate(partial)

    def test_not_a_mapping(self, store):
        assert store.validate(["risk_threshold"]) == ["configuration must be a mapping"]

    def test_collects_every_error(self, store):
        errors = store.validate({"risk_threshold": -1, "colour": "blue"})
        assert len(errors) == 2

    def test_dataclass_values_accepted(self, store):
        assert store.validate({"anomaly_thresholds": AnomalyThresholds(stuck_ai_seconds=5)}) == []


class TestConfigurationStore:
    """Test applying, logging and notifying changes."""

    def test_invalid_initial(self):
        with pytest.raises(ValueError, match="risk_threshold"):
            ConfigurationStore({"risk_threshold": 500})

    def test_initial_merged_onto_defaults(self):
        store = ConfigurationStore({"risk_threshold": 40})
        config = store.get()
        assert config.risk_threshold == 40
        assert config.risk_weights["spawn"] == 30

    def test_update(self, store, clock):
        assert store.update("risk_threshold", 50)

        assert store.get().risk_threshold == 50
        assert store.get_previous().risk_threshold == 70
        (change,) = store.get_change_logs()
        assert change.key == "risk_threshold"
        assert change.old_value == 70
        assert change.new_value == 50
        assert change.timestamp == clock()

    def test_failed_update_changes_nothing(self, store):
        seen = []
        store.on_change(lambda old, new: seen.append(new))

        assert not store.update("risk_threshold", 150)
        assert not store.load({"risk_threshold": 20, "risk_weights": {"spawn": "x"}})

        assert store.get().risk_threshold == 70
        assert store.get_change_logs() == []
        assert seen == []

    def test_listeners_get_copies(self, store):
        seen = []
        store.on_change(lambda old, new: seen.append((old, new)))

        store.load({"risk_weights": {"spawn": 10}})
        old, new = seen[0]
        new.risk_weights["spawn"] = 99

        assert old.risk_weights["spawn"] == 30
        assert store.get().risk_weights["spawn"] == 10

    def test_off_change(self, store):
        seen = []
        listener = lambda old, new: seen.append(new)
        store.on_change(listener)
        store.off_change(listener)

        store.update("risk_threshold", 60)

        assert seen == []

    def test_failing_listener_is_contained(self, store):
        seen = []

        def boom(old, new):
            raise RuntimeError("listener broke")

        store.on_change(boom)
        store.on_change(lambda old, new: seen.append(new.risk_threshold))

        assert store.update("risk_threshold", 60)
        assert seen == [60]

    def test_one_log_entry_per_changed_key(self, store):
        store.load({"risk_threshold": 60, "telemetry": {"debug_mode": True}, "risk_weights": {"spawn": 30}})
        assert [c.key for c in store.get_change_logs()] == ["risk_threshold", "telemetry"]

    def test_change_log_bounded(self, clock):
        store = ConfigurationStore(max_log_entries=3, clock=clock)
        for threshold in range(10, 60, 10):
            store.update("risk_threshold", threshold)

        logs = store.get_change_logs()
        assert [c.new_value for c in logs] == [30, 40, 50]
        assert [c.new_value for c in store.get_change_logs(1)] == [50]

    def test_get_returns_copy(self, store):
        store.get().risk_weights["spawn"] = 0
        assert store.get().risk_weights["spawn"] == 30

    def test_reset(self, store):
        store.load({"risk_threshold": 10, "rate_limits": {"despawn": {"max_per_second": 2}}})

        store.reset()

        assert store.get() == ServiceConfig()
        assert store.get_previous().risk_threshold == 10


class TestConfigFiles:
    """Test YAML and JSON config files."""

    def test_load_yaml(self, store, tmp_path):
        path = tmp_path / "gate.yaml"
        path.write_text("risk_threshold: 45\nrate_limits:\n  spawn:\n    max_per_second: 5\n")

        assert store.load_file(str(path))
        assert store.get().risk_threshold == 45
        assert store.get().rate_limits["spawn"] == RateLimitConfig(5, 1000)

    def test_load_json(self, store, tmp_path):
        path = tmp_path / "gate.json"
        path.write_text(json.dumps({"telemetry": {"debug_mode": True}}))

        assert store.load_file(str(path))
        assert store.get().telemetry.debug_mode is True

    def test_missing_file(self, store, tmp_path):
        assert not store.load_file(str(tmp_path / "nope.yaml"))

    def test_invalid_file_contents(self, store, tmp_path):
        path = tmp_path / "gate.yaml"
        path.write_text("risk_threshold: 400\n")

        assert not store.load_file(str(path))
        assert store.get().risk_threshold == 70

    def test_read_config_file_errors(self, tmp_path):
        broken = tmp_path / "broken.json"
        broken.write_text("{not json")
        listing = tmp_path / "list.yaml"
        listing.write_text("- 1\n- 2\n")

        with pytest.raises(ValueError, match="Failed to read"):
            read_config_file(str(broken))
        with pytest.raises(ValueError, match="must contain a mapping"):
            read_config_file(str(listing))

    def test_empty_file_is_empty_config(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert read_config_file(str(path)) == {}
