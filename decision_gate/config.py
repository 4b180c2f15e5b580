"""
Hot-reloadable service configuration.

A single ``ServiceConfig`` record is the source of truth for every component
of the gate. The ``ConfigurationStore`` validates partial updates, merges them
key-by-key, keeps a bounded change log and notifies listeners so running
services can pick up new values without a restart.

Configs can be created programmatically or loaded from YAML/JSON files.
"""
from __future__ import annotations

import copy
import dataclasses
import json
import math
import os
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

import yaml

from .logging_config import get_logger
from .types import RateLimitConfig, to_jsonable
from .util import now_ms

logger = get_logger(__name__, subsystem="config")


DEFAULT_RISK_THRESHOLD = 70.0

DEFAULT_RISK_WEIGHTS: Dict[str, float] = {
    "spawn": 30,
    "despawn": 10,
    "heat_change": 25,
    "squad_tactic": 20,
    "enemy_update": 15,
}

DEFAULT_CASCADE_MULTIPLIERS: Dict[str, float] = {
    "faction": 1.5,
    "heat": 1.3,
    "squad": 1.2,
    "world": 1.4,
}


def default_rate_limits() -> Dict[str, RateLimitConfig]:
    return {
        "spawn": RateLimitConfig(max_per_second=50, window_ms=1000),
        "squad_create": RateLimitConfig(max_per_second=10, window_ms=1000),
        "reinforcement_call": RateLimitConfig(max_per_second=5, window_ms=1000),
        "heat_change": RateLimitConfig(max_per_second=20, window_ms=1000),
        "enemy_update": RateLimitConfig(max_per_second=500, window_ms=1000),
    }


@dataclass
class AnomalyThresholds:
    """Limits past which telemetry reports an anomaly."""
    excessive_spawning_per_second: float = 50
    memory_usage_mb: float = 512
    stuck_ai_seconds: float = 30
    performance_degradation_ms: float = 100


@dataclass
class TelemetrySettings:
    enabled: bool = True
    debug_mode: bool = False
    max_events_retained: int = 10000
    max_reasoning_entries: int = 1000
    counter_reset_interval_ms: float = 60000
    anomaly_check_interval_ms: float = 1000


@dataclass
class ServiceConfig:
    """
    Complete configuration for the decision gate.

    Attributes:
        risk_threshold: Highest risk score still approved (0-100)
        risk_weights: Base risk per decision type (0-100 each)
        cascade_multipliers: Weight of predicted effects per system (>= 0)
        rate_limits: Fixed-window limits per operation type
        anomaly_thresholds: Limits for anomaly detection
        telemetry: Event retention and debug settings
    """
    risk_threshold: float = DEFAULT_RISK_THRESHOLD
    risk_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_RISK_WEIGHTS))
    cascade_multipliers: Dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_CASCADE_MULTIPLIERS)
    )
    rate_limits: Dict[str, RateLimitConfig] = field(default_factory=default_rate_limits)
    anomaly_thresholds: AnomalyThresholds = field(default_factory=AnomalyThresholds)
    telemetry: TelemetrySettings = field(default_factory=TelemetrySettings)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ServiceConfig":
        """Create from a (possibly partial) dictionary, filling in defaults."""
        return merge_config(cls(), data)


CONFIG_KEYS = tuple(f.name for f in dataclasses.fields(ServiceConfig))
_ANOMALY_KEYS = tuple(f.name for f in dataclasses.fields(AnomalyThresholds))
_TELEMETRY_KEYS = tuple(f.name for f in dataclasses.fields(TelemetrySettings))
_TELEMETRY_BOOL_KEYS = ("enabled", "debug_mode")
# Retention sizes are used as list slice bounds
_TELEMETRY_INT_KEYS = ("max_events_retained", "max_reasoning_entries")
_RATE_LIMIT_KEYS = ("max_per_second", "window_ms")


def _is_number(value: Any) -> bool:
    """Finite int or float; bools, NaN and infinities are rejected."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _is_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _as_mapping(value: Any) -> Optional[Dict[str, Any]]:
    """Accept either a mapping or a config dataclass instance."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, Mapping):
        return dict(value)
    return None


def merge_config(base: ServiceConfig, partial: Mapping[str, Any]) -> ServiceConfig:
    """
    Deep-merge a partial config onto a copy of ``base``.

    Nested maps are merged key-by-key rather than replaced. The partial is
    assumed to be valid.
    """
    merged = copy.deepcopy(base)

    if "risk_threshold" in partial:
        merged.risk_threshold = float(partial["risk_threshold"])
    if "risk_weights" in partial:
        merged.risk_weights.update(_as_mapping(partial["risk_weights"]) or {})
    if "cascade_multipliers" in partial:
        merged.cascade_multipliers.update(_as_mapping(partial["cascade_multipliers"]) or {})
    if "rate_limits" in partial:
        for op, entry in (_as_mapping(partial["rate_limits"]) or {}).items():
            current = merged.rate_limits.get(op)
            values = dataclasses.asdict(current) if current else {}
            values.update(_as_mapping(entry) or {})
            merged.rate_limits[op] = RateLimitConfig(**values)
    if "anomaly_thresholds" in partial:
        merged.anomaly_thresholds = dataclasses.replace(
            merged.anomaly_thresholds, **(_as_mapping(partial["anomaly_thresholds"]) or {})
        )
    if "telemetry" in partial:
        merged.telemetry = dataclasses.replace(
            merged.telemetry, **(_as_mapping(partial["telemetry"]) or {})
        )

    return merged


@dataclass(frozen=True)
class ConfigChange:
    """Configuration change log entry."""
    timestamp: float
    key: str
    old_value: Any
    new_value: Any


ConfigChangeCallback = Callable[[ServiceConfig, ServiceConfig], None]


class ConfigurationStore:
    """
    Validated, hot-reloadable configuration with change logging.

    Failed updates leave the running config untouched. Successful updates
    snapshot the previous config, log one entry per changed top-level key and
    notify every listener with (old, new) copies.

    Example:
        >>> store = ConfigurationStore()
        >>> store.on_change(lambda old, new: print(new.risk_threshold))
        >>> store.update("risk_threshold", 50)
        50.0
        True
        >>> store.update("risk_threshold", 150)
        False
    """

    def __init__(
        self,
        initial: Optional[Mapping[str, Any]] = None,
        max_log_entries: int = 1000,
        clock: Callable[[], float] = now_ms,
    ):
        """
        Initialize the store.

        Args:
            initial: Partial config merged onto the defaults
            max_log_entries: Change log capacity (oldest dropped)
            clock: Millisecond clock for change timestamps

        Raises:
            ValueError: If ``initial`` does not validate
        """
        self._clock = clock
        self._config = ServiceConfig()
        if initial:
            errors = self.validate(initial)
            if errors:
                raise ValueError("Invalid configuration:\n" + "\n".join(errors))
            self._config = merge_config(self._config, initial)
        self._previous = copy.deepcopy(self._config)
        self._callbacks: List[ConfigChangeCallback] = []
        self._change_logs: Deque[ConfigChange] = deque(maxlen=max_log_entries)

    def get(self) -> ServiceConfig:
        """Get a copy of the current configuration."""
        return copy.deepcopy(self._config)

    def get_previous(self) -> ServiceConfig:
        """Get a copy of the configuration before the last change."""
        return copy.deepcopy(self._previous)

    def to_dict(self) -> Dict[str, Any]:
        return self._config.to_dict()

    def validate(self, partial: Mapping[str, Any]) -> List[str]:
        """
        Validate a partial configuration.

        Returns:
            List of error messages; empty means valid
        """
        if not isinstance(partial, Mapping):
            return ["configuration must be a mapping"]

        errors: List[str] = []

        for key in partial:
            if key not in CONFIG_KEYS:
                errors.append(f"unknown configuration key: {key}")

        if "risk_threshold" in partial:
            value = partial["risk_threshold"]
            if not _is_number(value) or value < 0 or value > 100:
                errors.append("risk_threshold must be a number between 0 and 100")

        if "risk_weights" in partial:
            weights = _as_mapping(partial["risk_weights"])
            if weights is None:
                errors.append("risk_weights must be a mapping")
            else:
                for key, value in weights.items():
                    if not _is_number(value) or value < 0 or value > 100:
                        errors.append(f"risk_weights.{key} must be a number between 0 and 100")

        if "cascade_multipliers" in partial:
            multipliers = _as_mapping(partial["cascade_multipliers"])
            if multipliers is None:
                errors.append("cascade_multipliers must be a mapping")
            else:
                for key, value in multipliers.items():
                    if not _is_number(value) or value < 0:
                        errors.append(f"cascade_multipliers.{key} must be a non-negative number")

        if "rate_limits" in partial:
            errors.extend(self._validate_rate_limits(partial["rate_limits"]))

        if "anomaly_thresholds" in partial:
            thresholds = _as_mapping(partial["anomaly_thresholds"])
            if thresholds is None:
                errors.append("anomaly_thresholds must be a mapping")
            else:
                for key, value in thresholds.items():
                    if key not in _ANOMALY_KEYS:
                        errors.append(f"unknown anomaly threshold: {key}")
                    elif not _is_number(value) or value <= 0:
                        errors.append(f"anomaly_thresholds.{key} must be a positive number")

        if "telemetry" in partial:
            telemetry = _as_mapping(partial["telemetry"])
            if telemetry is None:
                errors.append("telemetry must be a mapping")
            else:
                for key, value in telemetry.items():
                    if key not in _TELEMETRY_KEYS:
                        errors.append(f"unknown telemetry setting: {key}")
                    elif key in _TELEMETRY_BOOL_KEYS:
                        if not isinstance(value, bool):
                            errors.append(f"telemetry.{key} must be a boolean")
                    elif key in _TELEMETRY_INT_KEYS:
                        if not _is_integer(value) or value <= 0:
                            errors.append(f"telemetry.{key} must be a positive integer")
                    elif not _is_number(value) or value <= 0:
                        errors.append(f"telemetry.{key} must be a positive number")

        return errors

    def _validate_rate_limits(self, value: Any) -> List[str]:
        limits = _as_mapping(value)
        if limits is None:
            return ["rate_limits must be a mapping"]

        errors = []
        for op, entry in limits.items():
            fields = _as_mapping(entry)
            if fields is None:
                errors.append(f"rate_limits.{op} must be a mapping")
                continue
            for key in fields:
                if key not in _RATE_LIMIT_KEYS:
                    errors.append(f"unknown rate limit setting: rate_limits.{op}.{key}")
            if "max_per_second" in fields:
                max_per_second = fields["max_per_second"]
                if not _is_number(max_per_second) or max_per_second < 0:
                    errors.append(f"rate_limits.{op}.max_per_second must be a non-negative number")
            elif op not in self._config.rate_limits:
                errors.append(f"rate_limits.{op}.max_per_second is required for a new limit")
            if "window_ms" in fields:
                window_ms = fields["window_ms"]
                if not _is_number(window_ms) or window_ms <= 0:
                    errors.append(f"rate_limits.{op}.window_ms must be a positive number")
        return errors

    def load(self, partial: Mapping[str, Any]) -> bool:
        """
        Validate and apply a partial configuration.

        Returns:
            True if applied, False if validation failed (state unchanged)
        """
        errors = self.validate(partial)
        if errors:
            logger.warning(f"Rejected configuration update: {'; '.join(errors)}")
            return False

        self._commit(merge_config(self._config, partial))
        return True

    def update(self, key: str, value: Any) -> bool:
        """Validate and apply a single top-level key."""
        return self.load({key: value})

    def reset(self) -> None:
        """Restore the built-in defaults."""
        self._commit(ServiceConfig())

    def load_file(self, path: str) -> bool:
        """
        Load a partial configuration from a YAML or JSON file.

        Returns:
            True if applied, False if unreadable or invalid
        """
        try:
            data = read_config_file(path)
        except ValueError as e:
            logger.warning(str(e))
            return False

        applied = self.load(data)
        if applied:
            logger.info(f"Loaded configuration from {path}")
        return applied

    def on_change(self, callback: ConfigChangeCallback) -> None:
        """Register a callback for configuration changes."""
        self._callbacks.append(callback)

    def off_change(self, callback: ConfigChangeCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def get_change_logs(self, count: Optional[int] = None) -> List[ConfigChange]:
        """Get change log entries, oldest first."""
        logs = list(self._change_logs)
        if count is None:
            return logs
        return logs[-count:] if count > 0 else []

    def _commit(self, new_config: ServiceConfig) -> None:
        old_config = self._config
        self._previous = copy.deepcopy(old_config)
        self._config = new_config

        changed = self._log_changes(old_config, new_config)
        if changed:
            logger.info(f"Configuration changed: {', '.join(changed)}")

        self._notify(old_config, new_config)

    def _log_changes(self, old: ServiceConfig, new: ServiceConfig) -> List[str]:
        changed = []
        timestamp = self._clock()
        for key in CONFIG_KEYS:
            old_value = to_jsonable(getattr(old, key))
            new_value = to_jsonable(getattr(new, key))
            if old_value != new_value:
                self._change_logs.append(ConfigChange(
                    timestamp=timestamp,
                    key=key,
                    old_value=old_value,
                    new_value=new_value,
                ))
                changed.append(key)
        return changed

    def _notify(self, old: ServiceConfig, new: ServiceConfig) -> None:
        for callback in list(self._callbacks):
            try:
                callback(copy.deepcopy(old), copy.deepcopy(new))
            except Exception as e:
                logger.error(f"Configuration change callback failed: {e}")


def read_config_file(path: str) -> Dict[str, Any]:
    """
    Read a partial configuration from a YAML (.yaml/.yml) or JSON file.

    Raises:
        ValueError: If the file is missing, unparseable or not a mapping
    """
    if not os.path.exists(path):
        raise ValueError(f"Config file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()

        if path.endswith((".yaml", ".yml")):
            data = yaml.safe_load(content)
        else:
            data = json.loads(content)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ValueError(f"Failed to read config from {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"Config file {path} must contain a mapping")
    return dict(data)


def changed_keys(old: ServiceConfig, new: ServiceConfig) -> List[str]:
    """Top-level keys whose values differ between two configs."""
    return [
        key for key in CONFIG_KEYS
        if to_jsonable(getattr(old, key)) != to_jsonable(getattr(new, key))
    ]
