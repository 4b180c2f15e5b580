"""
Decision gate: risk, authority and telemetry gating for autonomous AI decisions.

Every decision an AI wants to take is scored for risk, validated against the
world's rules, executed, and fed into a telemetry, anomaly-detection and
self-healing loop, all under hot-reloadable configuration.
"""

from .authority import AuthorityValidator
from .autofix import AutofixHooks
from .config import ConfigurationStore, ServiceConfig
from .pipeline import DecisionPipeline
from .registry import ServiceRegistry, create_service_registry
from .risk import RiskAssessmentService
from .telemetry import TelemetrySystem
from .types import Decision, DecisionType, GameState

__version__ = "0.1.0"

__all__ = [
    "AuthorityValidator",
    "AutofixHooks",
    "ConfigurationStore",
    "ServiceConfig",
    "DecisionPipeline",
    "ServiceRegistry",
    "create_service_registry",
    "RiskAssessmentService",
    "TelemetrySystem",
    "Decision",
    "DecisionType",
    "GameState",
]
