"""
Health checks for the decision gate.

A ``HealthChecker`` is a named, ordered set of probes. Each probe returns a
``HealthStatus``; a probe that raises is reported as unhealthy instead of
propagating. ``build_registry_health_checker`` assembles the probes the
admin API serves on ``/health``.
"""
from __future__ import annotations

import logging
import platform
import sys
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from importlib import metadata
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from .registry import ServiceRegistry

logger = logging.getLogger(__name__)

MINIMUM_PYTHON = (3, 9)

# Distribution name -> whether the gate cannot run without it.
RUNTIME_DISTRIBUTIONS = {
    "pyyaml": True,
    "pydantic": True,
    "fastapi": False,
    "uvicorn": False,
}

HealthProbe = Callable[[], "HealthStatus"]


@dataclass
class HealthStatus:
    """Outcome of one probe."""
    name: str
    healthy: bool
    message: str = ""
    latency_ms: float = 0.0
    details: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["latency_ms"] = round(self.latency_ms, 2)
        data.update(data.pop("details"))
        return data


@dataclass
class SystemHealth:
    """Aggregate of every probe in a single run."""
    healthy: bool
    checks: List[HealthStatus]
    timestamp: str

    def to_dict(self) -> Dict:
        return {
            "healthy": self.healthy,
            "timestamp": self.timestamp,
            "checks": [c.to_dict() for c in self.checks],
        }


class HealthChecker:
    """
    Ordered collection of health probes.

    Example:
        >>> checker = HealthChecker(include_defaults=False)
        >>> checker.add_check("sink", lambda: HealthStatus("sink", True))
        >>> checker.run_all().healthy
        True
    """

    def __init__(self, include_defaults: bool = True):
        self._probes: Dict[str, HealthProbe] = {}
        if include_defaults:
            self.add_check("python_version", check_python_version)
            self.add_check("dependencies", check_dependencies)

    def add_check(self, name: str, check_fn: HealthProbe) -> None:
        """Register a probe; re-adding a name replaces it in place."""
        self._probes[name] = check_fn

    def get_check_names(self) -> List[str]:
        return list(self._probes)

    def run_check(self, name: str) -> HealthStatus:
        probe = self._probes.get(name)
        if probe is None:
            return HealthStatus(name=name, healthy=False, message=f"Unknown check: {name}")

        started = time.perf_counter()
        try:
            status = probe()
        except Exception as e:
            logger.warning(f"Health check {name} failed: {e}")
            status = HealthStatus(name=name, healthy=False, message=f"Check failed: {e}")
        status.latency_ms = (time.perf_counter() - started) * 1000
        return status

    def run_all(self) -> SystemHealth:
        results = [self.run_check(name) for name in self._probes]
        return SystemHealth(
            healthy=all(r.healthy for r in results),
            checks=results,
            timestamp=datetime.now().isoformat(),
        )


def check_python_version() -> HealthStatus:
    current = platform.python_version()
    required = ".".join(str(part) for part in MINIMUM_PYTHON)
    return HealthStatus(
        name="python_version",
        healthy=sys.version_info >= MINIMUM_PYTHON,
        message=f"Python {current}",
        details={"version": current, "required": f"{required}+"},
    )


def _installed_version(distribution: str) -> Optional[str]:
    try:
        return metadata.version(distribution)
    except metadata.PackageNotFoundError:
        return None


def check_dependencies() -> HealthStatus:
    """Required distributions must be installed; the HTTP stack is reported."""
    versions = {dist: _installed_version(dist) for dist in RUNTIME_DISTRIBUTIONS}
    missing = [d for d, required in RUNTIME_DISTRIBUTIONS.items() if required and not versions[d]]
    optional_missing = [d for d, required in RUNTIME_DISTRIBUTIONS.items() if not required and not versions[d]]
    return HealthStatus(
        name="dependencies",
        healthy=not missing,
        message=f"Missing: {', '.join(missing)}" if missing else "OK",
        details={
            "versions": versions,
            "api_available": bool(versions["fastapi"] and versions["uvicorn"]),
            "optional_missing": optional_missing,
        },
    )


def build_registry_health_checker(
    registry: "ServiceRegistry",
    include_defaults: bool = False,
) -> HealthChecker:
    """
    Health checker for a running registry.

    Checks:
    - services: every service present and the registry initialized
    - telemetry: telemetry enabled and retained data under the memory threshold
    - latency: p95 pipeline latency under the degradation threshold
    - spawn_throttle: reports (but does not fail on) an active throttle
    """
    checker = HealthChecker(include_defaults=include_defaults)

    def check_services() -> HealthStatus:
        status = registry.get_status().to_dict()
        missing = [name for name, ok in status.items() if not ok]
        return HealthStatus(
            name="services",
            healthy=not missing,
            message="All services initialized" if not missing else f"Not ready: {', '.join(missing)}",
            details={"status": status},
        )

    def check_telemetry() -> HealthStatus:
        telemetry = registry.telemetry
        memory_mb = telemetry.estimate_memory_usage()
        limit_mb = telemetry.thresholds.memory_usage_mb
        enabled = telemetry.settings.enabled
        healthy = enabled and memory_mb <= limit_mb
        if not enabled:
            message = "Telemetry disabled"
        else:
            message = f"{memory_mb:.2f}MB retained of {limit_mb:g}MB"
        return HealthStatus(
            name="telemetry",
            healthy=healthy,
            message=message,
            details=telemetry.stats(),
        )

    def check_latency() -> HealthStatus:
        stats = registry.metrics.get_latency_stats("total")
        limit_ms = registry.telemetry.thresholds.performance_degradation_ms
        p95 = stats.p95
        return HealthStatus(
            name="latency",
            healthy=p95 <= limit_ms,
            message=f"p95 {p95:.1f}ms (limit {limit_ms:g}ms)",
            details={"latency": stats.to_dict()},
        )

    def check_spawn_throttle() -> HealthStatus:
        active = registry.autofix.is_spawn_throttle_active()
        return HealthStatus(
            name="spawn_throttle",
            healthy=True,
            message="Spawn throttle active" if active else "Spawning unthrottled",
            details={"active": active},
        )

    checker.add_check("services", check_services)
    checker.add_check("telemetry", check_telemetry)
    checker.add_check("latency", check_latency)
    checker.add_check("spawn_throttle", check_spawn_throttle)
    return checker
