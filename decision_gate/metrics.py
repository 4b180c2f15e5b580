"""
Pipeline metrics.

Every pipeline owns one collector. Stage latencies are recorded under the
stage name ("risk_assessment", "validation", "execution", "telemetry") and
end-to-end latency under "total". Outcome counters are namespaced by the
subsystem that produced them, e.g. ``risk.rejected`` or
``pipeline.executed``. Collaborator exceptions are tallied as
``<subsystem>.<ExceptionName>``.
"""
from __future__ import annotations

import threading
import time
from collections import Counter, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, Iterator, Optional

# Window used for percentiles; count/min/max/avg cover every sample.
PERCENTILE_WINDOW = 1000


@dataclass
class LatencyStats:
    """Running latency summary for one stage."""
    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0
    window: Deque[float] = field(
        default_factory=lambda: deque(maxlen=PERCENTILE_WINDOW),
        repr=False,
    )

    def record(self, ms: float) -> None:
        self.count += 1
        self.total_ms += ms
        if ms < self.min_ms:
            self.min_ms = ms
        if ms > self.max_ms:
            self.max_ms = ms
        self.window.append(ms)

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def percentile(self, p: float) -> float:
        """Nearest-rank percentile over the recent window, p in 0-100."""
        if not self.window:
            return 0.0
        ordered = sorted(self.window)
        rank = min(int(len(ordered) * p / 100), len(ordered) - 1)
        return ordered[rank]

    @property
    def p50(self) -> float:
        return self.percentile(50)

    @property
    def p95(self) -> float:
        return self.percentile(95)

    @property
    def p99(self) -> float:
        return self.percentile(99)

    def to_dict(self) -> Dict[str, float]:
        data = {"count": self.count, "min_ms": 0, "max_ms": 0}
        if self.count:
            data["min_ms"] = round(self.min_ms, 2)
            data["max_ms"] = round(self.max_ms, 2)
        for label, value in (
            ("avg_ms", self.avg_ms),
            ("p50_ms", self.p50),
            ("p95_ms", self.p95),
            ("p99_ms", self.p99),
        ):
            data[label] = round(value, 2)
        return data


class MetricsCollector:
    """
    Latency, outcome and error tallies for a decision pipeline.

    Example:
        >>> metrics = MetricsCollector()
        >>> metrics.record_latency("risk_assessment", 0.8)
        >>> metrics.increment("rejected", subsystem="risk")
        >>> metrics.summary()["counters"]
        {'risk.rejected': 1}
    """

    def __init__(self):
        # Decisions may arrive from API worker threads and scheduler timers.
        self._lock = threading.Lock()
        self._started = datetime.now()
        self._stages: Dict[str, LatencyStats] = {}
        self._outcomes: Counter = Counter()
        self._failures: Counter = Counter()

    def record_latency(self, operation: str, ms: float) -> None:
        with self._lock:
            stats = self._stages.get(operation)
            if stats is None:
                stats = self._stages[operation] = LatencyStats()
            stats.record(ms)

    @contextmanager
    def time_operation(self, operation: str) -> Iterator[None]:
        """Record the wall-clock duration of the ``with`` body."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.record_latency(operation, (time.perf_counter() - started) * 1000)

    def increment(
        self,
        counter: str,
        n: int = 1,
        subsystem: Optional[str] = None,
    ) -> int:
        key = counter if not subsystem else f"{subsystem}.{counter}"
        with self._lock:
            self._outcomes[key] += n
            return self._outcomes[key]

    def record_error(self, subsystem: str, error_type: str = "unknown") -> None:
        with self._lock:
            self._failures[f"{subsystem}.{error_type}"] += 1

    def get_latency_stats(self, operation: str) -> LatencyStats:
        """Stats for a stage; an unseen stage yields empty stats."""
        with self._lock:
            return self._stages.get(operation) or LatencyStats()

    def get_counter(self, counter: str) -> int:
        with self._lock:
            return self._outcomes.get(counter, 0)

    def get_total_errors(self) -> int:
        with self._lock:
            return sum(self._failures.values())

    def summary(self) -> Dict:
        with self._lock:
            latencies = {name: stats.to_dict() for name, stats in self._stages.items()}
            counters = dict(self._outcomes)
            errors = dict(self._failures)
        return {
            "uptime_seconds": round((datetime.now() - self._started).total_seconds(), 1),
            "latencies": latencies,
            "counters": counters,
            "errors": errors,
            "totals": {"errors": sum(errors.values())},
        }

    def reset(self) -> None:
        with self._lock:
            self._stages.clear()
            self._outcomes.clear()
            self._failures.clear()
            self._started = datetime.now()
