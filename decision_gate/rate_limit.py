"""
Rate limiting for gated operations.

Uses a fixed window per operation type: a window opens on the first call,
admits up to ``max_per_second`` calls, and is replaced by a fresh window once
``window_ms`` has elapsed since it opened.
"""
from __future__ import annotations

from typing import Callable, Dict, Optional

from .types import RateLimitConfig, RateLimitState
from .util import now_ms


class FixedWindowRateLimiter:
    """
    Per-key fixed-window rate limiter.

    Keys without a configured limit are never limited.

    Example:
        >>> limiter = FixedWindowRateLimiter({"spawn": RateLimitConfig(50)})
        >>> if limiter.allow("spawn"):
        ...     spawn_enemy()
        ... else:
        ...     return "Rate limited"
    """

    def __init__(
        self,
        limits: Optional[Dict[str, RateLimitConfig]] = None,
        clock: Callable[[], float] = now_ms,
    ):
        self._limits: Dict[str, RateLimitConfig] = dict(limits or {})
        self._states: Dict[str, RateLimitState] = {}
        self._clock = clock

    def allow(self, key: str) -> bool:
        """
        Check whether a call for ``key`` is admitted, counting it if so.

        Returns:
            True if allowed, False if rate limited
        """
        config = self._limits.get(key)
        if config is None:
            return True

        now = self._clock()
        state = self._states.get(key)

        if state is None or now - state.window_start >= config.window_ms:
            state = RateLimitState(operation_type=key, count=0, window_start=now)
            self._states[key] = state

        if state.count >= config.max_per_second:
            return False

        state.count += 1
        return True

    def configure(self, key: str, config: RateLimitConfig) -> None:
        """Set or replace the limit for a key. The current window is kept."""
        self._limits[key] = RateLimitConfig(config.max_per_second, config.window_ms)

    def remove(self, key: str) -> None:
        """Drop the limit (and window) for a key."""
        self._limits.pop(key, None)
        self._states.pop(key, None)

    def get_config(self, key: str) -> Optional[RateLimitConfig]:
        config = self._limits.get(key)
        if config is None:
            return None
        return RateLimitConfig(config.max_per_second, config.window_ms)

    def state(self, key: str) -> Optional[RateLimitState]:
        """Get a copy of the current window for a key, if one is open."""
        state = self._states.get(key)
        if state is None:
            return None
        return RateLimitState(state.operation_type, state.count, state.window_start)

    def reset(self, key: Optional[str] = None) -> None:
        """Reset the window for one key, or for all keys."""
        if key is None:
            self._states.clear()
        else:
            self._states.pop(key, None)

    def stats(self) -> Dict:
        """Get rate limiter statistics."""
        return {
            "active_keys": len(self._states),
            "limits": {
                key: {"max_per_second": cfg.max_per_second, "window_ms": cfg.window_ms}
                for key, cfg in self._limits.items()
            },
            "windows": {
                key: {"count": s.count, "window_start": s.window_start}
                for key, s in self._states.items()
            },
        }
