from __future__ import annotations

import time
import uuid


def clamp(x: float, lo: float, hi: float) -> float:
    return lo if x < lo else hi if x > hi else x


def now_ms() -> float:
    """Wall-clock time in milliseconds."""
    return time.time() * 1000.0


def generate_id() -> str:
    """Unique id of the form ``<ms timestamp>-<random suffix>``."""
    return f"{int(now_ms())}-{uuid.uuid4().hex[:9]}"
