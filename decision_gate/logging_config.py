"""
Structured logging configuration.

Console output is human-readable; with a log directory configured, the same
records are also written as rotating plain-text and JSON-lines files.
Structured records may carry:
- subsystem (pipeline, risk, authority, telemetry, autofix, config, registry)
- trace_id / decision_id / entity_id
- event_type
- latency_ms
"""
from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, MutableMapping, Optional, Tuple

HUMAN_LOG_NAME = "decision_gate.log"
JSON_LOG_NAME = "decision_gate.json.log"

# Record attribute -> JSON key
STRUCTURED_FIELDS = {
    "subsystem": "subsystem",
    "trace_id": "trace_id",
    "decision_id": "decision_id",
    "entity_id": "entity_id",
    "event_type": "event",
    "latency_ms": "latency_ms",
}


class JSONFormatter(logging.Formatter):
    """One JSON object per record; unset structured fields are omitted."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (key, getattr(record, attr))
            for attr, key in STRUCTURED_FIELDS.items()
            if getattr(record, attr, None) is not None
        )
        payload.update(getattr(record, "extra_data", None) or {})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class HumanFormatter(logging.Formatter):
    """``HH:MM:SS.mmm LEVL [subsystem] trace=... entity=...: message (1.0ms)``"""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stderr.isatty()

    def _prefix(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        parts: List[str] = [stamp, record.levelname[:4]]
        subsystem = getattr(record, "subsystem", None)
        if subsystem and subsystem != "general":
            parts.append(f"[{subsystem}]")
        trace_id = getattr(record, "trace_id", None)
        if trace_id:
            # Trace ids end in a random suffix; the tail is enough to correlate.
            parts.append(f"trace={trace_id[-9:]}")
        entity_id = getattr(record, "entity_id", None)
        if entity_id:
            parts.append(f"entity={entity_id}")
        return " ".join(parts)

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        latency_ms = getattr(record, "latency_ms", None)
        if latency_ms is not None:
            message += f" ({latency_ms:.1f}ms)"

        line = f"{self._prefix(record)}: {message}"
        if self.use_colors:
            line = self.LEVEL_COLORS.get(record.levelno, "") + line + self.RESET
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class StructuredLogger(logging.LoggerAdapter):
    """
    Logger bound to a subsystem.

    Per-call ``extra`` is merged over the bound subsystem rather than
    replacing it.

    Example:
        >>> log = get_logger(__name__, subsystem="pipeline")
        >>> log.info("Decision executed", extra={"trace_id": tid})
        >>> log.latency("risk_assessment", 0.4, trace_id=tid)
    """

    def __init__(self, logger: logging.Logger, subsystem: str = "general"):
        super().__init__(logger, {"subsystem": subsystem})
        self.subsystem = subsystem

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs

    def _structured(
        self,
        level: int,
        msg: str,
        trace_id: Optional[str] = None,
        decision_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        event_type: Optional[str] = None,
        latency_ms: Optional[float] = None,
        **extra_data,
    ) -> None:
        self.log(
            level,
            msg,
            extra={
                "trace_id": trace_id,
                "decision_id": decision_id,
                "entity_id": entity_id,
                "event_type": event_type,
                "latency_ms": latency_ms,
                "extra_data": extra_data,
            },
        )

    def event(self, event_type: str, msg: str, level: int = logging.INFO, **kwargs) -> None:
        """Record tagged with a telemetry event type."""
        self._structured(level, msg, event_type=event_type, **kwargs)

    def latency(self, operation: str, latency_ms: float, **kwargs) -> None:
        """Debug-level record of how long an operation took."""
        self._structured(logging.DEBUG, f"{operation} completed", latency_ms=latency_ms, **kwargs)


def _rotating_handler(
    path: str, formatter: logging.Formatter, max_bytes: int, backup_count: int
) -> logging.Handler:
    handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    level: str = "INFO",
    log_dir: Optional[str] = None,
    json_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Replace the root logger's handlers.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory for rotating log files; console only when omitted
        json_file: JSON log path, relative to log_dir unless absolute
        max_bytes: Size at which a log file rotates
        backup_count: Rotated files kept per log
    """
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(HumanFormatter())
    handlers: List[logging.Handler] = [console]

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        json_path = os.path.join(log_dir, json_file or JSON_LOG_NAME)
        handlers.append(_rotating_handler(
            os.path.join(log_dir, HUMAN_LOG_NAME),
            HumanFormatter(use_colors=False),
            max_bytes,
            backup_count,
        ))
        handlers.append(_rotating_handler(json_path, JSONFormatter(), max_bytes, backup_count))

    root = logging.getLogger()
    root.setLevel(level.upper())
    root.handlers = handlers


def get_logger(name: str, subsystem: str = "general") -> StructuredLogger:
    return StructuredLogger(logging.getLogger(name), subsystem)
