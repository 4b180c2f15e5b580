"""
Config file polling for hot reload.

The host loop calls ``poll()``; when the file's content hash changes the file
is loaded into the configuration store. A file that fails validation leaves
the running configuration untouched and is not retried until it changes
again.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .config import ConfigurationStore
from .logging_config import get_logger

logger = get_logger(__name__, subsystem="config")


def file_hash(path: str) -> Optional[str]:
    """SHA-256 of a file's content, or None if it cannot be read."""
    try:
        with open(path, "rb") as f:
            return hashlib.sha256(f.read()).hexdigest()
    except OSError:
        return None


@dataclass
class ReloadEvent:
    """Record of one reload attempt."""
    path: str
    hash: str
    applied: bool
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


class ConfigFileWatcher:
    """
    Reloads a YAML/JSON config file into a store when it changes.

    Example:
        >>> watcher = ConfigFileWatcher(registry.config, "gate.yaml")
        >>> while running:
        ...     watcher.poll()
        ...     time.sleep(1)
    """

    def __init__(self, store: ConfigurationStore, path: str):
        self.store = store
        self.path = str(Path(path).absolute())
        self._last_hash: Optional[str] = None
        self._history: List[ReloadEvent] = []

    def poll(self) -> bool:
        """
        Check the file once.

        Returns:
            True if a changed file was applied to the store
        """
        current = file_hash(self.path)
        if current is None or current == self._last_hash:
            return False

        self._last_hash = current
        applied = self.store.load_file(self.path)
        self._history.append(ReloadEvent(path=self.path, hash=current, applied=applied))

        if applied:
            logger.info(f"Reloaded configuration from {self.path}")
        else:
            logger.warning(f"Ignored invalid configuration in {self.path}")
        return applied

    def get_history(self) -> List[ReloadEvent]:
        return list(self._history)
