from __future__ import annotations

import hashlib
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _normalize_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalize_value(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    return value


def fingerprint(payload: dict[str, Any]) -> str:
    """Stable digest of a task's effective configuration."""
    encoded = json.dumps(_normalize_value(payload), sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()


class StateStore:
    """Records which tasks were applied successfully, keyed by host then task name."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.previous = self._load()
        self.current: dict[str, dict[str, dict[str, Any]]] = {
            host: dict(entries) for host, entries in self.previous.items()
        }

    def is_satisfied(self, host: str, task: str, digest: str) -> bool:
        entry = self.previous.get(host, {}).get(task)
        return bool(entry) and entry.get("fingerprint") == digest

    def record(self, host: str, task: str, task_type: str, digest: str) -> None:
        self.current.setdefault(host, {})[task] = {
            "type": task_type,
            "fingerprint": digest,
            "applied_at": datetime.now(timezone.utc).isoformat(),
        }

    def forget(self, host: str, task: str) -> None:
        entries = self.current.get(host)
        if entries and task in entries:
            del entries[task]

    def write(self) -> None:
        data = self.current
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2, sort_keys=True))
        try:
            os.chmod(self.path, 0o600)
        except OSError:
            logger.debug("Unable to chmod state file %s", self.path, exc_info=True)
        self.previous = {host: dict(entries) for host, entries in data.items()}

    def _load(self) -> dict[str, dict[str, dict[str, Any]]]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError:
            logger.warning("State file %s is corrupt; starting fresh", self.path)
            return {}
        if not isinstance(data, dict):
            logger.warning("State file %s has unexpected shape; starting fresh", self.path)
            return {}
        return data
