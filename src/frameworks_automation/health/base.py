from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

STATUS_HEALTHY = "healthy"
STATUS_DEGRADED = "degraded"
STATUS_UNHEALTHY = "unhealthy"
STATUS_UNKNOWN = "unknown"

DEFAULT_TIMEOUT = 5.0


@dataclass
class CheckResult:
    name: str
    ok: bool
    status: str
    message: str = ""
    error: Optional[str] = None
    latency: Optional[float] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "ok": self.ok, "status": self.status}
        if self.message:
            data["message"] = self.message
        if self.error:
            data["error"] = self.error
        if self.latency is not None:
            data["latency"] = round(self.latency, 6)
        data["metadata"] = {k: _plain(v) for k, v in self.metadata.items()}
        data["checked_at"] = self.checked_at.isoformat()
        return data


def _plain(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_plain(v) for v in value]
    return str(value)


class Checker(ABC):
    """One protocol probe. ``check`` never raises; failures become results."""

    protocol = "base"

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, name: Optional[str] = None):
        self.timeout = timeout
        self.name = name

    @abstractmethod
    def check(self, address: str, port: int) -> CheckResult:
        """Probe ``address:port`` and report its health."""

    def label(self, address: str, port: int) -> str:
        return self.name or f"{self.protocol}://{address}:{port}"

    def healthy(self, address: str, port: int, message: str, latency: float, **metadata: Any) -> CheckResult:
        return CheckResult(self.label(address, port), True, STATUS_HEALTHY, message, latency=latency, metadata=metadata)

    def degraded(self, address: str, port: int, message: str, latency: float, **metadata: Any) -> CheckResult:
        return CheckResult(self.label(address, port), False, STATUS_DEGRADED, message, latency=latency, metadata=metadata)

    def unhealthy(
        self,
        address: str,
        port: int,
        error: str,
        latency: float,
        message: str = "",
        **metadata: Any,
    ) -> CheckResult:
        return CheckResult(
            self.label(address, port),
            False,
            STATUS_UNHEALTHY,
            message or error,
            error=error,
            latency=latency,
            metadata=metadata,
        )


class Stopwatch:
    def __init__(self):
        self.started = time.monotonic()

    def elapsed(self) -> float:
        return time.monotonic() - self.started
