from __future__ import annotations

import logging
from typing import Any, Optional

from confluent_kafka import KafkaException
from confluent_kafka.admin import AdminClient

from .base import DEFAULT_TIMEOUT, Checker, CheckResult, Stopwatch

logger = logging.getLogger(__name__)


class KafkaChecker(Checker):
    """Lists topics through the admin API; a cluster without a controller is degraded."""

    protocol = "kafka"

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, name: Optional[str] = None, config: Optional[dict[str, Any]] = None):
        super().__init__(timeout, name)
        self.config = dict(config or {})

    def admin(self, address: str, port: int) -> AdminClient:
        settings = {
            "bootstrap.servers": f"{address}:{port}",
            "client.id": "frameworks-health",
            "socket.timeout.ms": int(self.timeout * 1000),
        }
        settings.update(self.config)
        return AdminClient(settings)

    def check(self, address: str, port: int) -> CheckResult:
        watch = Stopwatch()
        try:
            metadata = self.admin(address, port).list_topics(timeout=self.timeout)
        except (KafkaException, ValueError) as exc:
            return self.unhealthy(address, port, str(exc), watch.elapsed())
        latency = watch.elapsed()
        topics = sorted(name for name in metadata.topics if not name.startswith("__"))
        controller = getattr(metadata, "controller_id", -1)
        meta = {"topics": len(topics), "brokers": len(metadata.brokers), "controller_id": controller}
        if controller is None or controller < 0:
            return self.degraded(address, port, "connected but no controller elected", latency, **meta)
        return self.healthy(address, port, f"{len(topics)} topics, controller {controller}", latency, **meta)
