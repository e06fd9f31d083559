from __future__ import annotations

import logging
from typing import Any, Optional

import clickhouse_connect

from .base import DEFAULT_TIMEOUT, Checker, CheckResult, Stopwatch

logger = logging.getLogger(__name__)


class ClickHouseChecker(Checker):
    """Ping and ``SELECT 1`` over the HTTP interface, then best-effort server facts."""

    protocol = "clickhouse"

    def __init__(
        self,
        user: str = "default",
        password: str = "",
        database: str = "default",
        timeout: float = DEFAULT_TIMEOUT,
        name: Optional[str] = None,
    ):
        super().__init__(timeout, name)
        self.user = user
        self.password = password or ""
        self.database = database

    def client(self, address: str, port: int) -> Any:
        return clickhouse_connect.get_client(
            host=address,
            port=port,
            username=self.user,
            password=self.password,
            database=self.database,
            connect_timeout=self.timeout,
            send_receive_timeout=self.timeout,
        )

    def check(self, address: str, port: int) -> CheckResult:
        watch = Stopwatch()
        try:
            client = self.client(address, port)
        except Exception as exc:  # noqa: BLE001
            return self.unhealthy(address, port, _first_line(exc), watch.elapsed())
        try:
            return self._check_client(client, address, port, watch)
        finally:
            try:
                client.close()
            except Exception:  # noqa: BLE001
                logger.debug("clickhouse client close failed", exc_info=True)

    def _check_client(self, client: Any, address: str, port: int, watch: Stopwatch) -> CheckResult:
        try:
            if not client.ping():
                return self.unhealthy(address, port, "ping failed", watch.elapsed())
            client.command("SELECT 1")
        except Exception as exc:  # noqa: BLE001
            return self.unhealthy(address, port, _first_line(exc), watch.elapsed())
        latency = watch.elapsed()
        meta: dict[str, Any] = {"database": self.database}
        probes = {
            "version": ("SELECT version()", None),
            "uptime_seconds": ("SELECT uptime()", None),
            "tables": (
                "SELECT count() FROM system.tables WHERE database = {db:String}",
                {"db": self.database},
            ),
        }
        for key, (query, parameters) in probes.items():
            try:
                meta[key] = client.command(query, parameters=parameters)
            except Exception as exc:  # noqa: BLE001
                logger.debug("clickhouse %s:%s %s probe failed: %s", address, port, key, exc)
        return self.healthy(address, port, f"clickhouse {meta.get('version', '')}".strip(), latency, **meta)


def _first_line(exc: Exception) -> str:
    text = str(exc).strip()
    return text.splitlines()[0] if text else type(exc).__name__
