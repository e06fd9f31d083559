from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

import psycopg2

from .base import DEFAULT_TIMEOUT, Checker, CheckResult, Stopwatch

logger = logging.getLogger(__name__)


def detect_flavor(version: str) -> str:
    return "yugabyte" if "yugabyte" in version.lower() else "postgres"


class PostgresChecker(Checker):
    """Connect, ``SELECT 1``, then report server flavor and active connections."""

    protocol = "postgres"

    def __init__(
        self,
        user: str = "postgres",
        password: Optional[str] = None,
        database: str = "postgres",
        timeout: float = DEFAULT_TIMEOUT,
        name: Optional[str] = None,
        sslmode: str = "prefer",
    ):
        super().__init__(timeout, name)
        self.user = user
        self.password = password
        self.database = database
        self.sslmode = sslmode

    def connect(self, address: str, port: int, database: Optional[str] = None) -> Any:
        params: dict[str, Any] = {
            "host": address,
            "port": port,
            "user": self.user,
            "dbname": database or self.database,
            "connect_timeout": max(1, int(self.timeout)),
            "sslmode": self.sslmode,
        }
        if self.password:
            params["password"] = self.password
        return psycopg2.connect(**params)

    def check(self, address: str, port: int) -> CheckResult:
        watch = Stopwatch()
        try:
            conn = self.connect(address, port)
        except psycopg2.Error as exc:
            return self.unhealthy(address, port, _first_line(exc), watch.elapsed())
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
                latency = watch.elapsed()
                meta: dict[str, Any] = {}
                try:
                    cur.execute("SELECT version()")
                    version = cur.fetchone()[0]
                    meta["version"] = version
                    meta["flavor"] = detect_flavor(version)
                    cur.execute("SELECT count(*) FROM pg_stat_activity WHERE state = 'active'")
                    meta["active_connections"] = int(cur.fetchone()[0])
                except psycopg2.Error as exc:
                    logger.debug("postgres %s:%s metadata probe failed: %s", address, port, exc)
        except psycopg2.Error as exc:
            return self.unhealthy(address, port, _first_line(exc), watch.elapsed())
        finally:
            conn.close()
        flavor = meta.get("flavor", "postgres")
        return self.healthy(address, port, f"{flavor} accepting queries", latency, **meta)

    def check_databases(self, address: str, port: int, names: Sequence[str]) -> CheckResult:
        """Confirm each database exists and allows connections."""
        watch = Stopwatch()
        wanted = sorted(set(names))
        try:
            conn = self.connect(address, port)
        except psycopg2.Error as exc:
            return self.unhealthy(address, port, _first_line(exc), watch.elapsed())
        try:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT datname, datallowconn FROM pg_database WHERE datname = ANY(%s)",
                    (wanted,),
                )
                rows = {row[0]: bool(row[1]) for row in cur.fetchall()}
        except psycopg2.Error as exc:
            return self.unhealthy(address, port, _first_line(exc), watch.elapsed())
        finally:
            conn.close()
        latency = watch.elapsed()
        missing = [name for name in wanted if name not in rows]
        disallowed = [name for name in wanted if rows.get(name) is False]
        meta = {"databases": wanted, "missing": missing, "disallowed": disallowed}
        problems = []
        if missing:
            problems.append(f"missing: {', '.join(missing)}")
        if disallowed:
            problems.append(f"connections disallowed: {', '.join(disallowed)}")
        if problems:
            return self.unhealthy(address, port, "; ".join(problems), latency, **meta)
        return self.healthy(address, port, f"{len(wanted)} databases available", latency, **meta)


class YugabyteChecker(PostgresChecker):
    protocol = "yugabyte"

    def __init__(self, user: str = "yugabyte", database: str = "yugabyte", **kwargs: Any):
        super().__init__(user=user, database=database, **kwargs)


def _first_line(exc: Exception) -> str:
    text = str(exc).strip()
    return text.splitlines()[0] if text else type(exc).__name__
