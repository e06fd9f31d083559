from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from .base import (
    STATUS_DEGRADED,
    STATUS_HEALTHY,
    STATUS_UNHEALTHY,
    STATUS_UNKNOWN,
    Checker,
    CheckResult,
)
from .clickhouse import ClickHouseChecker
from .http import HTTPChecker, HTTPSChecker
from .kafka import KafkaChecker
from .postgres import PostgresChecker, YugabyteChecker
from .tcp import TCPChecker

logger = logging.getLogger(__name__)

CHECKER_REGISTRY: dict[str, type[Checker]] = {
    "http": HTTPChecker,
    "https": HTTPSChecker,
    "tcp": TCPChecker,
    "postgres": PostgresChecker,
    "yugabyte": YugabyteChecker,
    "kafka": KafkaChecker,
    "clickhouse": ClickHouseChecker,
}


@dataclass
class CheckTarget:
    name: str
    protocol: str
    address: str
    port: int
    options: dict[str, Any] = field(default_factory=dict)


def new_checker(protocol: str, **options: Any) -> Checker:
    checker_cls = CHECKER_REGISTRY.get(protocol)
    if checker_cls is None:
        raise ValueError(f"unknown health check protocol '{protocol}'")
    return checker_cls(**options)


def run_check(target: CheckTarget, timeout: Optional[float] = None) -> CheckResult:
    options = dict(target.options)
    options.setdefault("name", target.name)
    if timeout is not None:
        options.setdefault("timeout", timeout)
    try:
        checker = new_checker(target.protocol, **options)
    except (TypeError, ValueError) as exc:
        return CheckResult(target.name, False, STATUS_UNKNOWN, "checker unavailable", error=str(exc))
    result = checker.check(target.address, target.port)
    if not result.ok:
        logger.warning("check=%s status=%s %s", result.name, result.status, result.error or result.message)
    return result


def check_all(
    targets: Sequence[CheckTarget],
    *,
    timeout: Optional[float] = None,
    max_workers: int = 8,
) -> list[CheckResult]:
    """Run every target; results come back in target order."""
    if not targets:
        return []
    workers = max(1, min(len(targets), max_workers))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(lambda target: run_check(target, timeout), targets))


__all__ = [
    "CHECKER_REGISTRY",
    "CheckResult",
    "CheckTarget",
    "Checker",
    "ClickHouseChecker",
    "HTTPChecker",
    "HTTPSChecker",
    "KafkaChecker",
    "PostgresChecker",
    "YugabyteChecker",
    "TCPChecker",
    "STATUS_DEGRADED",
    "STATUS_HEALTHY",
    "STATUS_UNHEALTHY",
    "STATUS_UNKNOWN",
    "check_all",
    "new_checker",
    "run_check",
]
