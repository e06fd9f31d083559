from __future__ import annotations

import socket

from .base import Checker, CheckResult, Stopwatch


class TCPChecker(Checker):
    """Reachability only."""

    protocol = "tcp"

    def check(self, address: str, port: int) -> CheckResult:
        watch = Stopwatch()
        try:
            with socket.create_connection((address, port), timeout=self.timeout):
                pass
        except OSError as exc:
            return self.unhealthy(address, port, str(exc) or type(exc).__name__, watch.elapsed())
        return self.healthy(address, port, "connected", watch.elapsed())
