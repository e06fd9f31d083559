from __future__ import annotations

import logging
from typing import Optional

import requests

from .base import DEFAULT_TIMEOUT, Checker, CheckResult, Stopwatch

logger = logging.getLogger(__name__)

MAX_BODY = 1024


class HTTPChecker(Checker):
    """GET ``path``: 2xx healthy, 5xx unhealthy, anything else degraded."""

    protocol = "http"
    scheme = "http"

    def __init__(
        self,
        path: str = "/health",
        timeout: float = DEFAULT_TIMEOUT,
        name: Optional[str] = None,
        verify: bool = True,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(timeout, name)
        self.path = path if path.startswith("/") else f"/{path}"
        self.verify = verify
        self.session = session

    def url(self, address: str, port: int) -> str:
        return f"{self.scheme}://{address}:{port}{self.path}"

    def check(self, address: str, port: int) -> CheckResult:
        url = self.url(address, port)
        getter = self.session.get if self.session is not None else requests.get
        watch = Stopwatch()
        try:
            response = getter(url, timeout=self.timeout, verify=self.verify)
        except requests.RequestException as exc:
            logger.debug("GET %s failed: %s", url, exc)
            return self.unhealthy(address, port, str(exc), watch.elapsed(), url=url)
        latency = watch.elapsed()
        body = response.text[:MAX_BODY] if response.text else ""
        code = response.status_code
        meta = {"url": url, "status_code": code, "body": body}
        if 200 <= code < 300:
            return self.healthy(address, port, f"HTTP {code}", latency, **meta)
        if code >= 500:
            return self.unhealthy(address, port, f"HTTP {code}", latency, **meta)
        return self.degraded(address, port, f"HTTP {code}", latency, **meta)


class HTTPSChecker(HTTPChecker):
    protocol = "https"
    scheme = "https"
