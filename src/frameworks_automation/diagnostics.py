from __future__ import annotations

import json
import logging
import re
import urllib.parse
from typing import Any, Optional

from .executors import Executor
from .health.base import STATUS_HEALTHY, STATUS_UNHEALTHY, STATUS_UNKNOWN, CheckResult, Stopwatch

logger = logging.getLogger(__name__)

MIN_FREE_BYTES = 100 * 1024 * 1024
MIN_FREE_PERCENT = 5.0
PREFLIGHT_PORTS = (80, 443)
PREFLIGHT_PATHS = ("/", "/var/lib")
MIST_API_URL = "http://localhost:4242"
ACTIVE_STREAM_FIELDS = (
    "clients",
    "viewers",
    "inputs",
    "outputs",
    "tracks",
    "upbytes",
    "downbytes",
    "packsent",
    "packloss",
    "packretrans",
    "firstms",
    "lastms",
    "health",
    "pid",
    "tags",
    "status",
)


def _format_bytes(value: int) -> str:
    size = float(value)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if size < 1024 or unit == "TiB":
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{value} B"


def disk_space_from_df(
    output: str,
    path: str,
    min_free_bytes: int = MIN_FREE_BYTES,
    min_free_percent: float = MIN_FREE_PERCENT,
) -> CheckResult:
    """Evaluate ``df -Pk <path>`` output against free-space thresholds.

    The last data line is used; its second and fourth columns are the
    total and available sizes in KiB.
    """
    name = f"disk:{path}"
    lines = [line for line in output.strip().splitlines() if line.strip()]
    if len(lines) < 2:
        return CheckResult(name, False, STATUS_UNKNOWN, "could not read disk usage", error="unexpected df output")
    fields = lines[-1].split()
    try:
        total_kb = int(fields[1])
        available_kb = int(fields[3])
    except (IndexError, ValueError):
        return CheckResult(
            name,
            False,
            STATUS_UNKNOWN,
            "could not read disk usage",
            error=f"unparseable df line: {lines[-1].strip()}",
        )
    if total_kb <= 0:
        return CheckResult(name, False, STATUS_UNKNOWN, "could not read disk usage", error="df reported zero size")

    available = available_kb * 1024
    percent = available_kb / total_kb * 100
    meta = {"total_bytes": total_kb * 1024, "available_bytes": available, "free_percent": round(percent, 2)}
    detail = f"{_format_bytes(available)} free ({percent:.1f}%)"
    if available >= min_free_bytes and percent >= min_free_percent:
        return CheckResult(name, True, STATUS_HEALTHY, detail, metadata=meta)
    return CheckResult(
        name,
        False,
        STATUS_UNHEALTHY,
        detail,
        error=f"need at least {_format_bytes(min_free_bytes)} and {min_free_percent:g}% free",
        metadata=meta,
    )


def _command_check(executor: Executor, name: str, command: list[str], missing: str) -> CheckResult:
    watch = Stopwatch()
    result = executor.run(command, check=False, mutable=False)
    if result.ok:
        first = result.stdout.strip().splitlines()
        return CheckResult(name, True, STATUS_HEALTHY, first[0] if first else "available", latency=watch.elapsed())
    return CheckResult(
        name,
        False,
        STATUS_UNHEALTHY,
        missing,
        error=result.error or result.stderr.strip() or f"exit {result.returncode}",
        latency=watch.elapsed(),
    )


def _listening_ports(output: str) -> set[int]:
    ports: set[int] = set()
    for line in output.splitlines()[1:]:
        fields = line.split()
        if len(fields) < 4:
            continue
        match = re.search(r":(\d+)$", fields[3])
        if match:
            ports.add(int(match.group(1)))
    return ports


def remote_preflight(
    executor: Executor,
    mode: str = "docker",
    *,
    min_free_bytes: int = MIN_FREE_BYTES,
    min_free_percent: float = MIN_FREE_PERCENT,
) -> list[CheckResult]:
    """Readiness checks for a host about to receive services."""
    results: list[CheckResult] = []
    if mode == "native":
        results.append(_command_check(executor, "systemd", ["systemctl", "--version"], "systemd not available"))
    else:
        results.append(_command_check(executor, "docker", ["docker", "--version"], "docker not installed"))
        results.append(
            _command_check(executor, "docker-compose", ["docker", "compose", "version"], "docker compose not available")
        )

    listing = executor.run(["ss", "-ltn"], check=False, mutable=False)
    if listing.ok:
        in_use = _listening_ports(listing.stdout)
        for port in PREFLIGHT_PORTS:
            if port in in_use:
                results.append(CheckResult(f"port:{port}", False, STATUS_UNHEALTHY, f"port {port} already in use", error="in use"))
            else:
                results.append(CheckResult(f"port:{port}", True, STATUS_HEALTHY, f"port {port} free"))
    else:
        for port in PREFLIGHT_PORTS:
            results.append(
                CheckResult(
                    f"port:{port}",
                    False,
                    STATUS_UNKNOWN,
                    "could not list listening sockets",
                    error=listing.error or listing.stderr.strip() or f"exit {listing.returncode}",
                )
            )

    for path in PREFLIGHT_PATHS:
        df = executor.run(["df", "-Pk", path], check=False, mutable=False)
        if not df.ok:
            results.append(
                CheckResult(
                    f"disk:{path}",
                    False,
                    STATUS_UNKNOWN,
                    "df failed",
                    error=df.error or df.stderr.strip() or f"exit {df.returncode}",
                )
            )
            continue
        results.append(disk_space_from_df(df.stdout, path, min_free_bytes, min_free_percent))

    for result in results:
        if not result.ok:
            logger.warning("host=%s preflight %s: %s", executor.name, result.name, result.error or result.message)
    return results


def active_streams(
    executor: Executor,
    api_url: str = MIST_API_URL,
    container: Optional[str] = None,
    timeout: float = 10.0,
) -> dict[str, Any]:
    """Ask MistServer for its active streams through ``curl`` on the media host."""
    command = {"active_streams": {"longform": True, "fields": list(ACTIVE_STREAM_FIELDS)}}
    query = urllib.parse.quote(json.dumps(command, separators=(",", ":")))
    url = f"{api_url.rstrip('/')}/api2?command={query}"
    argv = ["curl", "-fsS", "--max-time", f"{timeout:g}", url]
    if container:
        argv = ["docker", "exec", container, *argv]
    result = executor.run(argv, mutable=False, timeout=timeout + 5)
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise ValueError(f"active_streams: invalid JSON from {api_url}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"active_streams: unexpected response from {api_url}")
    streams = data.get("active_streams")
    if streams is None:
        logger.warning("host=%s no active_streams in MistServer response", executor.name)
        return {}
    return streams


def run_analyzer(
    executor: Executor,
    protocol: str,
    url: str,
    container: Optional[str] = None,
    timeout: float = 30.0,
) -> CheckResult:
    """Validate a stream with ``MistAnalyser<Protocol> -V``."""
    binary = f"MistAnalyser{protocol.upper()}"
    argv = [binary, "-V", url]
    if container:
        argv = ["docker", "exec", container, *argv]
    name = f"analyser:{protocol.lower()}"
    watch = Stopwatch()
    result = executor.run(argv, check=False, mutable=False, timeout=timeout)
    latency = watch.elapsed()
    tail = result.output.strip().splitlines()
    detail = tail[-1] if tail else ""
    meta = {"url": url, "binary": binary, "returncode": result.returncode}
    if result.ok:
        return CheckResult(name, True, STATUS_HEALTHY, detail or "stream valid", latency=latency, metadata=meta)
    error = result.error or detail or f"exit {result.returncode}"
    return CheckResult(name, False, STATUS_UNHEALTHY, "stream validation failed", error=error, latency=latency, metadata=meta)
