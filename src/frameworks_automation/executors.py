from __future__ import annotations

import logging
import os
import re
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence, Union

from .errors import CommandError
from .types import Host

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.2

_SAFE_ARG = re.compile(r"^[A-Za-z0-9_@%+=:,./-]+$")

_SSH_CONNECT_ERRORS = (
    "ssh: connect to host",
    "could not resolve hostname",
    "connection refused",
    "connection timed out",
    "no route to host",
    "host key verification failed",
    "permission denied (publickey",
    "connection closed by",
)


def shell_quote(arg: str) -> str:
    """Quote ``arg`` for a POSIX shell only when it contains metacharacters."""
    if arg and _SAFE_ARG.match(arg):
        return arg
    return "'" + arg.replace("'", "'\\''") + "'"


def join_command(command: Sequence[str]) -> str:
    return " ".join(shell_quote(str(part)) for part in command)


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int
    duration: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


class Executor:
    """Base executor used by backends and diagnostics.

    Exit codes: a process that ran keeps its own exit code; one that could
    not be started, was cancelled or timed out reports ``-1`` with
    ``error`` set.
    """

    def __init__(
        self,
        host: Optional[Host] = None,
        *,
        dry_run: bool = False,
        cancel: Optional[threading.Event] = None,
    ):
        self.host = host
        self.dry_run = dry_run
        self.cancel = cancel

    @property
    def name(self) -> str:
        return self.host.name if self.host else "local"

    def wrap(
        self,
        command: list[str],
        env: Optional[dict[str, str]],
        cwd: Optional[Union[str, Path]],
    ) -> list[str]:
        return command

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        """Run ``command`` and optionally skip it during dry-runs."""

        cmd_list = self.wrap([str(part) for part in command], env, cwd)
        if self.dry_run and mutable:
            return CommandResult(cmd_list, "", "skipped (dry-run)", 0)
        if self.cancel is not None and self.cancel.is_set():
            return self._finish(CommandResult(cmd_list, "", "", -1, error="cancelled"), check)

        logger.debug("host=%s cmd=%s", self.name, join_command(cmd_list))
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                cmd_list,
                stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=self._local_env(env),
                cwd=self._local_cwd(cwd),
            )
        except OSError as exc:
            result = CommandResult(
                cmd_list,
                "",
                str(exc),
                -1,
                time.monotonic() - started,
                error=f"could not start {cmd_list[0]}: {exc.strerror or exc}",
            )
            return self._finish(result, check)

        stdout, stderr, error = self._communicate(proc, input, timeout, started)
        result = CommandResult(
            cmd_list,
            stdout or "",
            stderr or "",
            -1 if error else proc.returncode,
            time.monotonic() - started,
            error,
        )
        return self._finish(self.interpret(result), check)

    def _communicate(
        self,
        proc: subprocess.Popen,
        input: Optional[str],
        timeout: Optional[float],
        started: float,
    ) -> tuple[str, str, Optional[str]]:
        deadline = started + timeout if timeout else None
        pending = input
        while True:
            try:
                stdout, stderr = proc.communicate(pending, timeout=POLL_INTERVAL)
                return stdout, stderr, None
            except subprocess.TimeoutExpired:
                pending = None
                reason = None
                if self.cancel is not None and self.cancel.is_set():
                    reason = "cancelled"
                elif deadline is not None and time.monotonic() >= deadline:
                    reason = f"timed out after {timeout:g}s"
                if reason is None:
                    continue
                logger.warning("host=%s killing pid=%s: %s", self.name, proc.pid, reason)
                proc.kill()
                stdout, stderr = proc.communicate()
                return stdout, stderr, reason

    def interpret(self, result: CommandResult) -> CommandResult:
        return result

    @staticmethod
    def _finish(result: CommandResult, check: bool) -> CommandResult:
        if check and result.returncode != 0:
            raise CommandError(result)
        return result

    def _local_env(self, env: Optional[dict[str, str]]) -> Optional[dict[str, str]]:
        if not env:
            return None
        exec_env = os.environ.copy()
        exec_env.update(env)
        return exec_env

    def _local_cwd(self, cwd: Optional[Union[str, Path]]) -> Optional[str]:
        return str(cwd) if cwd is not None else None

    # File primitives -----------------------------------------------------
    def read_file(self, path: Union[str, Path]) -> Optional[str]:
        result = self.run(["cat", str(path)], check=False, mutable=False)
        return result.stdout if result.ok else None

    def write_file(self, path: Union[str, Path], *, content: str, mode: Optional[int] = None) -> CommandResult:
        path = str(path)
        parent = os.path.dirname(path) or "."
        script = f"mkdir -p {shell_quote(parent)} && cat > {shell_quote(path)}"
        if mode is not None:
            script += f" && chmod {mode:04o} {shell_quote(path)}"
        return self.run(["sh", "-c", script], check=False, input=content)


class LocalExecutor(Executor):
    """Executor that acts directly on the local host."""

    def read_file(self, path: Union[str, Path]) -> Optional[str]:
        try:
            return Path(path).read_text()
        except FileNotFoundError:
            return None

    def write_file(self, path: Union[str, Path], *, content: str, mode: Optional[int] = None) -> CommandResult:
        path = Path(path)
        command = ["write", str(path)]
        if self.dry_run:
            return CommandResult(command, "", "skipped (dry-run)", 0)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
            if mode is not None:
                os.chmod(path, mode)
        except OSError as exc:
            return CommandResult(command, "", str(exc), -1, error=f"could not write {path}: {exc.strerror or exc}")
        return CommandResult(command, "", "", 0)


class SSHExecutor(Executor):
    """Runs commands on a remote host through the ``ssh`` client."""

    def __init__(
        self,
        host: Optional[Host] = None,
        *,
        target: Optional[str] = None,
        key: Optional[Union[str, Path]] = None,
        connect_timeout: Optional[int] = None,
        dry_run: bool = False,
        cancel: Optional[threading.Event] = None,
    ):
        super().__init__(host, dry_run=dry_run, cancel=cancel)
        if target is None and host is None:
            raise ValueError("SSHExecutor needs a host or a target")
        self.target = target or host.ssh_target
        self.key = str(key) if key else None
        self.connect_timeout = connect_timeout

    @property
    def name(self) -> str:
        return self.host.name if self.host else self.target

    def ssh_prefix(self) -> list[str]:
        prefix = ["ssh", "-o", "BatchMode=yes"]
        if self.connect_timeout:
            prefix.extend(["-o", f"ConnectTimeout={self.connect_timeout}"])
        if self.key:
            prefix.extend(["-i", self.key])
        return prefix

    def wrap(
        self,
        command: list[str],
        env: Optional[dict[str, str]],
        cwd: Optional[Union[str, Path]],
    ) -> list[str]:
        remote = join_command(command)
        if env:
            assignments = " ".join(shell_quote(f"{k}={v}") for k, v in sorted(env.items()))
            remote = f"env {assignments} {remote}"
        if cwd is not None:
            remote = f"cd {shell_quote(str(cwd))} && {remote}"
        return [*self.ssh_prefix(), self.target, "sh", "-lc", shell_quote(remote)]

    def interpret(self, result: CommandResult) -> CommandResult:
        if result.returncode != 255:
            return result
        lowered = result.stderr.lower()
        if any(marker in lowered for marker in _SSH_CONNECT_ERRORS):
            first = result.stderr.strip().splitlines()[0] if result.stderr.strip() else "connection failed"
            result.returncode = -1
            result.error = f"ssh {self.target}: {first}"
        return result

    def _local_env(self, env: Optional[dict[str, str]]) -> Optional[dict[str, str]]:
        return None

    def _local_cwd(self, cwd: Optional[Union[str, Path]]) -> Optional[str]:
        return None


def executor_for(
    host: Host,
    config: Any = None,
    *,
    dry_run: bool = False,
    cancel: Optional[threading.Event] = None,
) -> Executor:
    if host.is_local:
        return LocalExecutor(host, dry_run=dry_run, cancel=cancel)
    key = host.ssh_key or (getattr(config, "ssh_key", None) if config is not None else None)
    timeout = getattr(config, "ssh_timeout", None) if config is not None else None
    return SSHExecutor(host, key=key, connect_timeout=timeout, dry_run=dry_run, cancel=cancel)
