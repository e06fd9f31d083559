from __future__ import annotations

from typing import Any, Optional, Sequence


class ProvisioningError(Exception):
    """Base class for failures raised by the provisioning engine."""


class ManifestError(ValueError):
    """Raised when a manifest file cannot be read or has the wrong shape."""

    def __init__(self, message: str, line: int | None = None, column: int | None = None):
        super().__init__(message)
        self.line = line
        self.column = column


class ValidationError(ProvisioningError, ValueError):
    """Raised when a manifest fails structural, referential or port checks."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class PlanningError(ProvisioningError):
    """Raised when tasks cannot be ordered into batches."""

    def __init__(self, message: str, tasks: Sequence[str] = ()):
        super().__init__(message)
        self.tasks = list(tasks)


class ExecutionError(ProvisioningError):
    """Raised after a run in which at least one task failed.

    ``results`` holds every task result of the run, including the
    successful ones.
    """

    def __init__(self, message: str, results: Sequence[Any], failed: Sequence[str]):
        super().__init__(message)
        self.results = list(results)
        self.failed = list(failed)


class CommandError(ProvisioningError):
    """Raised by executors when a checked command exits non-zero."""

    def __init__(self, result: Any):
        command = " ".join(result.command)
        detail = (result.stderr or result.stdout or "").strip()
        message = f"command failed (rc={result.returncode}): {command}"
        if detail:
            message = f"{message}: {detail.splitlines()[0]}"
        super().__init__(message)
        self.result = result


class CatalogError(ProvisioningError):
    """Raised for unknown catalog entries or refused fragment writes."""


class EdgeError(ProvisioningError):
    """Raised when one step of provisioning an edge node fails."""

    def __init__(self, step: str, message: str):
        super().__init__(message)
        self.step = step
