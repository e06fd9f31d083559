from __future__ import annotations

from ..types import Task
from .ansible import AnsibleBackend
from .base import Backend, TaskConfig, TaskContext, build_task_config
from .compose import ComposeBackend

ANSIBLE_TYPES = ("postgres", "kafka", "clickhouse")

BACKEND_REGISTRY = {
    "ansible": AnsibleBackend,
    "compose": ComposeBackend,
}


def backend_name_for(task: Task, task_config: TaskConfig) -> str:
    if task.type in ANSIBLE_TYPES or task_config.mode == "native":
        return "ansible"
    return "compose"


__all__ = [
    "Backend",
    "AnsibleBackend",
    "ComposeBackend",
    "TaskConfig",
    "TaskContext",
    "build_task_config",
    "backend_name_for",
    "BACKEND_REGISTRY",
]
