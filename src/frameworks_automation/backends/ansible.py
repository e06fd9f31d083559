from __future__ import annotations

import dataclasses
import logging
from typing import Callable, Optional

from ..ansible import AnsibleRunner, Inventory
from ..config import ProvisionerConfig
from ..executors import LocalExecutor
from ..playbooks import playbook_for
from ..secrets import SecretResolver
from ..types import STATUS_FAILED, TaskResult
from .base import Backend, TaskContext

logger = logging.getLogger(__name__)


class AnsibleBackend(Backend):
    """Provisions a task by generating a playbook and running it from the control node."""

    name = "ansible"

    def __init__(
        self,
        config: Optional[ProvisionerConfig] = None,
        secrets: Optional[SecretResolver] = None,
        runner_factory: Optional[Callable[[TaskContext], AnsibleRunner]] = None,
    ):
        super().__init__(config, secrets)
        self.runner_factory = runner_factory or self._default_runner

    def _default_runner(self, context: TaskContext) -> AnsibleRunner:
        executor = LocalExecutor(dry_run=context.options.dry_run, cancel=context.executor.cancel)
        return AnsibleRunner(
            self.config.ansible_playbook,
            timeout=self.config.ansible_timeout,
            become=self.config.become,
            executor=executor,
        )

    def apply(self, context: TaskContext) -> TaskResult:
        started, started_at = self.begin()
        task_config = dataclasses.replace(
            context.config, metadata=self.secrets.resolve(context.config.metadata)
        )
        try:
            playbook = playbook_for(task_config, context.host.name)
        except ValueError as exc:
            return self.result(context, STATUS_FAILED, str(exc), started, started_at)
        inventory = Inventory.from_manifest(
            context.manifest,
            only=[context.host.name],
            ssh_key=self.config.ssh_key,
            ssh_timeout=self.config.ssh_timeout,
        )
        runner = self.runner_factory(context)
        run = runner.run(playbook, inventory, limit=context.host.name)
        logger.debug("task=%s host=%s recap %s", context.task.name, context.host.name, run.summary())
        return self.result(context, self.succeeded(run.success), run.summary(), started, started_at)
