from __future__ import annotations

import dataclasses
import logging
from typing import Any

import yaml

from ..types import STATUS_FAILED, STATUS_SUCCESS, TaskResult
from .base import Backend, TaskConfig, TaskContext

logger = logging.getLogger(__name__)

COMPOSE_ROOT = "/opt/frameworks"
REDIS_CONTAINER_PORT = 6379
ZOOKEEPER_CONTAINER_PORT = 2181


def compose_dir(config: TaskConfig) -> str:
    return f"{COMPOSE_ROOT}/{config.name.split('@', 1)[0]}"


def render_compose(config: TaskConfig) -> dict[str, Any]:
    """Compose document with a single service block for ``config``."""
    service_name = config.name.split("@", 1)[0]
    block: dict[str, Any] = {
        "image": config.image,
        "container_name": f"frameworks-{service_name}",
        "restart": "always",
    }
    meta = config.metadata
    if config.type == "redis":
        command = ["redis-server", "--appendonly", "yes"]
        if meta.get("password"):
            command.extend(["--requirepass", str(meta["password"])])
        block["command"] = command
        block["ports"] = [f"{config.port}:{REDIS_CONTAINER_PORT}"]
        block["volumes"] = [f"{service_name}-data:/data"]
        return {"services": {service_name: block}, "volumes": {f"{service_name}-data": {}}}
    if config.type == "zookeeper":
        block["environment"] = {
            "ZOO_MY_ID": str(meta.get("server_id")),
            "ZOO_SERVERS": " ".join(f"{line};{ZOOKEEPER_CONTAINER_PORT}" for line in meta.get("servers", [])),
        }
        block["ports"] = [f"{config.port}:{ZOOKEEPER_CONTAINER_PORT}", "2888:2888", "3888:3888"]
        return {"services": {service_name: block}}

    if config.env_file:
        block["env_file"] = [config.env_file]
    ports = [p for p in (config.port, config.grpc_port) if p]
    if ports:
        block["ports"] = [f"{p}:{p}" for p in dict.fromkeys(ports)]
    return {"services": {service_name: block}}


class ComposeBackend(Backend):
    """Writes a compose file on the target host and brings it up over the task's executor."""

    name = "compose"

    def apply(self, context: TaskContext) -> TaskResult:
        started, started_at = self.begin()
        config = context.config
        resolved = dataclasses.replace(config, metadata=self.secrets.resolve(config.metadata))
        if not resolved.image:
            return self.result(context, STATUS_FAILED, f"no image configured for {config.name}", started, started_at)

        directory = compose_dir(resolved)
        path = f"{directory}/docker-compose.yml"
        content = yaml.safe_dump(render_compose(resolved), sort_keys=False)
        executor = context.executor

        written = executor.write_file(path, content=content, mode=0o640)
        if not written.ok:
            detail = written.error or written.stderr.strip() or f"exit {written.returncode}"
            return self.result(context, STATUS_FAILED, f"could not write {path}: {detail}", started, started_at)

        run = executor.run(
            ["docker", "compose", "-f", path, "up", "-d"],
            check=False,
            timeout=self.config.command_timeout,
        )
        if run.returncode == -1:
            message = f"could not run docker compose: {run.error}"
            status = STATUS_FAILED
        elif run.returncode != 0:
            first = (run.stderr or run.stdout).strip().splitlines()
            message = f"docker compose exited {run.returncode}" + (f": {first[-1]}" if first else "")
            status = STATUS_FAILED
        else:
            message = f"{config.image} up ({path})"
            status = STATUS_SUCCESS
        logger.debug("task=%s host=%s compose rc=%s", context.task.name, context.host.name, run.returncode)
        return self.result(context, status, message, started, started_at)
