from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from ..config import ProvisionerConfig
from ..executors import Executor
from ..secrets import SecretResolver
from ..servicedefs import ServiceRegistry
from ..types import (
    STATUS_FAILED,
    STATUS_SUCCESS,
    Host,
    Manifest,
    ProvisionOptions,
    Task,
    TaskResult,
)
from ..validation import resolve_zookeeper_connect

INFRA_TYPES = ("postgres", "redis", "zookeeper", "kafka", "clickhouse")

ZOOKEEPER_PEER_PORT = 2888
ZOOKEEPER_ELECTION_PORT = 3888


@dataclass
class TaskConfig:
    """Everything a backend needs to provision one task."""

    name: str
    type: str
    mode: str = "docker"
    version: str = "stable"
    port: Optional[int] = None
    grpc_port: Optional[int] = None
    image: Optional[str] = None
    binary_url: Optional[str] = None
    env_file: Optional[str] = None
    deploy_name: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def fingerprint_payload(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "mode": self.mode,
            "version": self.version,
            "port": self.port,
            "grpc_port": self.grpc_port,
            "image": self.image,
            "binary_url": self.binary_url,
            "env_file": self.env_file,
            "metadata": self.metadata,
        }


@dataclass
class TaskContext:
    task: Task
    host: Host
    manifest: Manifest
    executor: Executor
    config: TaskConfig
    options: ProvisionOptions = field(default_factory=ProvisionOptions)


def _entry_name(task: Task) -> str:
    return task.name.split("@", 1)[0]


def build_task_config(task: Task, manifest: Manifest, registry: ServiceRegistry) -> TaskConfig:
    """Derive mode, version, ports, image and backend metadata for ``task``."""
    name = _entry_name(task)
    config = TaskConfig(
        name=task.name,
        type=task.type,
        port=registry.default_port(name) or registry.default_port(task.type),
        grpc_port=registry.default_grpc_port(name) or registry.default_grpc_port(task.type),
        deploy_name=task.type,
    )
    infra = manifest.infrastructure
    host = manifest.get_host(task.host)

    if task.type in INFRA_TYPES:
        config.version = "latest"
        config.image = None
    if task.type == "postgres" and infra.postgres:
        pg = infra.postgres
        config.mode = "native"
        config.version = pg.version or "latest"
        config.port = pg.port
        config.metadata.update(
            engine=pg.engine,
            user=pg.user,
            password=pg.password,
            databases=[{"name": db.name, "owner": db.owner or pg.user} for db in pg.databases],
        )
    elif task.type == "redis" and infra.redis:
        instance_name = task.name[len("redis-") :]
        instance = next((i for i in infra.redis.instances if i.name == instance_name), None)
        config.mode = infra.redis.mode
        config.version = infra.redis.version or "latest"
        config.image = f"redis:{infra.redis.version or '7-alpine'}"
        if instance is not None:
            config.port = instance.port
            config.metadata.update(instance=instance.name, password=instance.password)
    elif task.type == "zookeeper" and infra.zookeeper:
        zk = infra.zookeeper
        node_id = int(task.name.rsplit("-", 1)[1])
        node = next((n for n in zk.ensemble if n.id == node_id), None)
        config.mode = zk.mode
        config.version = zk.version or "latest"
        config.image = f"zookeeper:{zk.version or '3.8'}"
        config.port = node.port if node else 2181
        servers = []
        for member in sorted(zk.ensemble, key=lambda n: n.id):
            member_host = manifest.get_host(member.host)
            address = member_host.address if member_host else member.host
            servers.append(f"server.{member.id}={address}:{ZOOKEEPER_PEER_PORT}:{ZOOKEEPER_ELECTION_PORT}")
        config.metadata.update(server_id=node_id, servers=servers)
    elif task.type == "kafka" and infra.kafka:
        kafka = infra.kafka
        broker_id = int(task.name.rsplit("-", 1)[1])
        broker = next((b for b in kafka.brokers if b.id == broker_id), None)
        config.mode = "native"
        config.version = kafka.version or "latest"
        config.port = broker.port if broker else 9092
        config.metadata.update(
            broker_id=broker_id,
            zookeeper_connect=resolve_zookeeper_connect(manifest),
            advertised_host=host.address if host else task.host,
            topics=list(kafka.topics),
        )
    elif task.type == "clickhouse" and infra.clickhouse:
        ch = infra.clickhouse
        config.mode = "native"
        config.version = ch.version or "latest"
        config.port = ch.port
        config.metadata.update(http_port=ch.http_port, database=ch.database, user=ch.user, password=ch.password)
    else:
        entry = manifest.entry(name)
        if entry is not None:
            config.mode = entry.mode or config.mode
            config.version = entry.version or config.version
            config.image = entry.image or f"frameworks/{task.type}:{config.version}"
            config.binary_url = entry.binary_url
            config.env_file = entry.env_file
            config.port = entry.port or config.port
            config.grpc_port = entry.grpc_port or config.grpc_port
            config.metadata.update(public=entry.public, cluster_id=task.cluster_id)
        if task.type == "privateer" or name == "privateer":
            config.mode = "native"
    return config


class Backend(ABC):
    """Shared surface for task execution backends."""

    name = "base"

    def __init__(self, config: Optional[ProvisionerConfig] = None, secrets: Optional[SecretResolver] = None):
        self.config = config or ProvisionerConfig()
        self.secrets = secrets or SecretResolver(self.config.aws_region, self.config.aws_profile)

    @abstractmethod
    def apply(self, context: TaskContext) -> TaskResult:
        """Provision ``context.task`` on ``context.host``."""

    def result(self, context: TaskContext, status: str, message: str, started: float, started_at: datetime) -> TaskResult:
        return TaskResult(
            task=context.task.name,
            host=context.task.host,
            status=status,
            message=message,
            started_at=started_at,
            duration=time.monotonic() - started,
            backend=self.name,
        )

    def begin(self) -> tuple[float, datetime]:
        return time.monotonic(), datetime.now(timezone.utc)

    @staticmethod
    def succeeded(ok: bool) -> str:
        return STATUS_SUCCESS if ok else STATUS_FAILED
