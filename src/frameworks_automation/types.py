from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


PHASE_INFRASTRUCTURE = "infrastructure"
PHASE_APPLICATIONS = "applications"
PHASE_INTERFACES = "interfaces"
PHASE_ALL = "all"
PHASES = (PHASE_INFRASTRUCTURE, PHASE_APPLICATIONS, PHASE_INTERFACES, PHASE_ALL)

MANIFEST_TYPES = ("cluster", "edge")


@dataclass
class Host:
    name: str
    address: str = ""
    external_ip: Optional[str] = None
    user: str = "root"
    ssh_key: Optional[str] = None
    roles: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def ssh_target(self) -> str:
        return f"{self.user}@{self.address}" if self.user else self.address

    @property
    def is_local(self) -> bool:
        if self.labels.get("connection") == "local":
            return True
        return self.address in {"localhost", "127.0.0.1", "::1"}


@dataclass
class WireguardConfig:
    enabled: bool = False
    network: Optional[str] = None
    listen_port: int = 51820


@dataclass
class PostgresDatabase:
    name: str
    owner: Optional[str] = None


@dataclass
class PostgresConfig:
    enabled: bool = False
    mode: str = "native"
    version: Optional[str] = None
    host: Optional[str] = None
    port: int = 5432
    engine: str = "postgres"
    databases: list[PostgresDatabase] = field(default_factory=list)
    user: str = "postgres"
    password: Any = None


@dataclass
class RedisInstance:
    name: str
    host: Optional[str] = None
    port: int = 6379
    password: Any = None


@dataclass
class RedisConfig:
    enabled: bool = False
    mode: str = "docker"
    version: Optional[str] = None
    instances: list[RedisInstance] = field(default_factory=list)


@dataclass
class ZookeeperNode:
    id: int
    host: Optional[str] = None
    port: int = 2181


@dataclass
class ZookeeperConfig:
    enabled: bool = False
    mode: str = "native"
    version: Optional[str] = None
    ensemble: list[ZookeeperNode] = field(default_factory=list)


@dataclass
class KafkaBroker:
    id: int
    host: Optional[str] = None
    port: int = 9092


@dataclass
class KafkaConfig:
    enabled: bool = False
    mode: str = "native"
    version: Optional[str] = None
    brokers: list[KafkaBroker] = field(default_factory=list)
    zookeeper_connect: Optional[str] = None
    topics: list[str] = field(default_factory=list)


@dataclass
class ClickHouseConfig:
    enabled: bool = False
    mode: str = "native"
    version: Optional[str] = None
    host: Optional[str] = None
    port: int = 9000
    http_port: int = 8123
    database: str = "default"
    user: str = "default"
    password: Any = None


@dataclass
class InfrastructureConfig:
    postgres: Optional[PostgresConfig] = None
    redis: Optional[RedisConfig] = None
    zookeeper: Optional[ZookeeperConfig] = None
    kafka: Optional[KafkaConfig] = None
    clickhouse: Optional[ClickHouseConfig] = None


@dataclass
class ServiceConfig:
    enabled: bool = True
    mode: str = "docker"
    deploy: Optional[str] = None
    image: Optional[str] = None
    binary_url: Optional[str] = None
    version: Optional[str] = None
    host: Optional[str] = None
    hosts: list[str] = field(default_factory=list)
    port: Optional[int] = None
    grpc_port: Optional[int] = None
    depends_on: list[str] = field(default_factory=list)
    public: bool = False
    env_file: Optional[str] = None
    cluster: Optional[str] = None

    def all_hosts(self) -> list[str]:
        hosts: list[str] = []
        if self.host:
            hosts.append(self.host)
        for name in self.hosts:
            if name not in hosts:
                hosts.append(name)
        return hosts


@dataclass
class Manifest:
    version: str
    type: str
    profile: Optional[str] = None
    cluster_id: Optional[str] = None
    hosts: dict[str, Host] = field(default_factory=dict)
    wireguard: WireguardConfig = field(default_factory=WireguardConfig)
    infrastructure: InfrastructureConfig = field(default_factory=InfrastructureConfig)
    services: dict[str, ServiceConfig] = field(default_factory=dict)
    interfaces: dict[str, ServiceConfig] = field(default_factory=dict)
    observability: dict[str, ServiceConfig] = field(default_factory=dict)

    def get_host(self, name: Optional[str]) -> Optional[Host]:
        if not name:
            return None
        return self.hosts.get(name)

    def resolve_cluster(self, name: str) -> Optional[str]:
        for group in (self.services, self.interfaces, self.observability):
            entry = group.get(name)
            if entry is not None and entry.cluster:
                return entry.cluster
        return self.cluster_id

    def entry(self, name: str) -> Optional[ServiceConfig]:
        for group in (self.services, self.interfaces, self.observability):
            if name in group:
                return group[name]
        return None


@dataclass
class EdgeNode:
    name: str
    ssh: str
    ssh_key: Optional[str] = None
    subdomain: Optional[str] = None
    region: Optional[str] = None
    labels: dict[str, str] = field(default_factory=dict)
    apply_tune: bool = False
    register_qm: bool = False
    mode: Optional[str] = None

    def resolved_mode(self, default: Optional[str]) -> str:
        return self.mode or default or "docker"

    def domain(self, root_domain: Optional[str]) -> Optional[str]:
        if self.subdomain and root_domain:
            return f"{self.subdomain}.{root_domain}"
        return None


@dataclass
class EdgeManifest:
    version: str
    email: str
    nodes: list[EdgeNode] = field(default_factory=list)
    root_domain: Optional[str] = None
    pool_domain: Optional[str] = None
    cluster_id: Optional[str] = None
    enrollment_token: Any = None
    fetch_cert: bool = False
    mode: Optional[str] = None
    binaries: dict[str, str] = field(default_factory=dict)

    def primary_domain(self, node: EdgeNode) -> Optional[str]:
        return self.pool_domain or node.domain(self.root_domain)


@dataclass(frozen=True)
class Task:
    name: str
    type: str
    host: str
    phase: str
    cluster_id: Optional[str] = None
    depends_on: tuple[str, ...] = ()
    idempotent: bool = True


@dataclass
class ProvisionOptions:
    phase: str = PHASE_ALL
    only_hosts: list[str] = field(default_factory=list)
    only_services: list[str] = field(default_factory=list)
    dry_run: bool = False
    force: bool = False
    parallel: bool = False


@dataclass
class ExecutionPlan:
    manifest: Manifest
    batches: list[list[Task]]
    all_tasks: list[Task]
    options: ProvisionOptions = field(default_factory=ProvisionOptions)

    def task(self, name: str) -> Optional[Task]:
        for task in self.all_tasks:
            if task.name == name:
                return task
        return None


STATUS_SUCCESS = "success"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


@dataclass
class TaskResult:
    task: str
    host: str
    status: str
    message: str = ""
    started_at: Optional[datetime] = None
    duration: float = 0.0
    backend: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != STATUS_FAILED

    @property
    def failed(self) -> bool:
        return self.status == STATUS_FAILED
