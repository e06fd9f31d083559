from __future__ import annotations

import logging
from typing import Iterable, Optional

from .errors import ValidationError
from .servicedefs import ServiceRegistry
from .types import MANIFEST_TYPES, EdgeManifest, Manifest, ServiceConfig

logger = logging.getLogger(__name__)

SERVICE_MODES = ("docker", "native")
NATIVE_ONLY = ("native",)
POSTGRES_ENGINES = ("postgres", "yugabyte")


class _PortClaims:
    """(host, port) -> owner label; a second owner for the same pair is a collision."""

    def __init__(self):
        self._owners: dict[tuple[str, int], str] = {}

    def claim(self, host: str, port: Optional[int], owner: str) -> None:
        if not port:
            return
        key = (host, int(port))
        existing = self._owners.get(key)
        if existing is None:
            self._owners[key] = owner
            return
        if existing == owner:
            return
        raise ValidationError(
            f"port {port} on host {host} is claimed by both {existing} and {owner}",
            field=f"hosts.{host}",
        )


def validate(manifest: Manifest, registry: Optional[ServiceRegistry] = None) -> None:
    """Raise ``ValidationError`` for the first problem found; return ``None`` otherwise.

    Checks run in a fixed order: required fields, hosts, host references
    and modes, Zookeeper/Kafka rules, then port collisions. The manifest is
    never modified.
    """
    registry = registry or ServiceRegistry.default()
    _check_required(manifest)
    _check_hosts(manifest)
    _check_references(manifest)
    _check_protocol_rules(manifest)
    _check_ports(manifest, registry)
    logger.debug("manifest validated: %d hosts", len(manifest.hosts))


def resolve_zookeeper_connect(manifest: Manifest) -> Optional[str]:
    """Return Kafka's zookeeper connect string, explicit or derived from the ensemble."""
    kafka = manifest.infrastructure.kafka
    if kafka is not None and kafka.zookeeper_connect and kafka.zookeeper_connect.strip():
        return kafka.zookeeper_connect.strip()
    zookeeper = manifest.infrastructure.zookeeper
    if zookeeper is None or not zookeeper.enabled or not zookeeper.ensemble:
        return None
    parts = []
    for node in sorted(zookeeper.ensemble, key=lambda n: n.id):
        host = manifest.get_host(node.host)
        if host is None or not host.address:
            return None
        parts.append(f"{host.address}:{node.port}")
    return ",".join(parts)


def _check_required(manifest: Manifest) -> None:
    if not manifest.version:
        raise ValidationError("version is required", field="version")
    if not manifest.type:
        raise ValidationError("type is required", field="type")
    if manifest.type not in MANIFEST_TYPES:
        raise ValidationError(
            f"type must be one of {', '.join(MANIFEST_TYPES)}, got {manifest.type!r}",
            field="type",
        )


def _check_hosts(manifest: Manifest) -> None:
    if manifest.type == "cluster" and not manifest.hosts:
        raise ValidationError("cluster manifest requires at least one host", field="hosts")
    for name in sorted(manifest.hosts):
        if not manifest.hosts[name].address:
            raise ValidationError(f"host {name} has no address", field=f"hosts.{name}.address")


def _require_host(manifest: Manifest, host: Optional[str], where: str) -> None:
    if not host:
        raise ValidationError(f"{where}: host is required", field=f"{where}.host")
    if host not in manifest.hosts:
        raise ValidationError(f"{where}: unknown host {host!r}", field=f"{where}.host")


def _require_mode(mode: str, allowed: Iterable[str], where: str) -> None:
    allowed = tuple(allowed)
    if mode not in allowed:
        raise ValidationError(
            f"{where}: unsupported mode {mode!r} (expected {' or '.join(allowed)})",
            field=f"{where}.mode",
        )


def _service_groups(manifest: Manifest) -> list[tuple[str, dict[str, ServiceConfig]]]:
    return [
        ("services", manifest.services),
        ("interfaces", manifest.interfaces),
        ("observability", manifest.observability),
    ]


def _check_references(manifest: Manifest) -> None:
    infra = manifest.infrastructure
    if infra.postgres and infra.postgres.enabled:
        where = "infrastructure.postgres"
        _require_mode(infra.postgres.mode, NATIVE_ONLY, where)
        if infra.postgres.engine not in POSTGRES_ENGINES:
            raise ValidationError(f"{where}: unsupported engine {infra.postgres.engine!r}", field=f"{where}.engine")
        _require_host(manifest, infra.postgres.host, where)
    if infra.redis and infra.redis.enabled:
        _require_mode(infra.redis.mode, SERVICE_MODES, "infrastructure.redis")
        if not infra.redis.instances:
            raise ValidationError("infrastructure.redis: at least one instance is required", field="infrastructure.redis.instances")
        for instance in infra.redis.instances:
            where = f"infrastructure.redis.instances.{instance.name or '?'}"
            if not instance.name:
                raise ValidationError(f"{where}: name is required", field=f"{where}.name")
            _require_host(manifest, instance.host, where)
    if infra.zookeeper and infra.zookeeper.enabled:
        _require_mode(infra.zookeeper.mode, SERVICE_MODES, "infrastructure.zookeeper")
        for node in infra.zookeeper.ensemble:
            _require_host(manifest, node.host, f"infrastructure.zookeeper.ensemble.{node.id}")
    if infra.kafka and infra.kafka.enabled:
        _require_mode(infra.kafka.mode, NATIVE_ONLY, "infrastructure.kafka")
        for broker in infra.kafka.brokers:
            _require_host(manifest, broker.host, f"infrastructure.kafka.brokers.{broker.id}")
    if infra.clickhouse and infra.clickhouse.enabled:
        _require_mode(infra.clickhouse.mode, NATIVE_ONLY, "infrastructure.clickhouse")
        _require_host(manifest, infra.clickhouse.host, "infrastructure.clickhouse")

    for section, group in _service_groups(manifest):
        for name in sorted(group):
            entry = group[name]
            if not entry.enabled:
                continue
            where = f"{section}.{name}"
            _require_mode(entry.mode, SERVICE_MODES, where)
            hosts = entry.all_hosts()
            if not hosts:
                raise ValidationError(f"{where}: host is required", field=f"{where}.host")
            for host in hosts:
                _require_host(manifest, host, where)


def _check_unique_ids(ids: list[int], where: str) -> None:
    seen: set[int] = set()
    for node_id in ids:
        if node_id in seen:
            raise ValidationError(f"{where}: duplicate id {node_id}", field=where)
        seen.add(node_id)


def _check_protocol_rules(manifest: Manifest) -> None:
    infra = manifest.infrastructure
    zookeeper = infra.zookeeper
    if zookeeper and zookeeper.enabled:
        if not zookeeper.ensemble:
            raise ValidationError(
                "infrastructure.zookeeper: enabled but ensemble is empty",
                field="infrastructure.zookeeper.ensemble",
            )
        _check_unique_ids([n.id for n in zookeeper.ensemble], "infrastructure.zookeeper.ensemble")

    kafka = infra.kafka
    if kafka and kafka.enabled:
        if not kafka.brokers:
            raise ValidationError("infrastructure.kafka: enabled but no brokers defined", field="infrastructure.kafka.brokers")
        _check_unique_ids([b.id for b in kafka.brokers], "infrastructure.kafka.brokers")
        if resolve_zookeeper_connect(manifest) is None:
            raise ValidationError(
                "infrastructure.kafka: zookeeper_connect is required (set it explicitly or enable a zookeeper ensemble)",
                field="infrastructure.kafka.zookeeper_connect",
            )


def _service_ports(name: str, entry: ServiceConfig, registry: ServiceRegistry) -> tuple[Optional[int], Optional[int]]:
    port = entry.port or registry.default_port(name)
    grpc = entry.grpc_port or registry.default_grpc_port(name)
    if entry.deploy and entry.deploy != name:
        port = port or registry.default_port(entry.deploy)
        grpc = grpc or registry.default_grpc_port(entry.deploy)
    return port, grpc


def _check_ports(manifest: Manifest, registry: ServiceRegistry) -> None:
    claims = _PortClaims()
    infra = manifest.infrastructure
    if infra.postgres and infra.postgres.enabled:
        claims.claim(infra.postgres.host, infra.postgres.port, "postgres")
    if infra.redis and infra.redis.enabled:
        for instance in infra.redis.instances:
            claims.claim(instance.host, instance.port, f"redis-{instance.name}")
    if infra.zookeeper and infra.zookeeper.enabled:
        for node in sorted(infra.zookeeper.ensemble, key=lambda n: n.id):
            claims.claim(node.host, node.port, f"zookeeper-{node.id}")
    if infra.kafka and infra.kafka.enabled:
        for broker in sorted(infra.kafka.brokers, key=lambda b: b.id):
            claims.claim(broker.host, broker.port, f"kafka-broker-{broker.id}")
    if infra.clickhouse and infra.clickhouse.enabled:
        claims.claim(infra.clickhouse.host, infra.clickhouse.port, "clickhouse")
        claims.claim(infra.clickhouse.host, infra.clickhouse.http_port, "clickhouse-http")

    labels = {"services": "service", "interfaces": "interface", "observability": "observability"}
    for section, group in _service_groups(manifest):
        prefix = labels[section]
        for name in sorted(group):
            entry = group[name]
            if not entry.enabled:
                continue
            port, grpc = _service_ports(name, entry, registry)
            for host in entry.all_hosts():
                claims.claim(host, port, f"{prefix}:{name}")
                if grpc and grpc != port:
                    claims.claim(host, grpc, f"{prefix}:{name}-grpc")


def validate_edge(edge: EdgeManifest) -> None:
    if not edge.version:
        raise ValidationError("version is required", field="version")
    if not edge.email or "@" not in edge.email:
        raise ValidationError("email is required for ACME registration", field="email")
    if edge.mode:
        _require_mode(edge.mode, SERVICE_MODES, "edge")
    if not edge.nodes:
        raise ValidationError("at least one node is required", field="nodes")
    seen: set[str] = set()
    for index, node in enumerate(edge.nodes, start=1):
        where = f"nodes[{index}]"
        if not node.name:
            raise ValidationError(f"{where}: name is required", field=f"{where}.name")
        if node.name in seen:
            raise ValidationError(f"{where}: duplicate node name {node.name!r}", field=f"{where}.name")
        seen.add(node.name)
        if not node.ssh:
            raise ValidationError(f"{where}: ssh target is required", field=f"{where}.ssh")
        if node.mode:
            _require_mode(node.mode, SERVICE_MODES, where)
