from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import ManifestError
from .types import (
    ClickHouseConfig,
    EdgeManifest,
    EdgeNode,
    Host,
    InfrastructureConfig,
    KafkaBroker,
    KafkaConfig,
    Manifest,
    PostgresConfig,
    PostgresDatabase,
    RedisConfig,
    RedisInstance,
    ServiceConfig,
    WireguardConfig,
    ZookeeperConfig,
    ZookeeperNode,
)

logger = logging.getLogger(__name__)

MANIFEST_KEYS = {
    "version",
    "type",
    "profile",
    "cluster_id",
    "hosts",
    "wireguard",
    "infrastructure",
    "services",
    "interfaces",
    "observability",
}


class ManifestLoader:
    """Loads cluster and edge manifests from YAML files."""

    def load(self, path: Path) -> Manifest:
        path = Path(path)
        data = self._read_yaml(path)
        try:
            return self.parse(data)
        except ManifestError as exc:
            raise ManifestError(f"{path}: {exc}") from None

    def load_edge(self, path: Path) -> EdgeManifest:
        path = Path(path)
        data = self._read_yaml(path)
        try:
            return self.parse_edge(data)
        except ManifestError as exc:
            raise ManifestError(f"{path}: {exc}") from None

    def parse(self, data: Any) -> Manifest:
        if not isinstance(data, dict):
            raise ManifestError("manifest must be a mapping")
        for key in sorted(set(data) - MANIFEST_KEYS):
            logger.debug("ignoring unknown manifest key %s", key)
        return Manifest(
            version=str(data.get("version") or ""),
            type=str(data.get("type") or ""),
            profile=_optional_str(data.get("profile")),
            cluster_id=_optional_str(data.get("cluster_id")),
            hosts=self._parse_hosts(data.get("hosts") or {}),
            wireguard=self._parse_wireguard(data.get("wireguard") or {}),
            infrastructure=self._parse_infrastructure(data.get("infrastructure") or {}),
            services=self._parse_services(data.get("services") or {}, "services"),
            interfaces=self._parse_services(data.get("interfaces") or {}, "interfaces"),
            observability=self._parse_services(data.get("observability") or {}, "observability"),
        )

    def parse_edge(self, data: Any) -> EdgeManifest:
        if not isinstance(data, dict):
            raise ManifestError("edge manifest must be a mapping")
        raw_nodes = data.get("nodes") or []
        if not isinstance(raw_nodes, list):
            raise ManifestError("nodes must be a list")
        nodes: list[EdgeNode] = []
        for index, raw in enumerate(raw_nodes, start=1):
            if not isinstance(raw, dict):
                raise ManifestError(f"nodes[{index}] must be a mapping")
            nodes.append(
                EdgeNode(
                    name=str(raw.get("name") or ""),
                    ssh=str(raw.get("ssh") or ""),
                    ssh_key=_optional_str(raw.get("ssh_key")),
                    subdomain=_optional_str(raw.get("subdomain")),
                    region=_optional_str(raw.get("region")),
                    labels=_str_map(raw.get("labels"), f"nodes[{index}].labels"),
                    apply_tune=bool(raw.get("apply_tune", False)),
                    register_qm=bool(raw.get("register_qm", False)),
                    mode=_optional_str(raw.get("mode")),
                )
            )
        return EdgeManifest(
            version=str(data.get("version") or ""),
            email=str(data.get("email") or ""),
            nodes=nodes,
            root_domain=_optional_str(data.get("root_domain")),
            pool_domain=_optional_str(data.get("pool_domain")),
            cluster_id=_optional_str(data.get("cluster_id")),
            enrollment_token=data.get("enrollment_token"),
            fetch_cert=bool(data.get("fetch_cert", False)),
            mode=_optional_str(data.get("mode")),
            binaries=_str_map(data.get("binaries"), "binaries"),
        )

    @staticmethod
    def _read_yaml(path: Path) -> Any:
        try:
            text = path.read_text()
        except OSError as exc:
            raise ManifestError(f"{path}: {exc.strerror or exc}") from None
        try:
            return yaml.safe_load(text)
        except yaml.MarkedYAMLError as exc:
            mark = exc.problem_mark
            line = mark.line + 1 if mark is not None else None
            column = mark.column + 1 if mark is not None else None
            location = f"{line}:{column}" if line is not None else "?"
            raise ManifestError(f"{path}:{location} {exc.problem}", line=line, column=column) from None
        except yaml.YAMLError as exc:
            raise ManifestError(f"{path}: {exc}") from None

    @staticmethod
    def _parse_hosts(host_data: Any) -> dict[str, Host]:
        if not isinstance(host_data, dict):
            raise ManifestError("hosts must be a mapping")
        hosts: dict[str, Host] = {}
        for name, payload in host_data.items():
            payload = payload or {}
            if not isinstance(payload, dict):
                raise ManifestError(f"hosts.{name} must be a mapping")
            roles = payload.get("roles") or []
            if isinstance(roles, str):
                roles = [roles]
            hosts[str(name)] = Host(
                name=str(name),
                address=str(payload.get("address") or ""),
                external_ip=_optional_str(payload.get("external_ip")),
                user=str(payload.get("user") or "root"),
                ssh_key=_optional_str(payload.get("ssh_key")),
                roles=[str(role) for role in roles],
                labels=_str_map(payload.get("labels"), f"hosts.{name}.labels"),
            )
        return hosts

    @staticmethod
    def _parse_wireguard(data: Any) -> WireguardConfig:
        if not isinstance(data, dict):
            raise ManifestError("wireguard must be a mapping")
        return WireguardConfig(
            enabled=bool(data.get("enabled", False)),
            network=_optional_str(data.get("network")),
            listen_port=_int(data.get("listen_port"), 51820, "wireguard.listen_port"),
        )

    def _parse_infrastructure(self, data: Any) -> InfrastructureConfig:
        if not isinstance(data, dict):
            raise ManifestError("infrastructure must be a mapping")
        infra = InfrastructureConfig()
        if data.get("postgres") is not None:
            infra.postgres = self._parse_postgres(_mapping(data["postgres"], "infrastructure.postgres"))
        if data.get("redis") is not None:
            infra.redis = self._parse_redis(_mapping(data["redis"], "infrastructure.redis"))
        if data.get("zookeeper") is not None:
            infra.zookeeper = self._parse_zookeeper(_mapping(data["zookeeper"], "infrastructure.zookeeper"))
        if data.get("kafka") is not None:
            infra.kafka = self._parse_kafka(_mapping(data["kafka"], "infrastructure.kafka"))
        if data.get("clickhouse") is not None:
            infra.clickhouse = self._parse_clickhouse(_mapping(data["clickhouse"], "infrastructure.clickhouse"))
        return infra

    @staticmethod
    def _parse_postgres(data: dict[str, Any]) -> PostgresConfig:
        databases: list[PostgresDatabase] = []
        for raw in data.get("databases") or []:
            if isinstance(raw, str):
                databases.append(PostgresDatabase(name=raw))
            else:
                raw = _mapping(raw, "infrastructure.postgres.databases[]")
                databases.append(PostgresDatabase(name=str(raw.get("name") or ""), owner=_optional_str(raw.get("owner"))))
        return PostgresConfig(
            enabled=bool(data.get("enabled", False)),
            mode=str(data.get("mode") or "native"),
            version=_optional_str(data.get("version")),
            host=_optional_str(data.get("host")),
            port=_int(data.get("port"), 5432, "infrastructure.postgres.port"),
            engine=str(data.get("engine") or "postgres"),
            databases=databases,
            user=str(data.get("user") or "postgres"),
            password=data.get("password"),
        )

    @staticmethod
    def _parse_redis(data: dict[str, Any]) -> RedisConfig:
        instances: list[RedisInstance] = []
        for raw in data.get("instances") or []:
            raw = _mapping(raw, "infrastructure.redis.instances[]")
            instances.append(
                RedisInstance(
                    name=str(raw.get("name") or ""),
                    host=_optional_str(raw.get("host")),
                    port=_int(raw.get("port"), 6379, "infrastructure.redis.instances[].port"),
                    password=raw.get("password"),
                )
            )
        return RedisConfig(
            enabled=bool(data.get("enabled", False)),
            mode=str(data.get("mode") or "docker"),
            version=_optional_str(data.get("version")),
            instances=instances,
        )

    @staticmethod
    def _parse_zookeeper(data: dict[str, Any]) -> ZookeeperConfig:
        ensemble: list[ZookeeperNode] = []
        for index, raw in enumerate(data.get("ensemble") or [], start=1):
            where = f"infrastructure.zookeeper.ensemble[{index}]"
            raw = _mapping(raw, where)
            ensemble.append(
                ZookeeperNode(
                    id=_required_int(raw.get("id"), f"{where}.id"),
                    host=_optional_str(raw.get("host")),
                    port=_int(raw.get("port"), 2181, f"{where}.port"),
                )
            )
        return ZookeeperConfig(
            enabled=bool(data.get("enabled", False)),
            mode=str(data.get("mode") or "native"),
            version=_optional_str(data.get("version")),
            ensemble=ensemble,
        )

    @staticmethod
    def _parse_kafka(data: dict[str, Any]) -> KafkaConfig:
        brokers: list[KafkaBroker] = []
        for index, raw in enumerate(data.get("brokers") or [], start=1):
            where = f"infrastructure.kafka.brokers[{index}]"
            raw = _mapping(raw, where)
            brokers.append(
                KafkaBroker(
                    id=_required_int(raw.get("id"), f"{where}.id"),
                    host=_optional_str(raw.get("host")),
                    port=_int(raw.get("port"), 9092, f"{where}.port"),
                )
            )
        return KafkaConfig(
            enabled=bool(data.get("enabled", False)),
            mode=str(data.get("mode") or "native"),
            version=_optional_str(data.get("version")),
            brokers=brokers,
            zookeeper_connect=_optional_str(data.get("zookeeper_connect")),
            topics=[str(topic) for topic in data.get("topics") or []],
        )

    @staticmethod
    def _parse_clickhouse(data: dict[str, Any]) -> ClickHouseConfig:
        return ClickHouseConfig(
            enabled=bool(data.get("enabled", False)),
            mode=str(data.get("mode") or "native"),
            version=_optional_str(data.get("version")),
            host=_optional_str(data.get("host")),
            port=_int(data.get("port"), 9000, "infrastructure.clickhouse.port"),
            http_port=_int(data.get("http_port"), 8123, "infrastructure.clickhouse.http_port"),
            database=str(data.get("database") or "default"),
            user=str(data.get("user") or "default"),
            password=data.get("password"),
        )

    @staticmethod
    def _parse_services(data: Any, section: str) -> dict[str, ServiceConfig]:
        if not isinstance(data, dict):
            raise ManifestError(f"{section} must be a mapping")
        services: dict[str, ServiceConfig] = {}
        for name, payload in data.items():
            payload = payload or {}
            where = f"{section}.{name}"
            if not isinstance(payload, dict):
                raise ManifestError(f"{where} must be a mapping")
            hosts = payload.get("hosts") or []
            if isinstance(hosts, str):
                hosts = [hosts]
            depends = payload.get("depends_on") or []
            if isinstance(depends, str):
                depends = [depends]
            port = payload.get("port")
            grpc_port = payload.get("grpc_port")
            services[str(name)] = ServiceConfig(
                enabled=bool(payload.get("enabled", True)),
                mode=str(payload.get("mode") or "docker"),
                deploy=_optional_str(payload.get("deploy")),
                image=_optional_str(payload.get("image")),
                binary_url=_optional_str(payload.get("binary_url")),
                version=_optional_str(payload.get("version")),
                host=_optional_str(payload.get("host")),
                hosts=[str(h) for h in hosts],
                port=_int(port, 0, f"{where}.port") or None,
                grpc_port=_int(grpc_port, 0, f"{where}.grpc_port") or None,
                depends_on=[str(dep) for dep in depends],
                public=bool(payload.get("public", False)),
                env_file=_optional_str(payload.get("env_file")),
                cluster=_optional_str(payload.get("cluster")),
            )
        return services


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _int(value: Any, default: int, where: str) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ManifestError(f"{where} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ManifestError(f"{where} must be an integer, got {value!r}") from None


def _required_int(value: Any, where: str) -> int:
    if value is None or value == "":
        raise ManifestError(f"{where} is required")
    return _int(value, 0, where)


def _mapping(value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ManifestError(f"{where} must be a mapping")
    return value


def _str_map(value: Any, where: str) -> dict[str, str]:
    if not value:
        return {}
    if not isinstance(value, dict):
        raise ManifestError(f"{where} must be a mapping")
    return {str(k): str(v) for k, v in value.items()}
