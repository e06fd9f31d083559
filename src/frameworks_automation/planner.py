from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .errors import PlanningError
from .servicedefs import ServiceRegistry
from .types import (
    PHASE_ALL,
    PHASE_APPLICATIONS,
    PHASE_INFRASTRUCTURE,
    PHASE_INTERFACES,
    PHASES,
    ExecutionPlan,
    Manifest,
    ProvisionOptions,
    ServiceConfig,
    Task,
)

logger = logging.getLogger(__name__)

CONTROL_PLANE = "quartermaster"
MESH = "privateer"


@dataclass
class _Node:
    name: str
    type: str
    host: str
    phase: str
    entry: str
    cluster_id: Optional[str] = None
    deps: set[str] = field(default_factory=set)
    declared: list[str] = field(default_factory=list)


class Planner:
    """Builds batched execution plans from a validated manifest."""

    def __init__(self, manifest: Manifest, registry: Optional[ServiceRegistry] = None):
        self.manifest = manifest
        self.registry = registry or ServiceRegistry.default()

    def plan(self, options: Optional[ProvisionOptions] = None) -> ExecutionPlan:
        options = options or ProvisionOptions()
        if options.phase not in PHASES:
            raise PlanningError(f"unknown phase {options.phase!r}")

        nodes: dict[str, _Node] = {}
        groups: dict[str, list[str]] = {}
        self._add_infrastructure(nodes, groups)
        self._add_applications(nodes, groups)
        self._add_interfaces(nodes, groups)
        self._resolve_declared(nodes, groups)

        selected = {name: node for name, node in nodes.items() if self._selected(node, options)}
        for node in selected.values():
            dropped = sorted(dep for dep in node.deps if dep not in selected)
            if dropped:
                logger.debug("task=%s dropping edges outside selection: %s", node.name, ",".join(dropped))
            node.deps = {dep for dep in node.deps if dep in selected}

        batches = self._layer(selected)
        all_tasks = [task for batch in batches for task in batch]
        logger.debug("planned %d tasks in %d batches", len(all_tasks), len(batches))
        return ExecutionPlan(manifest=self.manifest, batches=batches, all_tasks=all_tasks, options=options)

    # Task construction ---------------------------------------------------
    def _add(self, nodes: dict[str, _Node], groups: dict[str, list[str]], node: _Node) -> None:
        nodes[node.name] = node
        groups.setdefault(node.entry, []).append(node.name)

    def _add_infrastructure(self, nodes: dict[str, _Node], groups: dict[str, list[str]]) -> None:
        infra = self.manifest.infrastructure
        cluster = self.manifest.cluster_id
        if infra.postgres and infra.postgres.enabled:
            self._add(nodes, groups, _Node("postgres", "postgres", infra.postgres.host or "", PHASE_INFRASTRUCTURE, "postgres", cluster))
        if infra.redis and infra.redis.enabled:
            for instance in infra.redis.instances:
                name = f"redis-{instance.name}"
                self._add(nodes, groups, _Node(name, "redis", instance.host or "", PHASE_INFRASTRUCTURE, "redis", cluster))
        zookeeper_tasks: list[str] = []
        if infra.zookeeper and infra.zookeeper.enabled:
            for zk in infra.zookeeper.ensemble:
                name = f"zookeeper-{zk.id}"
                zookeeper_tasks.append(name)
                self._add(nodes, groups, _Node(name, "zookeeper", zk.host or "", PHASE_INFRASTRUCTURE, "zookeeper", cluster))
        if infra.kafka and infra.kafka.enabled:
            for broker in infra.kafka.brokers:
                name = f"kafka-broker-{broker.id}"
                node = _Node(name, "kafka", broker.host or "", PHASE_INFRASTRUCTURE, "kafka", cluster)
                node.deps.update(zookeeper_tasks)
                self._add(nodes, groups, node)
        if infra.clickhouse and infra.clickhouse.enabled:
            self._add(nodes, groups, _Node("clickhouse", "clickhouse", infra.clickhouse.host or "", PHASE_INFRASTRUCTURE, "clickhouse", cluster))

    def _infra_dependencies(self, nodes: dict[str, _Node]) -> set[str]:
        return {
            name
            for name, node in nodes.items()
            if node.phase == PHASE_INFRASTRUCTURE and node.type in ("postgres", "redis", "kafka")
        }

    def _entry_nodes(self, name: str, entry: ServiceConfig, phase: str, kind: str) -> list[_Node]:
        deploy = self.registry.deploy_name(name, entry.deploy)
        if deploy is None:
            raise PlanningError(f"unknown {kind} id: {name}", tasks=[name])
        hosts = entry.all_hosts()
        cluster = self.manifest.resolve_cluster(name)
        result = []
        for host in hosts:
            task_name = name if len(hosts) == 1 else f"{name}@{host}"
            result.append(_Node(task_name, deploy, host, phase, name, cluster, declared=list(entry.depends_on)))
        return result

    def _add_applications(self, nodes: dict[str, _Node], groups: dict[str, list[str]]) -> None:
        infra_deps = self._infra_dependencies(nodes)
        services = self.manifest.services
        enabled = {name for name in services if services[name].enabled}

        core: set[str] = set()
        for name in (CONTROL_PLANE, MESH):
            if name not in enabled:
                continue
            for node in self._entry_nodes(name, services[name], PHASE_APPLICATIONS, "service"):
                node.deps.update(infra_deps)
                if name == MESH:
                    node.deps.update(groups.get(CONTROL_PLANE, []))
                self._add(nodes, groups, node)
            core.update(groups.get(name, []))

        for name in sorted(enabled - {CONTROL_PLANE, MESH}):
            for node in self._entry_nodes(name, services[name], PHASE_APPLICATIONS, "service"):
                node.deps.update(infra_deps)
                node.deps.update(core)
                self._add(nodes, groups, node)

    def _add_interfaces(self, nodes: dict[str, _Node], groups: dict[str, list[str]]) -> None:
        app_deps = {name for name, node in nodes.items() if node.phase == PHASE_APPLICATIONS}
        for kind, group in (("interface", self.manifest.interfaces), ("observability", self.manifest.observability)):
            for name in sorted(group):
                entry = group[name]
                if not entry.enabled:
                    continue
                for node in self._entry_nodes(name, entry, PHASE_INTERFACES, kind):
                    node.deps.update(app_deps)
                    self._add(nodes, groups, node)

    def _resolve_declared(self, nodes: dict[str, _Node], groups: dict[str, list[str]]) -> None:
        for node in nodes.values():
            for dep in node.declared:
                if dep in groups:
                    node.deps.update(groups[dep])
                elif dep in nodes:
                    node.deps.add(dep)
                elif self.manifest.entry(dep) is not None or self._infra_entry_exists(dep):
                    logger.debug("task=%s depends on disabled entry %s", node.name, dep)
                else:
                    raise PlanningError(f"task {node.name} depends on unknown entry {dep!r}", tasks=[node.name])

    def _infra_entry_exists(self, name: str) -> bool:
        return getattr(self.manifest.infrastructure, name, None) is not None

    # Filtering and batching ---------------------------------------------
    @staticmethod
    def _selected(node: _Node, options: ProvisionOptions) -> bool:
        if options.phase != PHASE_ALL and node.phase != options.phase:
            return False
        if options.only_hosts and node.host not in options.only_hosts:
            return False
        if options.only_services:
            wanted = set(options.only_services)
            if not wanted & {node.name, node.entry, node.type}:
                return False
        return True

    @staticmethod
    def _layer(nodes: dict[str, _Node]) -> list[list[Task]]:
        dependents: dict[str, list[str]] = {name: [] for name in nodes}
        in_degree: dict[str, int] = {}
        for name, node in nodes.items():
            in_degree[name] = len(node.deps)
            for dep in node.deps:
                dependents[dep].append(name)

        batches: list[list[Task]] = []
        ready = sorted(name for name, degree in in_degree.items() if degree == 0)
        placed = 0
        while ready:
            batch = []
            next_ready: list[str] = []
            for name in ready:
                node = nodes[name]
                batch.append(
                    Task(
                        name=node.name,
                        type=node.type,
                        host=node.host,
                        phase=node.phase,
                        cluster_id=node.cluster_id,
                        depends_on=tuple(sorted(node.deps)),
                    )
                )
                for dependent in dependents[name]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        next_ready.append(dependent)
            batches.append(batch)
            placed += len(batch)
            ready = sorted(next_ready)

        if placed != len(nodes):
            residual = sorted(name for name, degree in in_degree.items() if degree > 0)
            raise PlanningError(f"dependency cycle among tasks: {', '.join(residual)}", tasks=residual)
        return batches
