from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .backends import BACKEND_REGISTRY, Backend, TaskContext, backend_name_for, build_task_config
from .catalog import Catalog, load_catalog
from .config import ProvisionerConfig
from .errors import ExecutionError
from .executors import Executor, executor_for
from .health import CheckResult, CheckTarget, Checker, new_checker
from .health.base import STATUS_UNKNOWN
from .planner import Planner
from .secrets import SecretResolver
from .servicedefs import ServiceRegistry
from .state import StateStore, fingerprint
from .types import (
    STATUS_FAILED,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    ExecutionPlan,
    Host,
    Manifest,
    ProvisionOptions,
    Task,
    TaskResult,
)
from .validation import validate

logger = logging.getLogger(__name__)

BLOCKED_MESSAGE = "blocked by failed dependency"


class Orchestrator:
    """Plans, executes and verifies a cluster manifest."""

    def __init__(
        self,
        manifest: Manifest,
        registry: Optional[ServiceRegistry] = None,
        config: Optional[ProvisionerConfig] = None,
        state_store: Optional[StateStore] = None,
        backends: Optional[dict[str, Backend]] = None,
        checker_factory: Optional[Callable[..., Checker]] = None,
        cancel_event: Optional[threading.Event] = None,
        executor_factory: Optional[Callable[[Host, bool], Executor]] = None,
        catalog: Optional[Catalog] = None,
    ):
        self.manifest = manifest
        self.registry = registry or ServiceRegistry.default()
        self.config = config or ProvisionerConfig()
        self.state_store = state_store
        self.secrets = SecretResolver(self.config.aws_region, self.config.aws_profile)
        if backends is None:
            backends = {name: cls(self.config, self.secrets) for name, cls in BACKEND_REGISTRY.items()}
        self.backends = backends
        self.checker_factory = checker_factory or new_checker
        self.cancel_event = cancel_event or threading.Event()
        self.executor_factory = executor_factory or self._default_executor
        self._catalog = catalog
        self._lock = threading.Lock()

    def _default_executor(self, host: Host, dry_run: bool) -> Executor:
        return executor_for(host, self.config, dry_run=dry_run, cancel=self.cancel_event)

    def cancel(self) -> None:
        logger.warning("cancellation requested; no new tasks will start")
        self.cancel_event.set()

    # Plan ------------------------------------------------------------------
    def plan(self, options: Optional[ProvisionOptions] = None) -> ExecutionPlan:
        validate(self.manifest, self.registry)
        return Planner(self.manifest, self.registry).plan(options)

    def provision(self, options: Optional[ProvisionOptions] = None) -> tuple[ExecutionPlan, list[TaskResult]]:
        plan = self.plan(options)
        if plan.options.dry_run:
            return plan, []
        return plan, self.execute(plan)

    # Execute ---------------------------------------------------------------
    def execute(self, plan: ExecutionPlan) -> list[TaskResult]:
        options = plan.options
        results: dict[str, TaskResult] = {}
        unusable: set[str] = set()

        for index, batch in enumerate(plan.batches, start=1):
            logger.info("batch=%d/%d tasks=%s", index, len(plan.batches), ",".join(t.name for t in batch))
            runnable: list[Task] = []
            for task in batch:
                blocked = [dep for dep in task.depends_on if dep in unusable]
                if blocked:
                    message = f"{BLOCKED_MESSAGE}: {', '.join(blocked)}"
                    logger.warning("task=%s host=%s %s", task.name, task.host, message)
                    self._collect(results, self._result(task, STATUS_SKIPPED, message))
                    unusable.add(task.name)
                else:
                    runnable.append(task)

            if options.parallel and len(runnable) > 1:
                workers = min(len(runnable), self.config.parallel_cap)
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    futures = [pool.submit(self._run_task, task, plan) for task in runnable]
                    for future in futures:
                        self._collect(results, future.result())
            else:
                for task in runnable:
                    self._collect(results, self._run_task(task, plan))

            unusable.update(task.name for task in batch if results[task.name].failed)

        ordered = [results[task.name] for task in plan.all_tasks]
        if self.state_store is not None and not options.dry_run:
            with self._lock:
                self.state_store.write()
        failed = [result.task for result in ordered if result.failed]
        if failed:
            raise ExecutionError(f"{len(failed)} task(s) failed: {', '.join(failed)}", ordered, failed)
        return ordered

    def _collect(self, results: dict[str, TaskResult], result: TaskResult) -> None:
        with self._lock:
            results[result.task] = result

    @staticmethod
    def _result(task: Task, status: str, message: str, backend: Optional[str] = None) -> TaskResult:
        return TaskResult(
            task=task.name,
            host=task.host,
            status=status,
            message=message,
            started_at=datetime.now(timezone.utc),
            backend=backend,
        )

    def _run_task(self, task: Task, plan: ExecutionPlan) -> TaskResult:
        options = plan.options
        if self.cancel_event.is_set():
            return self._result(task, STATUS_FAILED, "cancelled")
        host = self.manifest.get_host(task.host)
        if host is None:
            return self._result(task, STATUS_FAILED, f"host '{task.host}' is not defined")

        started = time.monotonic()
        backend_name = None
        try:
            task_config = build_task_config(task, self.manifest, self.registry)
            backend_name = backend_name_for(task, task_config)
            backend = self.backends.get(backend_name)
            if backend is None:
                return self._result(task, STATUS_FAILED, f"no backend registered for '{backend_name}'", backend_name)
            digest = fingerprint(task_config.fingerprint_payload())
            if (
                task.idempotent
                and not options.force
                and self.state_store is not None
                and self.state_store.is_satisfied(host.name, task.name, digest)
            ):
                logger.info("task=%s host=%s already satisfied", task.name, host.name)
                return self._result(task, STATUS_SKIPPED, "already satisfied", backend_name)
            executor = self.executor_factory(host, options.dry_run)
            context = TaskContext(task, host, self.manifest, executor, task_config, options)
            result = backend.apply(context)
        except Exception as exc:  # noqa: BLE001
            logger.error("task=%s host=%s failed: %s", task.name, task.host, exc, exc_info=True)
            result = self._result(task, STATUS_FAILED, str(exc), backend_name)
            result.duration = time.monotonic() - started
            return result

        if self.state_store is not None and not options.dry_run:
            with self._lock:
                if result.status == STATUS_SUCCESS:
                    self.state_store.record(host.name, task.name, task.type, digest)
                elif result.failed:
                    self.state_store.forget(host.name, task.name)
        log = logger.error if result.failed else logger.info
        log("task=%s host=%s status=%s %s", task.name, task.host, result.status, result.message)
        return result

    # Validate --------------------------------------------------------------
    @property
    def catalog(self) -> Catalog:
        if self._catalog is None:
            self._catalog = load_catalog()
        return self._catalog

    def health_targets(self) -> list[CheckTarget]:
        """Health probes for every enabled entry of the manifest."""
        manifest = self.manifest
        infra = manifest.infrastructure
        targets: list[CheckTarget] = []

        def address(host_name: Optional[str]) -> Optional[str]:
            host = manifest.get_host(host_name)
            return host.address if host else None

        pg = infra.postgres
        if pg and pg.enabled and address(pg.host):
            options = {"user": pg.user, "password": pg.password}
            targets.append(CheckTarget("postgres", pg.engine, address(pg.host), pg.port, options))
        if infra.redis and infra.redis.enabled:
            for instance in infra.redis.instances:
                if address(instance.host):
                    targets.append(CheckTarget(f"redis-{instance.name}", "tcp", address(instance.host), instance.port))
        if infra.zookeeper and infra.zookeeper.enabled:
            for node in sorted(infra.zookeeper.ensemble, key=lambda n: n.id):
                if address(node.host):
                    targets.append(CheckTarget(f"zookeeper-{node.id}", "tcp", address(node.host), node.port))
        if infra.kafka and infra.kafka.enabled:
            for broker in sorted(infra.kafka.brokers, key=lambda b: b.id):
                if address(broker.host):
                    targets.append(CheckTarget(f"kafka-broker-{broker.id}", "kafka", address(broker.host), broker.port))
        ch = infra.clickhouse
        if ch and ch.enabled and address(ch.host):
            options = {"user": ch.user, "password": ch.password, "database": ch.database}
            targets.append(CheckTarget("clickhouse", "clickhouse", address(ch.host), ch.http_port, options))

        for group in (manifest.services, manifest.interfaces, manifest.observability):
            for name in sorted(group):
                entry = group[name]
                if not entry.enabled:
                    continue
                spec = self.catalog.services.get(name)
                protocol, path, port = "http", "/health", None
                if spec is not None and spec.health is not None:
                    protocol = spec.health.protocol
                    path = spec.health.path or path
                    port = spec.health.port
                port = entry.port or port or self.registry.default_port(name)
                if not port:
                    logger.debug("no health port known for %s", name)
                    continue
                hosts = entry.all_hosts()
                for host_name in hosts:
                    if not address(host_name):
                        continue
                    label = name if len(hosts) == 1 else f"{name}@{host_name}"
                    options = {"path": path} if protocol in ("http", "https") else {}
                    targets.append(CheckTarget(label, protocol, address(host_name), port, options))
        return targets

    def _check(self, target: CheckTarget) -> CheckResult:
        try:
            options = self.secrets.resolve(dict(target.options))
            options.setdefault("name", target.name)
            options.setdefault("timeout", self.config.health_timeout)
            checker = self.checker_factory(target.protocol, **options)
            result = checker.check(target.address, target.port)
        except Exception as exc:  # noqa: BLE001
            logger.warning("check=%s could not run: %s", target.name, exc)
            return CheckResult(target.name, False, STATUS_UNKNOWN, "check could not run", error=str(exc))
        if not result.ok:
            logger.warning("check=%s status=%s %s", result.name, result.status, result.error or result.message)
        return result

    def validate(self) -> list[CheckResult]:
        targets = self.health_targets()
        if not targets:
            return []
        workers = min(len(targets), self.config.parallel_cap)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(self._check, targets))
        pg = self.manifest.infrastructure.postgres
        if pg and pg.enabled and pg.databases:
            results.append(self._check_databases(pg))
        return results

    def _check_databases(self, pg: Any) -> CheckResult:
        host = self.manifest.get_host(pg.host)
        try:
            checker = self.checker_factory(
                pg.engine,
                user=pg.user,
                password=self.secrets.resolve_value(pg.password),
                name="postgres-databases",
                timeout=self.config.health_timeout,
            )
            return checker.check_databases(host.address, pg.port, [db.name for db in pg.databases])
        except Exception as exc:  # noqa: BLE001
            logger.warning("check=postgres-databases could not run: %s", exc)
            return CheckResult("postgres-databases", False, STATUS_UNKNOWN, "check could not run", error=str(exc))


def cluster_healthy(results: list[CheckResult]) -> bool:
    return all(result.ok for result in results)
