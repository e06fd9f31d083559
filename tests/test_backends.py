from frameworks_automation.ansible import AnsibleRunResult, PlaybookRunStats
from frameworks_automation.backends import (
    AnsibleBackend,
    ComposeBackend,
    TaskContext,
    backend_name_for,
    build_task_config,
)
from frameworks_automation.backends.compose import render_compose
from frameworks_automation.executors import CommandResult, Executor, SSHExecutor
from frameworks_automation.planner import Planner
from frameworks_automation.servicedefs import ServiceRegistry
from frameworks_automation.types import STATUS_FAILED, STATUS_SUCCESS


def _context(cluster, name, executor=None):
    plan = Planner(cluster).plan()
    task = plan.task(name)
    config = build_task_config(task, cluster, ServiceRegistry.default())
    return TaskContext(
        task=task,
        host=cluster.get_host(task.host),
        manifest=cluster,
        executor=executor or FakeExecutor(),
        config=config,
    )


class FakeExecutor(Executor):
    def __init__(self, run_result=None, write_result=None):
        super().__init__()
        self.run_result = run_result or CommandResult([], "", "", 0)
        self.write_result = write_result or CommandResult([], "", "", 0)
        self.files = {}
        self.commands = []

    def write_file(self, path, *, content, mode=None):  # type: ignore[override]
        self.files[str(path)] = (content, mode)
        return self.write_result

    def run(self, command, **kwargs):  # type: ignore[override]
        self.commands.append((list(command), kwargs))
        return self.run_result


def test_backend_selection(cluster):
    expected = {
        "postgres": "ansible",
        "kafka-broker-1": "ansible",
        "clickhouse": "ansible",
        "redis-platform": "compose",
        "zookeeper-1": "ansible",
        "privateer": "ansible",
        "commodore": "compose",
        "chartroom": "compose",
    }
    for name, backend in expected.items():
        context = _context(cluster, name)
        assert backend_name_for(context.task, context.config) == backend, name


def test_task_config_for_services(cluster):
    commodore = _context(cluster, "commodore").config
    assert commodore.image == "frameworks/commodore:stable"
    assert commodore.port == 18001
    assert commodore.metadata["cluster_id"] == "central-1"

    postgres = _context(cluster, "postgres").config
    assert postgres.mode == "native"
    assert postgres.metadata["databases"] == [
        {"name": "commodore", "owner": "postgres"},
        {"name": "purser", "owner": "billing"},
    ]


def test_render_compose_for_redis(cluster):
    config = _context(cluster, "redis-platform").config
    config.metadata["password"] = "hunter2"
    document = render_compose(config)
    block = document["services"]["redis-platform"]
    assert block["image"] == "redis:7-alpine"
    assert block["ports"] == ["6379:6379"]
    assert block["command"][-2:] == ["--requirepass", "hunter2"]
    assert document["volumes"] == {"redis-platform-data": {}}


def test_render_compose_for_zookeeper(cluster):
    block = render_compose(_context(cluster, "zookeeper-1").config)["services"]["zookeeper-1"]
    assert block["environment"] == {"ZOO_MY_ID": "1", "ZOO_SERVERS": "server.1=10.0.0.1:2888:3888;2181"}
    assert block["ports"][0] == "2181:2181"


def test_render_compose_for_application(cluster):
    block = render_compose(_context(cluster, "foghorn@core-2").config)["services"]["foghorn"]
    assert block["container_name"] == "frameworks-foghorn"
    assert block["ports"][0] == "18008:18008"


def test_compose_backend_writes_and_starts(cluster):
    executor = FakeExecutor()
    context = _context(cluster, "commodore", executor)
    result = ComposeBackend().apply(context)
    assert result.status == STATUS_SUCCESS
    assert result.backend == "compose"
    assert result.host == "core-2"

    path = "/opt/frameworks/commodore/docker-compose.yml"
    content, mode = executor.files[path]
    assert "frameworks/commodore:stable" in content
    assert mode == 0o640
    command, kwargs = executor.commands[0]
    assert command == ["docker", "compose", "-f", path, "up", "-d"]
    assert kwargs["check"] is False


def test_compose_backend_reports_unreachable_host(cluster):
    executor = FakeExecutor(run_result=CommandResult([], "", "", -1, error="ssh root@10.0.0.2: Connection refused"))
    result = ComposeBackend().apply(_context(cluster, "commodore", executor))
    assert result.status == STATUS_FAILED
    assert result.message == "could not run docker compose: ssh root@10.0.0.2: Connection refused"


def test_compose_backend_reports_exit_code(cluster):
    executor = FakeExecutor(run_result=CommandResult([], "", "pulling\nError: manifest unknown\n", 1))
    result = ComposeBackend().apply(_context(cluster, "commodore", executor))
    assert result.status == STATUS_FAILED
    assert result.message == "docker compose exited 1: Error: manifest unknown"


def test_compose_backend_stops_when_write_fails(cluster):
    executor = FakeExecutor(write_result=CommandResult([], "", "Permission denied", 1))
    result = ComposeBackend().apply(_context(cluster, "commodore", executor))
    assert result.status == STATUS_FAILED
    assert "Permission denied" in result.message
    assert executor.commands == []


class StubRunner:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def run(self, playbook, inventory, **kwargs):
        self.calls.append((playbook, inventory, kwargs))
        return self.result


def test_ansible_backend_runs_generated_playbook(cluster):
    runner = StubRunner(AnsibleRunResult(PlaybookRunStats(ok=4, changed=2, hosts={"core-1": {}}), "", 0, []))
    backend = AnsibleBackend(runner_factory=lambda context: runner)
    result = backend.apply(_context(cluster, "postgres"))
    assert result.status == STATUS_SUCCESS
    assert result.backend == "ansible"
    playbook, inventory, kwargs = runner.calls[0]
    assert kwargs["limit"] == "core-1"
    assert "core-2" not in inventory.to_ini()
    assert playbook.plays[0].hosts == "core-1"


def test_ansible_backend_failure(cluster):
    runner = StubRunner(AnsibleRunResult(PlaybookRunStats(ok=1, failed=1, hosts={"core-1": {}}), "", 2, []))
    result = AnsibleBackend(runner_factory=lambda context: runner).apply(_context(cluster, "postgres"))
    assert result.status == STATUS_FAILED


def test_ansible_backend_rejects_native_service_without_binary(cluster_data):
    from frameworks_automation.inventory import ManifestLoader

    cluster_data["services"]["commodore"]["mode"] = "native"
    cluster = ManifestLoader().parse(cluster_data)
    runner = StubRunner(None)
    result = AnsibleBackend(runner_factory=lambda context: runner).apply(_context(cluster, "commodore"))
    assert result.status == STATUS_FAILED
    assert "binary_url" in result.message
    assert runner.calls == []


def test_ansible_backend_inventory_uses_configured_ssh_defaults(cluster):
    from pathlib import Path

    from frameworks_automation.config import ProvisionerConfig

    runner = StubRunner(AnsibleRunResult(PlaybookRunStats(ok=1, hosts={"core-1": {}}), "", 0, []))
    config = ProvisionerConfig(ssh_key=Path("/etc/frameworks/deploy_key"), ssh_timeout=7)
    AnsibleBackend(config, runner_factory=lambda context: runner).apply(_context(cluster, "postgres"))
    _, inventory, _ = runner.calls[0]
    line = inventory.to_ini().splitlines()[0]
    assert "ansible_ssh_private_key_file=/etc/frameworks/deploy_key" in line
    assert "ansible_ssh_common_args='-o ConnectTimeout=7'" in line


class FailingRemoteExecutor(SSHExecutor):
    """SSH executor whose remote side is replaced by a local command."""

    def __init__(self, replacement):
        super().__init__(target="root@10.0.0.2")
        self.replacement = replacement

    def wrap(self, command, env, cwd):
        if command[:2] == ["sh", "-c"]:
            return list(self.replacement)
        return ["true"]


def test_compose_backend_reports_failed_remote_write(cluster):
    executor = FailingRemoteExecutor(["sh", "-c", "echo 'cat: /opt/frameworks: Permission denied' >&2; exit 1"])
    result = ComposeBackend().apply(_context(cluster, "commodore", executor))
    assert result.status == STATUS_FAILED
    assert result.message == (
        "could not write /opt/frameworks/commodore/docker-compose.yml: cat: /opt/frameworks: Permission denied"
    )


def test_compose_backend_reports_unstartable_remote_write(cluster):
    executor = FailingRemoteExecutor(["frameworks-no-such-binary"])
    result = ComposeBackend().apply(_context(cluster, "commodore", executor))
    assert result.status == STATUS_FAILED
    assert "could not start frameworks-no-such-binary" in result.message
