import threading
from pathlib import Path

import pytest

from frameworks_automation.config import ProvisionerConfig
from frameworks_automation.errors import CommandError
from frameworks_automation.executors import (
    CommandResult,
    LocalExecutor,
    SSHExecutor,
    executor_for,
    join_command,
    shell_quote,
)
from frameworks_automation.types import Host


@pytest.mark.parametrize(
    "arg,expected",
    [
        ("docker", "docker"),
        ("/opt/frameworks/svc.yml", "/opt/frameworks/svc.yml"),
        ("", "''"),
        ("two words", "'two words'"),
        ("it's", "'it'\\''s'"),
        ("$HOME", "'$HOME'"),
    ],
)
def test_shell_quote(arg, expected):
    assert shell_quote(arg) == expected


def test_join_command_quotes_each_part():
    assert join_command(["echo", "a b", "c"]) == "echo 'a b' c"


def test_ssh_wrap_builds_batch_mode_command():
    host = Host(name="edge-1", address="203.0.113.5", user="ubuntu")
    executor = SSHExecutor(host, key="/keys/edge", connect_timeout=10)
    assert executor.wrap(["docker", "ps"], None, None) == [
        "ssh",
        "-o",
        "BatchMode=yes",
        "-o",
        "ConnectTimeout=10",
        "-i",
        "/keys/edge",
        "ubuntu@203.0.113.5",
        "sh",
        "-lc",
        "'docker ps'",
    ]


def test_ssh_wrap_applies_env_and_cwd():
    executor = SSHExecutor(target="root@10.0.0.1")
    wrapped = executor.wrap(["docker", "compose", "up"], {"FOO": "bar"}, "/opt/frameworks")
    assert wrapped[:4] == ["ssh", "-o", "BatchMode=yes", "root@10.0.0.1"]
    assert wrapped[-1] == "'cd /opt/frameworks && env FOO=bar docker compose up'"


def test_ssh_connection_failure_maps_to_minus_one():
    executor = SSHExecutor(target="root@10.0.0.9")
    result = CommandResult(["ssh"], "", "ssh: connect to host 10.0.0.9 port 22: Connection refused\n", 255)
    interpreted = executor.interpret(result)
    assert interpreted.returncode == -1
    assert interpreted.error.startswith("ssh root@10.0.0.9: ssh: connect to host")


def test_ssh_remote_exit_255_is_preserved():
    executor = SSHExecutor(target="root@10.0.0.9")
    result = executor.interpret(CommandResult(["ssh"], "", "remote tool failed\n", 255))
    assert result.returncode == 255
    assert result.error is None


def test_ssh_executor_needs_a_target():
    with pytest.raises(ValueError):
        SSHExecutor()


def test_local_run_captures_streams_separately():
    result = LocalExecutor().run(["sh", "-c", "echo out; echo err >&2"], check=False)
    assert result.returncode == 0
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"


def test_local_run_preserves_exit_code():
    result = LocalExecutor().run(["sh", "-c", "exit 3"], check=False)
    assert result.returncode == 3
    assert result.error is None


def test_local_run_raises_when_checked():
    with pytest.raises(CommandError) as excinfo:
        LocalExecutor().run(["sh", "-c", "echo nope >&2; exit 2"])
    assert excinfo.value.result.returncode == 2
    assert "rc=2" in str(excinfo.value)
    assert "nope" in str(excinfo.value)


def test_missing_binary_reports_minus_one():
    result = LocalExecutor().run(["frameworks-no-such-binary"], check=False)
    assert result.returncode == -1
    assert result.error.startswith("could not start frameworks-no-such-binary")


def test_run_uses_cwd_and_env(tmp_path: Path):
    result = LocalExecutor().run(["sh", "-c", "pwd; echo $GREETING"], check=False, cwd=tmp_path, env={"GREETING": "hi"})
    lines = result.stdout.splitlines()
    assert Path(lines[0]).resolve() == tmp_path.resolve()
    assert lines[1] == "hi"


def test_run_passes_input():
    result = LocalExecutor().run(["cat"], check=False, input="payload")
    assert result.stdout == "payload"


def test_dry_run_skips_mutable_commands():
    executor = LocalExecutor(dry_run=True)
    skipped = executor.run(["sh", "-c", "exit 9"])
    assert skipped.returncode == 0
    assert skipped.stderr == "skipped (dry-run)"
    probed = executor.run(["sh", "-c", "echo probe"], mutable=False)
    assert probed.stdout == "probe\n"


def test_cancelled_executor_does_not_start():
    cancel = threading.Event()
    cancel.set()
    result = LocalExecutor(cancel=cancel).run(["sh", "-c", "echo hi"], check=False)
    assert result.returncode == -1
    assert result.error == "cancelled"


def test_timeout_kills_process():
    result = LocalExecutor().run(["sleep", "5"], check=False, timeout=0.3)
    assert result.returncode == -1
    assert result.error.startswith("timed out")


def test_local_write_and_read_file(tmp_path: Path):
    executor = LocalExecutor()
    target = tmp_path / "nested" / "docker-compose.yml"
    result = executor.write_file(target, content="services: {}\n", mode=0o640)
    assert result.ok
    assert executor.read_file(target) == "services: {}\n"
    assert (target.stat().st_mode & 0o777) == 0o640
    assert executor.read_file(tmp_path / "missing") is None


def test_local_write_respects_dry_run(tmp_path: Path):
    target = tmp_path / "file.txt"
    LocalExecutor(dry_run=True).write_file(target, content="x")
    assert not target.exists()


def test_executor_for_picks_transport():
    config = ProvisionerConfig(ssh_key=Path("/keys/default"), ssh_timeout=7)
    local = executor_for(Host(name="me", address="127.0.0.1"), config)
    remote = executor_for(Host(name="core-1", address="10.0.0.1"), config)
    assert isinstance(local, LocalExecutor)
    assert isinstance(remote, SSHExecutor)
    assert remote.ssh_prefix() == ["ssh", "-o", "BatchMode=yes", "-o", "ConnectTimeout=7", "-i", "/keys/default"]
