from __future__ import annotations

import json
import logging
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import jinja2
import yaml

from .executors import CommandResult, Executor, LocalExecutor
from .types import Manifest

logger = logging.getLogger(__name__)

RECAP_COUNTERS = ("ok", "changed", "unreachable", "failed", "skipped", "rescued", "ignored")

_RECAP_LINE = re.compile(r"^\s*(?P<host>\S+)\s*:\s*(?P<counters>(?:\w+=\d+\s*)+)$")
_COUNTER = re.compile(r"(\w+)=(\d+)")

INVENTORY_TEMPLATE = """\
{% for host in hosts %}{{ host.name }} ansible_host={{ host.address }}{% for key, value in host.vars|dictsort %} {{ key }}={{ value }}{% endfor %}
{% endfor %}{% for group, members in groups|dictsort %}
[{{ group }}]
{% for member in members %}{{ member }}
{% endfor %}{% endfor %}{% if vars %}
[all:vars]
{% for key, value in vars|dictsort %}{{ key }}={{ value }}
{% endfor %}{% endif %}
"""


@dataclass
class AnsibleTask:
    name: str
    module: str
    args: dict[str, Any] = field(default_factory=dict)
    notify: list[str] = field(default_factory=list)
    when: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    register: Optional[str] = None
    become_user: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, self.module: dict(self.args)}
        if self.become_user:
            data["become"] = True
            data["become_user"] = self.become_user
        if self.register:
            data["register"] = self.register
        if self.when:
            data["when"] = self.when
        if self.notify:
            data["notify"] = list(self.notify)
        if self.tags:
            data["tags"] = list(self.tags)
        return data


@dataclass
class Handler:
    name: str
    module: str
    args: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, self.module: dict(self.args)}


@dataclass
class Play:
    name: str
    hosts: str
    become: bool = True
    gather_facts: bool = True
    vars: dict[str, Any] = field(default_factory=dict)
    tasks: list[AnsibleTask] = field(default_factory=list)
    roles: list[str] = field(default_factory=list)
    handlers: list[Handler] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "hosts": self.hosts,
            "become": self.become,
            "gather_facts": self.gather_facts,
        }
        if self.vars:
            data["vars"] = dict(self.vars)
        if self.roles:
            data["roles"] = list(self.roles)
        if self.tasks:
            data["tasks"] = [task.to_dict() for task in self.tasks]
        if self.handlers:
            data["handlers"] = [handler.to_dict() for handler in self.handlers]
        return data


@dataclass
class Playbook:
    name: str
    plays: list[Play] = field(default_factory=list)

    def add_play(self, play: Play) -> None:
        self.plays.append(play)

    def to_yaml(self) -> str:
        return yaml.safe_dump([play.to_dict() for play in self.plays], sort_keys=False, default_flow_style=False)


@dataclass
class InventoryHost:
    name: str
    address: str
    vars: dict[str, str] = field(default_factory=dict)


@dataclass
class Inventory:
    hosts: list[InventoryHost] = field(default_factory=list)
    groups: dict[str, list[str]] = field(default_factory=dict)
    vars: dict[str, str] = field(default_factory=dict)

    def add_host(self, host: InventoryHost, *groups: str) -> None:
        self.hosts.append(host)
        for group in groups:
            members = self.groups.setdefault(group, [])
            if host.name not in members:
                members.append(host.name)

    @classmethod
    def from_manifest(
        cls,
        manifest: Manifest,
        only: Optional[list[str]] = None,
        *,
        ssh_key: Optional[Union[str, Path]] = None,
        ssh_timeout: Optional[int] = None,
    ) -> "Inventory":
        """Inventory for ``manifest``; ``ssh_key`` applies to hosts without their own key."""
        inventory = cls()
        for name in sorted(manifest.hosts):
            if only is not None and name not in only:
                continue
            host = manifest.hosts[name]
            host_vars = {"ansible_user": host.user}
            if host.is_local:
                host_vars["ansible_connection"] = "local"
            else:
                key = host.ssh_key or ssh_key
                if key:
                    host_vars["ansible_ssh_private_key_file"] = str(key)
                if ssh_timeout:
                    host_vars["ansible_ssh_common_args"] = f"'-o ConnectTimeout={ssh_timeout}'"
            inventory.add_host(InventoryHost(name, host.address, host_vars), *sorted(host.roles))
        return inventory

    def to_ini(self) -> str:
        env = jinja2.Environment(undefined=jinja2.StrictUndefined, autoescape=False)
        template = env.from_string(INVENTORY_TEMPLATE)
        return template.render(hosts=self.hosts, groups=self.groups, vars=self.vars)


@dataclass
class PlaybookRunStats:
    ok: int = 0
    changed: int = 0
    unreachable: int = 0
    failed: int = 0
    skipped: int = 0
    rescued: int = 0
    ignored: int = 0
    hosts: dict[str, dict[str, int]] = field(default_factory=dict)

    @property
    def failures(self) -> int:
        return self.failed

    @property
    def found(self) -> bool:
        return bool(self.hosts)

    @property
    def succeeded(self) -> bool:
        return self.failed == 0 and self.unreachable == 0


def parse_recap(output: str) -> PlaybookRunStats:
    """Sum the per-host counters of every ``PLAY RECAP`` section in ``output``."""
    stats = PlaybookRunStats()
    in_recap = False
    for line in output.splitlines():
        if line.startswith("PLAY RECAP"):
            in_recap = True
            continue
        if not in_recap:
            continue
        if not line.strip():
            if stats.hosts:
                in_recap = False
            continue
        match = _RECAP_LINE.match(line)
        if not match:
            in_recap = False
            continue
        counters = {key: int(value) for key, value in _COUNTER.findall(match.group("counters"))}
        host = match.group("host")
        per_host = stats.hosts.setdefault(host, {name: 0 for name in RECAP_COUNTERS})
        for name in RECAP_COUNTERS:
            value = counters.get(name, 0)
            per_host[name] += value
            setattr(stats, name, getattr(stats, name) + value)
    return stats


@dataclass
class AnsibleRunResult:
    stats: PlaybookRunStats
    output: str
    returncode: int
    command: list[str]
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        if self.returncode == -1:
            return False
        if not self.stats.found:
            return self.returncode == 0
        return self.stats.succeeded

    def summary(self) -> str:
        if self.error:
            return self.error
        if not self.stats.found:
            return f"ansible-playbook exited {self.returncode} without a recap"
        s = self.stats
        return f"ok={s.ok} changed={s.changed} unreachable={s.unreachable} failed={s.failed} skipped={s.skipped}"


class AnsibleRunner:
    """Renders playbook and inventory to a temp dir and runs ``ansible-playbook``."""

    def __init__(
        self,
        binary: str = "ansible-playbook",
        *,
        timeout: Optional[float] = None,
        become: bool = False,
        executor: Optional[Executor] = None,
    ):
        self.binary = binary
        self.timeout = timeout
        self.become = become
        self.executor = executor or LocalExecutor()

    def build_command(
        self,
        playbook_path: Path,
        inventory_path: Path,
        *,
        tags: Optional[list[str]] = None,
        limit: Optional[str] = None,
        extra_vars: Optional[dict[str, Any]] = None,
    ) -> list[str]:
        command = [self.binary, "-i", str(inventory_path), str(playbook_path)]
        if tags:
            command.extend(["--tags", ",".join(tags)])
        if limit:
            command.extend(["--limit", limit])
        if self.become:
            command.append("--become")
        if extra_vars:
            command.extend(["-e", json.dumps(extra_vars, sort_keys=True)])
        return command

    def run(
        self,
        playbook: Playbook,
        inventory: Inventory,
        *,
        tags: Optional[list[str]] = None,
        limit: Optional[str] = None,
        extra_vars: Optional[dict[str, Any]] = None,
    ) -> AnsibleRunResult:
        with tempfile.TemporaryDirectory(prefix="frameworks-ansible-") as tmp:
            workdir = Path(tmp)
            playbook_path = workdir / "playbook.yml"
            inventory_path = workdir / "inventory.ini"
            playbook_path.write_text(playbook.to_yaml())
            inventory_path.write_text(inventory.to_ini())
            command = self.build_command(
                playbook_path, inventory_path, tags=tags, limit=limit, extra_vars=extra_vars
            )
            logger.info("playbook=%r limit=%s", playbook.name, limit or "all")
            result: CommandResult = self.executor.run(
                command,
                check=False,
                cwd=workdir,
                timeout=self.timeout,
                env={"ANSIBLE_NOCOLOR": "1", "ANSIBLE_HOST_KEY_CHECKING": "False"},
            )
        output = result.output
        stats = parse_recap(output)
        run = AnsibleRunResult(stats, output, result.returncode, result.command, result.error)
        if not run.success:
            logger.warning("playbook=%r failed: %s", playbook.name, run.summary())
        return run

    def version(self) -> Optional[str]:
        result = self.executor.run([self.binary, "--version"], check=False, mutable=False)
        if not result.ok:
            return None
        first = result.stdout.strip().splitlines()
        return first[0] if first else None
