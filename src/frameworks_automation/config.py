from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]


DEFAULT_CONFIG = Path("/etc/frameworks/provision.conf")
DEFAULT_MANIFEST = Path("/etc/frameworks/cluster.yaml")
DEFAULT_STATE_FILE = Path("/var/lib/frameworks/provision-state.json")


@dataclass
class ProvisionerConfig:
    manifest: Path = DEFAULT_MANIFEST
    state_file: Optional[Path] = DEFAULT_STATE_FILE
    plan_dir: Optional[Path] = None
    ssh_key: Optional[Path] = None
    ssh_timeout: int = 10
    ansible_timeout: float = 1800.0
    command_timeout: float = 600.0
    health_timeout: float = 5.0
    parallel_cap: int = 8
    ansible_playbook: str = "ansible-playbook"
    become: bool = True
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None
    quartermaster_url: Optional[str] = None
    navigator_url: Optional[str] = None
    service_token: Optional[str] = None


def load_config(path: Path) -> ProvisionerConfig:
    if not path.exists():
        return ProvisionerConfig()
    data = tomllib.loads(path.read_text())
    defaults = data.get("defaults", {})
    state_file = defaults.get("state_file", DEFAULT_STATE_FILE)
    plan_dir = defaults.get("plan_dir")
    ssh_key = defaults.get("ssh_key")
    aws_region = defaults.get("aws_region")
    aws_profile = defaults.get("aws_profile")
    endpoints = data.get("endpoints", {})
    parallel_cap = int(defaults.get("parallel_cap", 8))
    if parallel_cap < 1:
        raise ValueError(f"{path}: parallel_cap must be at least 1")
    return ProvisionerConfig(
        manifest=Path(defaults.get("manifest", DEFAULT_MANIFEST)),
        state_file=Path(state_file) if state_file else None,
        plan_dir=Path(plan_dir) if plan_dir else None,
        ssh_key=Path(ssh_key) if ssh_key else None,
        ssh_timeout=int(defaults.get("ssh_timeout", 10)),
        ansible_timeout=float(defaults.get("ansible_timeout", 1800.0)),
        command_timeout=float(defaults.get("command_timeout", 600.0)),
        health_timeout=float(defaults.get("health_timeout", 5.0)),
        parallel_cap=parallel_cap,
        ansible_playbook=str(defaults.get("ansible_playbook", "ansible-playbook")),
        become=bool(defaults.get("become", True)),
        aws_region=str(aws_region) if aws_region else None,
        aws_profile=str(aws_profile) if aws_profile else None,
        quartermaster_url=endpoints.get("quartermaster_url"),
        navigator_url=endpoints.get("navigator_url"),
        service_token=endpoints.get("service_token"),
    )
