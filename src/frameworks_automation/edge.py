from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import requests
import yaml
from jinja2 import Environment, StrictUndefined

from .config import ProvisionerConfig
from .diagnostics import remote_preflight
from .errors import EdgeError
from .executors import CommandResult, Executor, SSHExecutor
from .health import HTTPSChecker
from .health.base import STATUS_UNHEALTHY
from .playbooks import unit_file
from .secrets import SecretResolver
from .types import EdgeManifest, EdgeNode

logger = logging.getLogger(__name__)

EDGE_DIR = "/opt/frameworks/edge"
EDGE_COMPOSE = f"{EDGE_DIR}/docker-compose.edge.yml"
EDGE_ENV = f"{EDGE_DIR}/.edge.env"
EDGE_CADDYFILE = f"{EDGE_DIR}/Caddyfile"
CERT_DIR = "/etc/frameworks/certs"

EDGE_COMPONENTS = ("mistserver", "helmsman", "caddy")
EDGE_IMAGES = {
    "mistserver": "frameworks/mistserver:latest",
    "helmsman": "frameworks/helmsman:latest",
    "caddy": "caddy:2",
}
MIST_PORT = 8080
HELMSMAN_PORT = 18007

SYSCTL_PATH = "/etc/sysctl.d/frameworks-edge.conf"
SYSCTL_SETTINGS = """\
net.core.rmem_max = 16777216
net.core.wmem_max = 16777216
net.core.somaxconn = 8192
net.ipv4.ip_local_port_range = 16384 65535
"""
LIMITS_PATH = "/etc/security/limits.d/frameworks-edge.conf"
LIMITS_SETTINGS = """\
* soft nofile 1048576
* hard nofile 1048576
"""

CADDYFILE_TEMPLATE = """\
{
    email {{ email }}
}

{{ site }} {
{% if certs %}    tls {{ cert_dir }}/cert.pem {{ cert_dir }}/key.pem
{% endif %}    handle /health {
        respond "ok" 200
    }
    handle /webhooks/* {
        reverse_proxy {{ helmsman }}
    }
    handle {
        reverse_proxy {{ mistserver }}
    }
}
"""


@dataclass
class EdgeResult:
    node: str
    ok: bool
    mode: str
    message: str
    domain: Optional[str] = None
    node_id: Optional[str] = None
    steps: list[str] = field(default_factory=list)


def _detail(result: CommandResult) -> str:
    lines = (result.stderr or result.stdout).strip().splitlines()
    return result.error or (lines[-1] if lines else f"exit {result.returncode}")


def upstreams(mode: str) -> dict[str, str]:
    if mode == "native":
        return {"mistserver": f"localhost:{MIST_PORT}", "helmsman": f"localhost:{HELMSMAN_PORT}"}
    return {"mistserver": f"mistserver:{MIST_PORT}", "helmsman": f"helmsman:{HELMSMAN_PORT}"}


def render_caddyfile(email: str, domain: Optional[str], mode: str, certs: bool = False) -> str:
    env = Environment(undefined=StrictUndefined, autoescape=False, keep_trailing_newline=True)
    template = env.from_string(CADDYFILE_TEMPLATE)
    return template.render(email=email, site=domain or ":443", certs=certs, cert_dir=CERT_DIR, **upstreams(mode))


def render_edge_compose(certs: bool = False) -> dict[str, Any]:
    """Compose document for the three-container edge stack."""
    caddy_volumes = [f"{EDGE_CADDYFILE}:/etc/caddy/Caddyfile:ro", "caddy-data:/data"]
    if certs:
        caddy_volumes.append(f"{CERT_DIR}:{CERT_DIR}:ro")
    services = {
        "mistserver": {
            "image": EDGE_IMAGES["mistserver"],
            "container_name": "frameworks-mistserver",
            "restart": "always",
            "env_file": [EDGE_ENV],
            "volumes": ["mist-config:/config"],
        },
        "helmsman": {
            "image": EDGE_IMAGES["helmsman"],
            "container_name": "frameworks-helmsman",
            "restart": "always",
            "env_file": [EDGE_ENV],
            "depends_on": ["mistserver"],
        },
        "caddy": {
            "image": EDGE_IMAGES["caddy"],
            "container_name": "frameworks-caddy",
            "restart": "always",
            "ports": ["80:80", "443:443"],
            "volumes": caddy_volumes,
            "depends_on": ["helmsman"],
        },
    }
    return {"services": services, "volumes": {"mist-config": {}, "caddy-data": {}}}


def format_env(values: dict[str, str]) -> str:
    return "".join(f"{key}={value}\n" for key, value in values.items())


class EdgeProvisioner:
    """Brings up the edge stack (MistServer, Helmsman, Caddy) on each node of an edge manifest.

    Per node: preflight, optional sysctl tuning, optional Quartermaster
    registration, optional certificate staging, docker or native install,
    then HTTPS verification against the node's primary domain.
    """

    def __init__(
        self,
        edge: EdgeManifest,
        config: Optional[ProvisionerConfig] = None,
        *,
        secrets: Optional[SecretResolver] = None,
        dry_run: bool = False,
        cancel: Optional[threading.Event] = None,
        executor_factory: Optional[Callable[[EdgeNode], Executor]] = None,
        session: Optional[requests.Session] = None,
        verify_timeout: float = 180.0,
        poll_interval: float = 5.0,
    ):
        self.edge = edge
        self.config = config or ProvisionerConfig()
        self.secrets = secrets or SecretResolver(self.config.aws_region, self.config.aws_profile)
        self.dry_run = dry_run
        self.cancel = cancel or threading.Event()
        self.executor_factory = executor_factory or self._ssh_executor
        self.session = session or requests.Session()
        self.verify_timeout = verify_timeout
        self.poll_interval = poll_interval

    def _ssh_executor(self, node: EdgeNode) -> Executor:
        return SSHExecutor(
            target=node.ssh,
            key=node.ssh_key or self.config.ssh_key,
            connect_timeout=self.config.ssh_timeout,
            dry_run=self.dry_run,
            cancel=self.cancel,
        )

    def provision_all(self, parallel: int = 1) -> list[EdgeResult]:
        nodes = self.edge.nodes
        if not nodes:
            return []
        workers = max(1, min(parallel, len(nodes), self.config.parallel_cap))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(self.provision, nodes))

    def provision(self, node: EdgeNode) -> EdgeResult:
        mode = node.resolved_mode(self.edge.mode)
        domain = self.edge.primary_domain(node)
        result = EdgeResult(node.name, False, mode, "", domain)
        if self.cancel.is_set():
            result.message = "cancelled"
            return result

        executor = self.executor_factory(node)
        logger.info("edge node=%s mode=%s domain=%s", node.name, mode, domain or "-")
        try:
            self._preflight(executor, mode)
            result.steps.append("preflight")
            if node.apply_tune:
                self._apply_tuning(executor)
                result.steps.append("tune")
            if node.register_qm:
                result.node_id = self._register(node)
                result.steps.append("register")
            certs = False
            if self.edge.fetch_cert and domain:
                self._stage_certificates(executor, domain)
                certs = True
                result.steps.append("certificates")
            env = self.edge_env(node, mode, domain, result.node_id)
            if mode == "docker":
                self._install_docker(executor, env, domain, certs)
            elif mode == "native":
                self._install_native(executor, env, domain, certs)
            else:
                raise EdgeError("install", f"unsupported mode {mode!r} (must be docker or native)")
            result.steps.append("install")
            if domain and not self.dry_run:
                self._verify_https(domain)
                result.steps.append("verify")
        except EdgeError as exc:
            logger.error("edge node=%s %s failed: %s", node.name, exc.step, exc)
            result.message = str(exc)
            return result

        result.ok = True
        result.message = f"edge stack up ({mode})" + (f" at https://{domain}/health" if domain else "")
        return result

    def edge_env(self, node: EdgeNode, mode: str, domain: Optional[str], node_id: Optional[str]) -> dict[str, str]:
        """Environment shared by Helmsman and the ``.edge.env`` file."""
        links = upstreams(mode)
        env = {
            "NODE_NAME": node.name,
            "DEPLOY_MODE": mode,
            "ACME_EMAIL": self.edge.email,
            "EDGE_DOMAIN": domain or "",
            "EDGE_PUBLIC_URL": f"https://{domain}/view" if domain else "",
            "MISTSERVER_URL": f"http://{links['mistserver']}",
            "HELMSMAN_WEBHOOK_URL": f"http://{links['helmsman']}",
        }
        if self.edge.cluster_id:
            env["CLUSTER_ID"] = self.edge.cluster_id
        if node.region:
            env["REGION"] = node.region
        if node_id:
            env["NODE_ID"] = node_id
        if self.edge.enrollment_token is not None:
            env["EDGE_ENROLLMENT_TOKEN"] = str(self.secrets.resolve_value(self.edge.enrollment_token))
        return env

    # Steps -------------------------------------------------------------------
    def _run(self, executor: Executor, step: str, command: list[str]) -> CommandResult:
        result = executor.run(command, check=False, timeout=self.config.command_timeout)
        if not result.ok:
            raise EdgeError(step, f"{step}: {command[0]} failed: {_detail(result)}")
        return result

    def _write(self, executor: Executor, step: str, path: str, content: str, mode: int = 0o644) -> None:
        written = executor.write_file(path, content=content, mode=mode)
        if not written.ok:
            raise EdgeError(step, f"{step}: could not write {path}: {_detail(written)}")

    def _preflight(self, executor: Executor, mode: str) -> None:
        failed = [r for r in remote_preflight(executor, mode) if r.status == STATUS_UNHEALTHY]
        if failed:
            reasons = "; ".join(f"{r.name}: {r.message}" for r in failed)
            raise EdgeError("preflight", f"preflight failed: {reasons}")

    def _apply_tuning(self, executor: Executor) -> None:
        self._write(executor, "tune", SYSCTL_PATH, SYSCTL_SETTINGS)
        self._write(executor, "tune", LIMITS_PATH, LIMITS_SETTINGS)
        reload = executor.run(["sysctl", "--system"], check=False, timeout=self.config.command_timeout)
        if not reload.ok:
            logger.warning("host=%s sysctl --system: %s", executor.name, _detail(reload))

    def _headers(self) -> dict[str, str]:
        if self.config.service_token:
            return {"Authorization": f"Bearer {self.config.service_token}"}
        return {}

    def _register(self, node: EdgeNode) -> str:
        if not self.config.quartermaster_url:
            raise EdgeError("register", "register_qm requires endpoints.quartermaster_url in the provisioner config")
        node_id = str(uuid.uuid4())
        payload: dict[str, Any] = {
            "node_id": node_id,
            "node_name": node.name,
            "node_type": "edge",
            "cluster_id": self.edge.cluster_id,
            "external_ip": node.ssh.rsplit("@", 1)[-1],
        }
        if node.region:
            payload["region"] = node.region
        url = f"{self.config.quartermaster_url.rstrip('/')}/api/v1/nodes"
        if self.dry_run:
            logger.info("dry-run: would register %s at %s", node.name, url)
            return node_id
        try:
            response = self.session.post(url, json=payload, headers=self._headers(), timeout=30)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise EdgeError("register", f"quartermaster registration failed: {exc}") from exc
        logger.info("registered edge node %s as %s", node.name, node_id)
        return node_id

    def _stage_certificates(self, executor: Executor, domain: str) -> None:
        if not self.config.navigator_url:
            raise EdgeError("certificates", "fetch_cert requires endpoints.navigator_url in the provisioner config")
        url = f"{self.config.navigator_url.rstrip('/')}/api/v1/certificates"
        if self.dry_run:
            logger.info("dry-run: would request a certificate for %s from %s", domain, url)
            return
        try:
            response = self.session.post(
                url, json={"domain": domain, "email": self.edge.email}, headers=self._headers(), timeout=120
            )
            response.raise_for_status()
            issued = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise EdgeError("certificates", f"certificate request for {domain} failed: {exc}") from exc
        cert, key = issued.get("cert_pem"), issued.get("key_pem")
        if not cert or not key:
            raise EdgeError("certificates", f"navigator returned no certificate for {domain}")
        self._write(executor, "certificates", f"{CERT_DIR}/cert.pem", cert, 0o644)
        self._write(executor, "certificates", f"{CERT_DIR}/key.pem", key, 0o600)

    def _install_docker(self, executor: Executor, env: dict[str, str], domain: Optional[str], certs: bool) -> None:
        compose = yaml.safe_dump(render_edge_compose(certs), sort_keys=False)
        self._write(executor, "install", EDGE_COMPOSE, compose, 0o600)
        caddyfile = render_caddyfile(self.edge.email, domain, "docker", certs)
        self._write(executor, "install", EDGE_CADDYFILE, caddyfile, 0o600)
        self._write(executor, "install", EDGE_ENV, format_env(env), 0o600)
        self._run(executor, "install", ["docker", "compose", "-f", EDGE_COMPOSE, "--env-file", EDGE_ENV, "up", "-d"])

    def _install_native(self, executor: Executor, env: dict[str, str], domain: Optional[str], certs: bool) -> None:
        missing = [name for name in EDGE_COMPONENTS if not self.edge.binaries.get(name)]
        if missing:
            raise EdgeError("install", f"native mode requires binaries for: {', '.join(missing)}")
        env_files = {
            "mistserver": {"MIST_DEBUG": "3"},
            "helmsman": env,
            "caddy": {"CADDY_EMAIL": self.edge.email},
        }
        for name in EDGE_COMPONENTS:
            home = f"/opt/frameworks/{name}"
            binary = f"{home}/{name}"
            self._run(executor, "install", ["mkdir", "-p", home])
            self._run(executor, "install", ["curl", "-fsSL", "-o", binary, self.edge.binaries[name]])
            self._run(executor, "install", ["chmod", "0755", binary])
            env_file = f"/etc/frameworks/{name}.env"
            self._write(executor, "install", env_file, format_env(env_files[name]), 0o600)
            exec_start = f"{binary} run --config /etc/caddy/Caddyfile" if name == "caddy" else binary
            unit = unit_file(f"Frameworks {name} (edge)", exec_start, env_file=env_file)
            self._write(executor, "install", f"/etc/systemd/system/frameworks-{name}.service", unit)
        caddyfile = render_caddyfile(self.edge.email, domain, "native", certs)
        self._write(executor, "install", "/etc/caddy/Caddyfile", caddyfile)
        self._write(executor, "install", EDGE_ENV, format_env(env), 0o600)
        self._run(executor, "install", ["systemctl", "daemon-reload"])
        self._run(
            executor,
            "install",
            ["systemctl", "enable", "--now", *(f"frameworks-{name}" for name in EDGE_COMPONENTS)],
        )

    def _verify_https(self, domain: str) -> None:
        checker = HTTPSChecker(
            path="/health", timeout=5.0, name=f"edge:{domain}", verify=False, session=self.session
        )
        deadline = time.monotonic() + self.verify_timeout
        while True:
            check = checker.check(domain, 443)
            if check.ok:
                return
            if time.monotonic() >= deadline:
                raise EdgeError("verify", f"HTTPS not ready at https://{domain}/health: {check.error or check.message}")
            if self.cancel.wait(self.poll_interval):
                raise EdgeError("verify", "cancelled")
