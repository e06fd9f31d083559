from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence, Union

import yaml

from .errors import CatalogError

logger = logging.getLogger(__name__)

DEFAULT_CATALOG = Path(__file__).parent / "data" / "services.yaml"
DEFAULT_PROFILE = "central-all"
PLAN_FILE = "plan.yaml"
ENV_FILE = ".central.env"
FRAGMENT_PREFIX = "svc-"
FRAGMENT_SUFFIX = ".yml"

# Roles whose containers need volumes and config files wired by hand.
MANUAL_ROLES = frozenset({"observability"})


@dataclass(frozen=True)
class HealthSpec:
    protocol: str = "http"
    path: Optional[str] = None
    port: Optional[int] = None


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    role: str
    image: str
    title: str = ""
    deploy: Optional[str] = None
    ports: tuple[int, ...] = ()
    health: Optional[HealthSpec] = None
    dependencies: tuple[str, ...] = ()


@dataclass
class Catalog:
    profiles: dict[str, list[str]] = field(default_factory=dict)
    services: dict[str, ServiceSpec] = field(default_factory=dict)

    def get(self, name: str) -> ServiceSpec:
        try:
            return self.services[name]
        except KeyError:
            raise CatalogError(f"unknown service: {name}") from None


@dataclass
class SelectionPlan:
    services: list[str]
    profile: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.profile:
            data["profile"] = self.profile
        data["services"] = list(self.services)
        return data


@functools.lru_cache(maxsize=None)
def load_catalog(path: Optional[Path] = None) -> Catalog:
    """Load the catalog definitions file; the bundled one when ``path`` is None."""
    source = Path(path) if path is not None else DEFAULT_CATALOG
    data = yaml.safe_load(source.read_text()) or {}
    return parse_catalog(data)


def parse_catalog(data: dict[str, Any]) -> Catalog:
    services: dict[str, ServiceSpec] = {}
    for name, payload in (data.get("services") or {}).items():
        payload = payload or {}
        health = payload.get("health")
        services[name] = ServiceSpec(
            name=str(payload.get("name") or name),
            role=str(payload.get("role") or ""),
            image=str(payload.get("image") or ""),
            title=str(payload.get("title") or ""),
            deploy=payload.get("deploy"),
            ports=tuple(int(p) for p in payload.get("ports") or []),
            health=HealthSpec(
                protocol=str(health.get("protocol") or "http"),
                path=health.get("path"),
                port=int(health["port"]) if health.get("port") else None,
            )
            if health
            else None,
            dependencies=tuple(payload.get("dependencies") or []),
        )
    profiles = {str(k): [str(s) for s in v or []] for k, v in (data.get("profiles") or {}).items()}
    for profile, names in profiles.items():
        for name in names:
            if name not in services:
                raise CatalogError(f"profile {profile} references unknown service {name}")
    return Catalog(profiles=profiles, services=services)


def _split(values: Union[str, Iterable[str], None]) -> list[str]:
    if not values:
        return []
    if isinstance(values, str):
        values = values.split(",")
    return [v.strip() for v in values if v and v.strip()]


def resolve_selection(
    catalog: Catalog,
    profile: Optional[str] = None,
    include: Union[str, Iterable[str], None] = None,
    exclude: Union[str, Iterable[str], None] = None,
) -> list[ServiceSpec]:
    """Apply profile, then includes, then excludes; empty selections fall back to ``central-all``."""
    selected: set[str] = set()
    if profile:
        if profile not in catalog.profiles:
            raise CatalogError(f"unknown profile: {profile}")
        selected.update(catalog.profiles[profile])
    for name in _split(include):
        if name not in catalog.services:
            raise CatalogError(f"unknown service: {name}")
        selected.add(name)
    for name in _split(exclude):
        if name not in catalog.services:
            logger.debug("exclude names unknown service %s", name)
        selected.discard(name)
    if not selected:
        logger.info("empty selection, falling back to profile %s", DEFAULT_PROFILE)
        selected.update(catalog.profiles.get(DEFAULT_PROFILE, []))
    return [catalog.services[name] for name in sorted(selected)]


def save_plan(directory: Path, specs: Sequence[ServiceSpec], profile: Optional[str] = None) -> Path:
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    plan = SelectionPlan(services=sorted(spec.name for spec in specs), profile=profile)
    path = directory / PLAN_FILE
    path.write_text(yaml.safe_dump(plan.to_dict(), sort_keys=False))
    return path


def load_plan(directory: Path) -> Optional[SelectionPlan]:
    path = Path(directory) / PLAN_FILE
    if not path.exists():
        return None
    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict):
        raise CatalogError(f"{path}: plan must be a mapping")
    return SelectionPlan(
        services=sorted(str(s) for s in data.get("services") or []),
        profile=data.get("profile"),
    )


def resolve_service_list(directory: Path, selected: Union[str, Iterable[str], None] = None) -> list[str]:
    """Explicit selection wins, then ``plan.yaml``, then whatever fragments exist."""
    explicit = _split(selected)
    if explicit:
        return explicit
    plan = load_plan(directory)
    if plan is not None and plan.services:
        return list(plan.services)
    names = []
    for path in sorted(Path(directory).glob(f"{FRAGMENT_PREFIX}*{FRAGMENT_SUFFIX}")):
        names.append(path.name[len(FRAGMENT_PREFIX) : -len(FRAGMENT_SUFFIX)])
    return names


def fragment_name(service: str) -> str:
    return f"{FRAGMENT_PREFIX}{service}{FRAGMENT_SUFFIX}"


def render_fragment(spec: ServiceSpec, registry: Any = None) -> dict[str, Any]:
    ports = list(spec.ports)
    if not ports and registry is not None:
        ports = [p for p in (registry.default_port(spec.name), registry.default_grpc_port(spec.name)) if p]
    block: dict[str, Any] = {
        "image": spec.image,
        "container_name": f"frameworks-{spec.name}",
        "restart": "always",
        "env_file": [ENV_FILE],
    }
    unique_ports = list(dict.fromkeys(ports))
    if unique_ports:
        block["ports"] = [f"{port}:{port}" for port in unique_ports]
    return {"services": {spec.name: block}}


def generate_fragments(
    directory: Path,
    specs: Sequence[ServiceSpec],
    overwrite: bool = False,
    registry: Any = None,
) -> list[Path]:
    directory = Path(directory)
    wanted: list[tuple[ServiceSpec, Path]] = []
    for spec in specs:
        if spec.role in MANUAL_ROLES:
            logger.warning(
                "skipping fragment for %s: role %s needs manual volume and config wiring",
                spec.name,
                spec.role,
            )
            continue
        wanted.append((spec, directory / fragment_name(spec.name)))

    if not overwrite:
        for _, path in wanted:
            if path.exists():
                raise CatalogError(f"file exists: {path} (use overwrite)")

    directory.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for spec, path in wanted:
        path.write_text(yaml.safe_dump(render_fragment(spec, registry), sort_keys=False))
        logger.debug("wrote fragment %s", path)
        written.append(path)
    return written


def summarize_selection(specs: Sequence[ServiceSpec]) -> str:
    by_role: dict[str, list[str]] = {}
    for spec in specs:
        by_role.setdefault(spec.role or "other", []).append(spec.name)
    lines = []
    for role in sorted(by_role):
        lines.append(f"  {role}: {', '.join(sorted(by_role[role]))}")
    return "\n".join(lines) + ("\n" if lines else "")


def compose_command(services: Sequence[str], action: str, *extra: str, env_file: str = ENV_FILE) -> list[str]:
    """Build ``docker compose -f svc-a.yml ... --env-file .central.env <action>``."""
    command = ["docker", "compose"]
    for name in services:
        command.extend(["-f", fragment_name(name.strip())])
    command.extend(["--env-file", env_file, action])
    command.extend(extra)
    return command
