from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional


@dataclass(frozen=True)
class ServiceDefinition:
    name: str
    default_port: Optional[int] = None
    default_grpc_port: Optional[int] = None
    deploy: Optional[str] = None


# Standard platform port table. gRPC ports equal to the HTTP port are
# registered once by the validator.
STANDARD_SERVICES: tuple[ServiceDefinition, ...] = (
    ServiceDefinition("bridge", 18000),
    ServiceDefinition("commodore", 18001, 19001),
    ServiceDefinition("quartermaster", 18002, 19002),
    ServiceDefinition("purser", 18003, 19003),
    ServiceDefinition("periscope-query", 18004, 19004),
    ServiceDefinition("periscope-ingest", 18005),
    ServiceDefinition("decklog", 18006, 18006),
    ServiceDefinition("helmsman", 18007),
    ServiceDefinition("foghorn", 18008, 18019),
    ServiceDefinition("signalman", 18009, 19005),
    ServiceDefinition("navigator", 18010, 19006),
    ServiceDefinition("privateer", 18012),
    ServiceDefinition("skipper", 18018),
    ServiceDefinition("chartroom", 18030),
    ServiceDefinition("foredeck", 18031),
    ServiceDefinition("logbook", 18032),
    ServiceDefinition("nginx", 80),
    ServiceDefinition("caddy", 443),
    ServiceDefinition("prometheus", 9090),
    ServiceDefinition("grafana", 3000),
)


class ServiceRegistry:
    """Lookup of default ports and deploy names keyed by service id."""

    def __init__(self, definitions: Iterable[ServiceDefinition] = ()):
        self._definitions: dict[str, ServiceDefinition] = {}
        for definition in definitions:
            self._definitions[definition.name] = definition

    @classmethod
    def default(cls) -> "ServiceRegistry":
        return cls(STANDARD_SERVICES)

    @classmethod
    def from_catalog(cls, catalog: Any) -> "ServiceRegistry":
        """Derive a registry from catalog entries (first port is HTTP, second gRPC)."""
        definitions = []
        for name in sorted(catalog.services):
            spec = catalog.services[name]
            ports = list(spec.ports)
            definitions.append(
                ServiceDefinition(
                    name=name,
                    default_port=ports[0] if ports else None,
                    default_grpc_port=ports[1] if len(ports) > 1 else None,
                    deploy=spec.deploy or name,
                )
            )
        return cls(definitions)

    def default_port(self, name: str) -> Optional[int]:
        definition = self._definitions.get(name)
        return definition.default_port if definition else None

    def default_grpc_port(self, name: str) -> Optional[int]:
        definition = self._definitions.get(name)
        return definition.default_grpc_port if definition else None

    def deploy_name(self, name: str, override: Optional[str] = None) -> Optional[str]:
        if override:
            return override
        definition = self._definitions.get(name)
        if definition is None:
            return None
        return definition.deploy or definition.name
