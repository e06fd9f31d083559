"""Frameworks cluster provisioning engine."""

from .inventory import ManifestLoader
from .runner import Orchestrator

__all__ = ["Orchestrator", "ManifestLoader"]
