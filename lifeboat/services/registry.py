"""Service Registry — the static table of services the console watches.

Loaded once from registry.yaml at startup.  Shape::

    critical_ports:
      - {port: 3001, must_stay_free: true, critical: true}
    services:
      - name: API Gateway
        port: 5000
        launch_command: [node, api-gateway.js]
    dependency_sync:
      service: Blockchain Core
      stages: 5
      failover: {name: ..., port: ..., launch_command: [...]}
    backup_files:
      - service-registry.json

Nothing here is mutated after loading.
"""

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

import yaml

import config

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceDescriptor:
    """A service the console expects to find listening on ``port``."""

    name: str
    port: int
    launch_command: tuple
    working_dir: str = None
    env: MappingProxyType = field(
        default_factory=lambda: MappingProxyType({}), hash=False, compare=False
    )

    @property
    def slug(self):
        return "_".join(self.name.lower().split())

    @classmethod
    def from_dict(cls, data):
        command = data.get("launch_command") or ()
        if isinstance(command, str):
            command = shlex.split(command)
        return cls(
            name=str(data["name"]),
            port=int(data["port"]),
            launch_command=tuple(str(part) for part in command),
            working_dir=data.get("working_dir"),
            env=MappingProxyType({str(k): str(v) for k, v in (data.get("env") or {}).items()}),
        )

    def to_dict(self):
        return {
            "name": self.name,
            "port": self.port,
            "launchCommand": list(self.launch_command),
        }


@dataclass(frozen=True)
class CriticalPort:
    port: int
    must_stay_free: bool = False
    critical: bool = False


@dataclass(frozen=True)
class DependencySync:
    """Which service has a sync status, and how to fail it over."""

    service: str
    failover: ServiceDescriptor = None
    stages: int = 5


class ServiceRegistry:
    """Read-only lookup over the configured services and critical ports."""

    def __init__(self, path=None, data=None):
        self._path = Path(path or config.REGISTRY_PATH)
        self._services = {}
        self._critical_ports = ()
        self._backup_files = ()
        self._dependency_sync = None

        if data is None:
            data = self._read()
        self._parse(data)

    @classmethod
    def from_dict(cls, data):
        """Build a registry from an in-memory mapping instead of a file."""
        return cls(data=data)

    def _read(self):
        try:
            with open(self._path, "r", encoding="utf-8") as fh:
                return yaml.safe_load(fh) or {}
        except FileNotFoundError:
            log.error("Registry not found at %s.", self._path)
        except yaml.YAMLError as exc:
            log.error("Invalid YAML in registry: %s", exc)
        return {}

    def _parse(self, data):
        for entry in data.get("services", []):
            svc = ServiceDescriptor.from_dict(entry)
            if svc.name in self._services:
                log.warning("Duplicate service %r in registry, keeping the first.", svc.name)
                continue
            self._services[svc.name] = svc

        self._critical_ports = tuple(
            CriticalPort(
                port=int(entry["port"]),
                must_stay_free=bool(entry.get("must_stay_free", False)),
                critical=bool(entry.get("critical", False)),
            )
            for entry in data.get("critical_ports", [])
        )
        self._backup_files = tuple(str(p) for p in data.get("backup_files", []))

        sync = data.get("dependency_sync")
        if sync:
            failover = sync.get("failover")
            self._dependency_sync = DependencySync(
                service=str(sync["service"]),
                failover=ServiceDescriptor.from_dict(failover) if failover else None,
                stages=max(1, int(sync.get("stages", 5))),
            )

        log.info(
            "Registry loaded: %d services, %d critical ports, %d backup files.",
            len(self._services), len(self._critical_ports), len(self._backup_files),
        )

    # ── Queries ────────────────────────────────────────────────────────────

    def list(self):
        """Return every ServiceDescriptor in registry order."""
        return list(self._services.values())

    def find(self, name):
        """Return the ServiceDescriptor called *name*, or None."""
        return self._services.get(name)

    def __len__(self):
        return len(self._services)

    @property
    def critical_ports(self):
        return self._critical_ports

    @property
    def backup_files(self):
        return self._backup_files

    @property
    def dependency_sync(self):
        return self._dependency_sync
