"""Shared fixtures: a small registry, a fake prober and a wired manager.

The fake prober keeps the set of "bound" ports in memory, so recovery
runs never touch real sockets or processes.  The simulated launcher
marks a service's port as bound when it is launched.
"""

import sqlite3

import pytest

from lifeboat.errors import PortProbeFailure
from lifeboat.services import fault_injection
from lifeboat.services.backup import BackupStore
from lifeboat.services.events import EventBroadcaster
from lifeboat.services.launcher import SimulatedLauncher
from lifeboat.services.notifier import Notifier
from lifeboat.services.recovery import RecoveryManager
from lifeboat.services.registry import ServiceRegistry


REGISTRY_DATA = {
    "critical_ports": [
        {"port": 3001, "must_stay_free": True, "critical": True},
        {"port": 3002, "must_stay_free": True},
        {"port": 5000},
        {"port": 5010},
    ],
    "services": [
        {"name": "API Gateway", "port": 5000, "launch_command": ["node", "api-gateway.js"]},
        {"name": "Banking Service", "port": 5010, "launch_command": "node banking-server.js"},
    ],
    "dependency_sync": {
        "service": "Banking Service",
        "stages": 3,
        "failover": {
            "name": "Banking Failover",
            "port": 5011,
            "launch_command": ["node", "banking-failover.js"],
        },
    },
    "backup_files": ["service-registry.json", "server/db.ts"],
}


class FakePortProber:
    """In-memory stand-in for PortProber."""

    def __init__(self, bound=()):
        self.bound = set(bound)
        self.failing = set()
        self.stuck = set()
        self.released = []

    def is_bound(self, port):
        if port in self.failing:
            raise PortProbeFailure(port, "simulated probe failure")
        return port in self.bound

    def release(self, port):
        self.released.append(port)
        if port in self.stuck:
            return False
        self.bound.discard(port)
        return True


@pytest.fixture
def registry():
    return ServiceRegistry.from_dict(REGISTRY_DATA)


@pytest.fixture
def prober():
    """Port 3001 is squatted; no service is running."""
    return FakePortProber(bound={3001})


@pytest.fixture
def launcher(prober):
    return SimulatedLauncher(on_launch=lambda svc: prober.bound.add(svc.port))


@pytest.fixture
def broadcaster():
    return EventBroadcaster(queue_size=1000)


@pytest.fixture
def database_url(tmp_path):
    """A reachable SQLite database."""
    path = tmp_path / "app.db"
    sqlite3.connect(str(path)).close()
    return f"sqlite:///{path}"


@pytest.fixture
def project_root(tmp_path):
    root = tmp_path / "project"
    (root / "server").mkdir(parents=True)
    (root / "service-registry.json").write_text('{"version": 1}')
    (root / "server" / "db.ts").write_text("export const db = 1;")
    return root


@pytest.fixture
def backups(tmp_path, project_root):
    return BackupStore(tmp_path / "backups", project_root, REGISTRY_DATA["backup_files"])


@pytest.fixture
def make_manager(registry, prober, launcher, broadcaster, backups, database_url):
    """Factory for a RecoveryManager wired to the fakes above."""

    def _make(**overrides):
        options = {
            "prober": prober,
            "launcher": launcher,
            "broadcaster": broadcaster,
            "backups": backups,
            "notifier": Notifier(broadcaster),
            "database_url": database_url,
            "migration_command": "",
            "spawn_grace": 0,
            "service_quorum": 0.8,
            "resync_stage_delay": 0,
            "injectors": [fault_injection.dependency_sync_lag],
            "test_mode": False,
            "sleep": lambda seconds: None,
            "record_history": False,
        }
        options.update(overrides)
        return RecoveryManager(registry, **options)

    return _make


@pytest.fixture
def manager(make_manager):
    return make_manager()
