"""Beast + Edge-case tests for the Service Registry.

Covers:
  - Loading the shipped registry.yaml
  - Loading from a YAML file / in-memory mapping
  - Missing file and malformed YAML → empty registry
  - Lookups, slugs, launch-command parsing, duplicates
"""

import pytest

import config
from lifeboat.services.registry import ServiceDescriptor, ServiceRegistry


def test_shipped_registry_loads():
    """Beast: registry.yaml has the five critical services."""
    reg = ServiceRegistry(config.BASE_DIR / "registry.yaml")
    assert len(reg) == 5
    names = [svc.name for svc in reg.list()]
    assert names[0] == "API Gateway"
    assert "Blockchain Core" in names
    assert [p.port for p in reg.critical_ports] == [3001, 4545, 5000, 5010, 5040, 5300]
    assert reg.dependency_sync.service == "Blockchain Core"
    assert reg.dependency_sync.failover.port == 4546
    assert "service-registry.json" in reg.backup_files


def test_load_from_file(tmp_path):
    """Beast: a YAML file on disk is parsed into descriptors."""
    path = tmp_path / "registry.yaml"
    path.write_text(
        "services:\n"
        "  - name: Ledger\n"
        "    port: 6000\n"
        "    launch_command: python ledger.py --fast\n"
        "    env:\n"
        "      MODE: 1\n"
        "critical_ports:\n"
        "  - port: 6001\n"
        "    must_stay_free: true\n"
    )
    reg = ServiceRegistry(path)
    svc = reg.find("Ledger")
    assert svc.port == 6000
    assert svc.launch_command == ("python", "ledger.py", "--fast")
    assert svc.env["MODE"] == "1"
    port = reg.critical_ports[0]
    assert port.must_stay_free is True
    assert port.critical is False


def test_missing_file_gives_empty_registry(tmp_path):
    """4% edge: a missing registry file is logged, not fatal."""
    reg = ServiceRegistry(tmp_path / "nope.yaml")
    assert len(reg) == 0
    assert reg.list() == []
    assert reg.critical_ports == ()
    assert reg.dependency_sync is None


def test_malformed_yaml_gives_empty_registry(tmp_path):
    """4% edge: invalid YAML is logged, not fatal."""
    path = tmp_path / "broken.yaml"
    path.write_text("services: [unclosed\n")
    assert len(ServiceRegistry(path)) == 0


def test_find_unknown_returns_none(registry):
    """4% edge: looking up an unknown service returns None."""
    assert registry.find("Nonexistent Service") is None


def test_duplicate_names_keep_first():
    """4% edge: a duplicated service name keeps the first entry."""
    reg = ServiceRegistry.from_dict({
        "services": [
            {"name": "Api", "port": 1000},
            {"name": "Api", "port": 2000},
        ]
    })
    assert len(reg) == 1
    assert reg.find("Api").port == 1000


def test_slug():
    """Beast: slugs are lowercase, underscore-joined names."""
    svc = ServiceDescriptor.from_dict({"name": "Marqeta  Service", "port": 5040})
    assert svc.slug == "marqeta_service"


def test_descriptor_is_immutable(registry):
    """Beast: descriptors cannot be changed after loading."""
    svc = registry.find("API Gateway")
    with pytest.raises(Exception):
        svc.port = 9999
    with pytest.raises(TypeError):
        svc.env["X"] = "1"


def test_descriptor_to_dict(registry):
    """Beast: to_dict exposes the public fields."""
    data = registry.find("Banking Service").to_dict()
    assert data == {
        "name": "Banking Service",
        "port": 5010,
        "launchCommand": ["node", "banking-server.js"],
    }


def test_descriptor_is_hashable(registry):
    """4% edge: descriptors can be used in sets and as dict keys."""
    svc = registry.find("API Gateway")
    assert svc in {svc}
    assert {svc: 1}[svc] == 1
    a = ServiceDescriptor.from_dict({"name": "Api", "port": 1000, "env": {"MODE": "a"}})
    b = ServiceDescriptor.from_dict({"name": "Api", "port": 1000, "env": {"MODE": "b"}})
    assert a == b
    assert hash(a) == hash(b)
