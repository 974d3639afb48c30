"""Tests for the topology library."""

from decimal import Decimal
from typing import Any

import pytest

from release_gate.exceptions import StructuralError
from release_gate.secrets import SecretBundle
from release_gate.topology import (
    AccessMode,
    Tier,
    ServiceTopology,
    load_topology,
    parse_cpu,
    parse_memory,
    parse_topology,
    validate_topology,
)

from .conftest import TOPOLOGY_FILE


async def test_load_topology() -> None:
    """Test loading the cms topology from a file."""
    topology = await load_topology(TOPOLOGY_FILE)
    assert topology.name == "cms"
    assert topology.service_names == ["db", "web"]
    assert topology.secrets == [
        "db_root_password",
        "db_password",
        "app_secret_key",
        "admin_password",
    ]

    db = topology.service("db")
    assert db.tier == Tier.DATABASE
    assert db.replicas == 1
    assert db.storage
    assert db.storage.capacity == "5Gi"
    assert db.storage.access_mode == AccessMode.EXCLUSIVE_WRITER

    web = topology.service("web")
    assert web.replicas == 4
    assert web.depends_on == ["db"]
    assert web.storage
    assert web.storage.access_mode == AccessMode.SHARED_WRITER
    assert web.resources.limits.cpu == "2"


def test_probe_defaults(topology: ServiceTopology) -> None:
    """Probe settings come from the tier with per service overrides."""
    db = topology.service("db")
    assert db.probes.liveness.to_dict() == {
        "initial_delay": 30,
        "period": 10,
        "timeout": 5,
        "failure_threshold": 3,
    }
    assert db.probes.readiness.to_dict() == {
        "initial_delay": 20,
        "period": 5,
        "timeout": 3,
        "failure_threshold": 2,
    }
    web = topology.service("web")
    assert web.probes.liveness.to_dict() == {
        "initial_delay": 60,
        "period": 15,
        "timeout": 5,
        "failure_threshold": 3,
    }
    assert web.probes.readiness.initial_delay == 20


def test_required_secrets(topology: ServiceTopology) -> None:
    """Test the union of secrets referenced by services."""
    assert topology.required_secrets == [
        "admin_password",
        "app_secret_key",
        "db_password",
        "db_root_password",
    ]


def test_dependency_order(topology_doc: dict[str, Any]) -> None:
    """Services are ordered after their dependencies."""
    topology_doc["services"] = {
        "web": topology_doc["services"]["web"],
        "db": topology_doc["services"]["db"],
    }
    topology = parse_topology(topology_doc)
    assert topology.service_names == ["web", "db"]
    assert [s.name for s in topology.dependency_order()] == ["db", "web"]


def test_valid_topology(topology_doc: dict[str, Any]) -> None:
    """The cms topology has no structural errors."""
    verdict = validate_topology(topology_doc)
    assert verdict.valid
    assert verdict.errors == []


def test_valid_with_secrets(
    topology_doc: dict[str, Any], secrets: SecretBundle
) -> None:
    """Every declared secret resolves in a complete bundle."""
    assert validate_topology(topology_doc, secrets).valid


def test_unresolved_secret(topology_doc: dict[str, Any]) -> None:
    """A declared secret without a value is a hard failure."""
    bundle = SecretBundle({"db_root_password": "x", "db_password": "y"})
    verdict = validate_topology(topology_doc, bundle)
    assert not verdict.valid
    assert verdict.errors == [
        "secret 'admin_password' has no value",
        "secret 'app_secret_key' has no value",
    ]


def test_reports_every_error(topology_doc: dict[str, Any]) -> None:
    """Validation does not stop at the first error."""
    web = topology_doc["services"]["web"]
    web["replicas"] = 0
    web["resources"]["requests"]["cpu"] = "3"
    web["storage"]["access_mode"] = "ReadOnlyMany"
    web["secrets"].append("smtp_password")
    web["depends_on"] = ["cache"]
    del topology_doc["services"]["db"]["image"]

    verdict = validate_topology(topology_doc)
    assert not verdict.valid
    assert verdict.errors == [
        "service 'db': missing image",
        "service 'web': replicas must be a positive integer",
        "service 'web': resources.requests.cpu exceeds limit",
        "service 'web': invalid storage.access_mode 'ReadOnlyMany'",
        "service 'web': secret 'smtp_password' is not declared",
        "service 'web': depends on unknown service 'cache'",
    ]


@pytest.mark.parametrize("tier", [["application"], {"name": "application"}, None])
def test_invalid_tier(topology_doc: dict[str, Any], tier: Any) -> None:
    """A tier that is not one of the known names is reported."""
    topology_doc["services"]["web"]["tier"] = tier
    verdict = validate_topology(topology_doc)
    assert verdict.errors == [
        "service 'web': tier must be one of ['database', 'application']"
    ]

def test_dependency_cycle(topology_doc: dict[str, Any]) -> None:
    """A dependency cycle is reported with its path."""
    topology_doc["services"]["db"]["depends_on"] = ["web"]
    verdict = validate_topology(topology_doc)
    assert verdict.errors == ["dependency cycle between services: db -> web -> db"]


@pytest.mark.parametrize(
    ("doc", "error"),
    [
        ([], "topology must be a mapping"),
        ({"name": "cms"}, "services must be a non-empty mapping"),
        (
            {"name": "CMS", "services": {}},
            "topology name must be a lowercase DNS label",
        ),
        (
            {"name": "cms", "secrets": "db_password", "services": {}},
            "secrets must be a list of names",
        ),
    ],
)
def test_invalid_top_level(doc: Any, error: str) -> None:
    """Test structural errors of the top level document."""
    assert error in validate_topology(doc).errors


def test_unknown_service_fields(topology_doc: dict[str, Any]) -> None:
    """Test fields that are not part of a service definition."""
    topology_doc["services"]["db"]["command"] = "mysqld"
    topology_doc["services"]["db"]["probes"] = {"startup": {"period": 1}}
    assert validate_topology(topology_doc).errors == [
        "service 'db': unknown fields ['command']",
        "service 'db': unknown probe 'startup'",
    ]


def test_parse_invalid_topology(topology_doc: dict[str, Any]) -> None:
    """Parsing an invalid topology raises with the error list."""
    topology_doc["services"]["web"]["tier"] = "frontend"
    with pytest.raises(StructuralError, match="Invalid service topology") as exc_info:
        parse_topology(topology_doc)
    assert exc_info.value.errors == [
        "service 'web': tier must be one of ['database', 'application']"
    ]


async def test_load_missing_file(tmp_path: Any) -> None:
    """Test a topology file that does not exist."""
    with pytest.raises(StructuralError, match="Unable to read topology file"):
        await load_topology(tmp_path / "missing.yaml")


async def test_load_malformed_yaml(tmp_path: Any) -> None:
    """Test a topology file that is not valid YAML."""
    path = tmp_path / "topology.yaml"
    path.write_text("name: cms\nservices: [\n")
    with pytest.raises(StructuralError, match="Unable to parse topology file"):
        await load_topology(path)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("250m", Decimal("0.25")),
        ("1", Decimal("1")),
        (2, Decimal("2")),
        ("1.5", Decimal("1.5")),
    ],
)
def test_parse_cpu(value: Any, expected: Decimal) -> None:
    """Test parsing cpu quantities."""
    assert parse_cpu(value) == expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("512Mi", Decimal(512 * 2**20)),
        ("1Gi", Decimal(2**30)),
        ("1G", Decimal(10**9)),
        ("1024", Decimal(1024)),
    ],
)
def test_parse_memory(value: str, expected: Decimal) -> None:
    """Test parsing memory quantities."""
    assert parse_memory(value) == expected


@pytest.mark.parametrize("value", ["fast", "10x", "-1", ""])
def test_parse_invalid_quantity(value: str) -> None:
    """Test malformed quantities."""
    with pytest.raises(ValueError):
        parse_memory(value)
    with pytest.raises(ValueError):
        parse_cpu(value)
