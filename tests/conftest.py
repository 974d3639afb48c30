"""Fixtures shared by the release-gate tests."""

from pathlib import Path
from typing import Any

import pytest
import yaml

from release_gate.config import PipelineConfig, RendererConfig
from release_gate.secrets import SecretBundle
from release_gate.topology import ServiceTopology, parse_topology

TESTDATA = Path("tests/testdata/cms")
TOPOLOGY_FILE = TESTDATA / "topology.yaml"
TEMPLATE_DIR = TESTDATA / "templates"
SECRETS_DIR = TESTDATA / "secrets"

SECRET_VALUES = {
    "db_root_password": "r00t-pass",
    "db_password": "db-pass",
    "app_secret_key": "not-a-real-key",
    "admin_password": "admin-pass",
}


@pytest.fixture(name="topology_doc")
def mock_topology_doc() -> dict[str, Any]:
    """A fresh copy of the raw cms topology document."""
    return yaml.safe_load(TOPOLOGY_FILE.read_text())


@pytest.fixture(name="topology")
def mock_topology(topology_doc: dict[str, Any]) -> ServiceTopology:
    """The parsed cms topology."""
    return parse_topology(topology_doc)


@pytest.fixture(name="secrets")
def mock_secrets() -> SecretBundle:
    """A complete secret bundle for the cms topology."""
    return SecretBundle(dict(SECRET_VALUES))


@pytest.fixture(name="renderer_config")
def mock_renderer_config() -> RendererConfig:
    """Renderer config pointing at the cms templates."""
    return RendererConfig(
        template_dir=TEMPLATE_DIR,
        namespace="cms",
        bindings={"hostname": "cms.example.com"},
    )


@pytest.fixture(name="pipeline_config")
def mock_pipeline_config(
    renderer_config: RendererConfig, tmp_path: Path
) -> PipelineConfig:
    """Pipeline config that polls without waiting and writes into tmp_path."""
    config = PipelineConfig(renderer=renderer_config)
    config.health.poll_interval = 0
    config.health.max_attempts = 3
    config.packager.output_dir = tmp_path / "dist"
    config.publisher.url = "ftps://upload.example.com"
    config.publisher.remote_dir = "/releases/cms"
    return config
