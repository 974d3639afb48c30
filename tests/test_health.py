"""Tests for the health gate."""

import asyncio
import json
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
import yaml

from release_gate.command import Command
from release_gate.config import HealthGateConfig
from release_gate.exceptions import ComposeException, StructuralError
from release_gate.health import (
    ComposeRuntime,
    HealthGate,
    ServiceHealth,
    ServiceStatus,
    await_healthy,
    compose_document,
    parse_ps_output,
)
from release_gate.secrets import SecretBundle
from release_gate.topology import ServiceTopology, parse_topology

from .fakes import FakeRuntime


async def test_healthy_first_poll(
    topology: ServiceTopology, secrets: SecretBundle
) -> None:
    """A topology that is healthy right away passes after one poll."""
    runtime = FakeRuntime()
    report = await await_healthy(topology, secrets, runtime, poll_interval=0)
    assert report.healthy
    assert report.status == ServiceHealth.HEALTHY
    assert report.attempts == 1
    assert report.unhealthy_services == []
    assert report.diagnostics == {}
    assert runtime.started is topology
    assert runtime.teardowns == 1


async def test_healthy_after_polls(
    topology: ServiceTopology, secrets: SecretBundle
) -> None:
    """Polling continues until every service is healthy on the same poll."""
    runtime = FakeRuntime(healthy_after=3)
    with patch("release_gate.health.asyncio.sleep") as mock_sleep:
        report = await await_healthy(
            topology, secrets, runtime, poll_interval=2.0, max_attempts=5
        )
    assert report.healthy
    assert report.attempts == 3
    assert runtime.polls == {"db": 3, "web": 3}
    assert [call.args for call in mock_sleep.call_args_list] == [(2.0,), (2.0,)]
    assert runtime.teardowns == 1


async def test_timeout(topology: ServiceTopology, secrets: SecretBundle) -> None:
    """A service that never becomes healthy times out after exactly N polls."""
    runtime = FakeRuntime(unhealthy={"web"})
    with patch("release_gate.health.asyncio.sleep") as mock_sleep:
        report = await await_healthy(
            topology, secrets, runtime, poll_interval=2.0, max_attempts=4, log_tail=20
        )
    assert not report.healthy
    assert report.status == ServiceHealth.TIMEOUT
    assert report.attempts == 4
    assert runtime.polls == {"db": 4, "web": 4}
    # No sleep after the final poll
    assert mock_sleep.call_count == 3
    assert report.unhealthy_services == ["web"]
    assert report.services["db"].health == ServiceHealth.HEALTHY
    assert report.services["web"].health == ServiceHealth.TIMEOUT
    assert report.services["web"].reason == "state exited"
    assert report.diagnostics == {"web": "web: last 20 lines\n"}
    assert runtime.teardowns == 1


async def test_zero_attempts(topology: ServiceTopology, secrets: SecretBundle) -> None:
    """No polls at all is an immediate timeout."""
    runtime = FakeRuntime()
    report = await await_healthy(topology, secrets, runtime, max_attempts=0)
    assert report.status == ServiceHealth.TIMEOUT
    assert report.attempts == 0
    assert runtime.polls == {}
    assert report.unhealthy_services == ["db", "web"]
    assert report.services["db"].reason == "never polled"
    assert runtime.teardowns == 1


async def test_negative_attempts(
    topology: ServiceTopology, secrets: SecretBundle
) -> None:
    """A negative budget is rejected before anything is started."""
    runtime = FakeRuntime()
    with pytest.raises(StructuralError, match="max_attempts must not be negative"):
        await await_healthy(topology, secrets, runtime, max_attempts=-1)
    assert runtime.started is None


async def test_teardown_on_error(
    topology: ServiceTopology, secrets: SecretBundle
) -> None:
    """The runtime is torn down when polling raises."""
    runtime = FakeRuntime()
    runtime.fail_on_status = ComposeException("docker daemon not running")
    with pytest.raises(ComposeException, match="docker daemon not running"):
        await await_healthy(topology, secrets, runtime, poll_interval=0)
    assert runtime.teardowns == 1


async def test_teardown_idempotent() -> None:
    """Only the first teardown releases anything."""
    runtime = FakeRuntime()
    await runtime.teardown()
    await runtime.teardown()
    assert runtime.teardowns == 1


class SlowCheckRuntime(FakeRuntime):
    """The db check fails at once while the web check is still running."""

    def __init__(self) -> None:
        super().__init__()
        self.cancelled: list[str] = []
        self.after_teardown: list[str] = []

    async def service_status(self, service: str) -> ServiceStatus:
        if service == "db":
            raise ComposeException("docker daemon not running")
        try:
            await asyncio.sleep(0.05)
        except asyncio.CancelledError:
            self.cancelled.append(service)
            raise
        if self.teardowns:
            self.after_teardown.append(service)
        return await super().service_status(service)


async def test_failed_check_cancels_others(
    topology: ServiceTopology, secrets: SecretBundle
) -> None:
    """No service check keeps running after the runtime is torn down."""
    runtime = SlowCheckRuntime()
    with pytest.raises(ComposeException, match="docker daemon not running"):
        await await_healthy(topology, secrets, runtime, poll_interval=0)
    await asyncio.sleep(0.1)
    assert runtime.cancelled == ["web"]
    assert runtime.after_teardown == []
    assert runtime.teardowns == 1


class FailingTeardownRuntime(FakeRuntime):
    """A runtime whose teardown fails."""

    async def _teardown(self) -> None:
        await super()._teardown()
        raise ComposeException("compose down failed")


async def test_teardown_failure_keeps_original_error(
    topology: ServiceTopology,
    secrets: SecretBundle,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """The polling error is raised and the teardown failure is logged."""
    runtime = FailingTeardownRuntime()
    runtime.fail_on_status = ComposeException("docker daemon not running")
    with pytest.raises(ComposeException, match="docker daemon not running"):
        await await_healthy(topology, secrets, runtime, poll_interval=0)
    assert runtime.teardowns == 1
    assert "Teardown of topology cms failed: compose down failed" in caplog.text


async def test_teardown_failure(
    topology: ServiceTopology, secrets: SecretBundle
) -> None:
    """A teardown failure after a healthy run is raised."""
    runtime = FailingTeardownRuntime()
    with pytest.raises(ComposeException, match="compose down failed"):
        await await_healthy(topology, secrets, runtime, poll_interval=0)


async def test_optional_service_ignored(
    topology_doc: dict[str, Any], secrets: SecretBundle
) -> None:
    """Services that are not required are not waited for."""
    topology_doc["services"]["web"]["required"] = False
    topology = parse_topology(topology_doc)
    runtime = FakeRuntime(unhealthy={"web"})
    report = await await_healthy(topology, secrets, runtime, poll_interval=0)
    assert report.healthy
    assert list(report.services) == ["db"]
    assert "web" not in runtime.polls


async def test_health_gate_config(
    topology: ServiceTopology, secrets: SecretBundle
) -> None:
    """The health gate applies its configured polling policy."""
    gate = HealthGate(HealthGateConfig(poll_interval=0, max_attempts=2, log_tail=5))
    runtime = FakeRuntime(healthy_after=None)
    report = await gate.check(topology, secrets, runtime)
    assert report.attempts == 2
    assert report.diagnostics == {
        "db": "db: last 5 lines\n",
        "web": "web: last 5 lines\n",
    }
    assert isinstance(gate.runtime(), ComposeRuntime)


def test_parse_ps_output_lines() -> None:
    """Newer compose releases print one object per line."""
    out = "\n".join(
        [
            json.dumps({"Service": "db", "State": "running"}),
            json.dumps({"Service": "web", "State": "exited"}),
            "",
        ]
    )
    assert parse_ps_output(out) == [
        {"Service": "db", "State": "running"},
        {"Service": "web", "State": "exited"},
    ]


def test_parse_ps_output_array() -> None:
    """Older compose releases print a single array."""
    out = json.dumps([{"Service": "db", "State": "running"}])
    assert parse_ps_output(out) == [{"Service": "db", "State": "running"}]
    assert parse_ps_output("  \n") == []


def test_parse_ps_output_invalid() -> None:
    """Test output that is not JSON."""
    with pytest.raises(ComposeException, match="Unable to parse"):
        parse_ps_output("no such service: db")


def test_compose_document(topology: ServiceTopology, tmp_path: Path) -> None:
    """Test the compose project rendered for the local runtime."""
    secret_files = {
        "db_root_password": tmp_path / "db_root_password",
        "db_password": tmp_path / "db_password",
        "app_secret_key": tmp_path / "app_secret_key",
    }
    doc = compose_document(topology, secret_files)
    assert doc["services"]["db"] == {
        "image": "mariadb:11.4",
        "environment": {"MARIADB_DATABASE": "cms", "MARIADB_USER": "cms"},
        "secrets": ["db_root_password", "db_password"],
        "expose": ["3306"],
        "volumes": ["db-data:/var/lib/mysql"],
    }
    assert doc["services"]["web"]["depends_on"] == ["db"]
    # Missing from the bundle, left for the renderer to reject
    assert doc["services"]["web"]["secrets"] == ["db_password", "app_secret_key"]
    assert doc["secrets"] == {
        "app_secret_key": {"file": str(tmp_path / "app_secret_key")},
        "db_password": {"file": str(tmp_path / "db_password")},
        "db_root_password": {"file": str(tmp_path / "db_root_password")},
    }
    assert doc["volumes"] == {"db-data": {}, "web-data": {}}
    assert "ports" not in doc["services"]["web"]


async def test_compose_runtime(
    topology: ServiceTopology, secrets: SecretBundle
) -> None:
    """Test the docker compose commands issued by the runtime."""
    commands: list[list[str]] = []
    compose_files: list[dict[str, Any]] = []

    async def fake_run(cmd: Command) -> str:
        commands.append(cmd.cmd)
        assert isinstance(cmd.cmd, list)
        if "up" in cmd.cmd:
            compose_file = Path(cmd.cmd[cmd.cmd.index("--file") + 1])
            compose_files.append(yaml.safe_load(compose_file.read_text()))
            assert cmd.exc is ComposeException
        if "ps" in cmd.cmd:
            service = cmd.cmd[-1]
            return json.dumps({"Service": service, "State": "running"}) + "\n"
        if "logs" in cmd.cmd:
            return "log line\n"
        return ""

    runtime = ComposeRuntime(project="release-gate-test")
    with patch("release_gate.health.command.run", side_effect=fake_run):
        report = await await_healthy(topology, secrets, runtime, poll_interval=0)
        logs = await runtime.logs("db", 10)

    assert report.healthy
    assert logs == "log line\n"
    prefix = ["docker", "compose", "--project-name", "release-gate-test", "--file"]
    assert [cmd[:5] for cmd in commands] == [prefix] * len(commands)
    assert [cmd[6:] for cmd in commands[:1]] == [["up", "--detach"]]
    assert sorted(cmd[6:] for cmd in commands[1:3]) == [
        ["ps", "--all", "--format", "json", "db"],
        ["ps", "--all", "--format", "json", "web"],
    ]
    assert commands[3][6:] == ["down", "--volumes", "--remove-orphans"]
    assert list(compose_files[0]["services"]) == ["db", "web"]
    # Secret files are removed along with the project
    secret_file = Path(compose_files[0]["secrets"]["db_password"]["file"])
    assert not secret_file.exists()


async def test_compose_runtime_unhealthy_state() -> None:
    """A service with a container that is not running is unhealthy."""
    runtime = ComposeRuntime(project="release-gate-test")
    runtime._compose_file = Path("compose.yaml")  # pylint: disable=protected-access
    out = "\n".join(
        [
            json.dumps({"Service": "web", "State": "running"}),
            json.dumps({"Service": "web", "State": "restarting"}),
        ]
    )
    with patch("release_gate.health.command.run", return_value=out):
        status = await runtime.service_status("web")
    assert status.health == ServiceHealth.UNHEALTHY
    assert status.reason == "state restarting, running"

    with patch("release_gate.health.command.run", return_value=""):
        status = await runtime.service_status("web")
    assert status.reason == "no container"
