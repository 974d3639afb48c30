"""Health gate that brings a topology up locally and waits for it to be healthy.

The gate owns the running topology for its whole duration: services are
started through a `Runtime`, polled until every required service reports
running on the same poll or the attempt budget is spent, and then torn down
on every exit path, including errors raised while polling.

```python
from release_gate import health

report = await health.await_healthy(
    topology, secrets, health.ComposeRuntime(), poll_interval=2.0, max_attempts=30
)
if not report.healthy:
    for service, logs in report.diagnostics.items():
        print(service, logs)
```

Health here is the container running-state, a proxy signal for a
pre-deployment smoke test. It is configured independently of the liveness
and readiness probes written into the rendered manifests.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import StrEnum
import json
import logging
from pathlib import Path
import shutil
import tempfile
from typing import Any
import uuid

import yaml

from . import command
from .command import Command
from .config import HealthGateConfig
from .exceptions import (
    CommandException,
    ComposeException,
    ReleaseGateException,
    StructuralError,
)
from .secrets import SecretBundle
from .topology import ServiceSpec, ServiceTopology

__all__ = [
    "ServiceHealth",
    "ServiceStatus",
    "HealthReport",
    "Runtime",
    "ComposeRuntime",
    "HealthGate",
    "PollState",
    "running_topology",
    "await_healthy",
]

_LOGGER = logging.getLogger(__name__)

DOCKER_BIN = "docker"
COMPOSE_FILE = "compose.yaml"
RUNNING_STATE = "running"
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_MAX_ATTEMPTS = 30
DEFAULT_LOG_TAIL = 50
_UP_TIMEOUT = 600.0


class ServiceHealth(StrEnum):
    """Health of a single service, or of the topology as a whole."""

    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"
    TIMEOUT = "Timeout"


@dataclass(frozen=True)
class ServiceStatus:
    """Health of a service as observed on one poll."""

    service: str
    health: ServiceHealth
    reason: str | None = None

    @property
    def healthy(self) -> bool:
        """Return True if the service was observed healthy."""
        return self.health == ServiceHealth.HEALTHY

    def __str__(self) -> str:
        """Return a string representation of the status."""
        if self.reason:
            return f"{self.health}: {self.reason}"
        return str(self.health)


@dataclass
class HealthReport:
    """Aggregated outcome of the health gate."""

    status: ServiceHealth
    """HEALTHY only if every required service was healthy on the same poll."""

    attempts: int
    """Number of polls performed."""

    services: dict[str, ServiceStatus] = field(default_factory=dict)
    """Final status of each required service."""

    diagnostics: dict[str, str] = field(default_factory=dict)
    """Recent log output of each service that was not healthy."""

    @property
    def healthy(self) -> bool:
        """Return True if the topology became healthy."""
        return self.status == ServiceHealth.HEALTHY

    @property
    def unhealthy_services(self) -> list[str]:
        """Names of the services that did not report healthy."""
        return sorted(
            name for name, status in self.services.items() if not status.healthy
        )


class Runtime(ABC):
    """An isolated runtime context that can run a topology.

    Teardown is idempotent: only the first call releases anything.
    """

    def __init__(self) -> None:
        """Initialize Runtime."""
        self._torn_down = False

    @abstractmethod
    async def start(self, topology: ServiceTopology, secrets: SecretBundle) -> None:
        """Start every service of the topology."""

    @abstractmethod
    async def service_status(self, service: str) -> ServiceStatus:
        """Return the current health of a service."""

    @abstractmethod
    async def logs(self, service: str, tail: int) -> str:
        """Return the most recent log lines of a service."""

    @abstractmethod
    async def _teardown(self) -> None:
        """Release everything started by this runtime."""

    async def teardown(self) -> None:
        """Release everything started by this runtime, at most once."""
        if self._torn_down:
            return
        self._torn_down = True
        await self._teardown()


def parse_ps_output(out: str) -> list[dict[str, Any]]:
    """Parse `docker compose ps --format json` output.

    Older compose releases print one JSON array, newer ones one object per line.
    """
    out = out.strip()
    if not out:
        return []
    try:
        if out.startswith("["):
            return list(json.loads(out))
        return [json.loads(line) for line in out.splitlines() if line.strip()]
    except json.JSONDecodeError as err:
        raise ComposeException(f"Unable to parse compose ps output: {err}") from err


def compose_document(
    topology: ServiceTopology, secret_files: dict[str, Path]
) -> dict[str, Any]:
    """Build the compose file content used to run the topology locally.

    Ports are exposed on the compose network only so that concurrent runs do
    not collide on host ports. Each service runs a single replica. A secret
    missing from the bundle is left out here; the renderer rejects it.
    """
    services: dict[str, Any] = {}
    volumes: dict[str, Any] = {}
    for service in topology.services:
        doc: dict[str, Any] = {"image": service.image}
        if service.environment:
            doc["environment"] = dict(service.environment)
        if missing := sorted(set(service.secrets) - set(secret_files)):
            _LOGGER.warning(
                "Service %s runs without secrets: %s", service.name, ", ".join(missing)
            )
        if available := [name for name in service.secrets if name in secret_files]:
            doc["secrets"] = available
        if service.depends_on:
            doc["depends_on"] = list(service.depends_on)
        if service.ports:
            doc["expose"] = [str(port) for port in service.ports]
        if service.storage:
            volume = f"{service.name}-data"
            volumes[volume] = {}
            doc["volumes"] = [f"{volume}:{service.storage.mount_path}"]
        services[service.name] = doc
    result: dict[str, Any] = {"services": services}
    if secret_files:
        result["secrets"] = {
            name: {"file": str(path)} for name, path in sorted(secret_files.items())
        }
    if volumes:
        result["volumes"] = volumes
    return result


class ComposeRuntime(Runtime):
    """Runs the topology as a private docker compose project."""

    def __init__(self, project: str | None = None, docker_bin: str = DOCKER_BIN):
        """Initialize ComposeRuntime."""
        super().__init__()
        self._project = project
        self._docker_bin = docker_bin
        self._work_dir: Path | None = None
        self._compose_file: Path | None = None

    def _compose(self, args: list[str], timeout: float | None = None) -> Command:
        if self._project is None or self._compose_file is None:
            raise ReleaseGateException("Compose runtime has not been started")
        cmd = [
            self._docker_bin,
            "compose",
            "--project-name",
            self._project,
            "--file",
            str(self._compose_file),
            *args,
        ]
        if timeout is None:
            return Command(cmd, exc=ComposeException)
        return Command(cmd, exc=ComposeException, timeout=timeout)

    async def start(self, topology: ServiceTopology, secrets: SecretBundle) -> None:
        """Write the compose project and start every service in the background."""
        if self._project is None:
            self._project = f"release-gate-{topology.name}-{uuid.uuid4().hex[:8]}"
        self._work_dir = Path(tempfile.mkdtemp(prefix="release-gate-"))
        secret_files = secrets.subset(topology.required_secrets).write_runtime_files(
            self._work_dir / "secrets"
        )
        self._compose_file = self._work_dir / COMPOSE_FILE
        self._compose_file.write_text(
            yaml.dump(
                compose_document(topology, secret_files),
                sort_keys=False,
                explicit_start=True,
            )
        )
        _LOGGER.info("Starting compose project %s", self._project)
        await command.run(self._compose(["up", "--detach"], timeout=_UP_TIMEOUT))

    async def service_status(self, service: str) -> ServiceStatus:
        """Return HEALTHY when every container of the service is running."""
        out = await command.run(
            self._compose(["ps", "--all", "--format", "json", service])
        )
        containers = [c for c in parse_ps_output(out) if c.get("Service") == service]
        if not containers:
            return ServiceStatus(service, ServiceHealth.UNHEALTHY, "no container")
        states = sorted({str(c.get("State", "unknown")) for c in containers})
        if states == [RUNNING_STATE]:
            return ServiceStatus(service, ServiceHealth.HEALTHY)
        return ServiceStatus(
            service, ServiceHealth.UNHEALTHY, f"state {', '.join(states)}"
        )

    async def logs(self, service: str, tail: int) -> str:
        """Return the most recent log lines of a service."""
        return await command.run(
            self._compose(["logs", "--no-color", "--tail", str(tail), service])
        )

    async def _teardown(self) -> None:
        """Stop the project, remove its volumes and the runtime secret files."""
        if self._work_dir is None:
            return
        try:
            if self._compose_file is not None and self._compose_file.exists():
                _LOGGER.info("Tearing down compose project %s", self._project)
                await command.run(
                    self._compose(["down", "--volumes", "--remove-orphans"])
                )
        finally:
            shutil.rmtree(self._work_dir, ignore_errors=True)
            self._work_dir = None


@asynccontextmanager
async def running_topology(
    runtime: Runtime, topology: ServiceTopology, secrets: SecretBundle
) -> AsyncIterator[Runtime]:
    """Run the topology for the duration of the block, always tearing it down.

    A teardown failure while another error propagates is logged so that the
    original error is the one raised.
    """
    try:
        await runtime.start(topology, secrets)
        yield runtime
    except BaseException:
        try:
            await runtime.teardown()
        except Exception as err:  # pylint: disable=broad-except
            _LOGGER.error("Teardown of topology %s failed: %s", topology.name, err)
        raise
    await runtime.teardown()


@dataclass(frozen=True)
class PollState:
    """State of the polling loop after `attempt` polls."""

    attempt: int = 0
    results: dict[str, ServiceStatus] = field(default_factory=dict)

    def healthy(self, services: list[ServiceSpec]) -> bool:
        """Return True if every service was healthy on the latest poll."""
        return self.attempt > 0 and all(
            (status := self.results.get(service.name)) is not None and status.healthy
            for service in services
        )


async def _poll(
    runtime: Runtime, services: list[ServiceSpec], state: PollState
) -> PollState:
    """Query every service concurrently, returning the next state.

    If any check fails the remaining checks are cancelled and awaited, so no
    check outlives the poll.
    """
    tasks = [
        asyncio.create_task(runtime.service_status(service.name))
        for service in services
    ]
    try:
        results = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return PollState(
        attempt=state.attempt + 1,
        results={status.service: status for status in results},
    )


async def _collect_diagnostics(
    runtime: Runtime, services: list[str], log_tail: int
) -> dict[str, str]:
    """Capture the log tail of each service."""

    async def read_logs(service: str) -> str:
        try:
            return await runtime.logs(service, log_tail)
        except CommandException as err:
            _LOGGER.warning("Unable to read logs for service %s: %s", service, err)
            return f"Unable to read logs: {err}"

    logs = await asyncio.gather(*(read_logs(service) for service in services))
    return dict(zip(services, logs))


async def await_healthy(
    topology: ServiceTopology,
    secrets: SecretBundle,
    runtime: Runtime,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    log_tail: int = DEFAULT_LOG_TAIL,
) -> HealthReport:
    """Start the topology and poll until it is healthy or the budget is spent."""
    if max_attempts < 0:
        raise StructuralError("max_attempts must not be negative")
    services = topology.required_services
    async with running_topology(runtime, topology, secrets):
        state = PollState()
        while state.attempt < max_attempts:
            if state.attempt:
                await asyncio.sleep(poll_interval)
            state = await _poll(runtime, services, state)
            _LOGGER.debug(
                "Health poll %d/%d: %s",
                state.attempt,
                max_attempts,
                ", ".join(f"{name}={status}" for name, status in state.results.items()),
            )
            if state.healthy(services):
                _LOGGER.info(
                    "Topology %s healthy after %d poll(s)", topology.name, state.attempt
                )
                return HealthReport(
                    status=ServiceHealth.HEALTHY,
                    attempts=state.attempt,
                    services=dict(state.results),
                )

        final: dict[str, ServiceStatus] = {}
        for service in services:
            last = state.results.get(service.name)
            if last is not None and last.healthy:
                final[service.name] = last
            else:
                reason = last.reason if last is not None else "never polled"
                final[service.name] = ServiceStatus(
                    service.name, ServiceHealth.TIMEOUT, reason
                )
        unhealthy = [name for name, status in final.items() if not status.healthy]
        _LOGGER.warning(
            "Topology %s not healthy after %d poll(s): %s",
            topology.name,
            state.attempt,
            ", ".join(unhealthy),
        )
        diagnostics = await _collect_diagnostics(runtime, unhealthy, log_tail)
        return HealthReport(
            status=ServiceHealth.TIMEOUT,
            attempts=state.attempt,
            services=final,
            diagnostics=diagnostics,
        )


class HealthGate:
    """Runs the health gate with a configured polling policy."""

    def __init__(self, config: HealthGateConfig | None = None) -> None:
        """Initialize HealthGate."""
        self._config = config or HealthGateConfig()

    def runtime(self) -> Runtime:
        """Return a fresh runtime for one invocation."""
        return ComposeRuntime(docker_bin=self._config.docker_bin)

    async def check(
        self,
        topology: ServiceTopology,
        secrets: SecretBundle,
        runtime: Runtime | None = None,
    ) -> HealthReport:
        """Run the topology and wait for it to become healthy."""
        return await await_healthy(
            topology,
            secrets,
            runtime or self.runtime(),
            poll_interval=self._config.poll_interval,
            max_attempts=self._config.max_attempts,
            log_tail=self._config.log_tail,
        )
