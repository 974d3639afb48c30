"""Test doubles for the external processes used by release-gate."""

from release_gate.health import Runtime, ServiceHealth, ServiceStatus
from release_gate.secrets import SecretBundle
from release_gate.topology import ServiceTopology


class FakeRuntime(Runtime):
    """A runtime that becomes healthy after a fixed number of polls."""

    def __init__(
        self,
        healthy_after: int | None = 1,
        unhealthy: set[str] | None = None,
    ) -> None:
        """Initialize FakeRuntime.

        Services report healthy from poll `healthy_after` onwards, or never
        when it is None. Services in `unhealthy` never report healthy.
        """
        super().__init__()
        self.healthy_after = healthy_after
        self.unhealthy = unhealthy or set()
        self.started: ServiceTopology | None = None
        self.started_secrets: SecretBundle | None = None
        self.polls: dict[str, int] = {}
        self.teardowns = 0
        self.fail_on_status: Exception | None = None

    @property
    def max_polls(self) -> int:
        """Largest number of polls seen by any service."""
        return max(self.polls.values(), default=0)

    async def start(self, topology: ServiceTopology, secrets: SecretBundle) -> None:
        self.started = topology
        self.started_secrets = secrets

    async def service_status(self, service: str) -> ServiceStatus:
        if self.fail_on_status is not None:
            raise self.fail_on_status
        self.polls[service] = self.polls.get(service, 0) + 1
        if service in self.unhealthy:
            return ServiceStatus(service, ServiceHealth.UNHEALTHY, "state exited")
        if self.healthy_after is None or self.polls[service] < self.healthy_after:
            return ServiceStatus(service, ServiceHealth.UNHEALTHY, "state created")
        return ServiceStatus(service, ServiceHealth.HEALTHY)

    async def logs(self, service: str, tail: int) -> str:
        return f"{service}: last {tail} lines\n"

    async def _teardown(self) -> None:
        self.teardowns += 1
