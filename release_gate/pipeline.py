"""Staged pipeline controller for release-gate.

The pipeline runs four stages strictly in order, each one consuming the
verified output of the previous one:

1. Validate the topology description.
2. Run the topology locally and wait for it to be healthy.
3. Render and validate the cluster manifests.
4. Package the manifests and publish the archive.

A stage either passes or fails with a reason; the first failure halts the
run and later stages never start. There is no retry and no resume, a failed
run is re-triggered as a whole.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
import logging
from pathlib import Path
from typing import TypeVar

from .config import PipelineConfig
from .context import trace_collector, trace_context
from .exceptions import HealthTimeoutError, ReleaseGateException, StructuralError
from .health import HealthGate, HealthReport, Runtime
from .manifest import ManifestSet, validate_all
from .packager import Artifact, package
from .publisher import Ack, Credentials, Publisher
from .renderer import ManifestRenderer
from .secrets import SecretBundle
from .status import Status
from .topology import ServiceTopology, parse_topology, read_topology_doc

__all__ = [
    "Pipeline",
    "PipelineResult",
    "Stage",
    "StageResult",
]

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")


class Stage(StrEnum):
    """Pipeline stages in the order they run."""

    VALIDATE = "Validate"
    HEALTH = "HealthGate"
    RENDER = "Render"
    PUBLISH = "Publish"


@dataclass(frozen=True)
class StageResult:
    """Verdict of one stage."""

    stage: Stage
    status: Status
    reason: str | None = None

    @property
    def passed(self) -> bool:
        """Return True if the stage passed."""
        return self.status == Status.PASS

    def __str__(self) -> str:
        """Return a string representation of the result."""
        if self.reason:
            return f"{self.stage}: {self.status} ({self.reason})"
        return f"{self.stage}: {self.status}"


@dataclass
class PipelineResult:
    """Outcome of a pipeline run and the outputs of the stages that ran."""

    stages: list[StageResult] = field(default_factory=list)
    topology: ServiceTopology | None = None
    health: HealthReport | None = None
    manifests: ManifestSet | None = None
    artifact: Artifact | None = None
    ack: Ack | None = None
    timings: dict[str, float] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        """Return True only if every stage ran and passed."""
        return len(self.stages) == len(Stage) and all(
            stage.passed for stage in self.stages
        )

    @property
    def status(self) -> Status:
        """Overall pipeline status."""
        return Status.PASS if self.passed else Status.FAIL

    @property
    def failure(self) -> StageResult | None:
        """The stage that halted the run, if any."""
        for stage in self.stages:
            if not stage.passed:
                return stage
        return None


class Pipeline:
    """Runs the four release stages in order, halting on the first failure."""

    def __init__(
        self,
        config: PipelineConfig | None = None,
        runtime_factory: Callable[[], Runtime] | None = None,
    ) -> None:
        """Initialize Pipeline."""
        self._config = config or PipelineConfig()
        self._health_gate = HealthGate(self._config.health)
        self._runtime_factory = runtime_factory or self._health_gate.runtime
        self._renderer = ManifestRenderer(self._config.renderer)
        self._publisher = Publisher(self._config.publisher)

    async def validate(self, topology_path: Path) -> ServiceTopology:
        """Stage 1: read and structurally validate the topology."""
        return parse_topology(await read_topology_doc(topology_path))

    async def health_gate(
        self, topology: ServiceTopology, secrets: SecretBundle
    ) -> HealthReport:
        """Stage 2: run the topology and require it to become healthy."""
        report = await self._health_gate.check(
            topology, secrets, self._runtime_factory()
        )
        if not report.healthy:
            raise HealthTimeoutError(report)
        return report

    async def render(
        self, topology: ServiceTopology, secrets: SecretBundle
    ) -> ManifestSet:
        """Stage 3: render the manifests and require them to be valid."""
        manifests = await self._renderer.render(topology, secrets)
        verdict = validate_all(manifests)
        if not verdict.valid:
            raise StructuralError("Rendered manifests are invalid", verdict.errors)
        return manifests

    def package(self, manifests: ManifestSet) -> Artifact:
        """Stage 4a: package the manifests into the configured archive."""
        packager = self._config.packager
        return package(
            manifests,
            packager.output_dir,
            root_dir_name=packager.root_dir_name,
            archive_name=packager.archive_name,
        )

    async def publish(
        self, artifact: Artifact, credentials: Credentials | None = None
    ) -> Ack:
        """Stage 4b: upload the archive in a single attempt."""
        return await self._publisher.publish(artifact, credentials)

    async def _stage(
        self,
        result: PipelineResult,
        stage: Stage,
        action: Callable[[], Awaitable[_T]],
    ) -> _T | None:
        """Run one stage, recording its verdict. Returns None on failure."""
        _LOGGER.info("Stage %s starting", stage)
        try:
            with trace_context(str(stage)):
                value = await action()
        except ReleaseGateException as err:
            _LOGGER.error("Stage %s failed: %s", stage, err)
            if isinstance(err, HealthTimeoutError):
                result.health = err.report
            result.stages.append(StageResult(stage, Status.FAIL, str(err)))
            return None
        _LOGGER.info("Stage %s passed", stage)
        result.stages.append(StageResult(stage, Status.PASS))
        return value

    async def run(
        self,
        topology_path: Path,
        secrets: SecretBundle,
        credentials: Credentials | None = None,
    ) -> PipelineResult:
        """Run every stage in order, halting at the first failure."""
        result = PipelineResult()
        with trace_collector() as collector:
            try:
                await self._run_stages(result, topology_path, secrets, credentials)
            finally:
                result.timings = dict(collector.timings)
        _LOGGER.info(
            "Pipeline %s: %s",
            result.status,
            ", ".join(str(stage) for stage in result.stages),
        )
        return result

    async def _run_stages(
        self,
        result: PipelineResult,
        topology_path: Path,
        secrets: SecretBundle,
        credentials: Credentials | None,
    ) -> None:
        topology = await self._stage(
            result, Stage.VALIDATE, lambda: self.validate(topology_path)
        )
        if topology is None:
            return
        result.topology = topology

        health = await self._stage(
            result, Stage.HEALTH, lambda: self.health_gate(topology, secrets)
        )
        if health is None:
            return
        result.health = health

        manifests = await self._stage(
            result, Stage.RENDER, lambda: self.render(topology, secrets)
        )
        if manifests is None:
            return
        result.manifests = manifests

        async def package_and_publish() -> Ack:
            result.artifact = self.package(manifests)
            return await self.publish(result.artifact, credentials)

        result.ack = await self._stage(result, Stage.PUBLISH, package_and_publish)
