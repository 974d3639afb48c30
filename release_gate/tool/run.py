"""Release-gate run action, the full staged pipeline."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import pathlib
from typing import cast, Any

from release_gate.exceptions import ReleaseGateException
from release_gate.pipeline import Pipeline, PipelineResult
from release_gate.topology import read_topology_doc

from . import common
from .format import PrintFormatter
from .health import print_report

_LOGGER = logging.getLogger(__name__)


def declared_secrets(doc: Any) -> list[str]:
    """Secret names declared by a raw topology document, if any."""
    if not isinstance(doc, dict) or not isinstance(doc.get("secrets"), list):
        return []
    return [name for name in doc["secrets"] if isinstance(name, str)]


def print_result(result: PipelineResult) -> None:
    """Print the verdict of every stage that ran."""
    PrintFormatter(["stage", "status", "seconds", "reason"]).print(
        [
            {
                "stage": stage.stage,
                "status": stage.status,
                "seconds": f"{result.timings.get(str(stage.stage), 0.0):.2f}",
                "reason": stage.reason,
            }
            for stage in result.stages
        ]
    )
    if result.health is not None and not result.health.healthy:
        print_report(result.health)
    if result.ack is not None:
        print(
            f"Published {result.ack.url}{result.ack.remote_path} "
            f"sha256:{result.ack.sha256}"
        )


class RunAction:
    """Release-gate run action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "run",
                help="Run the full release pipeline for a topology",
                description="""Validate the topology, gate on it becoming
                    healthy locally, render and validate the manifests, then
                    package and publish them. The first failing stage halts
                    the run.""",
            ),
        )
        common.add_topology_flags(args)
        common.add_secrets_flags(args)
        common.add_health_flags(args)
        common.add_render_flags(args)
        common.add_package_flags(args)
        common.add_publish_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        topology: pathlib.Path,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        config = await common.build_config(**kwargs)
        names = declared_secrets(await read_topology_doc(topology))
        secrets = await common.load_secrets(names, config, **kwargs)
        result = await Pipeline(config).run(topology, secrets)
        print_result(result)
        if (failure := result.failure) is not None:
            raise ReleaseGateException(f"Pipeline halted at stage {failure.stage}")
