"""Release-gate health action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import pathlib
from typing import cast, Any

from release_gate.exceptions import HealthTimeoutError
from release_gate.health import HealthGate, HealthReport
from release_gate.topology import load_topology

from . import common
from .format import PrintFormatter, print_sections

_LOGGER = logging.getLogger(__name__)


def print_report(report: HealthReport) -> None:
    """Print the per service outcome of the health gate."""
    PrintFormatter(["service", "health", "reason"]).print(
        [
            {"service": name, "health": status.health, "reason": status.reason}
            for name, status in report.services.items()
        ]
    )
    print_sections(
        {f"{service} logs": logs for service, logs in report.diagnostics.items()}
    )


class HealthAction:
    """Release-gate health action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "health",
                help="Run a topology locally and wait for it to become healthy",
                description="""Start every service of the topology in an
                    isolated local runtime, poll until all required services
                    are healthy, then tear everything down.""",
            ),
        )
        common.add_topology_flags(args)
        common.add_secrets_flags(args)
        common.add_health_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        topology: pathlib.Path,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        config = await common.build_config(**kwargs)
        service_topology = await load_topology(topology)
        secrets = await common.load_secrets(
            service_topology.secrets, config, **kwargs
        )
        report = await HealthGate(config.health).check(service_topology, secrets)
        print_report(report)
        if not report.healthy:
            raise HealthTimeoutError(report)
