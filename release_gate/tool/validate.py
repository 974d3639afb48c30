"""Release-gate validate action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import pathlib
from typing import cast

from release_gate.exceptions import StructuralError
from release_gate.topology import read_topology_doc, validate_topology

from . import common

_LOGGER = logging.getLogger(__name__)

FAIL = "[VALIDATE FAIL]"
OK = "[VALIDATE OK]"


class ValidateAction:
    """Release-gate validate action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "validate",
                help="Structurally validate a service topology",
                description="""Check a service topology description and print
                    every structural problem found. Nothing is started.""",
            ),
        )
        common.add_topology_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        topology: pathlib.Path,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        verdict = validate_topology(await read_topology_doc(topology))
        if not verdict.valid:
            for error in verdict.errors:
                print(f"{FAIL}: {error}")
            raise StructuralError(f"Topology {topology} is invalid")
        print(OK)
