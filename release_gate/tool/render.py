"""Release-gate render action."""

import logging
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
    BooleanOptionalAction,
)
import pathlib
from typing import cast, Any

from release_gate.exceptions import StructuralError
from release_gate.manifest import validate_all
from release_gate.renderer import ManifestRenderer
from release_gate.topology import load_topology

from . import common

_LOGGER = logging.getLogger(__name__)


class RenderAction:
    """Release-gate render action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "render",
                help="Render the cluster manifests for a topology",
                description="""Render the Secret and every template for the
                    topology, validate the result and print the ordered
                    manifests as a YAML stream.""",
            ),
        )
        common.add_topology_flags(args)
        common.add_secrets_flags(args)
        common.add_render_flags(args)
        args.add_argument(
            "--wipe-secrets",
            type=bool,
            action=BooleanOptionalAction,
            default=True,
            help="Replace Secret values with placeholders in the output",
        )
        args.add_argument(
            "--output-file",
            type=str,
            default="/dev/stdout",
            help="Output file for the results of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        topology: pathlib.Path,
        wipe_secrets: bool,
        output_file: str,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        config = await common.build_config(**kwargs)
        service_topology = await load_topology(topology)
        secrets = await common.load_secrets(
            service_topology.secrets, config, **kwargs
        )
        manifests = await ManifestRenderer(config.renderer).render(
            service_topology, secrets
        )
        verdict = validate_all(manifests)
        if not verdict.valid:
            raise StructuralError("Rendered manifests are invalid", verdict.errors)
        if wipe_secrets:
            manifests = manifests.wipe_secrets()
        with open(output_file, "w") as file:
            print(manifests.yaml(), end="", file=file)
