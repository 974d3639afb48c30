"""Release-gate package action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import pathlib
from typing import cast, Any

from release_gate.packager import package
from release_gate.renderer import ManifestRenderer
from release_gate.topology import load_topology

from . import common

_LOGGER = logging.getLogger(__name__)


class PackageAction:
    """Release-gate package action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "package",
                help="Render a topology and package the manifests into an archive",
                description="""Render and validate the manifests for the
                    topology then write them, in application order, into a
                    single reproducible archive. Nothing is uploaded.""",
            ),
        )
        common.add_topology_flags(args)
        common.add_secrets_flags(args)
        common.add_render_flags(args)
        common.add_package_flags(args)
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
        manifests = await ManifestRenderer(config.renderer).render(
            service_topology, secrets
        )
        artifact = package(
            manifests,
            config.packager.output_dir,
            root_dir_name=config.packager.root_dir_name,
            archive_name=config.packager.archive_name,
        )
        print(f"{artifact.path} sha256:{artifact.sha256}")
