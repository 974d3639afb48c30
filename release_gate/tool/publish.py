"""Release-gate publish action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import pathlib
from typing import cast, Any

from release_gate.packager import read_artifact
from release_gate.publisher import Publisher

from . import common

_LOGGER = logging.getLogger(__name__)


class PublishAction:
    """Release-gate publish action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "publish",
                help="Upload a packaged archive to the remote store",
                description="""Upload an archive produced by the package
                    command in a single attempt. Credentials are read from
                    the environment variables named in the config.""",
            ),
        )
        args.add_argument(
            "archive", type=pathlib.Path, help="Path to the packaged archive"
        )
        args.add_argument(
            "--config",
            type=pathlib.Path,
            default=None,
            help="Optional pipeline config file; flags override its values",
        )
        common.add_publish_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        archive: pathlib.Path,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        config = await common.build_config(**kwargs)
        ack = await Publisher(config.publisher).publish(read_artifact(archive))
        print(f"Published {ack.url}{ack.remote_path} sha256:{ack.sha256}")
