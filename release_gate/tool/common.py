"""Library for flags and inputs shared by the release-gate actions."""

from argparse import ArgumentParser, BooleanOptionalAction
from collections.abc import Iterable
import logging
import pathlib
from typing import Any

from release_gate import secrets
from release_gate.config import PipelineConfig, read_config
from release_gate.exceptions import StructuralError
from release_gate.secrets import SecretBundle

_LOGGER = logging.getLogger(__name__)


def add_topology_flags(args: ArgumentParser) -> None:
    """Add the topology and config flags to the arguments object."""
    args.add_argument(
        "topology", type=pathlib.Path, help="Path to the service topology file"
    )
    args.add_argument(
        "--config",
        type=pathlib.Path,
        default=None,
        help="Optional pipeline config file; flags override its values",
    )


def add_secrets_flags(args: ArgumentParser) -> None:
    """Add flags that select the external secret source."""
    args.add_argument(
        "--secrets-dir",
        type=pathlib.Path,
        default=None,
        help="Directory holding one file per secret, named after the secret",
    )
    args.add_argument(
        "--secrets-env-prefix",
        type=str,
        default=None,
        help="Read each secret from the <PREFIX><NAME> environment variable",
    )


def add_health_flags(args: ArgumentParser) -> None:
    """Add flags that control the health gate polling policy."""
    args.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between health polls (default 2)",
    )
    args.add_argument(
        "--max-attempts",
        type=int,
        default=None,
        help="Number of health polls before giving up (default 30)",
    )


def add_render_flags(args: ArgumentParser) -> None:
    """Add flags that control the manifest renderer."""
    args.add_argument(
        "--templates",
        type=pathlib.Path,
        default=None,
        help="Directory holding the manifest templates",
    )
    args.add_argument(
        "--namespace",
        type=str,
        default=None,
        help="Namespace of the rendered objects",
    )


def add_package_flags(args: ArgumentParser) -> None:
    """Add flags that control the packager."""
    args.add_argument(
        "--output-dir",
        type=pathlib.Path,
        default=None,
        help="Directory the archive is written to",
    )


def add_publish_flags(args: ArgumentParser) -> None:
    """Add flags that control the publisher."""
    args.add_argument(
        "--url",
        type=str,
        default=None,
        help="Remote store url, e.g. ftps://upload.example.com",
    )
    args.add_argument(
        "--remote-dir",
        type=str,
        default=None,
        help="Remote directory the archive is deposited into",
    )
    args.add_argument(
        "--verify-certificate",
        type=bool,
        action=BooleanOptionalAction,
        default=None,
        help="Verify the certificate of the remote store",
    )


async def build_config(
    config: pathlib.Path | None = None,
    poll_interval: float | None = None,
    max_attempts: int | None = None,
    templates: pathlib.Path | None = None,
    namespace: str | None = None,
    output_dir: pathlib.Path | None = None,
    url: str | None = None,
    remote_dir: str | None = None,
    verify_certificate: bool | None = None,
    **kwargs: Any,  # pylint: disable=unused-argument
) -> PipelineConfig:
    """Load the config file, if any, and apply flag overrides."""
    result = await read_config(config) if config else PipelineConfig()
    if poll_interval is not None:
        result.health.poll_interval = poll_interval
    if max_attempts is not None:
        result.health.max_attempts = max_attempts
    if templates is not None:
        result.renderer.template_dir = templates
    if namespace is not None:
        result.renderer.namespace = namespace
    if output_dir is not None:
        result.packager.output_dir = output_dir
    if url is not None:
        result.publisher.url = url
    if remote_dir is not None:
        result.publisher.remote_dir = remote_dir
    if verify_certificate is not None:
        result.publisher.verify_certificate = verify_certificate
    return result


async def load_secrets(
    names: Iterable[str],
    pipeline_config: PipelineConfig,
    secrets_dir: pathlib.Path | None = None,
    secrets_env_prefix: str | None = None,
    **kwargs: Any,  # pylint: disable=unused-argument
) -> SecretBundle:
    """Load the named secrets from the selected source.

    A secrets directory is read whole; the environment is only consulted
    for the names given.
    """
    if secrets_dir is not None:
        if secrets_env_prefix is not None:
            raise StructuralError(
                "Specify only one of --secrets-dir or --secrets-env-prefix"
            )
        return await secrets.read_secrets_dir(secrets_dir)
    prefix = secrets_env_prefix or pipeline_config.secrets_env_prefix
    return secrets.secrets_from_env(names, prefix)
