"""Publishing of a packaged artifact to a remote store.

The archive is uploaded with a single `lftp` session: the remote directory
is created if needed and the archive is put into it. There is exactly one
attempt. Any failure is raised as a TransferError and the whole pipeline has
to be run again.

The password is handed to lftp through the `LFTP_PASSWORD` environment
variable so it never appears on a command line or in a log.

Disabling certificate verification with `verify_certificate=False` is an
explicit trust decision for stores with private certificates.
"""

from dataclasses import dataclass, field
import logging
import os
import shlex

from . import command
from .command import Command
from .config import PublisherConfig
from .exceptions import StructuralError, TransferError
from .packager import Artifact

__all__ = [
    "Ack",
    "Credentials",
    "Destination",
    "Publisher",
    "publish",
]

_LOGGER = logging.getLogger(__name__)

LFTP_BIN = "lftp"
PASSWORD_ENV = "LFTP_PASSWORD"


@dataclass(frozen=True)
class Destination:
    """Remote directory the archive is deposited into."""

    url: str
    remote_dir: str
    verify_certificate: bool = True

    @property
    def remote_path_prefix(self) -> str:
        return self.remote_dir.rstrip("/") or "/"


@dataclass(frozen=True)
class Credentials:
    """Authentication credentials for the remote store."""

    username: str
    password: str = field(repr=False)

    @classmethod
    def from_env(cls, username_env: str, password_env: str) -> "Credentials":
        """Read credentials from the named environment variables."""
        username = os.environ.get(username_env)
        password = os.environ.get(password_env)
        if not username or password is None:
            raise StructuralError(
                f"Upload credentials not set in {username_env}/{password_env}"
            )
        return cls(username=username, password=password)


@dataclass(frozen=True)
class Ack:
    """Acknowledgement of a completed upload."""

    url: str
    remote_path: str
    sha256: str


def lftp_script(artifact: Artifact, destination: Destination) -> str:
    """Return the lftp commands that upload the artifact."""
    remote_dir = shlex.quote(destination.remote_path_prefix)
    commands = [
        "set cmd:fail-exit yes",
        "set net:max-retries 1",
    ]
    if not destination.verify_certificate:
        commands.append("set ssl:verify-certificate no")
    commands.extend(
        [
            f"mkdir -p -f {remote_dir}",
            f"cd {remote_dir}",
            f"put {shlex.quote(str(artifact.path))} -o {shlex.quote(artifact.name)}",
            "bye",
        ]
    )
    return "; ".join(commands)


async def publish(
    artifact: Artifact,
    destination: Destination,
    credentials: Credentials,
    lftp_bin: str = LFTP_BIN,
) -> Ack:
    """Upload the artifact to the destination in a single attempt."""
    if not artifact.path.is_file():
        raise TransferError(f"Artifact does not exist: {artifact.path}")
    if not destination.verify_certificate:
        _LOGGER.warning(
            "Certificate verification is disabled for %s", destination.url
        )
    cmd = Command(
        [
            lftp_bin,
            "--env-password",
            "-u",
            credentials.username,
            "-e",
            lftp_script(artifact, destination),
            destination.url,
        ],
        exc=TransferError,
        env={PASSWORD_ENV: credentials.password},
    )
    _LOGGER.info("Publishing %s to %s", artifact.name, destination.url)
    await command.run(cmd)
    remote_path = f"{destination.remote_path_prefix.rstrip('/')}/{artifact.name}"
    _LOGGER.info("Published %s", remote_path)
    return Ack(url=destination.url, remote_path=remote_path, sha256=artifact.sha256)


class Publisher:
    """Publishes artifacts to the configured remote store."""

    def __init__(self, config: PublisherConfig) -> None:
        """Initialize Publisher."""
        self._config = config

    @property
    def destination(self) -> Destination:
        """The configured destination."""
        if not self._config.url:
            raise StructuralError("No publisher url configured")
        return Destination(
            url=self._config.url,
            remote_dir=self._config.remote_dir,
            verify_certificate=self._config.verify_certificate,
        )

    def credentials(self) -> Credentials:
        """Read the configured credentials from the environment."""
        return Credentials.from_env(
            self._config.username_env, self._config.password_env
        )

    async def publish(
        self, artifact: Artifact, credentials: Credentials | None = None
    ) -> Ack:
        """Upload the artifact, reading credentials from the environment if needed."""
        return await publish(
            artifact,
            self.destination,
            credentials or self.credentials(),
            lftp_bin=self._config.lftp_bin,
        )
