"""Configuration objects for release-gate.

Every setting has a default so a config file only needs the values that
differ. The file is YAML with one section per stage:

```yaml
health:
  poll_interval: 2
  max_attempts: 30
renderer:
  template_dir: deploy/templates
  namespace: cms
  bindings:
    ingress_host: cms.example.com
packager:
  output_dir: dist
publisher:
  url: ftps://upload.example.com
  remote_dir: /releases/cms
  verify_certificate: false
```
"""

from dataclasses import dataclass, field
import logging
from pathlib import Path

import aiofiles
from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_decode
from mashumaro.config import BaseConfig
from mashumaro.exceptions import MissingField, InvalidFieldValue
import yaml

from .exceptions import StructuralError

__all__ = [
    "HealthGateConfig",
    "RendererConfig",
    "PackagerConfig",
    "PublisherConfig",
    "PipelineConfig",
    "read_config",
]

_LOGGER = logging.getLogger(__name__)

DEFAULT_ROOT_DIR_NAME = "manifests"
DEFAULT_ARCHIVE_NAME = f"{DEFAULT_ROOT_DIR_NAME}.tar.gz"
DEFAULT_SECRETS_ENV_PREFIX = "RELEASE_GATE_SECRET_"


@dataclass
class HealthGateConfig(DataClassDictMixin):
    """Configuration for the local health gate."""

    poll_interval: float = 2.0
    """Seconds to wait between polls."""

    max_attempts: int = 30
    """Number of polls before giving up."""

    log_tail: int = 50
    """Log lines captured for each unhealthy service."""

    docker_bin: str = "docker"


@dataclass
class RendererConfig(DataClassDictMixin):
    """Configuration for the manifest renderer."""

    template_dir: Path | None = None
    """Directory holding the manifest skeleton templates."""

    namespace: str = "default"
    """Namespace of every rendered object."""

    secret_name: str | None = None
    """Name of the rendered Secret, `<topology>-secrets` when unset."""

    bindings: dict[str, str] = field(default_factory=dict)
    """Extra template bindings, e.g. an ingress host or a backup schedule."""

    class Config(BaseConfig):
        omit_none = True


@dataclass
class PackagerConfig(DataClassDictMixin):
    """Configuration for the packager."""

    output_dir: Path = Path("dist")
    root_dir_name: str = DEFAULT_ROOT_DIR_NAME
    archive_name: str = DEFAULT_ARCHIVE_NAME


@dataclass
class PublisherConfig(DataClassDictMixin):
    """Configuration for the publisher."""

    url: str | None = None
    """Remote store, e.g. `ftps://upload.example.com`."""

    remote_dir: str = "/"
    """Remote directory the archive is deposited into."""

    verify_certificate: bool = True
    """Set to false to trust the remote certificate without verification."""

    username_env: str = "RELEASE_GATE_UPLOAD_USER"
    password_env: str = "RELEASE_GATE_UPLOAD_PASSWORD"
    lftp_bin: str = "lftp"

    class Config(BaseConfig):
        omit_none = True


@dataclass
class PipelineConfig(DataClassDictMixin):
    """Configuration for a whole pipeline run."""

    health: HealthGateConfig = field(default_factory=HealthGateConfig)
    renderer: RendererConfig = field(default_factory=RendererConfig)
    packager: PackagerConfig = field(default_factory=PackagerConfig)
    publisher: PublisherConfig = field(default_factory=PublisherConfig)
    secrets_env_prefix: str = DEFAULT_SECRETS_ENV_PREFIX


async def read_config(path: Path) -> PipelineConfig:
    """Return the contents of a pipeline config file."""
    try:
        async with aiofiles.open(str(path)) as config_file:
            content = await config_file.read()
    except OSError as err:
        raise StructuralError(f"Unable to read config file {path}: {err}") from err
    if not content.strip():
        return PipelineConfig()
    try:
        config = yaml_decode(content, PipelineConfig)
    except (yaml.YAMLError, MissingField, InvalidFieldValue, ValueError) as err:
        raise StructuralError(f"Invalid config file {path}: {err}") from err
    _LOGGER.debug("Loaded config from %s", path)
    return config
