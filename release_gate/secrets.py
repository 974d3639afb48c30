"""Run-scoped secret material.

A SecretBundle is created fresh for each pipeline run from an external source
and passed explicitly to the stages that need it. Values are only ever
written out as runtime secret files for the local health check, or as base64
fields of the rendered Secret manifest. Base64 is an encoding, not
encryption: confidentiality of the rendered manifest relies on the cluster's
own encryption at rest.

```python
from release_gate import secrets

bundle = await secrets.read_secrets_dir(Path("/run/release-secrets"))
print(bundle.names)
```
"""

import base64
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
from types import MappingProxyType
import re

import aiofiles

from .exceptions import StructuralError

__all__ = [
    "SecretBundle",
    "read_secrets_dir",
    "secrets_from_env",
]

_LOGGER = logging.getLogger(__name__)

# Same character set kubernetes accepts for Secret data keys
SECRET_NAME_RE = re.compile(r"^[-._a-zA-Z0-9]+$")
REDACTED = "**REDACTED**"


@dataclass(frozen=True)
class SecretBundle(Mapping[str, str]):
    """Immutable mapping from secret name to raw value."""

    _values: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        invalid = [name for name in self._values if not SECRET_NAME_RE.match(name)]
        if invalid:
            raise StructuralError("Invalid secret names", sorted(invalid))
        object.__setattr__(self, "_values", MappingProxyType(dict(self._values)))

    def __getitem__(self, name: str) -> str:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"SecretBundle({', '.join(f'{k}={REDACTED}' for k in self.names)})"

    __str__ = __repr__

    @property
    def names(self) -> list[str]:
        """Sorted list of secret names in the bundle."""
        return sorted(self._values)

    def missing(self, required: Iterable[str]) -> list[str]:
        """Return the required names that are not in the bundle."""
        return sorted(set(required) - set(self._values))

    def encoded(self, name: str) -> str:
        """Return the base64 encoding of a secret value."""
        return base64.b64encode(self._values[name].encode("utf-8")).decode("ascii")

    def subset(self, names: Iterable[str]) -> "SecretBundle":
        """Return a bundle holding only the specified names that are present."""
        return SecretBundle({n: self._values[n] for n in names if n in self._values})

    def write_runtime_files(self, directory: Path) -> dict[str, Path]:
        """Write each secret to its own owner-only file in the directory."""
        directory.mkdir(parents=True, exist_ok=True)
        paths: dict[str, Path] = {}
        for name in self.names:
            path = directory / name
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as secret_file:
                secret_file.write(self._values[name])
            paths[name] = path
        _LOGGER.debug("Wrote %d runtime secret files to %s", len(paths), directory)
        return paths


async def read_secrets_dir(path: Path) -> SecretBundle:
    """Load a bundle from a directory holding one file per secret.

    The file name is the secret name; a single trailing newline is stripped
    from the contents. Hidden files are ignored.
    """
    if not path.is_dir():
        raise StructuralError(f"Secrets directory does not exist: {path}")
    values: dict[str, str] = {}
    for entry in sorted(path.iterdir()):
        if entry.name.startswith(".") or not entry.is_file():
            continue
        try:
            async with aiofiles.open(str(entry)) as secret_file:
                content = await secret_file.read()
        except (OSError, UnicodeDecodeError) as err:
            raise StructuralError(f"Unable to read secret file {entry}: {err}") from err
        values[entry.name] = content.removesuffix("\n")
    _LOGGER.info("Loaded %d secrets from %s", len(values), path)
    return SecretBundle(values)


def secrets_from_env(
    names: Iterable[str], prefix: str, environ: Mapping[str, str] | None = None
) -> SecretBundle:
    """Load the named secrets from `<prefix><NAME>` environment variables.

    Names that are not set are left out; callers decide whether that is an error.
    """
    environ = os.environ if environ is None else environ
    values: dict[str, str] = {}
    for name in names:
        key = f"{prefix}{name.upper().replace('-', '_').replace('.', '_')}"
        if (value := environ.get(key)) is not None:
            values[name] = value
    _LOGGER.info("Loaded %d secrets from environment prefix %s", len(values), prefix)
    return SecretBundle(values)
