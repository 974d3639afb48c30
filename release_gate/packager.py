"""Packaging of a validated ManifestSet into a single archive.

The archive holds one root directory with a file per manifest, named with
its position so that the application order survives unpacking:

```
manifests/00-secret-cms-secrets.yaml
manifests/01-persistentvolumeclaim-cms-db-data.yaml
...
```

Archives are reproducible: the same manifests always produce the same bytes.
"""

from collections.abc import Sequence
from dataclasses import dataclass
import gzip
import hashlib
import io
import logging
import os
from pathlib import Path
import re
import tarfile
import tempfile

from .config import DEFAULT_ARCHIVE_NAME, DEFAULT_ROOT_DIR_NAME
from .exceptions import PackageError
from .manifest import Manifest, validate_all

__all__ = [
    "Artifact",
    "package",
    "read_artifact",
]

_LOGGER = logging.getLogger(__name__)

_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_FILE_MODE = 0o644
_DIR_MODE = 0o755
_ARCHIVE_MODE = 0o644


@dataclass(frozen=True, kw_only=True)
class Artifact:
    """The packaged archive produced by one pipeline run."""

    path: Path
    """Local path of the archive file."""

    root_dir_name: str
    """Name of the single directory at the root of the archive."""

    members: tuple[str, ...]
    """Archive member file names in order."""

    sha256: str
    """Digest of the archive contents."""

    @property
    def name(self) -> str:
        """File name of the archive."""
        return self.path.name


def manifest_filename(index: int, manifest: Manifest) -> str:
    """File name of a manifest inside the archive root directory."""
    return f"{index:02d}-{manifest.kind.lower()}-{manifest.name}.yaml"


def _tar_info(
    name: str, mode: int, size: int = 0, is_dir: bool = False
) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.mode = mode
    info.size = size
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    if is_dir:
        info.type = tarfile.DIRTYPE
    return info


def _write_archive(archive: Path, staging: Path, members: list[str]) -> None:
    """Compress the staged members with fixed metadata, in the given order."""
    root_dir_name = members[0].split("/", 1)[0]
    with archive.open("wb") as archive_file:
        with gzip.GzipFile(
            filename="", mode="wb", fileobj=archive_file, mtime=0
        ) as gz_file:
            with tarfile.open(
                fileobj=gz_file, mode="w", format=tarfile.USTAR_FORMAT
            ) as tar:
                tar.addfile(_tar_info(root_dir_name, _DIR_MODE, is_dir=True))
                for member in members:
                    data = (staging / member).read_bytes()
                    tar.addfile(
                        _tar_info(member, _FILE_MODE, len(data)),
                        io.BytesIO(data),
                    )


def _replace_archive(archive: Path, staging: Path, members: list[str]) -> None:
    """Write the archive next to its destination, then move it into place."""
    fd, tmp_name = tempfile.mkstemp(dir=archive.parent, prefix=f".{archive.name}.")
    os.close(fd)
    tmp_archive = Path(tmp_name)
    try:
        _write_archive(tmp_archive, staging, members)
        tmp_archive.chmod(_ARCHIVE_MODE)
        os.replace(tmp_archive, archive)
    except OSError as err:
        raise PackageError(f"Unable to write archive {archive}: {err}") from err
    finally:
        tmp_archive.unlink(missing_ok=True)


def package(
    manifests: Sequence[Manifest],
    output_dir: Path,
    root_dir_name: str = DEFAULT_ROOT_DIR_NAME,
    archive_name: str = DEFAULT_ARCHIVE_NAME,
) -> Artifact:
    """Write every manifest under one root directory and compress it."""
    if not manifests:
        raise PackageError("Manifest set is empty")
    for name in (root_dir_name, archive_name):
        if not _SAFE_NAME_RE.match(name):
            raise PackageError(f"Invalid archive name '{name}'")
    verdict = validate_all(manifests)
    if not verdict.valid:
        raise PackageError("Manifest set failed validation", verdict.errors)

    output_dir.mkdir(parents=True, exist_ok=True)
    archive = output_dir / archive_name
    members: list[str] = []
    with tempfile.TemporaryDirectory(prefix="release-gate-package-") as tmp_dir:
        staging = Path(tmp_dir)
        root = staging / root_dir_name
        root.mkdir()
        for index, manifest in enumerate(manifests):
            filename = manifest_filename(index, manifest)
            (root / filename).write_text(manifest.yaml(), encoding="utf-8")
            members.append(f"{root_dir_name}/{filename}")
        _replace_archive(archive, staging, members)

    digest = hashlib.sha256(archive.read_bytes()).hexdigest()
    _LOGGER.info(
        "Packaged %d manifests into %s (sha256 %s)", len(members), archive, digest
    )
    return Artifact(
        path=archive,
        root_dir_name=root_dir_name,
        members=tuple(members),
        sha256=digest,
    )


def read_artifact(path: Path) -> Artifact:
    """Describe a previously packaged archive so it can be published."""
    try:
        with tarfile.open(path, mode="r:gz") as tar:
            names = tar.getnames()
            files = [info.name for info in tar.getmembers() if info.isfile()]
    except (OSError, tarfile.TarError) as err:
        raise PackageError(f"Unable to read archive {path}: {err}") from err
    if not names:
        raise PackageError(f"Archive {path} is empty")
    roots = {name.split("/", 1)[0] for name in names}
    if len(roots) != 1:
        raise PackageError(
            f"Archive {path} must hold a single root directory", sorted(roots)
        )
    return Artifact(
        path=path,
        root_dir_name=roots.pop(),
        members=tuple(files),
        sha256=hashlib.sha256(path.read_bytes()).hexdigest(),
    )
