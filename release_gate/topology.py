"""Representation and validation of a service topology.

A topology is a compose-like YAML description of the services that make up
one application, their images, scaling, resource bounds, storage and the
secrets each one requires:

```yaml
name: cms
secrets:
  - db_password
services:
  db:
    image: mariadb:11.4
    tier: database
    replicas: 1
    resources:
      requests: {cpu: 250m, memory: 256Mi}
      limits: {cpu: 500m, memory: 512Mi}
    storage: {capacity: 5Gi, access_mode: ReadWriteOnce, mount_path: /var/lib/mysql}
    secrets: [db_password]
```

The validator is read-only and reports every structural error it finds:
```python
from release_gate import topology

verdict = topology.validate_topology(yaml.safe_load(content))
if not verdict.valid:
    print("\\n".join(verdict.errors))
```
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import StrEnum
import logging
from pathlib import Path
import re
from typing import Any

import aiofiles
from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig
import yaml

from .exceptions import StructuralError
from .secrets import SecretBundle
from .status import Verdict

__all__ = [
    "AccessMode",
    "Tier",
    "ProbeSettings",
    "Probes",
    "ResourceBounds",
    "Resources",
    "Storage",
    "ServiceSpec",
    "ServiceTopology",
    "load_topology",
    "parse_topology",
    "validate_topology",
]

_LOGGER = logging.getLogger(__name__)

SERVICE_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
CPU_RE = re.compile(r"^([0-9]+(\.[0-9]+)?)(m?)$")
MEMORY_RE = re.compile(r"^([0-9]+(\.[0-9]+)?)(Ki|Mi|Gi|Ti|Pi|Ei|k|M|G|T|P|E)?$")

_MEMORY_UNITS = {
    None: 1,
    "k": 10**3,
    "M": 10**6,
    "G": 10**9,
    "T": 10**12,
    "P": 10**15,
    "E": 10**18,
    "Ki": 2**10,
    "Mi": 2**20,
    "Gi": 2**30,
    "Ti": 2**40,
    "Pi": 2**50,
    "Ei": 2**60,
}

SERVICE_KEYS = {
    "image",
    "tier",
    "replicas",
    "resources",
    "storage",
    "secrets",
    "depends_on",
    "environment",
    "ports",
    "probes",
    "required",
}
PROBE_KEYS = {"initial_delay", "period", "timeout", "failure_threshold"}


class AccessMode(StrEnum):
    """Storage access mode of a volume claim."""

    EXCLUSIVE_WRITER = "ReadWriteOnce"
    SHARED_WRITER = "ReadWriteMany"

    @classmethod
    def parse(cls, value: str) -> "AccessMode":
        """Parse an access mode from its kubernetes or descriptive name."""
        aliases = {
            "exclusive-writer": cls.EXCLUSIVE_WRITER,
            "shared-writer": cls.SHARED_WRITER,
        }
        if value in aliases:
            return aliases[value]
        return cls(value)


class Tier(StrEnum):
    """Role of a service, used to select probe defaults."""

    DATABASE = "database"
    APPLICATION = "application"


def parse_cpu(value: Any) -> Decimal:
    """Parse a kubernetes cpu quantity into cores."""
    if not (match := CPU_RE.match(str(value))):
        raise ValueError(f"invalid cpu quantity '{value}'")
    cores = Decimal(match.group(1))
    return cores / 1000 if match.group(3) else cores


def parse_memory(value: Any) -> Decimal:
    """Parse a kubernetes memory or storage quantity into bytes."""
    if not (match := MEMORY_RE.match(str(value))):
        raise ValueError(f"invalid memory quantity '{value}'")
    try:
        amount = Decimal(match.group(1))
    except InvalidOperation as err:
        raise ValueError(f"invalid memory quantity '{value}'") from err
    return amount * _MEMORY_UNITS[match.group(3)]


@dataclass
class ProbeSettings(DataClassDictMixin):
    """Timing parameters for one liveness or readiness probe."""

    initial_delay: int
    period: int
    timeout: int
    failure_threshold: int

    def override(self, values: dict[str, int] | None) -> "ProbeSettings":
        """Return a copy with the specified fields replaced."""
        return ProbeSettings.from_dict({**self.to_dict(), **(values or {})})


@dataclass
class Probes(DataClassDictMixin):
    """Liveness and readiness probe settings for a service."""

    liveness: ProbeSettings
    readiness: ProbeSettings


DEFAULT_PROBES: dict[Tier, Probes] = {
    Tier.DATABASE: Probes(
        liveness=ProbeSettings(
            initial_delay=30, period=10, timeout=5, failure_threshold=3
        ),
        readiness=ProbeSettings(
            initial_delay=20, period=5, timeout=3, failure_threshold=2
        ),
    ),
    Tier.APPLICATION: Probes(
        liveness=ProbeSettings(
            initial_delay=40, period=15, timeout=5, failure_threshold=3
        ),
        readiness=ProbeSettings(
            initial_delay=20, period=5, timeout=3, failure_threshold=2
        ),
    ),
}


@dataclass
class ResourceBounds(DataClassDictMixin):
    """A cpu and memory pair used as either requests or limits."""

    cpu: str
    memory: str


@dataclass
class Resources(DataClassDictMixin):
    """Requested and maximum compute resources of one replica."""

    requests: ResourceBounds
    limits: ResourceBounds


@dataclass
class Storage(DataClassDictMixin):
    """Persistent storage required by a service."""

    capacity: str
    access_mode: AccessMode
    mount_path: str


@dataclass
class ServiceSpec(DataClassDictMixin):
    """One named service of the topology."""

    name: str
    image: str
    tier: Tier
    replicas: int
    resources: Resources
    probes: Probes
    storage: Storage | None = None
    secrets: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)
    ports: list[int] = field(default_factory=list)
    required: bool = True

    class Config(BaseConfig):
        omit_none = True

    @classmethod
    def parse_doc(cls, name: str, doc: dict[str, Any]) -> "ServiceSpec":
        """Parse a service from its entry in a validated topology document."""
        tier = Tier(doc["tier"])
        overrides = doc.get("probes") or {}
        defaults = DEFAULT_PROBES[tier]
        storage: Storage | None = None
        if storage_doc := doc.get("storage"):
            storage = Storage(
                capacity=str(storage_doc["capacity"]),
                access_mode=AccessMode.parse(storage_doc["access_mode"]),
                mount_path=storage_doc["mount_path"],
            )
        resources = doc["resources"]
        return cls(
            name=name,
            image=doc["image"],
            tier=tier,
            replicas=doc["replicas"],
            resources=Resources(
                requests=ResourceBounds(
                    cpu=str(resources["requests"]["cpu"]),
                    memory=str(resources["requests"]["memory"]),
                ),
                limits=ResourceBounds(
                    cpu=str(resources["limits"]["cpu"]),
                    memory=str(resources["limits"]["memory"]),
                ),
            ),
            probes=Probes(
                liveness=defaults.liveness.override(overrides.get("liveness")),
                readiness=defaults.readiness.override(overrides.get("readiness")),
            ),
            storage=storage,
            secrets=list(doc.get("secrets") or []),
            depends_on=list(doc.get("depends_on") or []),
            environment={
                str(k): str(v) for k, v in (doc.get("environment") or {}).items()
            },
            ports=list(doc.get("ports") or []),
            required=doc.get("required", True),
        )


@dataclass
class ServiceTopology(DataClassDictMixin):
    """Ordered set of named services that make up one application."""

    name: str
    services: list[ServiceSpec]
    secrets: list[str] = field(default_factory=list)

    @property
    def service_names(self) -> list[str]:
        """Names of the services in declaration order."""
        return [service.name for service in self.services]

    @property
    def required_services(self) -> list[ServiceSpec]:
        """Services that must be healthy for the topology to be healthy."""
        return [service for service in self.services if service.required]

    @property
    def required_secrets(self) -> list[str]:
        """Every secret name referenced by any service."""
        return sorted({name for service in self.services for name in service.secrets})

    def service(self, name: str) -> ServiceSpec:
        """Return the service with the specified name."""
        for service in self.services:
            if service.name == name:
                return service
        raise KeyError(name)

    def dependency_order(self) -> list[ServiceSpec]:
        """Return services ordered so that each follows its dependencies."""
        ordered: list[ServiceSpec] = []
        visited: set[str] = set()

        def visit(service: ServiceSpec) -> None:
            if service.name in visited:
                return
            visited.add(service.name)
            for dep in service.depends_on:
                visit(self.service(dep))
            ordered.append(service)

        for service in self.services:
            visit(service)
        return ordered


def _check_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _validate_resources(prefix: str, resources: Any, errors: list[str]) -> None:
    if not isinstance(resources, dict):
        errors.append(f"{prefix}: missing resources")
        return
    parsed: dict[str, dict[str, Decimal]] = {}
    for bound in ("requests", "limits"):
        if not isinstance(values := resources.get(bound), dict):
            errors.append(f"{prefix}: missing resources.{bound}")
            continue
        parsed[bound] = {}
        for key, parser in (("cpu", parse_cpu), ("memory", parse_memory)):
            if (value := values.get(key)) is None:
                errors.append(f"{prefix}: missing resources.{bound}.{key}")
                continue
            try:
                parsed[bound][key] = parser(value)
            except ValueError as err:
                errors.append(f"{prefix}: resources.{bound}.{key} {err}")
    if "requests" in parsed and "limits" in parsed:
        for key in ("cpu", "memory"):
            request = parsed["requests"].get(key)
            limit = parsed["limits"].get(key)
            if request is not None and limit is not None and request > limit:
                errors.append(f"{prefix}: resources.requests.{key} exceeds limit")


def _validate_storage(prefix: str, storage: Any, errors: list[str]) -> None:
    if not isinstance(storage, dict):
        errors.append(f"{prefix}: storage must be a mapping")
        return
    if (capacity := storage.get("capacity")) is None:
        errors.append(f"{prefix}: missing storage.capacity")
    else:
        try:
            if parse_memory(capacity) <= 0:
                errors.append(f"{prefix}: storage.capacity must be positive")
        except ValueError as err:
            errors.append(f"{prefix}: storage.capacity {err}")
    try:
        AccessMode.parse(str(storage.get("access_mode", "")))
    except ValueError:
        errors.append(
            f"{prefix}: invalid storage.access_mode '{storage.get('access_mode')}'"
        )
    if not isinstance(storage.get("mount_path"), str) or not str(
        storage.get("mount_path")
    ).startswith("/"):
        errors.append(f"{prefix}: storage.mount_path must be an absolute path")


def _validate_probes(prefix: str, probes: Any, errors: list[str]) -> None:
    if not isinstance(probes, dict):
        errors.append(f"{prefix}: probes must be a mapping")
        return
    for probe_name, values in probes.items():
        if probe_name not in ("liveness", "readiness"):
            errors.append(f"{prefix}: unknown probe '{probe_name}'")
            continue
        if not isinstance(values, dict):
            errors.append(f"{prefix}: probes.{probe_name} must be a mapping")
            continue
        for key, value in values.items():
            if key not in PROBE_KEYS:
                errors.append(f"{prefix}: unknown probes.{probe_name} field '{key}'")
            elif not _check_positive_int(value):
                errors.append(
                    f"{prefix}: probes.{probe_name}.{key} must be a positive integer"
                )


def _validate_service(
    name: Any, doc: Any, declared_secrets: set[str], all_services: set[str]
) -> list[str]:
    prefix = f"service '{name}'"
    errors: list[str] = []
    if not isinstance(name, str) or not SERVICE_NAME_RE.match(name):
        errors.append(f"{prefix}: name must be a lowercase DNS label")
    if not isinstance(doc, dict):
        return errors + [f"{prefix}: definition must be a mapping"]
    if unknown := set(doc) - SERVICE_KEYS:
        errors.append(f"{prefix}: unknown fields {sorted(unknown)}")
    if not isinstance(image := doc.get("image"), str) or not image.strip():
        errors.append(f"{prefix}: missing image")
    if not isinstance(tier := doc.get("tier"), str) or tier not in set(Tier):
        errors.append(f"{prefix}: tier must be one of {[t.value for t in Tier]}")
    if not _check_positive_int(doc.get("replicas")):
        errors.append(f"{prefix}: replicas must be a positive integer")
    _validate_resources(prefix, doc.get("resources"), errors)
    if doc.get("storage") is not None:
        _validate_storage(prefix, doc["storage"], errors)
    if doc.get("probes") is not None:
        _validate_probes(prefix, doc["probes"], errors)
    for key in ("secrets", "depends_on", "ports"):
        if not isinstance(doc.get(key) or [], list):
            errors.append(f"{prefix}: {key} must be a list")
            return errors
    for secret in doc.get("secrets") or []:
        if not isinstance(secret, str) or secret not in declared_secrets:
            errors.append(f"{prefix}: secret '{secret}' is not declared")
    for dep in doc.get("depends_on") or []:
        if dep == name:
            errors.append(f"{prefix}: depends on itself")
        elif not isinstance(dep, str) or dep not in all_services:
            errors.append(f"{prefix}: depends on unknown service '{dep}'")
    if not isinstance(doc.get("environment") or {}, dict):
        errors.append(f"{prefix}: environment must be a mapping")
    for port in doc.get("ports") or []:
        if not _check_positive_int(port) or port > 65535:
            errors.append(f"{prefix}: invalid port '{port}'")
    if not isinstance(doc.get("required", True), bool):
        errors.append(f"{prefix}: required must be a boolean")
    return errors


def _find_cycle(services: dict[str, Any]) -> list[str] | None:
    """Return a dependency cycle between services, if there is one."""
    state: dict[str, int] = {}
    path: list[str] = []

    def visit(name: str) -> list[str] | None:
        state[name] = 1
        path.append(name)
        doc = services.get(name)
        deps = (doc.get("depends_on") or []) if isinstance(doc, dict) else []
        for dep in deps if isinstance(deps, list) else []:
            if not isinstance(dep, str) or dep not in services or dep == name:
                continue
            if state.get(dep) == 1:
                return path[path.index(dep) :] + [dep]
            if dep not in state and (cycle := visit(dep)):
                return cycle
        path.pop()
        state[name] = 2
        return None

    for name in services:
        if name not in state and (cycle := visit(name)):
            return cycle
    return None


def validate_topology(doc: Any, secrets: SecretBundle | None = None) -> Verdict:
    """Check a parsed topology document, returning every structural error.

    When a SecretBundle is given, every declared secret must also resolve to
    a value in the bundle.
    """
    if not isinstance(doc, dict):
        return Verdict(["topology must be a mapping"])
    errors: list[str] = []
    if not isinstance(name := doc.get("name"), str) or not SERVICE_NAME_RE.match(
        name
    ):
        errors.append("topology name must be a lowercase DNS label")
    declared = doc.get("secrets") or []
    if not isinstance(declared, list) or not all(
        isinstance(s, str) for s in declared
    ):
        errors.append("secrets must be a list of names")
        declared = []
    elif len(set(declared)) != len(declared):
        errors.append("secrets contains duplicate names")
    services = doc.get("services")
    if not isinstance(services, dict) or not services:
        errors.append("services must be a non-empty mapping")
        services = {}
    for service_name, service_doc in services.items():
        errors.extend(
            _validate_service(service_name, service_doc, set(declared), set(services))
        )
    if cycle := _find_cycle(services):
        errors.append(f"dependency cycle between services: {' -> '.join(cycle)}")
    if secrets is not None and (missing := secrets.missing(declared)):
        errors.extend(f"secret '{name}' has no value" for name in missing)
    return Verdict(errors)


def parse_topology(doc: Any, secrets: SecretBundle | None = None) -> ServiceTopology:
    """Validate and parse a topology document, raising on any structural error."""
    verdict = validate_topology(doc, secrets)
    if not verdict.valid:
        raise StructuralError("Invalid service topology", verdict.errors)
    return ServiceTopology(
        name=doc["name"],
        services=[
            ServiceSpec.parse_doc(name, service_doc)
            for name, service_doc in doc["services"].items()
        ],
        secrets=list(doc.get("secrets") or []),
    )


async def read_topology_doc(path: Path) -> Any:
    """Read the raw topology document from a YAML file."""
    try:
        async with aiofiles.open(str(path)) as topology_file:
            content = await topology_file.read()
    except (OSError, UnicodeDecodeError) as err:
        raise StructuralError(f"Unable to read topology file {path}: {err}") from err
    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as err:
        raise StructuralError(f"Unable to parse topology file {path}: {err}") from err


async def load_topology(
    path: Path, secrets: SecretBundle | None = None
) -> ServiceTopology:
    """Read, validate and parse a topology file."""
    topology = parse_topology(await read_topology_doc(path), secrets)
    _LOGGER.info(
        "Loaded topology %s with services: %s",
        topology.name,
        ", ".join(topology.service_names),
    )
    return topology
