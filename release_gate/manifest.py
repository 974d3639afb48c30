"""Representation of rendered cluster manifests.

A ManifestSet is the ordered output of the renderer. Its order is a contract
with whoever applies it: the Secret comes first, every PersistentVolumeClaim
comes before anything that mounts it, and deployments follow the
deployments they depend on. `order_manifests` produces that order and
`validate_all` checks it along with the syntax of every document.
"""

import base64
from collections.abc import Iterable, Iterator, Mapping, Sequence
import copy
from dataclasses import dataclass, field
import heapq
import logging
import re
from typing import Any, overload

import yaml

from .exceptions import StructuralError
from .status import Verdict

__all__ = [
    "Manifest",
    "ManifestSet",
    "NamedResource",
    "order_manifests",
    "validate_all",
]

_LOGGER = logging.getLogger(__name__)


SECRET_KIND = "Secret"
CONFIG_MAP_KIND = "ConfigMap"
PVC_KIND = "PersistentVolumeClaim"
DEPLOYMENT_KIND = "Deployment"
SERVICE_KIND = "Service"
INGRESS_KIND = "Ingress"
NETWORK_POLICY_KIND = "NetworkPolicy"
CRON_JOB_KIND = "CronJob"

# Kinds in the order they are applied, any other kind goes last
KIND_ORDER = [
    SECRET_KIND,
    CONFIG_MAP_KIND,
    PVC_KIND,
    DEPLOYMENT_KIND,
    SERVICE_KIND,
    INGRESS_KIND,
    NETWORK_POLICY_KIND,
    CRON_JOB_KIND,
]

# Match a prefix of apiVersion to ensure we have the right type of object.
# We don't check specific versions for forward compatibility on upgrade.
API_VERSION_PREFIX = {
    SECRET_KIND: "v1",
    CONFIG_MAP_KIND: "v1",
    PVC_KIND: "v1",
    SERVICE_KIND: "v1",
    DEPLOYMENT_KIND: "apps/",
    INGRESS_KIND: "networking.k8s.io/",
    NETWORK_POLICY_KIND: "networking.k8s.io/",
    CRON_JOB_KIND: "batch/",
}

REQUIRED_FIELDS = {
    DEPLOYMENT_KIND: [
        "spec.replicas",
        "spec.selector",
        "spec.template.spec.containers",
    ],
    SERVICE_KIND: ["spec.ports"],
    PVC_KIND: ["spec.accessModes", "spec.resources.requests.storage"],
    INGRESS_KIND: ["spec.rules"],
    NETWORK_POLICY_KIND: ["spec.podSelector"],
    CRON_JOB_KIND: ["spec.schedule", "spec.jobTemplate.spec.template.spec.containers"],
}

NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")
VALUE_PLACEHOLDER_TEMPLATE = "..PLACEHOLDER_{name}.."


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


def _walk(obj: Any) -> Iterator[tuple[str, Any]]:
    """Yield every (key, value) pair of nested mappings and lists."""
    if isinstance(obj, dict):
        for key, value in obj.items():
            yield key, value
            yield from _walk(value)
    elif isinstance(obj, list):
        for item in obj:
            yield from _walk(item)


def _lookup(doc: Any, path: str) -> Any:
    for part in path.split("."):
        if not isinstance(doc, dict) or part not in doc:
            return None
        doc = doc[part]
    return doc


@dataclass
class Manifest:
    """One rendered kubernetes object."""

    doc: dict[str, Any]
    """The raw object."""

    source: str | None = None
    """Template the object was rendered from, for diagnostics."""

    @classmethod
    def parse_doc(cls, doc: Any, source: str | None = None) -> "Manifest":
        """Parse a Manifest from a raw kubernetes object."""
        where = f" in {source}" if source else ""
        if not isinstance(doc, dict):
            raise StructuralError(f"Invalid object, expected a mapping{where}")
        if not doc.get("kind"):
            raise StructuralError(f"Invalid object missing kind{where}")
        if not doc.get("apiVersion"):
            raise StructuralError(f"Invalid object missing apiVersion{where}")
        if not _lookup(doc, "metadata.name"):
            raise StructuralError(f"Invalid object missing metadata.name{where}")
        return cls(doc=doc, source=source)

    @property
    def kind(self) -> str:
        """The kind of the object."""
        return str(self.doc.get("kind", ""))

    @property
    def name(self) -> str:
        """The name of the object."""
        return str(_lookup(self.doc, "metadata.name") or "")

    @property
    def namespace(self) -> str | None:
        """The namespace of the object."""
        return _lookup(self.doc, "metadata.namespace")

    @property
    def id(self) -> NamedResource:
        """Identifier of the object."""
        return NamedResource(kind=self.kind, namespace=self.namespace, name=self.name)

    @property
    def claim_names(self) -> set[str]:
        """Names of the PersistentVolumeClaims mounted by this object."""
        return {
            value["claimName"]
            for key, value in _walk(self.doc)
            if key == "persistentVolumeClaim"
            and isinstance(value, dict)
            and "claimName" in value
        }

    @property
    def secret_key_refs(self) -> set[tuple[str, str]]:
        """The (secret, key) pairs this object reads through secretKeyRef."""
        return {
            (value.get("name"), value.get("key"))
            for key, value in _walk(self.doc)
            if key == "secretKeyRef" and isinstance(value, dict)
        }

    @property
    def secret_names(self) -> set[str]:
        """Names of every Secret this object reads data from."""
        names = {name for name, _ in self.secret_key_refs}
        for key, value in _walk(self.doc):
            if key == "secretRef" and isinstance(value, dict) and "name" in value:
                names.add(value["name"])
        return names

    @property
    def data_keys(self) -> set[str]:
        """Keys of a Secret or ConfigMap."""
        return set(self.doc.get("data") or {}) | set(self.doc.get("stringData") or {})

    def wipe_secrets(self) -> "Manifest":
        """Return a copy with Secret values replaced by placeholders."""
        if self.kind != SECRET_KIND:
            return self
        doc = copy.deepcopy(self.doc)
        if data := doc.get("data"):
            for key in data:
                data[key] = base64.b64encode(
                    VALUE_PLACEHOLDER_TEMPLATE.format(name=key).encode()
                ).decode()
        if string_data := doc.get("stringData"):
            for key in string_data:
                string_data[key] = VALUE_PLACEHOLDER_TEMPLATE.format(name=key)
        return Manifest(doc=doc, source=self.source)

    def yaml(self) -> str:
        """Return the YAML document for the object."""
        return yaml.dump(self.doc, sort_keys=False, explicit_start=True)

    def __str__(self) -> str:
        """Return the object id."""
        return str(self.id)


@dataclass(frozen=True)
class ManifestSet(Sequence[Manifest]):
    """Ordered collection of rendered manifests.

    The order is produced by `order_manifests` and must not be changed by callers.
    """

    manifests: tuple[Manifest, ...] = field(default_factory=tuple)

    @overload
    def __getitem__(self, index: int) -> Manifest: ...

    @overload
    def __getitem__(self, index: slice) -> Sequence[Manifest]: ...

    def __getitem__(self, index: int | slice) -> Manifest | Sequence[Manifest]:
        return self.manifests[index]

    def __len__(self) -> int:
        return len(self.manifests)

    @property
    def kinds(self) -> list[str]:
        """Kinds of the manifests in order."""
        return [manifest.kind for manifest in self.manifests]

    def of_kind(self, kind: str) -> list[Manifest]:
        """Return the manifests of the specified kind in order."""
        return [manifest for manifest in self.manifests if manifest.kind == kind]

    def wipe_secrets(self) -> "ManifestSet":
        """Return a copy safe to print, with every Secret value wiped."""
        return ManifestSet(
            tuple(manifest.wipe_secrets() for manifest in self.manifests)
        )

    def yaml(self) -> str:
        """Return every manifest as one multi-document YAML stream."""
        return yaml.dump_all(
            [manifest.doc for manifest in self.manifests],
            sort_keys=False,
            explicit_start=True,
        )


def _kind_rank(kind: str) -> int:
    if kind in KIND_ORDER:
        return KIND_ORDER.index(kind)
    return len(KIND_ORDER)


def order_manifests(
    manifests: Iterable[Manifest],
    dependencies: Mapping[str, Iterable[str]] | None = None,
) -> ManifestSet:
    """Order manifests so that each is applied after what it relies on.

    Objects are grouped by kind in `KIND_ORDER`, keeping their input order
    within a kind. An object is always moved after the Secrets it reads, the
    PersistentVolumeClaims it mounts and, for Deployments, the Deployments
    named in `dependencies`.
    """
    items = list(manifests)
    dependencies = dependencies or {}
    by_id: dict[tuple[str, str], int] = {}
    for index, manifest in enumerate(items):
        by_id.setdefault((manifest.kind, manifest.name), index)

    edges: dict[int, set[int]] = {index: set() for index in range(len(items))}
    for index, manifest in enumerate(items):
        needs = [(PVC_KIND, claim) for claim in manifest.claim_names]
        needs.extend((SECRET_KIND, secret) for secret in manifest.secret_names)
        if manifest.kind == DEPLOYMENT_KIND:
            needs.extend(
                (DEPLOYMENT_KIND, dep) for dep in dependencies.get(manifest.name, [])
            )
        for need in needs:
            if (before := by_id.get(need)) is not None and before != index:
                edges[before].add(index)

    indegree = {index: 0 for index in edges}
    for targets in edges.values():
        for target in targets:
            indegree[target] += 1
    ready = [(_kind_rank(items[i].kind), i) for i, deg in indegree.items() if deg == 0]
    heapq.heapify(ready)
    ordered: list[Manifest] = []
    while ready:
        _, index = heapq.heappop(ready)
        ordered.append(items[index])
        for target in sorted(edges[index]):
            indegree[target] -= 1
            if indegree[target] == 0:
                heapq.heappush(ready, (_kind_rank(items[target].kind), target))
    if len(ordered) != len(items):
        cycle = sorted(str(items[i]) for i, deg in indegree.items() if deg > 0)
        raise StructuralError("Manifests have circular references", cycle)
    return ManifestSet(tuple(ordered))


def validate_manifest(manifest: Manifest) -> list[str]:
    """Return the syntax errors of a single manifest."""
    errors: list[str] = []
    try:
        reparsed = yaml.safe_load(manifest.yaml())
    except yaml.YAMLError as err:
        return [f"not valid YAML: {err}"]
    if reparsed != manifest.doc:
        errors.append("does not survive a YAML round trip")
    kind = manifest.kind
    if not kind:
        errors.append("missing kind")
    api_version = manifest.doc.get("apiVersion")
    if not isinstance(api_version, str) or not api_version:
        errors.append("missing apiVersion")
    elif (prefix := API_VERSION_PREFIX.get(kind)) and not api_version.startswith(
        prefix
    ):
        errors.append(f"apiVersion '{api_version}' is not valid for {kind}")
    if not manifest.name:
        errors.append("missing metadata.name")
    elif not NAME_RE.match(manifest.name) or len(manifest.name) > 253:
        errors.append(f"invalid metadata.name '{manifest.name}'")
    for path in REQUIRED_FIELDS.get(kind, []):
        if _lookup(manifest.doc, path) is None:
            errors.append(f"missing {path}")
    if kind == SECRET_KIND and not manifest.data_keys:
        errors.append("Secret has no data")
    return errors


def check_ordering(manifests: Sequence[Manifest]) -> list[str]:
    """Return every violation of the application order of the manifests."""
    errors: list[str] = []
    if manifests and manifests[0].kind != SECRET_KIND:
        errors.append(f"first manifest must be a Secret, found {manifests[0]}")
    seen: dict[tuple[str, str], Manifest] = {}
    names = {(manifest.kind, manifest.name) for manifest in manifests}
    for manifest in manifests:
        for claim in sorted(manifest.claim_names):
            if (PVC_KIND, claim) not in names:
                errors.append(f"{manifest} mounts unknown {PVC_KIND} '{claim}'")
            elif (PVC_KIND, claim) not in seen:
                errors.append(f"{manifest} appears before {PVC_KIND} '{claim}'")
        for secret in sorted(manifest.secret_names):
            if (SECRET_KIND, secret) not in names:
                errors.append(f"{manifest} reads unknown {SECRET_KIND} '{secret}'")
            elif (SECRET_KIND, secret) not in seen:
                errors.append(f"{manifest} appears before {SECRET_KIND} '{secret}'")
        seen[(manifest.kind, manifest.name)] = manifest
    return errors


def check_secret_keys(manifests: Sequence[Manifest]) -> list[str]:
    """Return every secretKeyRef that names a key its Secret does not have."""
    secrets = {m.name: m.data_keys for m in manifests if m.kind == SECRET_KIND}
    errors: list[str] = []
    for manifest in manifests:
        for secret, key in sorted(manifest.secret_key_refs, key=str):
            if secret in secrets and key not in secrets[secret]:
                errors.append(f"{manifest} reads missing key '{key}' of '{secret}'")
    return errors


def validate_all(manifests: Sequence[Manifest]) -> Verdict:
    """Check that every manifest is well formed and the set is correctly ordered.

    This is purely syntactic; the cluster performs semantic validation on apply.
    """
    if not manifests:
        return Verdict(["manifest set is empty"])
    errors: list[str] = []
    ids: set[NamedResource] = set()
    for index, manifest in enumerate(manifests):
        label = f"[{index}] {manifest}"
        if manifest.source:
            label += f" ({manifest.source})"
        errors.extend(f"{label}: {error}" for error in validate_manifest(manifest))
        if manifest.id in ids:
            errors.append(f"{label}: duplicate object")
        ids.add(manifest.id)
    errors.extend(check_ordering(manifests))
    errors.extend(check_secret_keys(manifests))
    if errors:
        _LOGGER.debug("Manifest validation failed: %s", errors)
    return Verdict(errors)
