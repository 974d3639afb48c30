"""Library for rendering cluster manifests from templates.

The renderer turns a directory of manifest skeletons plus a SecretBundle
into an ordered ManifestSet. The secret bundle becomes a single `Secret`
object, and the topology's replica counts, resource bounds, storage sizes
and probe timings become `${...}` template bindings:

```python
from release_gate import renderer

manifests = await renderer.ManifestRenderer(config).render(topology, secrets)
verdict = manifest.validate_all(manifests)
```

Secret values are base64 encoded in the rendered Secret. This is a
reversible encoding used by kubernetes for transport, not encryption.
"""

from collections.abc import Iterable, Mapping
import logging
from pathlib import Path
from typing import Any

import aiofiles
import yaml

from .config import RendererConfig
from .exceptions import RenderError, StructuralError
from .manifest import Manifest, ManifestSet, SECRET_KIND, order_manifests
from .secrets import SecretBundle
from .template import is_plain_scalar, render_template
from .topology import ServiceSpec, ServiceTopology

__all__ = [
    "ManifestRenderer",
    "render_secret_manifest",
    "render_from_template",
    "topology_bindings",
]

_LOGGER = logging.getLogger(__name__)

TEMPLATE_SUFFIXES = (".yaml", ".yml")
MANAGED_BY = "release-gate"


def render_secret_manifest(
    secrets: SecretBundle,
    required: Iterable[str],
    name: str,
    namespace: str | None = None,
    labels: Mapping[str, str] | None = None,
) -> Manifest:
    """Encode every secret of the bundle into one Secret object.

    Fails naming each required secret that is missing from the bundle.
    """
    if missing := secrets.missing(required):
        raise RenderError("Secret bundle is missing required secrets", missing)
    metadata: dict[str, Any] = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    if labels:
        metadata["labels"] = dict(labels)
    doc = {
        "apiVersion": "v1",
        "kind": SECRET_KIND,
        "metadata": metadata,
        "type": "Opaque",
        "data": {secret: secrets.encoded(secret) for secret in secrets.names},
    }
    _LOGGER.debug("Rendered Secret %s with keys: %s", name, ", ".join(secrets.names))
    return Manifest(doc=doc, source="<secrets>")


def _binding_prefix(service: ServiceSpec) -> str:
    return service.name.replace("-", "_")


def resource_name(topology: ServiceTopology, service: ServiceSpec) -> str:
    """Name of the cluster objects rendered for a service."""
    return f"{topology.name}-{service.name}"


def topology_bindings(
    topology: ServiceTopology,
    namespace: str,
    secret_name: str,
    extra: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Return the template bindings describing the topology.

    Each service `svc` contributes `svc_name`, `svc_image`, `svc_replicas`,
    `svc_cpu_request`, `svc_cpu_limit`, `svc_memory_request`,
    `svc_memory_limit`, the probe timings `svc_liveness_period` etc. and,
    when it has storage, `svc_claim_name`, `svc_storage_size`,
    `svc_storage_access_mode` and `svc_mount_path`. Extra bindings are
    applied last and may override any of them.
    """
    bindings: dict[str, Any] = {
        "app_name": topology.name,
        "namespace": namespace,
        "secret_name": secret_name,
    }
    for service in topology.services:
        prefix = _binding_prefix(service)
        name = resource_name(topology, service)
        bindings.update(
            {
                f"{prefix}_name": name,
                f"{prefix}_image": service.image,
                f"{prefix}_replicas": service.replicas,
                f"{prefix}_cpu_request": service.resources.requests.cpu,
                f"{prefix}_cpu_limit": service.resources.limits.cpu,
                f"{prefix}_memory_request": service.resources.requests.memory,
                f"{prefix}_memory_limit": service.resources.limits.memory,
            }
        )
        if service.ports:
            bindings[f"{prefix}_port"] = service.ports[0]
        if service.storage:
            bindings.update(
                {
                    f"{prefix}_claim_name": f"{name}-data",
                    f"{prefix}_storage_size": service.storage.capacity,
                    f"{prefix}_storage_access_mode": str(service.storage.access_mode),
                    f"{prefix}_mount_path": service.storage.mount_path,
                }
            )
        for probe_name, probe in (
            ("liveness", service.probes.liveness),
            ("readiness", service.probes.readiness),
        ):
            for key, value in probe.to_dict().items():
                bindings[f"{prefix}_{probe_name}_{key}"] = value
    if invalid := [
        key for key, value in (extra or {}).items() if not is_plain_scalar(value)
    ]:
        raise RenderError("Bindings must be plain YAML scalars", invalid)
    bindings.update(extra or {})
    return bindings


async def render_from_template(
    path: Path, bindings: Mapping[str, Any]
) -> list[Manifest]:
    """Render a template file into the manifests it describes."""
    async with aiofiles.open(str(path)) as template_file:
        content = await template_file.read()
    try:
        rendered = render_template(content, bindings)
    except RenderError as err:
        raise RenderError(
            f"Template {path.name} has placeholders with no binding", err.missing
        ) from err
    try:
        docs = [doc for doc in yaml.safe_load_all(rendered) if doc is not None]
    except yaml.YAMLError as err:
        raise StructuralError(f"Unable to parse rendered {path.name}: {err}") from err
    return [Manifest.parse_doc(doc, source=path.name) for doc in docs]


class ManifestRenderer:
    """Renders a topology into an ordered ManifestSet."""

    def __init__(self, config: RendererConfig) -> None:
        """Initialize ManifestRenderer."""
        self._config = config

    def secret_name(self, topology: ServiceTopology) -> str:
        """Name of the rendered Secret."""
        return self._config.secret_name or f"{topology.name}-secrets"

    def template_paths(self) -> list[Path]:
        """Return the template files in a stable order."""
        template_dir = self._config.template_dir
        if template_dir is None or not template_dir.is_dir():
            raise StructuralError(f"Template directory does not exist: {template_dir}")
        paths = sorted(
            path
            for path in template_dir.iterdir()
            if path.is_file() and path.suffix in TEMPLATE_SUFFIXES
        )
        if not paths:
            raise StructuralError(f"No templates found in {template_dir}")
        return paths

    async def render(
        self, topology: ServiceTopology, secrets: SecretBundle
    ) -> ManifestSet:
        """Render the Secret and every template, in application order."""
        required = set(topology.secrets) | set(topology.required_secrets)
        secret_name = self.secret_name(topology)
        secret = render_secret_manifest(
            secrets,
            required,
            secret_name,
            self._config.namespace,
            labels={
                "app.kubernetes.io/name": topology.name,
                "app.kubernetes.io/managed-by": MANAGED_BY,
            },
        )
        bindings = topology_bindings(
            topology, self._config.namespace, secret_name, self._config.bindings
        )
        manifests = [secret]
        for path in self.template_paths():
            rendered = await render_from_template(path, bindings)
            _LOGGER.debug("Rendered %d object(s) from %s", len(rendered), path.name)
            manifests.extend(rendered)
        dependencies = {
            resource_name(topology, service): [
                resource_name(topology, topology.service(dep))
                for dep in service.depends_on
            ]
            for service in topology.services
        }
        result = order_manifests(manifests, dependencies)
        _LOGGER.info(
            "Rendered %d manifests for %s: %s",
            len(result),
            topology.name,
            ", ".join(str(manifest) for manifest in result),
        )
        return result
