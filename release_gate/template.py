"""Placeholder substitution for manifest skeleton templates.

Templates reference bindings as `${name}`. A literal dollar sign is written
as `$$`. Rendering is a pure function of the template text and the bindings:
text outside of placeholders is never altered, and every unbound placeholder
is reported at once instead of producing a partially rendered document.

```python
from release_gate.template import render_template

render_template("replicas: ${app_replicas}", {"app_replicas": 4})
# 'replicas: 4'
```
"""

from collections.abc import Mapping
import re
from typing import Any

import yaml

from .exceptions import RenderError

__all__ = [
    "is_plain_scalar",
    "placeholders",
    "render_template",
]

PLACEHOLDER_RE = re.compile(r"\$(?:(\$)|\{([A-Za-z_][A-Za-z0-9_]*)\})")


def placeholders(text: str) -> set[str]:
    """Return the names of every placeholder in the template."""
    return {match.group(2) for match in PLACEHOLDER_RE.finditer(text) if match.group(2)}


def _format(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def is_plain_scalar(value: Any) -> bool:
    """Return True if the value reads back unchanged when inserted unquoted.

    Strings such as `on`, `no` or `1Gi # note` would change type or be
    truncated by the YAML parser.
    """
    text = _format(value)
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError:
        return False
    if loaded is None or isinstance(loaded, (dict, list)):
        return False
    return _format(loaded) == text


def render_template(text: str, bindings: Mapping[str, Any]) -> str:
    """Substitute every placeholder, failing if any has no binding."""
    if missing := placeholders(text) - set(bindings):
        raise RenderError("Template placeholders have no binding", sorted(missing))

    def replace(match: re.Match[str]) -> str:
        if match.group(1):
            return "$"
        return _format(bindings[match.group(2)])

    return PLACEHOLDER_RE.sub(replace, text)
