"""Builds the desired state of a release from raw configuration.

The raw configuration is a mapping as read from a YAML document, e.g.:

```yaml
name: prometheus-adapter
namespace: prometheus
chartRef: prometheus-community/prometheus-adapter
version: 4.1.1
atomic: true
maxHistory: 50
values:
  metricsRelistInterval: 30s
set:
- name: resources.limits.memory
  value: 256Mi
```

Values from the nested `values` mapping are flattened to dotted keys, then
each `set` entry is applied in order. The last write to a key wins.
"""

from collections.abc import Mapping
import logging
import re
from typing import Any

from .exceptions import ValidationError
from .manifest import (
    DEFAULT_MAX_HISTORY,
    DEFAULT_NAMESPACE,
    DEFAULT_TIMEOUT,
    VOLATILE_VALUES_KEY,
    ReleaseSpec,
)
from .values import flatten_values, merge_value, split_key

__all__ = [
    "build_release_spec",
]

_LOGGER = logging.getLogger(__name__)

# Helm release names are DNS-1123 subdomains limited to 53 characters
_RELEASE_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")
_RELEASE_NAME_MAX = 53
_NAMESPACE_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_NAMESPACE_MAX = 63

_ALIASES = {
    "chartRef": "chart_ref",
    "chart": "chart_ref",
    "maxHistory": "max_history",
    "createNamespace": "create_namespace",
    "namespaceLabels": "namespace_labels",
}
_FIELDS = {
    "name",
    "namespace",
    "chart_ref",
    "values",
    "set",
    "atomic",
    "max_history",
    "version",
    "repository",
    "timeout",
    "wait",
    "create_namespace",
    "namespace_labels",
    "description",
}


def _normalize_keys(raw_config: Mapping[str, Any]) -> dict[str, Any]:
    """Map camelCase keys to field names, rejecting unknown or repeated fields."""
    result: dict[str, Any] = {}
    for key, value in raw_config.items():
        field_name = _ALIASES.get(key, key)
        if field_name not in _FIELDS:
            raise ValidationError(f"Unknown release field '{key}'")
        if field_name in result:
            raise ValidationError(f"Release field '{key}' is set more than once")
        result[field_name] = value
    return result


def _get_str(doc: dict[str, Any], key: str, default: str | None = None) -> str | None:
    value = doc.get(key, default)
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # YAML reads versions such as `1.2` as numbers
        return str(value)
    if not isinstance(value, str):
        raise ValidationError(f"Release field '{key}' must be a string, was {value!r}")
    return value


def _get_bool(doc: dict[str, Any], key: str, default: bool) -> bool:
    value = doc.get(key, default)
    if not isinstance(value, bool):
        raise ValidationError(f"Release field '{key}' must be a boolean, was {value!r}")
    return value


def _get_int(doc: dict[str, Any], key: str, default: int) -> int:
    value = doc.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            f"Release field '{key}' must be an integer, was {value!r}"
        )
    return value


def _build_values(doc: dict[str, Any]) -> dict[str, str]:
    nested = doc.get("values") or {}
    if not isinstance(nested, Mapping):
        raise ValidationError(
            f"Release field 'values' must be a mapping, was {nested!r}"
        )
    values = flatten_values(nested)
    set_entries = doc.get("set") or []
    if not isinstance(set_entries, list):
        raise ValidationError(
            f"Release field 'set' must be a list, was {set_entries!r}"
        )
    for entry in set_entries:
        if not isinstance(entry, Mapping) or not isinstance(entry.get("name"), str):
            raise ValidationError(
                f"Invalid 'set' entry, expected name and value: {entry!r}"
            )
        if "value" not in entry:
            raise ValidationError(f"Invalid 'set' entry {entry['name']} missing value")
        merge_value(values, entry["name"], entry["value"])
    for key in values:
        if split_key(key)[0] == VOLATILE_VALUES_KEY:
            raise ValidationError(f"Values key '{VOLATILE_VALUES_KEY}' is reserved")
    return values


def _build_labels(doc: dict[str, Any]) -> dict[str, str]:
    labels = doc.get("namespace_labels") or {}
    if not isinstance(labels, Mapping):
        raise ValidationError(
            f"Release field 'namespaceLabels' must be a mapping, was {labels!r}"
        )
    result = {}
    for key, value in labels.items():
        if not isinstance(key, str) or not key:
            raise ValidationError(f"Invalid namespace label key {key!r}")
        result[key] = value if isinstance(value, str) else str(value)
    return result


def build_release_spec(raw_config: Mapping[str, Any]) -> ReleaseSpec:
    """Build and validate a ReleaseSpec from a raw configuration mapping."""
    if not isinstance(raw_config, Mapping):
        raise ValidationError(
            f"Release definition must be a mapping, was {type(raw_config).__name__}"
        )
    doc = _normalize_keys(raw_config)

    if not (name := _get_str(doc, "name")):
        raise ValidationError(f"Release definition missing name: {dict(raw_config)}")
    if len(name) > _RELEASE_NAME_MAX or not _RELEASE_NAME_RE.match(name):
        raise ValidationError(f"Invalid release name '{name}'")

    namespace = _get_str(doc, "namespace", DEFAULT_NAMESPACE) or DEFAULT_NAMESPACE
    if len(namespace) > _NAMESPACE_MAX or not _NAMESPACE_RE.match(namespace):
        raise ValidationError(f"Release {name} has invalid namespace '{namespace}'")

    if not (chart_ref := _get_str(doc, "chart_ref")):
        raise ValidationError(f"Release {namespace}/{name} missing chartRef")

    max_history = _get_int(doc, "max_history", DEFAULT_MAX_HISTORY)
    if max_history < 0:
        raise ValidationError(
            f"Release {namespace}/{name} maxHistory must be >= 0, was {max_history}"
        )
    timeout = _get_int(doc, "timeout", DEFAULT_TIMEOUT)
    if timeout <= 0:
        raise ValidationError(
            f"Release {namespace}/{name} timeout must be > 0, was {timeout}"
        )

    spec = ReleaseSpec(
        name=name,
        namespace=namespace,
        chart_ref=chart_ref,
        values=_build_values(doc),
        atomic=_get_bool(doc, "atomic", False),
        max_history=max_history,
        version=_get_str(doc, "version"),
        repository=_get_str(doc, "repository"),
        timeout=timeout,
        wait=_get_bool(doc, "wait", True),
        create_namespace=_get_bool(doc, "create_namespace", False),
        namespace_labels=_build_labels(doc),
        description=_get_str(doc, "description"),
    )
    _LOGGER.debug("Built release %s with %d values", spec.release_id, len(spec.values))
    return spec
