"""Module for working with helm release values as dotted keys.

Release values are held as an ordered mapping of dotted paths to scalar
strings, the same shape as a list of helm `--set` flags:

```python
from release_reconciler.values import flatten_values, expand_values

flat = flatten_values({"resources": {"limits": {"cpu": "100m"}}})
assert flat == {"resources.limits.cpu": "100m"}
assert expand_values(flat) == {"resources": {"limits": {"cpu": "100m"}}}
```

A literal dot inside a key is escaped with a backslash (`podAnnotations.
prometheus\\.io/scrape`) and list items use an index suffix (`args[0]`).
"""

from collections.abc import Iterable, Mapping
import logging
import re
from typing import Any

from .exceptions import ValidationError

__all__ = [
    "flatten_values",
    "expand_values",
    "merge_value",
    "split_key",
    "join_key",
]

_LOGGER = logging.getLogger(__name__)

_KEY_SEPARATOR = re.compile(r"(?<!\\)\.")
_INDEX_SUFFIX = re.compile(r"^(.*?)((?:\[\d+\])*)$")
_INDEX = re.compile(r"\[(\d+)\]")
_INTEGER = re.compile(r"-?[1-9][0-9]*|0")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_LITERALS: dict[str, Any] = {"true": True, "false": False, "null": None}


def split_key(key: str) -> list[str]:
    """Split a dotted key into path segments.

    List indexes are returned as separate `[N]` segments.
    """
    if not key:
        raise ValidationError("Values key must not be empty")
    segments: list[str] = []
    for raw_part in _KEY_SEPARATOR.split(key):
        match = _INDEX_SUFFIX.match(raw_part)
        assert match
        name, indexes = match.groups()
        if not name and not (indexes and segments):
            raise ValidationError(f"Values key '{key}' has an empty path segment")
        if name:
            segments.append(re.sub(r"\\(.)", r"\1", name))
        segments.extend(f"[{idx}]" for idx in _INDEX.findall(indexes))
    return segments


def _escape(segment: str) -> str:
    return segment.replace("\\", "\\\\").replace(".", "\\.")


def join_key(segments: Iterable[str]) -> str:
    """Join path segments into a dotted key, the inverse of `split_key`."""
    key = ""
    for segment in segments:
        if _INDEX.fullmatch(segment):
            key += segment
        elif key:
            key += "." + _escape(segment)
        else:
            key = _escape(segment)
    return key


def _scalar(value: Any) -> str:
    """Render a scalar value the way it would be written on a `--set` flag."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (dict, list)) and not value:
        return "{}" if isinstance(value, dict) else "[]"
    raise ValidationError(f"Unsupported value type {type(value).__name__}: {value!r}")


def _is_related(a: tuple[str, ...], b: tuple[str, ...]) -> bool:
    """Return True if one path is a prefix of the other."""
    size = min(len(a), len(b))
    return a[:size] == b[:size]


def merge_value(flat: dict[str, str], key: str, value: Any) -> None:
    """Set a dotted key in place, the last write wins.

    Any existing key that is a parent or child of the new key is dropped since
    the two can no longer both be expanded. The key moves to the end so the
    mapping keeps declaration order.
    """
    path = tuple(split_key(key))
    canonical = join_key(path)
    for existing in list(flat):
        if _is_related(tuple(split_key(existing)), path):
            if existing != canonical:
                _LOGGER.debug("Values key %s overridden by %s", existing, canonical)
            del flat[existing]
    flat[canonical] = _scalar(value)


def _flatten(prefix: list[str], value: Any, result: dict[str, str]) -> None:
    if isinstance(value, Mapping) and value:
        for child_key, child in value.items():
            if not isinstance(child_key, str):
                child_key = _scalar(child_key)
            _flatten(prefix + [child_key], child, result)
    elif isinstance(value, list) and value:
        for idx, child in enumerate(value):
            _flatten(prefix + [f"[{idx}]"], child, result)
    else:
        merge_value(result, join_key(prefix), value)


def flatten_values(values: Mapping[str, Any]) -> dict[str, str]:
    """Flatten a nested values mapping into dotted keys."""
    result: dict[str, str] = {}
    for key, value in values.items():
        if not isinstance(key, str):
            key = _scalar(key)
        _flatten([key], value, result)
    return result


def _parse_scalar(value: str) -> Any:
    """Type a string the way helm types an untyped `--set` value.

    Only true, false, null and base-10 integers without a leading zero are
    typed. Anything else, including `1.20` and `010`, stays a string so that
    reading the values back yields the same dotted mapping.
    """
    if value in _LITERALS:
        return _LITERALS[value]
    if value in ("{}", "[]"):
        return {} if value == "{}" else []
    if _INTEGER.fullmatch(value):
        number = int(value)
        if _INT64_MIN <= number <= _INT64_MAX:
            return number
    return value


def _container(segment: str) -> dict[str, Any] | list[Any]:
    return [] if _INDEX.fullmatch(segment) else {}


def expand_values(flat: Mapping[str, str]) -> dict[str, Any]:
    """Expand dotted keys back into a nested values mapping."""
    result: dict[str, Any] = {}
    for key, value in flat.items():
        segments = split_key(key)
        node: Any = result
        for pos, segment in enumerate(segments):
            last = pos == len(segments) - 1
            child = _parse_scalar(value) if last else _container(segments[pos + 1])
            if index_match := _INDEX.fullmatch(segment):
                if not isinstance(node, list):
                    raise ValidationError(
                        f"Values key '{key}' indexes a non-list value"
                    )
                index = int(index_match.group(1))
                node.extend([None] * (index + 1 - len(node)))
                if last or node[index] is None:
                    node[index] = child
                node = node[index]
            else:
                if not isinstance(node, dict):
                    raise ValidationError(
                        f"Values key '{key}' conflicts with a scalar value"
                    )
                if last or segment not in node:
                    node[segment] = child
                node = node[segment]
    return result
