"""Module for merging helm values from the override sources of a release.

Values are combined in order of increasing precedence:

- the `values` YAML document
- `set` overrides
- `set_list` overrides
- `set_sensitive` overrides

Within a source, later entries overwrite earlier entries with the same key.
Keys use dot notation for nesting, e.g. `image.tag`. A dot escaped with a
backslash is part of the key, e.g. `nodeSelector.kubernetes\\.io/hostname`.
"""

from collections.abc import Iterable
import json
import logging
from typing import Any

import yaml

from .exceptions import ValuesConflictError, ValuesParseError
from .manifest import ReleaseSpec, SetValue

__all__ = [
    "merge_values",
    "merge_release_values",
    "deep_merge",
    "split_key",
    "set_nested_value",
    "parse_set_list_value",
]

_LOGGER = logging.getLogger(__name__)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two dictionaries, similar to how Helm merges values.

    Lists and scalars are replaced entirely, as is a map replaced by a scalar
    or a scalar replaced by a map.
    """
    result = base.copy()
    for key, override_value in override.items():
        base_value = result.get(key)
        if isinstance(base_value, dict) and isinstance(override_value, dict):
            result[key] = deep_merge(base_value, override_value)
        else:
            result[key] = override_value
    return result


def split_key(key: str) -> list[str]:
    """Split a dotted key into path segments, honoring `\\.` escapes."""
    parts: list[str] = []
    current: list[str] = []
    i = 0
    while i < len(key):
        char = key[i]
        if char == "\\" and i + 1 < len(key) and key[i + 1] == ".":
            current.append(".")
            i += 2
            continue
        if char == ".":
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
        i += 1
    parts.append("".join(current))
    return parts


def set_nested_value(values: dict[str, Any], key: str, value: Any) -> None:
    """Set a value in a nested map using dot notation, e.g. `image.tag`."""
    parts = split_key(key)
    inner_values = values
    for part in parts[:-1]:
        if part not in inner_values:
            inner_values[part] = {}
        elif not isinstance(inner_values[part], dict):
            raise ValuesConflictError(key, part)
        inner_values = inner_values[part]
    inner_values[parts[-1]] = value


def parse_set_list_value(raw_value: str) -> list[Any]:
    """Parse a set_list value as a JSON array or a comma separated list.

    The JSON form supports elements containing commas and typed elements.
    Anything that is not a JSON array is split on commas with whitespace
    stripped, for compatibility with plain `a,b,c` lists.
    """
    try:
        items = json.loads(raw_value)
    except ValueError:
        items = None
    if isinstance(items, list):
        return items
    return [part.strip() for part in raw_value.split(",")]


def _parse_values_document(content: str) -> dict[str, Any]:
    try:
        obj = yaml.load(content, Loader=yaml.SafeLoader)
    except yaml.YAMLError as err:
        raise ValuesParseError(f"failed to parse values YAML: {err}") from err
    # Handle empty YAML document case
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ValuesParseError(
            f"failed to parse values YAML: expected a mapping, found {type(obj).__name__}"
        )
    return obj


def merge_values(
    values_yaml: str | None = None,
    set_values: Iterable[SetValue] = (),
    set_list: Iterable[SetValue] = (),
    set_sensitive: Iterable[SetValue] = (),
) -> dict[str, Any]:
    """Combine all override sources into a single values tree.

    Chart defaults are not included, those are applied by helm itself.
    """
    values: dict[str, Any] = {}
    if values_yaml:
        values = deep_merge(values, _parse_values_document(values_yaml))

    for item in set_values:
        set_nested_value(values, item.name, item.value)

    for item in set_list:
        set_nested_value(values, item.name, parse_set_list_value(item.value))

    for item in set_sensitive:
        set_nested_value(values, item.name, item.value)

    _LOGGER.debug("Merged values with top level keys %s", sorted(values))
    return values


def merge_release_values(spec: ReleaseSpec) -> dict[str, Any]:
    """Merge the override sources declared on a release."""
    return merge_values(
        values_yaml=spec.values,
        set_values=spec.set,
        set_list=spec.set_list,
        set_sensitive=spec.set_sensitive,
    )
