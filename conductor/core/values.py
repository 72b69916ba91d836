"""Tagged values passed across provider boundaries.

Step inputs and provider outputs are schema-less maps.  ``Value`` is the
closed set of shapes they may hold; the helpers below convert to concrete
Python types at the point of use instead of trusting ``Any``.
"""

import json
import logging
import re
from collections.abc import Mapping
from typing import Any, TypeAlias, Union

from conductor.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

Value: TypeAlias = Union[str, int, float, bool, None, list["Value"], dict[str, "Value"]]
ValueMap: TypeAlias = dict[str, Value]

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")


def coerce_value(raw: Any, path: str = "value") -> Value:
    """Convert *raw* into a ``Value``, recursively.

    Tuples and sets become lists, mapping keys become strings.

    Args:
        raw: Arbitrary input, typically decoded JSON or a provider result.
        path: Location used in the error message.

    Returns:
        The equivalent ``Value``.

    Raises:
        ValidationError: If *raw* contains an unsupported type.
    """
    if raw is None or isinstance(raw, (str, bool, int, float)):
        return raw
    if isinstance(raw, Mapping):
        return {str(k): coerce_value(v, f"{path}.{k}") for k, v in raw.items()}
    if isinstance(raw, (list, tuple, set, frozenset)):
        return [coerce_value(v, f"{path}[{i}]") for i, v in enumerate(raw)]
    raise ValidationError(
        f"Unsupported value type {type(raw).__name__} at {path}",
        field=path,
    )


def coerce_map(raw: Mapping[str, Any] | None) -> ValueMap:
    """Convert a mapping into a ``ValueMap`` (``None`` becomes empty)."""
    if raw is None:
        return {}
    result = coerce_value(raw)
    assert isinstance(result, dict)
    return result


def as_str(value: Value, default: str = "") -> str:
    """Read *value* as a string; scalars are formatted, containers give *default*."""
    if value is None or isinstance(value, (list, dict)):
        return default
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def as_int(value: Value, default: int = 0) -> int:
    """Read *value* as an int, parsing numeric strings."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            return default
    return default


def as_float(value: Value, default: float = 0.0) -> float:
    """Read *value* as a float, parsing numeric strings."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return default
    return default


def as_bool(value: Value, default: bool = False) -> bool:
    """Read *value* as a bool; accepts ``true/false/yes/no/1/0`` strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1", "on"):
            return True
        if lowered in ("false", "no", "0", "off"):
            return False
    return default


def as_list(value: Value) -> list[Value]:
    """Read *value* as a list; a scalar becomes a one-element list."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def as_map(value: Value) -> ValueMap:
    """Read *value* as a map; anything else gives an empty map."""
    if isinstance(value, dict):
        return value
    return {}


def fill_placeholders(value: Value, bindings: Mapping[str, Value]) -> Value:
    """Substitute ``{{name}}`` placeholders throughout *value*.

    A string that is exactly one placeholder takes the bound value as-is
    (preserving lists and maps); placeholders embedded in longer strings
    are replaced by the bound value's string form.  Unbound placeholders
    are left untouched.
    """
    if isinstance(value, str):
        whole = PLACEHOLDER_PATTERN.fullmatch(value)
        if whole and whole.group(1) in bindings:
            return bindings[whole.group(1)]

        def _replace(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in bindings:
                return match.group(0)
            bound = bindings[name]
            if isinstance(bound, (list, dict)):
                return json.dumps(bound)
            return as_str(bound)

        return PLACEHOLDER_PATTERN.sub(_replace, value)
    if isinstance(value, list):
        return [fill_placeholders(v, bindings) for v in value]
    if isinstance(value, dict):
        return {k: fill_placeholders(v, bindings) for k, v in value.items()}
    return value


def find_placeholders(value: Value) -> set[str]:
    """Collect every placeholder name referenced in *value*."""
    if isinstance(value, str):
        return set(PLACEHOLDER_PATTERN.findall(value))
    if isinstance(value, list):
        names: set[str] = set()
        for item in value:
            names |= find_placeholders(item)
        return names
    if isinstance(value, dict):
        names = set()
        for item in value.values():
            names |= find_placeholders(item)
        return names
    return set()
