"""Shared helpers for addressing controller payloads and widget data."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

from packaging.version import InvalidVersion, Version

from .const import COLOR_COMPONENT_FIELDS, COLOR_COMPONENTS_KEY, MIN_WIDGET_VERSION
from .errors import VersionIncompatible

_ID_PLACEHOLDER = "${id}"


def resolve_path(record: Any, path: str) -> Any | None:
    """Return the value stored at dotted ``path`` inside ``record``.

    Missing keys, ``None`` intermediates and non-mapping intermediates all
    short-circuit to ``None``. Numeric segments index into sequences so that
    event payloads such as ``data.values.0`` can be addressed as well.
    """

    if not path:
        return None
    current = record
    for segment in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(segment)
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        else:
            return None
    return current


def unwrap_value(value: Any) -> Any:
    """Unwrap controller envelopes shaped like ``{"value": X, ...}``."""

    if isinstance(value, Mapping) and "value" in value:
        return value["value"]
    return value


def parse_color_components(raw: str) -> dict[str, int]:
    """Parse an ``"R,G,B,WW,CW"`` string into a color component record."""

    parts = raw.split(",")
    components: dict[str, int] = {}
    for index, field in enumerate(COLOR_COMPONENT_FIELDS):
        components[field] = _leading_int(parts[index]) if index < len(parts) else 0
    return components


def _leading_int(text: str) -> int:
    """Parse the leading integer of ``text`` or return zero."""

    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


def normalize_state_value(key: str, value: Any) -> Any:
    """Apply the controller value conventions before storing ``value`` at ``key``."""

    value = unwrap_value(value)
    if key == COLOR_COMPONENTS_KEY and isinstance(value, str):
        value = parse_color_components(value)
    return value


def ensure_widget_version(
    widget_version: str | None, minimum: str = MIN_WIDGET_VERSION
) -> None:
    """Raise :class:`VersionIncompatible` unless ``widget_version`` is supported.

    The major component must match exactly. A greater minor is accepted, an
    equal minor requires the patch to be at least the minimum patch.
    """

    if not widget_version:
        raise VersionIncompatible("missing", minimum)
    try:
        candidate = Version(widget_version)
    except InvalidVersion as err:
        raise VersionIncompatible(widget_version, minimum) from err
    required = Version(minimum)
    if candidate.major != required.major:
        raise VersionIncompatible(widget_version, minimum)
    if (candidate.minor, candidate.micro) < (required.minor, required.micro):
        raise VersionIncompatible(widget_version, minimum)


def is_version_compatible(
    widget_version: str | None, minimum: str = MIN_WIDGET_VERSION
) -> bool:
    """Return whether ``widget_version`` passes the widget version gate."""

    try:
        ensure_widget_version(widget_version, minimum)
    except VersionIncompatible:
        return False
    return True


def substitute_device_id(template: str, device_id: Any) -> str:
    """Replace the ``${id}`` placeholder of an API template."""

    return template.replace(_ID_PLACEHOLDER, str(device_id))


def render_body_template(body: Any, value: Any = None) -> Any:
    """Fill an action body template with ``value``.

    Mapping values substitute each ``${key}`` placeholder, scalars substitute
    ``${value}``. A quoted placeholder is replaced together with its quotes so
    that numbers stay numbers in the rendered JSON document.
    """

    if body is None:
        return None
    text = json.dumps(body)
    if value is None:
        return json.loads(text)
    if isinstance(value, Mapping):
        for key, item in value.items():
            text = _replace_placeholder(text, str(key), 0 if item is None else item)
    else:
        text = _replace_placeholder(text, "value", value)
    return json.loads(text)


def _replace_placeholder(text: str, name: str, value: Any) -> str:
    """Swap every optionally quoted ``${name}`` in a JSON document for ``value``."""

    placeholder = "${" + name + "}"
    if isinstance(value, (bool, int, float)):
        literal = json.dumps(value)
    else:
        literal = json.dumps(str(value))
    text = text.replace(f'"{placeholder}"', literal)
    # Placeholders embedded in a longer string keep the surrounding quotes.
    embedded = literal[1:-1] if literal.startswith('"') else literal
    return text.replace(placeholder, embedded)
