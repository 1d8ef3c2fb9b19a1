"""Component-scoped addressing for properties and commands.

A property that belongs to a named component is wrapped one level deeper than
a root-device property and carries the ``"__t": "c"`` marker::

    {"thermostat": {"__t": "c", "targetTemperature": 72.5}}

Commands addressed to a component are named ``"<component>*<command>"``.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from . import constants
from .core import AckRecord, EncodingError


class _Absent:
    """Marker for a property the hub sent no value for."""

    _instance: Optional["_Absent"] = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT: Any = _Absent()


def is_metadata_key(key: str) -> bool:
    """Keys that describe the document rather than a property."""
    return key == constants.COMPONENT_MARKER_KEY or key.startswith("$")


def encode_property(component: Optional[str], name: str, value: Any) -> dict[str, Any]:
    if not name:
        raise EncodingError("Property name must not be empty")
    if not component:
        return {name: value}
    return {
        component: {
            constants.COMPONENT_MARKER_KEY: constants.COMPONENT_MARKER_VALUE,
            name: value,
        }
    }


def decode_property(
    document: Mapping[str, Any], component: Optional[str], name: str
) -> Any:
    """Return the value for ``component.name`` or ``ABSENT``."""

    if not isinstance(document, Mapping):
        raise EncodingError(
            f"Expected a property document, got {type(document).__name__}"
        )

    if not component:
        return document.get(name, ABSENT)

    section = document.get(component, ABSENT)
    if section is ABSENT:
        return ABSENT
    if not isinstance(section, Mapping):
        raise EncodingError(
            f"Component {component!r} is not an object: {type(section).__name__}"
        )
    return section.get(name, ABSENT)


def component_properties(
    document: Mapping[str, Any], component: str
) -> dict[str, Any]:
    """All non-metadata properties the document carries for ``component``."""

    section = decode_property(document, None, component)
    if section is ABSENT or section is None:
        return {}
    if not isinstance(section, Mapping):
        raise EncodingError(
            f"Component {component!r} is not an object: {type(section).__name__}"
        )
    return {key: value for key, value in section.items() if not is_metadata_key(key)}


def join_command_name(component: Optional[str], command: str) -> str:
    if not command:
        raise EncodingError("Command name must not be empty")
    if not component:
        return command
    return f"{component}{constants.COMMAND_SEPARATOR}{command}"


def split_command_name(wire_name: str) -> tuple[Optional[str], str]:
    """Split a wire command name into ``(component, command)``.

    A name without a separator addresses the root device, so the component is
    ``None``.
    """

    component, separator, command = wire_name.partition(constants.COMMAND_SEPARATOR)
    if not separator:
        return None, wire_name
    return component, command


def build_ack_patch(ack: AckRecord) -> dict[str, Any]:
    body: dict[str, Any] = {
        "value": ack.value,
        "ac": int(ack.status),
        "av": ack.version,
    }
    if ack.description:
        body["ad"] = ack.description
    # Acks always carry the component marker.
    return {
        ack.component: {
            constants.COMPONENT_MARKER_KEY: constants.COMPONENT_MARKER_VALUE,
            ack.property: body,
        }
    }


def desired_version(document: Mapping[str, Any]) -> Optional[int]:
    version = document.get("$version") if isinstance(document, Mapping) else None
    if version is None:
        return None
    try:
        return int(version)
    except (TypeError, ValueError) as exc:
        raise EncodingError(f"Invalid $version: {version!r}") from exc
