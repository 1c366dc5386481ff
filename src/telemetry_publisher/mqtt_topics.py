"""
MQTT naming for a single bridge device.

Client id: projects/<project>/locations/<region>/registries/<registry>/devices/<device>
Topics:    /devices/<device>/events (telemetry) and /devices/<device>/state
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# Registry and device ids: letter first, then letters, digits and - . _ ~ + % (3..255 chars)
_ID_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9\-._~+%]{2,254}$")
_CATEGORIES = ("events", "state")


class TopicSchemaError(ValueError):
    """Raised when an invalid identifier is used to construct names."""


def _validate_id(kind: str, value: str) -> str:
    if not isinstance(value, str) or not value:
        raise TopicSchemaError(f"{kind} must be a non-empty string")
    if not _ID_RE.fullmatch(value):
        raise TopicSchemaError(
            f"{kind} '{value}' is invalid; must start with a letter, 3-255 chars of [a-zA-Z0-9-._~+%]"
        )
    return value


@dataclass(frozen=True, slots=True)
class DevicePath:
    """
    Broker-side identity of one device.
    Derived purely from configuration; never mutated.
    """

    project_id: str
    cloud_region: str
    registry_id: str
    device_id: str

    def __post_init__(self) -> None:
        if not self.project_id:
            raise TopicSchemaError("project_id must be a non-empty string")
        if not self.cloud_region:
            raise TopicSchemaError("cloud_region must be a non-empty string")
        _validate_id("registry_id", self.registry_id)
        _validate_id("device_id", self.device_id)

    @property
    def client_id(self) -> str:
        return (
            f"projects/{self.project_id}/locations/{self.cloud_region}"
            f"/registries/{self.registry_id}/devices/{self.device_id}"
        )

    def topic(self, category: str) -> str:
        """Topic for a message category, 'events' or 'state'."""
        if category not in _CATEGORIES:
            raise TopicSchemaError(
                f"category '{category}' is invalid; allowed: {', '.join(_CATEGORIES)}"
            )
        return f"/devices/{self.device_id}/{category}"
