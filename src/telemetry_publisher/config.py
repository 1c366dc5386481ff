"""
Telemetry publisher configuration.

Single source for runtime configuration. Values come from environment variables,
optionally loaded from standard env files, and can be overridden by CLI flags.

Priority (lowest -> highest):
1) /etc/iot-telemetry/publisher.env (system install)
2) ~/.config/iot-telemetry-publisher/.env (user install)
3) ./.env (project override)
4) process environment variables
5) explicit overrides (CLI flags, always win)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from dotenv import load_dotenv

SUPPORTED_ALGORITHMS = ("RS256", "ES256")
MESSAGE_TYPES = ("events", "state")

# Seconds between publishes per message category. Telemetry events and
# device state are throttled differently by the bridge.
PUBLISH_INTERVALS_S = {
    "events": 1800.0,
    "state": 2000.0,
}

_DEFAULTS = {
    "IOT_PROJECT_ID": "topgun-190505",
    "IOT_CLOUD_REGION": "asia-east1",
    "IOT_NUM_MESSAGES": "20",
    "IOT_TOKEN_EXP_MINS": "20",
    "IOT_MQTT_HOST": "mqtt.googleapis.com",
    "IOT_MQTT_PORT": "8883",
    "IOT_MESSAGE_TYPE": "events",
    "IOT_QOS": "1",
    "IOT_KEEPALIVE": "60",
}


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def _package_version() -> str:
    try:
        return _pkg_version("iot-telemetry-publisher")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/iot-telemetry/publisher.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "iot-telemetry-publisher" / ".env"

    # 3) project override
    yield Path(".env")


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_float(key: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {key}: {raw!r}") from exc


class _Source:
    """Resolves a key from overrides, then the environment, then defaults."""

    def __init__(self, overrides: Mapping[str, Any]) -> None:
        self._overrides = {k: v for k, v in overrides.items() if v is not None}

    def get(self, key: str) -> Optional[str]:
        if key in self._overrides:
            return str(self._overrides[key])
        v = os.getenv(key)
        if v is None or v == "":
            return _DEFAULTS.get(key)
        return v

    def require(self, key: str) -> str:
        v = self.get(key)
        if v is None or v == "":
            raise ConfigError(f"Missing required setting: {key}")
        return v


@dataclass(frozen=True, slots=True)
class PublisherConfig:
    project_id: str
    cloud_region: str
    registry_id: str
    device_id: str
    private_key_file: Path
    algorithm: str
    num_messages: int
    token_exp_mins: int
    mqtt_host: str
    mqtt_port: int
    message_type: str
    qos: int
    keepalive: int
    ca_certs: Optional[Path]
    publish_interval_s: float
    version: str

    @property
    def token_validity_s(self) -> int:
        return self.token_exp_mins * 60


def load_config(
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    dotenv_enabled: bool = True,
) -> PublisherConfig:
    """
    Load config by reading env files and then validating settings.

    `overrides` maps IOT_* keys to values (None entries are ignored) and takes
    precedence over the environment. Returns an immutable PublisherConfig.
    Raises ConfigError on failure.
    """
    if dotenv_enabled:
        for p in _env_paths():
            if p.is_file():
                # do not override existing env vars; later files can fill missing
                load_dotenv(p, override=False)

    src = _Source(overrides or {})

    project_id = src.require("IOT_PROJECT_ID")
    cloud_region = src.require("IOT_CLOUD_REGION")
    registry_id = src.require("IOT_REGISTRY_ID")
    device_id = src.require("IOT_DEVICE_ID")
    private_key_file = Path(src.require("IOT_PRIVATE_KEY_FILE"))

    algorithm = src.require("IOT_ALGORITHM").upper()
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ConfigError(
            f"IOT_ALGORITHM must be one of {', '.join(SUPPORTED_ALGORITHMS)}: {algorithm!r}"
        )

    num_messages = _parse_int("IOT_NUM_MESSAGES", src.require("IOT_NUM_MESSAGES"))
    if num_messages < 1:
        raise ConfigError("IOT_NUM_MESSAGES must be >= 1")

    token_exp_mins = _parse_int("IOT_TOKEN_EXP_MINS", src.require("IOT_TOKEN_EXP_MINS"))
    if token_exp_mins < 1:
        raise ConfigError("IOT_TOKEN_EXP_MINS must be >= 1")

    mqtt_host = src.require("IOT_MQTT_HOST")
    mqtt_port = _parse_int("IOT_MQTT_PORT", src.require("IOT_MQTT_PORT"))
    if not (1 <= mqtt_port <= 65535):
        raise ConfigError(f"IOT_MQTT_PORT out of range: {mqtt_port}")

    message_type = src.require("IOT_MESSAGE_TYPE").lower()
    if message_type not in MESSAGE_TYPES:
        raise ConfigError(
            f"IOT_MESSAGE_TYPE must be one of {', '.join(MESSAGE_TYPES)}: {message_type!r}"
        )

    qos = _parse_int("IOT_QOS", src.require("IOT_QOS"))
    if qos not in (0, 1):
        raise ConfigError(f"IOT_QOS must be 0 or 1: {qos}")

    keepalive = _parse_int("IOT_KEEPALIVE", src.require("IOT_KEEPALIVE"))
    if keepalive < 1:
        raise ConfigError("IOT_KEEPALIVE must be >= 1")

    ca_raw = src.get("IOT_CA_CERTS")
    ca_certs = Path(ca_raw) if ca_raw else None
    if ca_certs is not None and not ca_certs.is_file():
        raise ConfigError(f"IOT_CA_CERTS file not found: {ca_certs}")

    interval_raw = src.get("IOT_PUBLISH_INTERVAL_S")
    if interval_raw:
        publish_interval_s = _parse_float("IOT_PUBLISH_INTERVAL_S", interval_raw)
        if publish_interval_s < 0:
            raise ConfigError("IOT_PUBLISH_INTERVAL_S must be >= 0")
    else:
        publish_interval_s = PUBLISH_INTERVALS_S[message_type]

    return PublisherConfig(
        project_id=project_id,
        cloud_region=cloud_region,
        registry_id=registry_id,
        device_id=device_id,
        private_key_file=private_key_file,
        algorithm=algorithm,
        num_messages=num_messages,
        token_exp_mins=token_exp_mins,
        mqtt_host=mqtt_host,
        mqtt_port=mqtt_port,
        message_type=message_type,
        qos=qos,
        keepalive=keepalive,
        ca_certs=ca_certs,
        publish_interval_s=publish_interval_s,
        version=_package_version(),
    )
