"""
Telemetry payload builders.

Pure functions that build the JSON message published on each tick.
Field names follow the bridge-side parser contract: DATA (registry id),
ATTRIBUTES (device id), MESSAGE_ID, Timestamp and the six generator readings,
all values serialized as strings.
"""

from __future__ import annotations

import json
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

PRECISION = 2


@dataclass(frozen=True, slots=True)
class SensorRange:
    name: str
    low: float
    high: float
    unit: str


SENSOR_RANGES: tuple[SensorRange, ...] = (
    SensorRange("cool_lvl", 90.0, 100.0, "%"),
    SensorRange("cool_temp", 70.0, 75.0, "degC"),
    SensorRange("oil_P", 1.0, 1.5, "bar"),
    SensorRange("power_out", 5.0, 7.0, "MW"),
    SensorRange("eff_out", 30.0, 33.0, "%"),
    SensorRange("bat_cap", 80.0, 83.0, "%"),
)


def random_min_max(low: float, high: float, precision: int = PRECISION, rng: Optional[random.Random] = None) -> float:
    r = rng or random
    return round(r.random() * (high - low) + low, precision)


def read_sensors(rng: Optional[random.Random] = None) -> dict[str, float]:
    """One synthetic reading per sensor, bounded by its range."""
    return {s.name: random_min_max(s.low, s.high, PRECISION, rng) for s in SENSOR_RANGES}


def local_timestamp(now: Optional[datetime] = None) -> str:
    """Local wall-clock time as YYYY-MM-DDTHH:MM:SS (no zone, no fraction)."""
    return (now or datetime.now()).strftime("%Y-%m-%dT%H:%M:%S")


def build_payload(
    registry_id: str,
    device_id: str,
    message_id: int,
    readings: dict[str, float],
    timestamp: str,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "DATA": registry_id,
        "ATTRIBUTES": device_id,
        "MESSAGE_ID": str(message_id),
        "Timestamp": timestamp,
    }
    for name, value in readings.items():
        payload[name] = str(value)
    return payload


class MessageComposer:
    """
    Callable that turns a sequence index into a serialized payload.
    Clock and RNG are injectable for tests.
    """

    def __init__(
        self,
        registry_id: str,
        device_id: str,
        *,
        rng: Optional[random.Random] = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.registry_id = registry_id
        self.device_id = device_id
        self._rng = rng
        self._now = now

    def __call__(self, message_id: int) -> str:
        payload = build_payload(
            self.registry_id,
            self.device_id,
            message_id,
            read_sensors(self._rng),
            local_timestamp(self._now()),
        )
        return json.dumps(payload)
