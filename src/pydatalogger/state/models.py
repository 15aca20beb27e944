"""Sensor reading model."""

from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

#: Separator used by the sensor payload and snapshot encodings.
FIELD_SEPARATOR = "#"


def format_value(value: float) -> str:
    """Render a reading value the way the datalogger protocol expects.

    Shortest round-trip digits, always positional: ``23`` rather than
    ``23.0``, ``0.00001`` rather than ``1e-05``.
    """
    if not math.isfinite(value):
        return repr(value)
    text = format(Decimal(repr(value)), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


class SensorReading(BaseModel):
    """Latest observation of one sensor.

    Instances are owned by :class:`~pydatalogger.state.SensorStateStore` and
    updated in place on every new observation.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    sensor_id: str
    value: float
    timestamp: datetime
    topic: str
    valid: bool = True

    def refresh(self, value: float, topic: str, now: datetime) -> None:
        self.value = value
        self.timestamp = now
        self.topic = topic
        self.valid = True

    def invalidate(self) -> None:
        self.valid = False

    def encode(self) -> str:
        """``<value>#<sensor_id>#<HH:MM:SS>`` using the local time of the last update."""
        return FIELD_SEPARATOR.join(
            (format_value(self.value), self.sensor_id, self.timestamp.strftime("%H:%M:%S"))
        )
