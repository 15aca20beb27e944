"""In-memory sensor state store.

This is the only component allowed to mutate sensor readings.  It is not
internally synchronized: the gateway's single consuming loop is its only
writer.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from pydatalogger.state.models import SensorReading
from pydatalogger.state.policy import is_stale, staleness_enabled

_logger = logging.getLogger(__name__)


def _localnow() -> datetime:
    return datetime.now().astimezone()


class SensorStateStore:
    """Latest reading per sensor, partitioned by client identifier.

    Readings are last-write-wins by arrival order; the timestamp embedded in
    a reading is the arrival time, never a device-supplied one.  Enumeration
    order is the order in which sensors were first observed.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _localnow,
        stale_after: float | None = None,
    ) -> None:
        self._clock = clock
        self._stale_after = stale_after
        self._clients: dict[str, dict[str, SensorReading]] = {}

    @property
    def stale_after(self) -> float | None:
        return self._stale_after

    @property
    def staleness_enabled(self) -> bool:
        return staleness_enabled(self._stale_after)

    def update(self, client_id: str, sensor_id: str, value: float, topic: str) -> SensorReading:
        """Record a new observation and return the live reading."""
        sensors = self._clients.setdefault(client_id, {})
        now = self._clock()
        reading = sensors.get(sensor_id)
        if reading is None:
            reading = SensorReading(sensor_id=sensor_id, value=value, timestamp=now, topic=topic)
            sensors[sensor_id] = reading
            _logger.info("New sensor %s/%s - %s | %s", client_id, sensor_id, topic, value)
        else:
            reading.refresh(value, topic, now)
            _logger.info("Update sensor %s/%s - %s | %s", client_id, sensor_id, topic, value)
        return reading

    def get(self, client_id: str, sensor_id: str) -> SensorReading | None:
        reading = self._clients.get(client_id, {}).get(sensor_id)
        return reading.model_copy() if reading is not None else None

    def snapshot(self, client_id: str, *, valid_only: bool = False) -> list[SensorReading]:
        """Copies of the client's readings in first-seen order.

        An unknown client yields an empty list.
        """
        sensors = self._clients.get(client_id)
        if not sensors:
            return []
        return [r.model_copy() for r in sensors.values() if r.valid or not valid_only]

    def invalidate_stale(self, client_id: str) -> list[str]:
        """Mark readings older than ``stale_after`` invalid; return the affected sensor ids."""
        if not self.staleness_enabled:
            return []
        now = self._clock()
        invalidated: list[str] = []
        for reading in self._clients.get(client_id, {}).values():
            if reading.valid and is_stale(last_update=reading.timestamp, now=now, stale_after=self._stale_after):
                reading.invalidate()
                invalidated.append(reading.sensor_id)
        if invalidated:
            _logger.info("Sensors of %s marked invalid (stale): %s", client_id, ", ".join(invalidated))
        return invalidated

    def clients(self) -> list[str]:
        return list(self._clients)

    def clear(self, client_id: str) -> None:
        self._clients.pop(client_id, None)

    def __len__(self) -> int:
        return sum(len(sensors) for sensors in self._clients.values())
