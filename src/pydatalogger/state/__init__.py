"""Sensor state layer.

The store in this package is the single source of truth for the latest
reading of every sensor, partitioned by broker client identifier.
"""

from pydatalogger.state.models import SensorReading, format_value
from pydatalogger.state.store import SensorStateStore

__all__ = ["SensorReading", "SensorStateStore", "format_value"]
