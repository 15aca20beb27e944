"""pydatalogger - MQTT telemetry gateway for the local datalogger."""

from importlib.metadata import PackageNotFoundError, version

from pydatalogger._mqtt import BrokerConnection, BrokerEvent, EventKind
from pydatalogger.config import BrokerClientConfig, GatewayConfig, load_config
from pydatalogger.exceptions import (
    BrokerConnectionError,
    DataloggerConfigError,
    DataloggerError,
    PayloadFormatError,
    PersistenceError,
    PublishError,
)
from pydatalogger.gateway import DataloggerGateway
from pydatalogger.orchestrator import ConnectionOrchestrator, ConnectionState
from pydatalogger.persistence import MemorySink, PersistenceSink, SqliteSink
from pydatalogger.router import MessageRouter, SensorSample, TopicRule, parse_sensor_payload
from pydatalogger.state import SensorReading, SensorStateStore

try:
    __version__ = version("pydatalogger")
except PackageNotFoundError:
    __version__ = "0+local"

__all__ = [
    "__version__",
    "BrokerClientConfig",
    "BrokerConnection",
    "BrokerConnectionError",
    "BrokerEvent",
    "ConnectionOrchestrator",
    "ConnectionState",
    "DataloggerConfigError",
    "DataloggerError",
    "DataloggerGateway",
    "EventKind",
    "GatewayConfig",
    "MemorySink",
    "MessageRouter",
    "PayloadFormatError",
    "PersistenceError",
    "PersistenceSink",
    "PublishError",
    "SensorReading",
    "SensorSample",
    "SensorStateStore",
    "SqliteSink",
    "TopicRule",
    "load_config",
    "parse_sensor_payload",
]
