"""Custom exception hierarchy for pydatalogger."""

from __future__ import annotations


class DataloggerError(Exception):
    """Base exception for all pydatalogger errors."""


class DataloggerConfigError(DataloggerError):
    """Invalid or missing configuration.

    The only error that is allowed to stop the gateway.  It is raised at
    startup, before any broker connection is attempted.
    """


class BrokerConnectionError(DataloggerError):
    """Connecting to a broker failed (socket error, refused CONNACK, timeout)."""

    def __init__(self, message: str, *, client_id: str = "") -> None:
        self.client_id = client_id
        super().__init__(message)


class PayloadFormatError(DataloggerError):
    """Sensor payload does not match ``<value>#<sensor_id>``."""


class PersistenceError(DataloggerError):
    """The persistence sink could not record a reading."""


class PublishError(DataloggerError):
    """An outbound publish was rejected by the transport."""

    def __init__(self, message: str, *, topic: str = "", rc: int | None = None) -> None:
        self.topic = topic
        self.rc = rc
        super().__init__(message)
