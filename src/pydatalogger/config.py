"""Gateway configuration for pydatalogger."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from pydatalogger.exceptions import DataloggerConfigError

#: Environment variable naming the default configuration file.
CONFIG_ENV_VAR = "DATALOGGER_CONFIG"
DEFAULT_CONFIG_FILE = "config.json"

DEFAULT_MQTT_PORT = 1883


def _split_address(raw_address: str, default_port: int) -> tuple[str, int]:
    """Strip scheme and path from a broker address.

    ``tcp://host:1883/`` -> ``("host", 1883)``.  A port embedded in the
    address wins over *default_port*.
    """
    value = raw_address.strip()
    if "://" in value:
        value = value.split("://", 1)[1]
    if "/" in value:
        value = value.split("/", 1)[0]

    host, _, maybe_port = value.rpartition(":")
    if host and maybe_port.isdigit():
        return host, int(maybe_port)
    return value, default_port


class BrokerClientConfig(BaseModel):
    """One broker the gateway keeps a connection to.

    Parameters
    ----------
    name : str
        Unique client identifier.  Also sent to the broker as MQTT client id.
    address : str
        Broker host name or URI (``tcp://host:1883`` is accepted).
    port : int
        Broker port, used when *address* carries none.
    user : str
        MQTT user name.
    password : str
        MQTT password.
    keepalive : int
        MQTT keepalive interval in seconds.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", str_strip_whitespace=True)

    name: str
    address: str
    port: int = Field(default=DEFAULT_MQTT_PORT, ge=1, le=65535)
    user: str
    password: str
    keepalive: int = Field(default=20, ge=1)

    @field_validator("name", "address", "user", "password")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        if not value:
            raise ValueError("must be non-empty")
        return value

    @property
    def host(self) -> str:
        return _split_address(self.address, self.port)[0]

    @property
    def broker_port(self) -> int:
        return _split_address(self.address, self.port)[1]


class GatewayConfig(BaseModel):
    """Whole-gateway configuration, loaded once at startup."""

    model_config = ConfigDict(frozen=True, extra="ignore", str_strip_whitespace=True)

    name: str = "datalogger"
    mqtt_clients: list[BrokerClientConfig] = Field(..., min_length=1)
    storage_mount: str | None = None
    database_file: str = "datalogger.db"
    retry_delay: float = Field(default=5.0, gt=0)
    poll_interval: float = Field(default=0.1, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    queue_size: int = Field(default=1000, ge=1)
    sensor_stale_after: float = Field(default=0.0, ge=0)

    @model_validator(mode="after")
    def _unique_client_names(self) -> GatewayConfig:
        seen: set[str] = set()
        for client in self.mqtt_clients:
            if client.name in seen:
                raise ValueError(f"duplicate mqtt client name {client.name!r}")
            seen.add(client.name)
        return self

    def client(self, name: str) -> BrokerClientConfig:
        for client in self.mqtt_clients:
            if client.name == name:
                return client
        raise KeyError(name)


def default_config_path() -> Path:
    return Path(os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE)


def parse_config(data: Any, **overrides: Any) -> GatewayConfig:
    """Validate an already-decoded configuration document."""
    if not isinstance(data, dict):
        raise DataloggerConfigError("Configuration root must be a JSON object")
    merged = {**data, **overrides}
    try:
        return GatewayConfig.model_validate(merged)
    except ValidationError as exc:
        raise DataloggerConfigError(f"Invalid configuration: {exc}") from exc


def load_config(path: str | os.PathLike[str] | None = None, **overrides: Any) -> GatewayConfig:
    """Load and validate the gateway configuration.

    Parameters
    ----------
    path
        JSON file to read.  Defaults to ``$DATALOGGER_CONFIG`` or
        ``config.json`` in the working directory.
    **overrides
        Explicit top-level values that take precedence over the file.

    Raises
    ------
    DataloggerConfigError
        The file is missing, unreadable, not JSON, or fails validation.
    """
    config_path = Path(path) if path is not None else default_config_path()
    try:
        text = config_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise DataloggerConfigError(f"Configuration file not found: {config_path}") from exc
    except OSError as exc:
        raise DataloggerConfigError(f"Unable to read {config_path}: {exc}") from exc

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DataloggerConfigError(f"Malformed JSON in {config_path}: {exc}") from exc

    return parse_config(data, **overrides)
