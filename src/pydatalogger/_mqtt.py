"""Broker transport: one paho-mqtt session per broker connection.

paho runs its network loop on its own thread.  Nothing in this module
touches gateway state from that thread; every notification is handed to the
``on_event`` callable, which is expected to be a thread-safe hand-off (the
orchestrator enqueues onto the asyncio loop).
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import paho.mqtt.client as mqtt

from pydatalogger.config import BrokerClientConfig
from pydatalogger.exceptions import BrokerConnectionError, PublishError

_logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], Any]


class EventKind(StrEnum):
    CONNECTED = "connected"
    CONNECTION_LOST = "connection_lost"
    MESSAGE = "message"


@dataclass(frozen=True)
class BrokerEvent:
    """A lifecycle or message notification from one broker connection."""

    kind: EventKind
    client_id: str
    session: int
    topic: str = ""
    payload: bytes = b""
    reason: str = ""

    @property
    def is_lifecycle(self) -> bool:
        return self.kind is not EventKind.MESSAGE


def _rc_value(reason_code: Any) -> int:
    value = getattr(reason_code, "value", reason_code)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


def default_client_factory(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        protocol=mqtt.MQTTv311,
        clean_session=True,
    )


class BrokerConnection:
    """Network session to a single broker.

    Every :meth:`connect` builds a fresh paho client after tearing the
    previous one down, so at most one session per connection is ever live.
    Sessions are numbered; events carry the number of the session that
    produced them so late notifications from a retired session can be
    recognised and ignored.  The transport never reconnects on its own.
    """

    def __init__(
        self,
        config: BrokerClientConfig,
        on_event: Callable[[BrokerEvent], None],
        *,
        client_factory: ClientFactory = default_client_factory,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._on_event = on_event
        self._client_factory = client_factory
        self._logger = logger or _logger
        self._lock = threading.Lock()
        self._client: Any | None = None
        self._session = 0
        self._live_session: int | None = None

    @property
    def client_id(self) -> str:
        return self._config.name

    @property
    def config(self) -> BrokerClientConfig:
        return self._config

    @property
    def session(self) -> int:
        """Number of the most recent session (0 before the first connect)."""
        return self._session

    @property
    def is_connected(self) -> bool:
        return self._live_session is not None

    def _emit(self, kind: EventKind, session: int, **fields: Any) -> None:
        self._on_event(BrokerEvent(kind=kind, client_id=self.client_id, session=session, **fields))

    def connect(self, timeout: float) -> int:
        """Open a new session and block until the broker acknowledges it.

        Returns the session number.

        Raises
        ------
        BrokerConnectionError
            Socket failure, refused CONNACK, or no CONNACK within *timeout*.
        """
        self._retire()

        with self._lock:
            self._session += 1
            session = self._session

        config = self._config
        client = self._client_factory(config.name)
        client.enable_logger(self._logger)
        client.username_pw_set(config.user, config.password)

        connack = threading.Event()
        outcome: dict[str, Any] = {}

        def on_connect(c: Any, _userdata: Any, _flags: Any, reason_code: Any, _properties: Any) -> None:
            if self._client is not c:
                # CONNACK for a session that already timed out.
                return
            outcome["rc"] = reason_code
            if _rc_value(reason_code) == 0:
                self._live_session = session
                self._logger.info("%s connection succeeded (session %d)", config.name, session)
                self._emit(EventKind.CONNECTED, session)
            connack.set()

        def on_disconnect(
            c: Any,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if not connack.is_set():
                outcome["rc"] = reason_code
                connack.set()
                return
            if self._live_session != session:
                self._logger.debug("%s session %d closed: %s", config.name, session, reason_code)
                return
            self._live_session = None
            self._logger.warning("%s connection lost: %s", config.name, reason_code)
            # Keep paho from reconnecting behind the orchestrator's back.
            c.loop_stop()
            self._emit(EventKind.CONNECTION_LOST, session, reason=str(reason_code))

        def on_message(_c: Any, _userdata: Any, msg: Any) -> None:
            if self._live_session != session:
                return
            self._emit(EventKind.MESSAGE, session, topic=msg.topic, payload=bytes(msg.payload))

        client.on_connect = on_connect
        client.on_disconnect = on_disconnect
        client.on_message = on_message

        self._logger.debug(
            "Connecting %s to %s:%s as %s (session %d)",
            config.name,
            config.host,
            config.broker_port,
            config.user,
            session,
        )
        try:
            client.connect(config.host, config.broker_port, keepalive=config.keepalive)
        except (OSError, ValueError) as exc:
            raise BrokerConnectionError(
                f"{config.name}: cannot reach {config.host}:{config.broker_port}: {exc}",
                client_id=config.name,
            ) from exc

        with self._lock:
            self._client = client
            client.loop_start()

        if not connack.wait(timeout):
            self._retire()
            raise BrokerConnectionError(
                f"{config.name}: no CONNACK within {timeout:.1f}s",
                client_id=config.name,
            )
        if _rc_value(outcome.get("rc")) != 0:
            self._retire()
            raise BrokerConnectionError(
                f"{config.name}: connect refused: {outcome.get('rc')}",
                client_id=config.name,
            )
        return session

    def _retire(self) -> None:
        """Close the current session, if any, without reporting a loss."""
        with self._lock:
            client = self._client
            self._client = None
            self._live_session = None
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()

    def disconnect(self) -> None:
        """Gracefully end the current session."""
        if self._client is not None:
            self._logger.info("Disconnecting %s", self.client_id)
        self._retire()

    def subscribe(self, pattern: str, qos: int = 1) -> None:
        client = self._client
        if client is None:
            raise BrokerConnectionError(f"{self.client_id}: not connected", client_id=self.client_id)
        rc, _mid = client.subscribe(pattern, qos=qos)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise BrokerConnectionError(
                f"{self.client_id}: subscribe {pattern!r} failed: {mqtt.error_string(rc)}",
                client_id=self.client_id,
            )
        self._logger.info("%s subscribed to %s (qos %d)", self.client_id, pattern, qos)

    def publish(self, topic: str, payload: str | bytes, qos: int = 1) -> None:
        """Queue a message for sending; does not wait for the broker."""
        client = self._client
        if client is None:
            raise PublishError(f"{self.client_id}: not connected", topic=topic)
        info = client.publish(topic, payload, qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(
                f"{self.client_id}: publish on {topic} failed: {mqtt.error_string(info.rc)}",
                topic=topic,
                rc=info.rc,
            )
