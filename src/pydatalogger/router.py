"""Topic-based dispatch of inbound broker messages.

Rules are evaluated in order; the first whose prefix matches the topic
handles the message:

1. ``sensor/temperature...``        -> ingest ``<value>#<sensor_id>``
2. ``datalogger/temperature/command`` -> ``get`` / ``get_valid``
3. ``datalogger/command``           -> ``ping``

Anything else is logged and dropped.  No message, however malformed, is
allowed to escape :meth:`MessageRouter.route` as an exception.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from pydatalogger._mqtt import BrokerEvent
from pydatalogger._redact import describe_payload
from pydatalogger.exceptions import PayloadFormatError, PersistenceError, PublishError
from pydatalogger.persistence import PersistenceSink
from pydatalogger.state import SensorReading, SensorStateStore
from pydatalogger.state.models import FIELD_SEPARATOR

_logger = logging.getLogger(__name__)

SENSOR_TOPIC_PREFIX = "sensor/temperature"
TEMPERATURE_COMMAND_TOPIC = "datalogger/temperature/command"
DATALOGGER_COMMAND_TOPIC = "datalogger/command"

#: Snapshot values are published on this prefix + the reading's source topic.
SNAPSHOT_TOPIC_PREFIX = "datalogger/"
PING_REPLY_TOPIC = "datalogger/{client_id}/pong"

COMMAND_GET = "get"
COMMAND_GET_VALID = "get_valid"
COMMAND_PING = "ping"

PUBLISH_QOS = 1

Handler = Callable[[str, str, bytes], None]


class Publisher(Protocol):
    def publish(self, client_id: str, topic: str, payload: str | bytes, qos: int = 1) -> None: ...


@dataclass(frozen=True)
class SensorSample:
    sensor_id: str
    value: float


@dataclass(frozen=True)
class TopicRule:
    name: str
    prefix: str
    handler: Handler

    def matches(self, topic: str) -> bool:
        return topic.startswith(self.prefix)


def _decode(payload: bytes | str) -> str:
    if isinstance(payload, str):
        return payload
    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise PayloadFormatError(f"payload is not UTF-8: {exc}") from exc


def parse_sensor_payload(payload: bytes | str) -> SensorSample:
    """Parse ``<value>#<sensor_id>``.

    Raises
    ------
    PayloadFormatError
        Missing separator, empty or ``#``-containing sensor id, or a value
        that is not a finite decimal number.
    """
    text = _decode(payload).strip()
    raw_value, sep, sensor_id = text.partition(FIELD_SEPARATOR)
    if not sep:
        raise PayloadFormatError(f"missing {FIELD_SEPARATOR!r} in {text!r}")
    sensor_id = sensor_id.strip()
    if not sensor_id:
        raise PayloadFormatError(f"empty sensor id in {text!r}")
    if FIELD_SEPARATOR in sensor_id:
        raise PayloadFormatError(f"sensor id {sensor_id!r} contains {FIELD_SEPARATOR!r}")
    try:
        value = float(raw_value.strip())
    except ValueError as exc:
        raise PayloadFormatError(f"value {raw_value!r} is not a number") from exc
    if not math.isfinite(value):
        raise PayloadFormatError(f"value {raw_value!r} is not finite")
    return SensorSample(sensor_id=sensor_id, value=value)


class MessageRouter:
    """Classifies inbound messages by topic and acts on them."""

    def __init__(
        self,
        *,
        store: SensorStateStore,
        sink: PersistenceSink,
        publisher: Publisher,
        gateway_name: str,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._sink = sink
        self._publisher = publisher
        self._gateway_name = gateway_name
        self._logger = logger or _logger
        self._rules: list[TopicRule] = [
            TopicRule("sensor", SENSOR_TOPIC_PREFIX, self._handle_sensor),
            TopicRule("temperature_command", TEMPERATURE_COMMAND_TOPIC, self._handle_temperature_command),
            TopicRule("datalogger_command", DATALOGGER_COMMAND_TOPIC, self._handle_datalogger_command),
        ]

    @property
    def rules(self) -> Sequence[TopicRule]:
        return tuple(self._rules)

    def add_rule(self, rule: TopicRule, *, index: int | None = None) -> None:
        """Insert an extra rule (appended after the built-in ones by default)."""
        if index is None:
            self._rules.append(rule)
        else:
            self._rules.insert(index, rule)

    def classify(self, topic: str) -> TopicRule | None:
        for rule in self._rules:
            if rule.matches(topic):
                return rule
        return None

    def route_event(self, event: BrokerEvent) -> str | None:
        return self.route(event.client_id, event.topic, event.payload)

    def route(self, client_id: str, topic: str, payload: bytes) -> str | None:
        """Dispatch one message; return the name of the rule that took it."""
        rule = self.classify(topic)
        if rule is None:
            self._logger.info("%s: unrecognized topic %s: %s", client_id, topic, describe_payload(payload))
            return None
        try:
            rule.handler(client_id, topic, payload)
        except Exception:
            self._logger.exception("%s: %s handler failed for %s", client_id, rule.name, topic)
        return rule.name

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_sensor(self, client_id: str, topic: str, payload: bytes) -> None:
        try:
            sample = parse_sensor_payload(payload)
        except PayloadFormatError as exc:
            self._logger.warning("%s: dropping sensor message on %s: %s", client_id, topic, exc)
            return

        self._store.update(client_id, sample.sensor_id, sample.value, topic)
        try:
            self._sink.record(client_id, sample.sensor_id, sample.value)
        except PersistenceError as exc:
            self._logger.error("%s: could not persist %s=%s: %s", client_id, sample.sensor_id, sample.value, exc)

    def _handle_temperature_command(self, client_id: str, topic: str, payload: bytes) -> None:
        command = _command_text(payload)
        if command == COMMAND_GET:
            self.publish_snapshot(client_id)
        elif command == COMMAND_GET_VALID:
            self.publish_valid_snapshot(client_id)
        else:
            self._logger.warning("%s: unknown command on %s: %s", client_id, topic, describe_payload(payload))

    def _handle_datalogger_command(self, client_id: str, topic: str, payload: bytes) -> None:
        command = _command_text(payload)
        if command == COMMAND_PING:
            self.publish_ping_ack(client_id)
        else:
            self._logger.warning("%s: unknown command on %s: %s", client_id, topic, describe_payload(payload))

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish_snapshot(self, client_id: str) -> int:
        """Publish every known reading of *client_id*; return how many went out."""
        return self._publish_readings(client_id, self._store.snapshot(client_id))

    def publish_valid_snapshot(self, client_id: str) -> int:
        if not self._store.staleness_enabled:
            self._logger.warning(
                "%s: %r not implemented without a staleness policy (sensor_stale_after)",
                client_id,
                COMMAND_GET_VALID,
            )
            return 0
        self._store.invalidate_stale(client_id)
        return self._publish_readings(client_id, self._store.snapshot(client_id, valid_only=True))

    def _publish_readings(self, client_id: str, readings: Sequence[SensorReading]) -> int:
        published = 0
        for reading in readings:
            topic = SNAPSHOT_TOPIC_PREFIX + reading.topic
            encoded = reading.encode()
            self._logger.info("Publishing on %s: %s - %s", client_id, encoded, topic)
            try:
                self._publisher.publish(client_id, topic, encoded, PUBLISH_QOS)
            except PublishError as exc:
                self._logger.error("%s: error publishing %s: %s", client_id, topic, exc)
                continue
            published += 1
        return published

    def publish_ping_ack(self, client_id: str) -> bool:
        topic = PING_REPLY_TOPIC.format(client_id=client_id)
        self._logger.info("Answering ping on %s: %s", client_id, topic)
        try:
            self._publisher.publish(client_id, topic, self._gateway_name, PUBLISH_QOS)
        except PublishError as exc:
            self._logger.error("%s: error publishing ping reply: %s", client_id, exc)
            return False
        return True


def _command_text(payload: bytes) -> str:
    return payload.decode("utf-8", errors="replace").strip()
