from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import pytest

from pydatalogger._mqtt import BrokerEvent, EventKind
from pydatalogger.exceptions import PayloadFormatError, PersistenceError, PublishError
from pydatalogger.persistence import MemorySink
from pydatalogger.router import MessageRouter, SensorSample, TopicRule, parse_sensor_payload
from pydatalogger.state import SensorStateStore

NOW = datetime(2026, 3, 4, 8, 15, 42, tzinfo=UTC)


@dataclass
class RecordingPublisher:
    published: list[tuple[str, str, str | bytes, int]] = field(default_factory=list)
    failing_topics: set[str] = field(default_factory=set)

    def publish(self, client_id: str, topic: str, payload: str | bytes, qos: int = 1) -> None:
        if topic in self.failing_topics:
            raise PublishError("rejected", topic=topic, rc=4)
        self.published.append((client_id, topic, payload, qos))


class FailingSink:
    def __init__(self) -> None:
        self.calls = 0

    def record(self, client_id: str, sensor_id: str, value: float) -> None:
        self.calls += 1
        raise PersistenceError("disk full")


def _router(
    *,
    sink: object | None = None,
    stale_after: float | None = None,
    clock_value: datetime = NOW,
) -> tuple[MessageRouter, SensorStateStore, MemorySink, RecordingPublisher]:
    store = SensorStateStore(clock=lambda: clock_value, stale_after=stale_after)
    memory = MemorySink()
    publisher = RecordingPublisher()
    router = MessageRouter(
        store=store,
        sink=sink if sink is not None else memory,  # type: ignore[arg-type]
        publisher=publisher,
        gateway_name="cellar-gateway",
    )
    return router, store, memory, publisher


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        (b"23.5#sensor1", SensorSample("sensor1", 23.5)),
        (b"-4#outside", SensorSample("outside", -4.0)),
        (b" 19.25#28-0316a2797aff \n", SensorSample("28-0316a2797aff", 19.25)),
        ("1e1#x", SensorSample("x", 10.0)),
    ],
)
def test_parse_sensor_payload(payload: bytes | str, expected: SensorSample) -> None:
    assert parse_sensor_payload(payload) == expected


@pytest.mark.parametrize(
    "payload",
    [b"abc#sensor1", b"1.5", b"1.5#", b"#sensor1", b"1.5#a#b", b"nan#sensor1", b"inf#sensor1", b"\xff\xfe#s"],
)
def test_parse_sensor_payload_rejects_malformed(payload: bytes) -> None:
    with pytest.raises(PayloadFormatError):
        parse_sensor_payload(payload)


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------


def test_sensor_message_updates_store_and_sink_once() -> None:
    router, store, sink, _ = _router()

    assert router.route("home", "sensor/temperature/room1", b"23.5#sensor1") == "sensor"

    [reading] = store.snapshot("home")
    assert (reading.sensor_id, reading.value) == ("sensor1", 23.5)
    assert sink.records == [("home", "sensor1", 23.5)]


@pytest.mark.parametrize("payload", [b"abc#sensor1", b"1.5"])
def test_malformed_sensor_message_leaves_store_untouched(payload: bytes) -> None:
    router, store, sink, _ = _router()
    router.route("home", "sensor/temperature/room1", b"20#sensor1")

    router.route("home", "sensor/temperature/room1", payload)

    [reading] = store.snapshot("home")
    assert reading.value == 20.0
    assert len(sink.records) == 1


def test_persistence_failure_does_not_block_store_update(caplog: pytest.LogCaptureFixture) -> None:
    sink = FailingSink()
    router, store, _, _ = _router(sink=sink)

    with caplog.at_level(logging.ERROR, logger="pydatalogger.router"):
        router.route("home", "sensor/temperature/room1", b"23.5#sensor1")

    assert sink.calls == 1
    assert store.get("home", "sensor1").value == 23.5  # type: ignore[union-attr]
    assert "disk full" in caplog.text


def test_unknown_topic_is_dropped(caplog: pytest.LogCaptureFixture) -> None:
    router, store, sink, publisher = _router()

    with caplog.at_level(logging.INFO, logger="pydatalogger.router"):
        assert router.route("home", "zigbee/livingroom", b"x" * 200) is None

    assert store.snapshot("home") == []
    assert sink.records == []
    assert publisher.published == []
    assert "<200 chars>" in caplog.text
    assert "x" * 51 not in caplog.text


def test_short_unknown_payload_is_logged_verbatim(caplog: pytest.LogCaptureFixture) -> None:
    router, _, _, _ = _router()

    with caplog.at_level(logging.INFO, logger="pydatalogger.router"):
        router.route("home", "weather/now", b"sunny")

    assert "'sunny'" in caplog.text


def test_own_snapshot_publications_are_not_reingested() -> None:
    router, store, _, _ = _router()

    assert router.route("home", "datalogger/sensor/temperature/room1", b"23.5#sensor1#08:15:42") is None
    assert store.snapshot("home") == []


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def test_get_publishes_every_sensor_of_requesting_client() -> None:
    router, _, _, publisher = _router()
    router.route("home", "sensor/temperature/room1", b"23.5#sensor1")
    router.route("home", "sensor/temperature/room2", b"19#sensor2")
    router.route("garden", "sensor/temperature/shed", b"7.5#sensor9")

    router.route("home", "datalogger/temperature/command", b"get")

    assert publisher.published == [
        ("home", "datalogger/sensor/temperature/room1", "23.5#sensor1#08:15:42", 1),
        ("home", "datalogger/sensor/temperature/room2", "19#sensor2#08:15:42", 1),
    ]


def test_get_without_readings_publishes_nothing() -> None:
    router, _, _, publisher = _router()

    router.route("home", "datalogger/temperature/command", b"get")

    assert publisher.published == []


def test_publish_failure_does_not_abort_batch(caplog: pytest.LogCaptureFixture) -> None:
    router, _, _, publisher = _router()
    router.route("home", "sensor/temperature/a", b"1#s1")
    router.route("home", "sensor/temperature/b", b"2#s2")
    router.route("home", "sensor/temperature/c", b"3#s3")
    publisher.failing_topics.add("datalogger/sensor/temperature/b")

    with caplog.at_level(logging.ERROR, logger="pydatalogger.router"):
        assert router.publish_snapshot("home") == 2

    assert [p[1] for p in publisher.published] == [
        "datalogger/sensor/temperature/a",
        "datalogger/sensor/temperature/c",
    ]
    assert "datalogger/sensor/temperature/b" in caplog.text


def test_get_valid_without_staleness_policy_does_nothing(caplog: pytest.LogCaptureFixture) -> None:
    router, _, _, publisher = _router()
    router.route("home", "sensor/temperature/a", b"1#s1")

    with caplog.at_level(logging.WARNING, logger="pydatalogger.router"):
        router.route("home", "datalogger/temperature/command", b"get_valid")

    assert publisher.published == []
    assert "not implemented" in caplog.text


def test_get_valid_with_staleness_policy_skips_stale_readings() -> None:
    clock = {"now": NOW}
    store = SensorStateStore(clock=lambda: clock["now"], stale_after=60)
    publisher = RecordingPublisher()
    router = MessageRouter(store=store, sink=MemorySink(), publisher=publisher, gateway_name="gw")

    router.route("home", "sensor/temperature/a", b"1#old")
    clock["now"] = NOW + timedelta(seconds=50)
    router.route("home", "sensor/temperature/b", b"2#fresh")
    clock["now"] = NOW + timedelta(seconds=90)

    router.route("home", "datalogger/temperature/command", b"get_valid")

    assert [p[1] for p in publisher.published] == ["datalogger/sensor/temperature/b"]


@pytest.mark.parametrize(
    ("topic", "payload"),
    [
        ("datalogger/temperature/command", b"GET"),
        ("datalogger/temperature/command", b"reset"),
        ("datalogger/command", b"pong"),
        ("datalogger/command", b""),
    ],
)
def test_unknown_commands_are_reported(topic: str, payload: bytes, caplog: pytest.LogCaptureFixture) -> None:
    router, store, _, publisher = _router()

    with caplog.at_level(logging.WARNING, logger="pydatalogger.router"):
        router.route("home", topic, payload)

    assert publisher.published == []
    assert store.snapshot("home") == []
    assert "unknown command" in caplog.text


def test_ping_publishes_gateway_name() -> None:
    router, _, _, publisher = _router()

    assert router.route("home", "datalogger/command", b"ping") == "datalogger_command"

    assert publisher.published == [("home", "datalogger/home/pong", "cellar-gateway", 1)]


def test_ping_publish_failure_is_not_fatal() -> None:
    router, _, _, publisher = _router()
    publisher.failing_topics.add("datalogger/home/pong")

    assert router.publish_ping_ack("home") is False


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def test_rules_are_ordered_and_first_match_wins() -> None:
    router, _, _, _ = _router()
    seen: list[str] = []
    router.add_rule(TopicRule("shadow", "sensor/", lambda c, t, p: seen.append(t)), index=0)

    router.route("home", "sensor/temperature/a", b"1#s1")

    assert seen == ["sensor/temperature/a"]
    assert [rule.name for rule in router.rules] == ["shadow", "sensor", "temperature_command", "datalogger_command"]


def test_handler_exception_does_not_escape(caplog: pytest.LogCaptureFixture) -> None:
    router, _, _, _ = _router()

    def boom(client_id: str, topic: str, payload: bytes) -> None:
        raise RuntimeError("bug")

    router.add_rule(TopicRule("boom", "boom/", boom))

    with caplog.at_level(logging.ERROR, logger="pydatalogger.router"):
        assert router.route("home", "boom/1", b"") == "boom"
    assert "boom handler failed" in caplog.text


def test_route_event_uses_event_fields() -> None:
    router, store, _, _ = _router()
    event = BrokerEvent(
        kind=EventKind.MESSAGE,
        client_id="garden",
        session=1,
        topic="sensor/temperature/shed",
        payload=b"7.5#shed",
    )

    router.route_event(event)

    assert store.get("garden", "shed").value == 7.5  # type: ignore[union-attr]
