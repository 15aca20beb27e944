from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import pytest

from pydatalogger._mqtt import BrokerEvent, EventKind
from pydatalogger.config import BrokerClientConfig
from pydatalogger.exceptions import BrokerConnectionError, PublishError


class FakeConnection:
    """Stand-in for BrokerConnection; never touches the network."""

    def __init__(self, config: BrokerClientConfig, on_event: Callable[[BrokerEvent], None]) -> None:
        self.config = config
        self.on_event = on_event
        self.session = 0
        self.connected = False
        self.fail_connects = 0
        self.gate: threading.Event | None = None
        self.disconnect_delay = 0.0
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.subscriptions: list[tuple[str, int]] = []
        self.published: list[tuple[str, str | bytes, int]] = []
        self.failing_topics: set[str] = set()

    @property
    def client_id(self) -> str:
        return self.config.name

    @property
    def is_connected(self) -> bool:
        return self.connected

    def connect(self, timeout: float) -> int:
        self.connect_calls += 1
        self.session += 1
        self.connected = False
        if self.gate is not None:
            self.gate.wait(timeout)
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise BrokerConnectionError(f"{self.client_id}: connect refused", client_id=self.client_id)
        self.connected = True
        self.on_event(BrokerEvent(kind=EventKind.CONNECTED, client_id=self.client_id, session=self.session))
        return self.session

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.disconnect_delay:
            time.sleep(self.disconnect_delay)
        self.connected = False

    def subscribe(self, pattern: str, qos: int = 1) -> None:
        self.subscriptions.append((pattern, qos))

    def publish(self, topic: str, payload: str | bytes, qos: int = 1) -> None:
        if topic in self.failing_topics:
            raise PublishError(f"publish on {topic} failed", topic=topic, rc=4)
        self.published.append((topic, payload, qos))

    # Test controls -----------------------------------------------------

    def deliver(self, topic: str, payload: str | bytes) -> None:
        data = payload.encode() if isinstance(payload, str) else payload
        self.on_event(
            BrokerEvent(kind=EventKind.MESSAGE, client_id=self.client_id, session=self.session, topic=topic, payload=data)
        )

    def lose(self, reason: str = "keepalive timeout") -> None:
        self.connected = False
        self.on_event(
            BrokerEvent(kind=EventKind.CONNECTION_LOST, client_id=self.client_id, session=self.session, reason=reason)
        )


@dataclass
class FakeConnectionFactory:
    created: dict[str, FakeConnection] = field(default_factory=dict)
    fail_connects: dict[str, int] = field(default_factory=dict)

    def __call__(self, config: BrokerClientConfig, on_event: Callable[[BrokerEvent], None]) -> FakeConnection:
        connection = FakeConnection(config, on_event)
        connection.fail_connects = self.fail_connects.get(config.name, 0)
        self.created[config.name] = connection
        return connection


def broker_config(name: str = "broker1", **overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "name": name,
        "address": "tcp://127.0.0.1:1883",
        "port": 1883,
        "user": "logger",
        "password": "secret",
    }
    data.update(overrides)
    return data


@pytest.fixture
def fake_factory() -> FakeConnectionFactory:
    return FakeConnectionFactory()


@pytest.fixture
def make_broker_config() -> Callable[..., dict[str, Any]]:
    return broker_config


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[bool]]:
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            await asyncio.sleep(0.005)
        return predicate()

    return _wait
