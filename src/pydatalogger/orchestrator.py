"""Connection orchestration for all configured brokers.

Owns one :class:`~pydatalogger._mqtt.BrokerConnection` per client
identifier and drives each through ``Disconnected -> Connecting ->
Connected``, retrying after a fixed delay whenever a connect attempt fails
or an established connection is lost.  Clients never wait on each other.

Threading: transport callbacks arrive on paho threads and are handed to the
event loop with ``call_soon_threadsafe``.  Lifecycle events are applied to
the orchestrator right there on the loop; message events are queued per
client for the gateway's consuming loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from pydatalogger._mqtt import BrokerConnection, BrokerEvent, EventKind
from pydatalogger.config import BrokerClientConfig, GatewayConfig
from pydatalogger.exceptions import BrokerConnectionError, DataloggerConfigError, DataloggerError

_logger = logging.getLogger(__name__)

#: Subscription installed on every connection once it is up.
SUBSCRIBE_PATTERN = "#"
SUBSCRIBE_QOS = 1

ConnectionFactory = Callable[[BrokerClientConfig, Callable[[BrokerEvent], None]], BrokerConnection]


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(slots=True)
class _Entry:
    connection: BrokerConnection
    state: ConnectionState = ConnectionState.DISCONNECTED
    queue: asyncio.Queue[BrokerEvent] | None = None
    pending: asyncio.Task[None] | None = None
    # Blocking connect call, which outlives a cancelled attempt task.
    inflight: asyncio.Future[int] | None = None
    # Set by an explicit disconnect; suppresses automatic retries.
    stopped: bool = False

    @property
    def attempt_pending(self) -> bool:
        if self.pending is not None and not self.pending.done():
            return True
        return self.inflight is not None and not self.inflight.done()


class ConnectionOrchestrator:
    """Keeps every configured broker connection in the ``Connected`` state."""

    def __init__(
        self,
        *,
        connection_factory: ConnectionFactory = BrokerConnection,
        retry_delay: float = 5.0,
        connect_timeout: float = 10.0,
        queue_size: int = 1000,
        logger: logging.Logger | None = None,
    ) -> None:
        self._connection_factory = connection_factory
        self._retry_delay = retry_delay
        self._connect_timeout = connect_timeout
        self._queue_size = queue_size
        self._logger = logger or _logger
        self._entries: dict[str, _Entry] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._executor_size = 0

    @classmethod
    def from_config(cls, config: GatewayConfig, **kwargs: Any) -> ConnectionOrchestrator:
        kwargs.setdefault("retry_delay", config.retry_delay)
        kwargs.setdefault("connect_timeout", config.connect_timeout)
        kwargs.setdefault("queue_size", config.queue_size)
        return cls(**kwargs)

    @property
    def retry_delay(self) -> float:
        return self._retry_delay

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_all(self, configs: Iterable[BrokerClientConfig | Mapping[str, Any]]) -> None:
        """Register a connection per broker config.  No network I/O happens here.

        Raises
        ------
        DataloggerConfigError
            A config is structurally invalid or a client name is used twice.
        """
        validated: list[BrokerClientConfig] = []
        for raw in configs:
            if isinstance(raw, BrokerClientConfig):
                validated.append(raw)
                continue
            try:
                validated.append(BrokerClientConfig.model_validate(raw))
            except ValidationError as exc:
                raise DataloggerConfigError(f"Invalid broker configuration: {exc}") from exc

        for config in validated:
            if config.name in self._entries:
                raise DataloggerConfigError(f"Broker client {config.name!r} registered twice")

        for config in validated:
            connection = self._connection_factory(config, self._make_sink())
            self._entries[config.name] = _Entry(connection=connection)
            self._logger.debug("Registered client %s (%s:%s)", config.name, config.host, config.broker_port)

    def client_ids(self) -> list[str]:
        return list(self._entries)

    def state(self, client_id: str) -> ConnectionState:
        return self._require(client_id).state

    def states(self) -> dict[str, ConnectionState]:
        return {client_id: entry.state for client_id, entry in self._entries.items()}

    def connection(self, client_id: str) -> BrokerConnection:
        return self._require(client_id).connection

    def _require(self, client_id: str) -> _Entry:
        entry = self._entries.get(client_id)
        if entry is None:
            raise KeyError(f"Unknown client {client_id!r}")
        return entry

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise DataloggerError("Orchestrator not started. Call 'await connect_all()' first")
        return self._loop

    # ------------------------------------------------------------------
    # Blocking transport calls
    # ------------------------------------------------------------------

    def _ensure_executor(self) -> None:
        # Two workers per client: a connect blocked on an unreachable broker
        # plus the disconnect that may arrive meanwhile.
        size = max(2, 2 * len(self._entries))
        if self._executor is not None and self._executor_size >= size:
            return
        if self._executor is not None:
            self._executor.shutdown(wait=False)
        self._executor = ThreadPoolExecutor(max_workers=size, thread_name_prefix="pydatalogger-conn")
        self._executor_size = size

    def _run_blocking(self, func: Callable[..., Any], *args: Any) -> asyncio.Future[Any]:
        """Run a blocking transport call off the loop.

        Falls back to the loop's default executor once :meth:`close` has run.
        """
        return self._require_loop().run_in_executor(self._executor, func, *args)

    def close(self) -> None:
        """Release the connection worker threads.  Call after :meth:`disconnect_all`."""
        executor, self._executor = self._executor, None
        self._executor_size = 0
        if executor is not None:
            executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Event hand-off (transport thread -> loop)
    # ------------------------------------------------------------------

    def _make_sink(self) -> Callable[[BrokerEvent], None]:
        def sink(event: BrokerEvent) -> None:
            loop = self._loop
            if loop is None or loop.is_closed():
                self._logger.debug("Dropping %s event for %s: loop not running", event.kind, event.client_id)
                return
            loop.call_soon_threadsafe(self._offer, event)

        return sink

    def _offer(self, event: BrokerEvent) -> None:
        if event.is_lifecycle:
            self.handle_event(event)
            return
        entry = self._entries.get(event.client_id)
        if entry is None or entry.queue is None:
            return
        try:
            entry.queue.put_nowait(event)
        except asyncio.QueueFull:
            self._logger.warning(
                "Inbound queue of %s full (%d); dropping message on %s",
                event.client_id,
                entry.queue.maxsize,
                event.topic,
            )

    def handle_event(self, event: BrokerEvent) -> None:
        """Apply a lifecycle notification.  Must run on the event loop."""
        entry = self._entries.get(event.client_id)
        if entry is None:
            self._logger.debug("Lifecycle event for unknown client %s", event.client_id)
            return
        if event.session != entry.connection.session:
            self._logger.debug(
                "Ignoring %s from retired session %d of %s",
                event.kind,
                event.session,
                event.client_id,
            )
            return

        if event.kind is EventKind.CONNECTED:
            self._logger.debug("Client %s acknowledged by broker", event.client_id)
            return

        if event.kind is EventKind.CONNECTION_LOST:
            previous = entry.state
            entry.state = ConnectionState.DISCONNECTED
            self._logger.warning("Client %s lost connection (%s) while %s", event.client_id, event.reason, previous)
            if not entry.stopped:
                self._schedule(event.client_id, self._retry_delay)

    # ------------------------------------------------------------------
    # Connect / retry
    # ------------------------------------------------------------------

    async def connect_all(self) -> dict[str, asyncio.Queue[BrokerEvent]]:
        """Start connecting every registered client; return their inbound message queues.

        Waits at most ``connect_timeout`` for the first attempts.  A client
        that fails keeps retrying in the background and never holds up the
        others.
        """
        self._loop = asyncio.get_running_loop()
        self._ensure_executor()
        streams: dict[str, asyncio.Queue[BrokerEvent]] = {}
        attempts: list[asyncio.Task[None]] = []
        for client_id, entry in self._entries.items():
            if entry.queue is None:
                entry.queue = asyncio.Queue(maxsize=self._queue_size)
            streams[client_id] = entry.queue
            entry.stopped = False
            if entry.state is ConnectionState.DISCONNECTED:
                attempts.append(self._schedule(client_id, 0.0))

        if attempts:
            await asyncio.wait(attempts, timeout=self._connect_timeout)
        return streams

    def reconnect(self, client_id: str) -> asyncio.Task[None] | None:
        """Re-attempt connecting one client.

        A no-op while the client is connecting or connected.
        """
        entry = self._require(client_id)
        self._require_loop()
        if entry.state is not ConnectionState.DISCONNECTED or entry.attempt_pending:
            self._logger.debug("Reconnect of %s ignored (state=%s)", client_id, entry.state)
            return None
        entry.stopped = False
        return self._schedule(client_id, 0.0)

    def _schedule(self, client_id: str, delay: float) -> asyncio.Task[None]:
        entry = self._entries[client_id]
        if entry.pending is not None and not entry.pending.done():
            return entry.pending

        loop = self._require_loop()
        if delay > 0:
            self._logger.info("Reconnecting %s in %.1fs", client_id, delay)
        task = loop.create_task(self._run_attempts(client_id, delay), name=f"connect-{client_id}")
        entry.pending = task
        task.add_done_callback(lambda t, e=entry: self._attempts_done(e, t))
        return task

    def _attempts_done(self, entry: _Entry, task: asyncio.Task[None]) -> None:
        if entry.pending is task:
            entry.pending = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("Connect task for %s died", entry.connection.client_id, exc_info=exc)

    def _connect_settled(self, entry: _Entry, future: asyncio.Future[int]) -> None:
        if entry.inflight is future:
            entry.inflight = None
        if future.cancelled() or future.exception() is not None:
            return
        if entry.stopped and entry.connection.is_connected:
            # disconnect() ran while connect() was still blocking.
            client_id = entry.connection.client_id
            self._logger.info("Closing session of %s opened after disconnect", client_id)
            teardown = self._run_blocking(entry.connection.disconnect)
            teardown.add_done_callback(lambda f, cid=client_id: self._teardown_done(cid, f))

    def _teardown_done(self, client_id: str, future: asyncio.Future[None]) -> None:
        if not future.cancelled() and future.exception() is not None:
            self._logger.warning("Disconnect of %s failed", client_id, exc_info=future.exception())

    async def _run_attempts(self, client_id: str, delay: float) -> None:
        entry = self._entries[client_id]
        connection = entry.connection

        while not entry.stopped:
            if delay > 0:
                await asyncio.sleep(delay)
                if entry.stopped:
                    return

            entry.state = ConnectionState.CONNECTING
            self._logger.info("Connecting client: %s", client_id)
            try:
                future = self._run_blocking(connection.connect, self._connect_timeout)
                entry.inflight = future
                future.add_done_callback(lambda f, e=entry: self._connect_settled(e, f))
                # Outlives cancellation of this task; see _connect_settled.
                await asyncio.shield(future)
                if not connection.is_connected:
                    raise BrokerConnectionError(f"{client_id}: connection dropped during setup", client_id=client_id)
                connection.subscribe(SUBSCRIBE_PATTERN, SUBSCRIBE_QOS)
            except BrokerConnectionError as exc:
                self._logger.warning("%s connect failed: %s; retrying in %.1fs", client_id, exc, self._retry_delay)
            except Exception:
                self._logger.warning(
                    "%s connect failed unexpectedly; retrying in %.1fs",
                    client_id,
                    self._retry_delay,
                    exc_info=True,
                )
            else:
                entry.state = ConnectionState.CONNECTED
                self._logger.info("Client %s connected", client_id)
                return

            entry.state = ConnectionState.DISCONNECTED
            delay = self._retry_delay

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    async def disconnect(self, client_id: str, timeout: float | None = None) -> None:
        """End one client's session.  Best effort, bounded by *timeout*.

        A connect call still blocking in its worker thread is not waited for;
        a session it manages to open afterwards is closed as soon as it settles.
        """
        entry = self._require(client_id)
        loop = asyncio.get_running_loop()
        wait = self._connect_timeout if timeout is None else timeout

        entry.stopped = True
        if entry.pending is not None and not entry.pending.done():
            entry.pending.cancel()

        self._logger.info("Disconnecting client: %s", client_id)
        try:
            await asyncio.wait_for(loop.run_in_executor(self._executor, entry.connection.disconnect), wait)
        except TimeoutError:
            self._logger.warning("Disconnect of %s did not finish within %.1fs", client_id, wait)
        except Exception:
            self._logger.warning("Disconnect of %s failed", client_id, exc_info=True)
        finally:
            entry.state = ConnectionState.DISCONNECTED

    async def disconnect_all(self, timeout: float | None = None) -> None:
        await asyncio.gather(*(self.disconnect(client_id, timeout) for client_id in self._entries))

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    def publish(self, client_id: str, topic: str, payload: str | bytes, qos: int = 1) -> None:
        """Non-blocking publish through one client's connection.

        Raises
        ------
        PublishError
            The transport rejected the message.
        """
        self._require(client_id).connection.publish(topic, payload, qos)
