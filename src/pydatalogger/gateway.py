"""The gateway: orchestrator, store and router wired to one consuming loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydatalogger._mqtt import BrokerEvent
from pydatalogger._redact import redact_for_log
from pydatalogger.config import GatewayConfig
from pydatalogger.orchestrator import ConnectionOrchestrator, ConnectionState
from pydatalogger.persistence import PersistenceSink
from pydatalogger.router import MessageRouter
from pydatalogger.state import SensorStateStore

_logger = logging.getLogger(__name__)

#: Pause between disconnect-all and process exit on shutdown.
SHUTDOWN_GRACE = 0.1


class DataloggerGateway:
    """Bridges every configured broker into the local telemetry pipeline.

    Usage::

        gateway = DataloggerGateway.from_config(config, sink=SqliteSink(path))
        await gateway.run(stop_event)

    All store mutation happens inside :meth:`process_pending`, which drains
    the per-client queues in FIFO order on the event loop.  No locking is
    needed beyond the queues themselves.
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        orchestrator: ConnectionOrchestrator,
        store: SensorStateStore,
        router: MessageRouter,
    ) -> None:
        self._config = config
        self._orchestrator = orchestrator
        self._store = store
        self._router = router
        self._streams: dict[str, asyncio.Queue[BrokerEvent]] = {}
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        *,
        sink: PersistenceSink,
        orchestrator: ConnectionOrchestrator | None = None,
        store: SensorStateStore | None = None,
        **orchestrator_kwargs: Any,
    ) -> DataloggerGateway:
        if orchestrator is None:
            orchestrator = ConnectionOrchestrator.from_config(config, **orchestrator_kwargs)
        if store is None:
            store = SensorStateStore(stale_after=config.sensor_stale_after)
        router = MessageRouter(store=store, sink=sink, publisher=orchestrator, gateway_name=config.name)
        return cls(config, orchestrator=orchestrator, store=store, router=router)

    @property
    def orchestrator(self) -> ConnectionOrchestrator:
        return self._orchestrator

    @property
    def store(self) -> SensorStateStore:
        return self._store

    @property
    def router(self) -> MessageRouter:
        return self._router

    async def start(self) -> None:
        """Register every broker and start connecting them."""
        if self._started:
            return
        _logger.debug("Gateway configuration: %s", redact_for_log(self._config.model_dump()))
        self._orchestrator.add_all(self._config.mqtt_clients)
        self._started = True
        self._streams = await self._orchestrator.connect_all()
        _logger.info(
            "Gateway %s started: %s",
            self._config.name,
            ", ".join(f"{cid}={state}" for cid, state in self._orchestrator.states().items()),
        )

    def process_pending(self) -> int:
        """Drain every client queue without blocking; return the number of messages routed."""
        processed = 0
        for client_id, queue in self._streams.items():
            while True:
                try:
                    event = queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                self._router.route_event(event)
                queue.task_done()
                processed += 1
            if self._store.staleness_enabled:
                self._store.invalidate_stale(client_id)
        return processed

    async def run(self, stop: asyncio.Event) -> None:
        """Poll the client queues every ``poll_interval`` until *stop* is set."""
        await self.start()
        try:
            while not stop.is_set():
                self.process_pending()
                try:
                    await asyncio.wait_for(stop.wait(), self._config.poll_interval)
                except TimeoutError:
                    pass
            self.process_pending()
        finally:
            await self.shutdown()

    async def shutdown(self, grace: float = SHUTDOWN_GRACE) -> None:
        if not self._started:
            return
        self._started = False
        _logger.info("Disconnecting...")
        await self._orchestrator.disconnect_all(self._config.connect_timeout)
        self._orchestrator.close()
        await asyncio.sleep(grace)

    def connection_states(self) -> dict[str, ConnectionState]:
        return self._orchestrator.states()
