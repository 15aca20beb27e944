"""Command line entry point: ``python -m pydatalogger``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from pydatalogger.config import CONFIG_ENV_VAR, GatewayConfig, default_config_path, load_config
from pydatalogger.exceptions import DataloggerConfigError, PersistenceError
from pydatalogger.gateway import DataloggerGateway
from pydatalogger.persistence import MemorySink, PersistenceSink, SqliteSink, resolve_database_path

_LOG = logging.getLogger("pydatalogger")

MEMORY_SINK_LIMIT = 10_000


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pydatalogger",
        description="Bridge MQTT brokers into the local datalogger.",
    )
    parser.add_argument(
        "--config",
        "-c",
        default=None,
        help=f"Configuration JSON (default: ${CONFIG_ENV_VAR} or {default_config_path()}).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Keep readings in memory instead of writing the database.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args(argv)


def _build_sink(config: GatewayConfig, dry_run: bool) -> PersistenceSink:
    if dry_run:
        _LOG.info("Dry run: readings are not persisted")
        return MemorySink(max_records=MEMORY_SINK_LIMIT)
    try:
        return SqliteSink(resolve_database_path(config.database_file, config.storage_mount))
    except PersistenceError as exc:
        _LOG.error("Storage unavailable, readings will not be persisted: %s", exc)
        return MemorySink(max_records=MEMORY_SINK_LIMIT)


async def _serve(config: GatewayConfig, sink: PersistenceSink) -> None:
    gateway = DataloggerGateway.from_config(config, sink=sink)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, stop.set)
    await gateway.run(stop)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config)
        sink = _build_sink(config, args.dry_run)
    except DataloggerConfigError as exc:
        print(f"Error loading configuration: {exc}", file=sys.stderr)
        return 2

    try:
        asyncio.run(_serve(config, sink))
    except KeyboardInterrupt:
        pass
    finally:
        if isinstance(sink, SqliteSink):
            sink.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
