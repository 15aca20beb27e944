#!/usr/bin/env python3
"""Feed a broker with fake temperature readings and watch the gateway answer.

Development helper.  Connects to one broker from the gateway configuration,
publishes ``<value>#<sensor_id>`` samples on ``sensor/temperature/<room>``,
optionally sends ``get`` / ``get_valid`` / ``ping`` commands, and prints
everything that comes back under ``datalogger/#``.
"""

from __future__ import annotations

import argparse
import logging
import random
import signal
import sys
import time
from pathlib import Path
from typing import Any

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

import paho.mqtt.client as mqtt  # noqa: E402

from pydatalogger.config import load_config  # noqa: E402
from pydatalogger.exceptions import DataloggerConfigError  # noqa: E402
from pydatalogger.router import (  # noqa: E402
    DATALOGGER_COMMAND_TOPIC,
    SENSOR_TOPIC_PREFIX,
    TEMPERATURE_COMMAND_TOPIC,
)

_LOG = logging.getLogger("publish_samples")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Publish fake sensor readings to a datalogger broker.",
    )
    parser.add_argument("--config", "-c", default=None, help="Gateway configuration JSON.")
    parser.add_argument(
        "--client",
        default=None,
        help="Name of the mqtt client entry to use (default: first one).",
    )
    parser.add_argument(
        "--sensor",
        action="append",
        default=[],
        metavar="ROOM:SENSOR_ID",
        help="Sensor to simulate; repeatable (default: room1:sensor1).",
    )
    parser.add_argument("--interval", type=float, default=5.0, help="Seconds between sample rounds.")
    parser.add_argument("--count", type=int, default=0, help="Number of rounds (0 = until Ctrl+C).")
    parser.add_argument(
        "--command",
        choices=["get", "get_valid", "ping"],
        action="append",
        default=[],
        help="Command to send after each round; repeatable.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logs.")
    return parser.parse_args()


def _sensors(items: list[str]) -> list[tuple[str, str]]:
    result: list[tuple[str, str]] = []
    for item in items or ["room1:sensor1"]:
        room, sep, sensor_id = item.partition(":")
        if not sep or not room or not sensor_id:
            raise SystemExit(f"Invalid --sensor {item!r}, expected ROOM:SENSOR_ID")
        result.append((room, sensor_id))
    return result


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config)
        broker = config.client(args.client) if args.client else config.mqtt_clients[0]
    except DataloggerConfigError as exc:
        print(f"[samples] {exc}", file=sys.stderr)
        return 2
    except KeyError:
        print(f"[samples] No mqtt client named {args.client!r}", file=sys.stderr)
        return 2

    sensors = _sensors(args.sensor)
    temperatures = {sensor_id: random.uniform(15.0, 25.0) for _room, sensor_id in sensors}

    should_stop = False

    def stop_handler(_signum: int, _frame: Any) -> None:
        nonlocal should_stop
        should_stop = True

    signal.signal(signal.SIGINT, stop_handler)
    signal.signal(signal.SIGTERM, stop_handler)

    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=f"{broker.name}-samples",
        protocol=mqtt.MQTTv311,
    )
    client.enable_logger(_LOG)
    client.username_pw_set(broker.user, broker.password)

    def on_connect(
        c: mqtt.Client,
        _userdata: Any,
        _flags: mqtt.ConnectFlags,
        reason_code: mqtt.ReasonCode,
        _properties: mqtt.Properties | None,
    ) -> None:
        if reason_code.value != 0:
            print(f"[samples] MQTT connect failed: {reason_code}", file=sys.stderr)
            c.disconnect()
            return
        print(f"[samples] Connected to {broker.host}:{broker.broker_port}")
        c.subscribe("datalogger/#", qos=1)

    def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        text = msg.payload.decode("utf-8", errors="replace")
        print(f"[samples] <- {msg.topic}: {text}")

    client.on_connect = on_connect
    client.on_message = on_message

    try:
        client.connect(broker.host, broker.broker_port, keepalive=broker.keepalive)
    except OSError as exc:
        print(f"[samples] Cannot reach {broker.host}:{broker.broker_port}: {exc}", file=sys.stderr)
        return 1

    client.loop_start()
    rounds = 0
    try:
        while not should_stop and (args.count == 0 or rounds < args.count):
            for room, sensor_id in sensors:
                temperatures[sensor_id] += random.uniform(-0.5, 0.5)
                topic = f"{SENSOR_TOPIC_PREFIX}/{room}"
                payload = f"{temperatures[sensor_id]:.1f}#{sensor_id}"
                client.publish(topic, payload, qos=1)
                print(f"[samples] -> {topic}: {payload}")
            for command in args.command:
                topic = DATALOGGER_COMMAND_TOPIC if command == "ping" else TEMPERATURE_COMMAND_TOPIC
                client.publish(topic, command, qos=1)
                print(f"[samples] -> {topic}: {command}")
            rounds += 1

            deadline = time.monotonic() + args.interval
            while not should_stop and time.monotonic() < deadline:
                time.sleep(0.1)
    finally:
        client.disconnect()
        client.loop_stop()

    print(f"[samples] Published {rounds} round(s)")
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
