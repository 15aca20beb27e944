"""Helpers for safe logging.

Broker credentials travel through the configuration and arbitrary devices
publish on the wildcard subscription, so neither configuration dumps nor
foreign payloads go to the log verbatim.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

_SENSITIVE_VALUE_KEYS: frozenset[str] = frozenset({"password", "passwd", "secret", "token"})

#: Payloads longer than this are logged by size only.
PAYLOAD_LOG_LIMIT = 50


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for debug logs."""
    if _depth > 20:
        return "<max-depth>"

    if value is None or isinstance(value, (int, float, bool)):
        return value

    if isinstance(value, str):
        if len(value) > max_string:
            return f"{value[:max_string]}…<truncated>"
        return value

    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for k, v in value.items():
            key = str(k)
            if key.lower() in _SENSITIVE_VALUE_KEYS:
                redacted[key] = "<redacted>"
            else:
                redacted[key] = redact_for_log(v, max_string=max_string, _depth=_depth + 1)
        return redacted

    if isinstance(value, Sequence):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]

    return repr(value)


def describe_payload(payload: bytes | str, *, limit: int = PAYLOAD_LOG_LIMIT) -> str:
    """Short log form of an MQTT payload: the text itself, or its length when long."""
    if isinstance(payload, (bytes, bytearray)):
        text = bytes(payload).decode("utf-8", errors="replace")
    else:
        text = payload
    if len(text) > limit:
        return f"<{len(text)} chars>"
    return repr(text)
