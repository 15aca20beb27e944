"""Reading validity policy.

A reading is valid until it goes ``stale_after`` seconds without being
refreshed.  A ``stale_after`` of zero (or ``None``) disables the policy and
readings stay valid forever.
"""

from __future__ import annotations

from datetime import datetime, timedelta


def staleness_enabled(stale_after: float | None) -> bool:
    return stale_after is not None and stale_after > 0


def is_stale(*, last_update: datetime, now: datetime, stale_after: float | None) -> bool:
    if stale_after is None or stale_after <= 0:
        return False
    return now - last_update > timedelta(seconds=stale_after)
