"""
Timestamp Helpers
=================
Device clocks report in seconds, milliseconds or strings. Everything is
normalized to epoch milliseconds before comparison.
"""

import math
import time
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

# Values at or below this are read as seconds (10^12 ms is September 2001).
SECONDS_THRESHOLD = 10 ** 12


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def normalize_timestamp(value: Any) -> int:
    """Return `value` as epoch milliseconds, or 0 when it carries no signal.

    Accepted shapes:
        - int/float in seconds or milliseconds (<= 10^12 is seconds)
        - numeric strings, same rule
        - ISO-8601 strings and datetime objects (naive means UTC)

    Absent, negative, non-finite and unparseable values give 0, so they
    can never be the most recent signal for a device.
    """
    if value is None or isinstance(value, bool):
        return 0

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return max(0, int(value.timestamp() * 1000))

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            number = float(text)
        except ValueError:
            try:
                return normalize_timestamp(datetime.fromisoformat(text.replace("Z", "+00:00")))
            except ValueError:
                return 0
    elif isinstance(value, (int, float)):
        number = float(value)
    else:
        return 0

    if not math.isfinite(number) or number <= 0:
        return 0
    if number <= SECONDS_THRESHOLD:
        number *= 1000
    return int(number)


def resolve_observed_at(reported: Any, received_at_ms: int, max_skew_ms: int) -> int:
    """Device-reported time when plausible, otherwise server receipt time.

    Scanner firmware often reports uptime rather than wall clock, which
    normalizes to a date in 1970. A device clock running ahead is capped at
    receipt time so it can never extend its own liveness.
    """
    reported_ms = normalize_timestamp(reported)
    if reported_ms and received_at_ms - reported_ms <= max_skew_ms:
        return min(reported_ms, received_at_ms)
    return received_at_ms


def start_of_day_ms(at_ms: int, tz_name: str = "UTC") -> int:
    """Epoch milliseconds of local midnight, in `tz_name`, for the day containing `at_ms`."""
    tz = ZoneInfo(tz_name)
    local = datetime.fromtimestamp(at_ms / 1000, tz=tz)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return int(midnight.timestamp() * 1000)


def iso_from_ms(at_ms: int) -> str:
    return datetime.fromtimestamp(at_ms / 1000, tz=timezone.utc).isoformat()
