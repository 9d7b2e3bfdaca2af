"""Human readable durations for chat replies."""

from __future__ import annotations

from datetime import timedelta

_UNITS = (
    ("d", 86400),
    ("h", 3600),
    ("m", 60),
    ("s", 1),
)


def format_duration(value: timedelta | int) -> str:
    """
    Format a duration as e.g. ``5m``, ``1h 30m`` or ``7d``.

    Integers are milliseconds. At most the two largest units are shown.
    """
    if isinstance(value, timedelta):
        seconds = int(value.total_seconds())
    else:
        seconds = int(value) // 1000

    if seconds <= 0:
        return "0s"

    parts: list[str] = []
    for suffix, size in _UNITS:
        amount, seconds = divmod(seconds, size)
        if amount:
            parts.append(f"{amount}{suffix}")
        if len(parts) == 2:
            break
    return " ".join(parts)


def to_timeout_seconds(value: timedelta | int) -> int:
    """Seconds for a chat timeout, rounded up; Twitch accepts at most 14 days."""
    if isinstance(value, timedelta):
        millis = int(value.total_seconds() * 1000)
    else:
        millis = int(value)
    seconds = -(-millis // 1000)
    return max(1, min(seconds, 14 * 86400))
