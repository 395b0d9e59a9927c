"""
Clock helpers — one timestamp representation for the whole system.

Everything inside the job store is integer epoch milliseconds (UTC).
Text timestamps (ISO-8601) and datetimes are converted here, at the
boundary, and never compared as strings.
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Union

TimeInput = Union[int, float, str, datetime]


def now_ms() -> int:
    return int(time.time() * 1000)


def to_epoch_ms(value: TimeInput) -> int:
    """
    Normalise a timestamp to epoch milliseconds.

    Accepts:
        int / float        — already epoch milliseconds
        numeric string     — epoch milliseconds as text
        ISO-8601 string    — "2025-01-02T15:04:05Z", "...+02:00", naive = UTC
        datetime           — naive values are taken as UTC

    Raises ValueError for anything else.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("Empty timestamp")
        if text.lstrip("-").isdigit():
            return int(text)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Invalid timestamp: {value!r}") from None
        return to_epoch_ms(parsed)
    raise ValueError(f"Invalid timestamp: {value!r}")


def ms_to_iso(ms: int | None) -> str:
    if ms is None:
        return ""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()
