"""Shared timestamp normalization helpers."""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


def _ensure_utc(value: datetime) -> datetime:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Convert mixed timestamp inputs into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings (with or without a trailing ``Z``)
    and epoch numbers (seconds, or milliseconds when the value is large).
    Anything unparseable yields None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _ensure_utc(value)
    if isinstance(value, (int, float)):
        seconds = float(value) / 1000.0 if value > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return None
        try:
            return _ensure_utc(datetime.fromisoformat(token.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def epoch_to_datetime(seconds: float) -> datetime:
    return datetime.fromtimestamp(float(seconds), timezone.utc)
