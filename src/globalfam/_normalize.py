"""Normalization helpers.

Centralizes defensive parsing of document fields. Documents arrive from
external stores written by other clients, so every field is treated as
untrusted: numbers may be strings, timestamps come in several shapes and
empty strings mean "not set".
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any

# Threshold to distinguish epoch seconds from milliseconds.
_MS_THRESHOLD = 1e11


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result):
        return None
    return result


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def is_finite_number(value: Any) -> bool:
    """Return True for real, finite numbers (bools excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def parse_timestamp(value: Any) -> datetime | None:
    """Convert a document timestamp to an aware UTC datetime.

    Accepts datetimes, epoch seconds or milliseconds, ISO-8601 strings and
    ``{"seconds": ..., "nanoseconds": ...}`` objects (the JSON form of a
    Firestore timestamp). Returns ``None`` for anything else.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, dict):
        seconds = safe_float(value.get("seconds", value.get("_seconds")))
        if seconds is None:
            return None
        nanos = safe_float(value.get("nanoseconds", value.get("_nanoseconds"))) or 0.0
        return datetime.fromtimestamp(seconds + nanos / 1e9, tz=UTC)
    if isinstance(value, str):
        numeric = safe_float(value)
        if numeric is None:
            try:
                parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
            except ValueError:
                return None
            return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
        value = numeric
    ts = safe_float(value)
    if ts is None or ts <= 0:
        return None
    if ts > _MS_THRESHOLD:
        ts /= 1000.0
    return datetime.fromtimestamp(ts, tz=UTC)
