# utils.py
"""Coercion helpers for values read from the different database drivers."""
import logging
import math
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Normalize a driver timestamp to an aware UTC datetime.

    PostgreSQL returns datetimes, SQLite returns ISO strings written by
    datetime('now'), which are UTC without an offset.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable timestamp %r", value)
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def seconds_since(value: Any, now: Optional[datetime] = None) -> Optional[float]:
    ts = parse_timestamp(value)
    if ts is None:
        return None
    return ((now or utcnow()) - ts).total_seconds()


def to_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None:
        return default
    try:
        f = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(f):
        return default
    return int(f)


def to_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    if value is None:
        return default
    try:
        f = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(f):
        return default
    return f


def to_bool(value: Any) -> Optional[bool]:
    """SQLite and MySQL store booleans as integers; None stays unknown."""
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() in ("1", "t", "true", "yes")
    if isinstance(value, float) and math.isnan(value):
        return None
    return bool(value)
