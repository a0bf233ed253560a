"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All persisted timestamps are timezone-naive UTC (DateTime(timezone=False)) so that
comparisons such as `reserved_until < now` behave identically on SQLite and PostgreSQL.
"""

from datetime import datetime, timezone
from typing import Any, Optional
import logging

logger = logging.getLogger(__name__)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time without timezone info"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_provider_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp sent by the payment provider.

    Accepts ISO-8601 strings (with or without offset, 'Z' suffix allowed) and
    unix epoch seconds. Returns naive UTC, or None when the value is absent or
    unparseable; callers fall back to the receive time in that case.
    """
    if value is None or value == "":
        return None

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            logger.warning(f"⚠️ TIMESTAMP_PARSE: epoch value out of range: {value!r}")
            return None

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_naive_datetime(datetime.fromisoformat(text))
        except ValueError:
            logger.warning(f"⚠️ TIMESTAMP_PARSE: unrecognised timestamp: {value!r}")
            return None

    return None
