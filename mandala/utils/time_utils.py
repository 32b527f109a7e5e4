"""Date and clock-time helpers shared by the task model, timers and the notifier."""

import re
from datetime import date, datetime
from typing import Optional, Union

_HHMM = re.compile(r"([01]\d|2[0-3]):([0-5]\d)")


def now_iso() -> str:
    """Current local time as an ISO-8601 string (task/todo ``created_at``)."""
    return datetime.now().isoformat()


def now_local() -> datetime:
    """Current time, timezone-aware in the local zone."""
    return datetime.now().astimezone()


def today_str() -> str:
    return date.today().isoformat()


def is_valid_hhmm(value: str) -> bool:
    """True for 24h ``HH:MM`` strings (``07:05``, ``23:59``)."""
    return bool(_HHMM.fullmatch(value or ""))


def hhmm_to_minutes(value: str) -> int:
    """Convert ``HH:MM`` into minutes after midnight.

    Raises ValueError on malformed input.
    """
    m = _HHMM.fullmatch(value or "")
    if not m:
        raise ValueError(f"Invalid time (expected HH:MM): {value!r}")
    return int(m.group(1)) * 60 + int(m.group(2))


def normalize_date(value: Optional[Union[str, date]]) -> Optional[str]:
    """Return ``YYYY-MM-DD`` for a date/datetime/ISO string, None passthrough.

    Raises ValueError when a string is not an ISO calendar date.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return date.fromisoformat(str(value)).isoformat()


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO-8601 timestamp into an aware datetime.

    Accepts a trailing ``Z``. Naive values are taken as local time.
    Raises ValueError on malformed input.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    return dt if dt.tzinfo is not None else dt.astimezone()


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from *start* to *end*, halves rounded up, never negative."""
    seconds = (parse_timestamp(end) - parse_timestamp(start)).total_seconds()
    if seconds <= 0:
        return 0
    return int((seconds + 30) // 60)
