"""
Time-window rules shared by the lockout store and request log queries.

All timestamps are naive UTC so they compare cleanly with values read back
from DateTime columns on every backend.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    """
    True once expires_at lies strictly in the past.
    An unset expiry never expires.
    """
    return expires_at is not None and expires_at < now


def block_until(now: datetime, minutes: int) -> datetime:
    return now + timedelta(minutes=minutes)


def window_start(minutes: int, now: Optional[datetime] = None) -> datetime:
    """
    Lower bound of a trailing "last N minutes" window.
    """
    return (now or utcnow()) - timedelta(minutes=minutes)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.strftime(TIMESTAMP_FORMAT)


def remaining_time(expires_at: Optional[datetime], now: datetime) -> Optional[str]:
    """
    Human readable time left on a block, e.g. "4 dakika 12 saniye".
    """
    if expires_at is None:
        return None

    if expires_at < now:
        return "0 dakika"

    total_seconds = int((expires_at - now).total_seconds())
    minutes, seconds = divmod(total_seconds, 60)

    if minutes > 0:
        if seconds > 0:
            return f"{minutes} dakika {seconds} saniye"
        return f"{minutes} dakika"

    return f"{seconds} saniye"
