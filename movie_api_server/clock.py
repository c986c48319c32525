"""
Time sources for the admission gate.

The gate never reads wall-clock time directly; it asks an injected clock so
day rollover, replay windows and session expiry can be driven by tests.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Protocol

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""
        ...


class SystemClock:
    """Wall-clock UTC time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime):
        self._now = as_utc(now)

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = as_utc(now)

    def advance(self, **delta) -> datetime:
        """Move forward by ``timedelta(**delta)`` and return the new time."""
        self._now = self._now + timedelta(**delta)
        return self._now


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_day(now: datetime) -> date:
    return as_utc(now).date()


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def next_utc_midnight(now: datetime) -> datetime:
    """Tomorrow at 00:00:00 UTC relative to ``now``."""
    return start_of_day(utc_day(now) + timedelta(days=1))


def epoch_millis(now: datetime) -> int:
    return (as_utc(now) - EPOCH) // timedelta(milliseconds=1)


def isoformat_z(value: datetime) -> str:
    """ISO-8601 with millisecond precision and a ``Z`` suffix."""
    return as_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")
