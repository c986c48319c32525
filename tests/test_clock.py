"""
Tests for time helpers.
"""
from datetime import date, datetime, timedelta, timezone

from movie_api_server.clock import (
    FrozenClock,
    as_utc,
    epoch_millis,
    isoformat_z,
    next_utc_midnight,
    utc_day,
)


def test_next_utc_midnight():
    now = datetime(2025, 3, 1, 15, 30, tzinfo=timezone.utc)
    assert next_utc_midnight(now) == datetime(2025, 3, 2, tzinfo=timezone.utc)


def test_next_utc_midnight_at_midnight():
    now = datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert next_utc_midnight(now) == datetime(2025, 3, 2, tzinfo=timezone.utc)


def test_utc_day_converts_offsets():
    # 23:30 in UTC-5 is already the next UTC day
    now = datetime(2025, 2, 28, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
    assert utc_day(now) == date(2025, 3, 1)


def test_as_utc_treats_naive_as_utc():
    assert as_utc(datetime(2025, 3, 1)).tzinfo == timezone.utc


def test_epoch_millis():
    assert epoch_millis(datetime(1970, 1, 1, 0, 0, 1, 500000, tzinfo=timezone.utc)) == 1500


def test_isoformat_z():
    assert isoformat_z(datetime(2025, 3, 2, tzinfo=timezone.utc)) == "2025-03-02T00:00:00.000Z"


def test_frozen_clock_advance():
    clock = FrozenClock(datetime(2025, 3, 1, 23, 59, tzinfo=timezone.utc))
    clock.advance(minutes=2)
    assert utc_day(clock.now()) == date(2025, 3, 2)
