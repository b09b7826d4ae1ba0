"""
tests/test_time_window.py
Half-open intervals and business-day boundaries.
"""

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from shared.utils.time_window import TimeWindow, ensure_utc, local_date, local_day_bounds, overlaps
from tests.conftest import utc

TOKYO = ZoneInfo("Asia/Tokyo")


# ── Overlap ────────────────────────────────────────────────────────────────────

def test_touching_windows_do_not_overlap():
    a = TimeWindow(utc(2024, 6, 10, 1), utc(2024, 6, 10, 2))
    b = TimeWindow(utc(2024, 6, 10, 2), utc(2024, 6, 10, 3))
    assert not overlaps(a, b)
    assert not overlaps(b, a)


def test_partial_overlap_is_symmetric():
    a = TimeWindow(utc(2024, 6, 10, 1), utc(2024, 6, 10, 3))
    b = TimeWindow(utc(2024, 6, 10, 2), utc(2024, 6, 10, 4))
    assert overlaps(a, b) and overlaps(b, a)


def test_containment_overlaps():
    outer = TimeWindow(utc(2024, 6, 10, 0), utc(2024, 6, 10, 5))
    inner = TimeWindow(utc(2024, 6, 10, 1), utc(2024, 6, 10, 2))
    assert outer.overlaps(inner)


def test_empty_or_inverted_window_rejected():
    with pytest.raises(ValueError):
        TimeWindow(utc(2024, 6, 10, 1), utc(2024, 6, 10, 1))
    with pytest.raises(ValueError):
        TimeWindow(utc(2024, 6, 10, 2), utc(2024, 6, 10, 1))


def test_contains_is_half_open():
    window = TimeWindow(utc(2024, 6, 10, 1), utc(2024, 6, 10, 2))
    assert window.contains(utc(2024, 6, 10, 1))
    assert not window.contains(utc(2024, 6, 10, 2))


def test_shifted_to_keeps_duration():
    window = TimeWindow(utc(2024, 6, 10, 1), utc(2024, 6, 10, 2, 30))
    moved = window.shifted_to(utc(2024, 6, 11, 5))
    assert moved.duration == timedelta(minutes=90)
    assert moved.end == utc(2024, 6, 11, 6, 30)


# ── Business timezone ──────────────────────────────────────────────────────────

def test_naive_datetime_read_as_business_time():
    assert ensure_utc(datetime(2024, 6, 10, 10, 0), TOKYO) == utc(2024, 6, 10, 1, 0)


def test_local_date_crosses_utc_midnight():
    # 2024-06-10 23:30 UTC is already the 11th in Tokyo
    assert local_date(utc(2024, 6, 10, 23, 30), TOKYO) == date(2024, 6, 11)


def test_local_day_bounds():
    start, end = local_day_bounds(date(2024, 6, 10), TOKYO)
    assert start == utc(2024, 6, 9, 15)
    assert end == utc(2024, 6, 10, 15)
    assert start.tzinfo == timezone.utc


def test_window_spanning_local_midnight_touches_two_days():
    window = TimeWindow(
        datetime(2024, 6, 10, 23, 0, tzinfo=TOKYO), datetime(2024, 6, 11, 1, 0, tzinfo=TOKYO)
    )
    assert window.local_dates(TOKYO) == [date(2024, 6, 10), date(2024, 6, 11)]


def test_window_ending_at_midnight_stays_on_one_day():
    window = TimeWindow(
        datetime(2024, 6, 10, 22, 0, tzinfo=TOKYO), datetime(2024, 6, 11, 0, 0, tzinfo=TOKYO)
    )
    assert window.local_dates(TOKYO) == [date(2024, 6, 10)]
