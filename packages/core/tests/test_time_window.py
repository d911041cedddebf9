"""Tests for roll time window parsing."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from autoroll_core.time_window import TimeWindow

# 2024-01-01 is a Monday.
MON_10 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
MON_18 = datetime(2024, 1, 1, 18, 0, tzinfo=timezone.utc)
SAT_11 = datetime(2024, 1, 6, 11, 0, tzinfo=timezone.utc)
SUN_11 = datetime(2024, 1, 7, 11, 0, tzinfo=timezone.utc)


def test_empty_window_always_open():
    assert TimeWindow.parse("").contains(MON_18)
    assert TimeWindow.parse(None).contains(SUN_11)


def test_weekday_range():
    w = TimeWindow.parse("M-F 09:00-17:00")
    assert w.contains(MON_10)
    assert not w.contains(MON_18)
    assert not w.contains(SAT_11)


def test_multiple_clauses():
    w = TimeWindow.parse("M-F 09:00-17:00; Sa 10:00-12:00")
    assert w.contains(SAT_11)
    assert not w.contains(SUN_11)


def test_day_lists_and_long_names():
    w = TimeWindow.parse("mon,sat 00:00-23:59")
    assert w.contains(MON_18)
    assert w.contains(SAT_11)
    assert not w.contains(SUN_11)


def test_range_wraps_around_week():
    w = TimeWindow.parse("Sa-M 00:00-00:00")
    assert w.contains(SUN_11)
    assert w.contains(MON_18)
    assert not w.contains(datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc))


def test_end_is_exclusive():
    w = TimeWindow.parse("M 09:00-10:00")
    assert not w.contains(MON_10)


def test_time_zone_applied():
    # 10:00 UTC is 02:00 in Los Angeles.
    w = TimeWindow.parse("M 09:00-17:00 America/Los_Angeles")
    assert not w.contains(MON_10)
    assert w.contains(MON_18)


def test_naive_datetime_treated_as_utc():
    assert TimeWindow.parse("M 09:00-11:00").contains(datetime(2024, 1, 1, 10, 0))


@pytest.mark.parametrize(
    "text",
    [
        "M-F",
        "Xy 09:00-10:00",
        "M 9-10",
        "M 10:00-09:00",
        "M 25:00-26:00",
        "M 09:00-10:00 Not/AZone",
        ",M 09:00-10:00",
    ],
)
def test_invalid_windows_rejected(text):
    with pytest.raises(ValueError):
        TimeWindow.parse(text)
