"""
Tests for the slot expander.

Coverage:
- Slicing per granularity (continuous, fixed hour, fixed half hour)
- Recurrence date generation with exclusions and series end
- Deterministic slot ids
- Horizon clipping
"""

import uuid
from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from medbook.db.enums import SchedulingGranularity
from medbook.services import slot_expander
from medbook.types import DailyRecurrence, NoRecurrence, WeeklyRecurrence


def _dt(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2025, 1, day, hour, minute, tzinfo=timezone.utc)


def _window(start, end, *, recurrence=None, durations=(60,), granularity="fixed_hour", excluded=()):
    return SimpleNamespace(
        id=uuid.uuid4(),
        start_time=start,
        end_time=end,
        scheduling_granularity=granularity,
        excluded_dates=list(excluded),
        recurrence=recurrence or NoRecurrence(),
        active_services=[
            SimpleNamespace(id=uuid.uuid4(), service_id=uuid.uuid4(), duration_minutes=d)
            for d in durations
        ],
    )


# =============================================================================
# Slicing
# =============================================================================

def test_fixed_hour_three_hour_window_yields_three_slots():
    slots = slot_expander.generate_time_slots(
        _dt(6, 9), _dt(6, 12), 60, SchedulingGranularity.FIXED_HOUR
    )
    assert [s.start.hour for s in slots] == [9, 10, 11]
    assert all(s.end - s.start == timedelta(minutes=60) for s in slots)


def test_fixed_hour_aligns_first_slot_to_next_hour():
    slots = slot_expander.generate_time_slots(
        _dt(6, 9, 15), _dt(6, 12), 60, SchedulingGranularity.FIXED_HOUR
    )
    assert [s.start for s in slots] == [_dt(6, 10), _dt(6, 11)]


def test_continuous_starts_at_window_start():
    slots = slot_expander.generate_time_slots(
        _dt(6, 9, 15), _dt(6, 12), 60, SchedulingGranularity.CONTINUOUS
    )
    assert [s.start for s in slots] == [_dt(6, 9, 15), _dt(6, 10, 15)]


def test_fixed_half_hour_realigns_after_each_slot():
    slots = slot_expander.generate_time_slots(
        _dt(6, 9, 10), _dt(6, 11), 45, SchedulingGranularity.FIXED_HALF_HOUR
    )
    assert slots == [slot_expander.TimeSlot(_dt(6, 9, 30), _dt(6, 10, 15))]


def test_duration_longer_than_window_yields_nothing():
    assert slot_expander.generate_time_slots(
        _dt(6, 9), _dt(6, 9, 30), 60, SchedulingGranularity.CONTINUOUS
    ) == []


def test_rejects_inverted_interval():
    with pytest.raises(ValueError):
        slot_expander.generate_time_slots(
            _dt(6, 12), _dt(6, 9), 60, SchedulingGranularity.CONTINUOUS
        )


def test_rejects_non_positive_duration():
    with pytest.raises(ValueError):
        slot_expander.generate_time_slots(
            _dt(6, 9), _dt(6, 12), 0, SchedulingGranularity.CONTINUOUS
        )


# =============================================================================
# Recurrence
# =============================================================================

def test_weekly_dates_skip_excluded():
    dates = slot_expander.occurrence_dates(
        date(2025, 1, 6),
        WeeklyRecurrence(days=(0, 2)),
        date(2025, 1, 6),
        date(2025, 1, 19),
        {date(2025, 1, 8)},
    )
    assert dates == [date(2025, 1, 6), date(2025, 1, 13), date(2025, 1, 15)]


def test_daily_dates_stop_at_until():
    dates = slot_expander.occurrence_dates(
        date(2025, 1, 6),
        DailyRecurrence(until=date(2025, 1, 8)),
        date(2025, 1, 1),
        date(2025, 1, 31),
    )
    assert dates == [date(2025, 1, 6), date(2025, 1, 7), date(2025, 1, 8)]


def test_one_off_outside_range_has_no_dates():
    assert slot_expander.occurrence_dates(
        date(2025, 1, 6), NoRecurrence(), date(2025, 1, 7), date(2025, 1, 31)
    ) == []


def test_occurrence_interval_repeats_clock_times():
    interval = slot_expander.occurrence_interval(_dt(6, 9), _dt(6, 12), date(2025, 1, 13))
    assert interval == slot_expander.TimeSlot(_dt(13, 9), _dt(13, 12))


# =============================================================================
# Expansion
# =============================================================================

def test_expand_is_deterministic():
    window = _window(_dt(6, 9), _dt(6, 12), durations=(60, 30))

    first = slot_expander.expand(window, date(2025, 1, 6), date(2025, 1, 6), today=date(2025, 1, 1))
    second = slot_expander.expand(window, date(2025, 1, 6), date(2025, 1, 6), today=date(2025, 1, 1))

    # fixed hour alignment: three 60 and three 30 minute slots
    assert len(first) == 3 + 3
    assert [s.id for s in first] == [s.id for s in second]
    assert len({s.id for s in first}) == len(first)
    assert all(s.occurrence_key == f"{window.id}:2025-01-06" for s in first)


def test_slot_id_depends_on_service_config():
    window_id = uuid.uuid4()
    a = slot_expander.slot_id_for(window_id, uuid.uuid4(), _dt(6, 9), _dt(6, 10))
    b = slot_expander.slot_id_for(window_id, uuid.uuid4(), _dt(6, 9), _dt(6, 10))
    assert a != b


def test_expand_clips_to_horizon():
    window = _window(_dt(6, 9), _dt(6, 10), recurrence=DailyRecurrence())
    today = date(2025, 1, 1)

    specs = slot_expander.expand(window, date(2025, 1, 6), date(2026, 1, 1), today=today)

    assert max(s.occurrence_date for s in specs) == slot_expander.horizon_end(today)


def test_expand_respects_excluded_dates():
    window = _window(
        _dt(6, 9), _dt(6, 10),
        recurrence=WeeklyRecurrence(days=(0,), until=date(2025, 1, 20)),
        excluded=["2025-01-13"],
    )
    specs = slot_expander.expand(window, date(2025, 1, 1), date(2025, 1, 31), today=date(2025, 1, 1))
    assert [s.occurrence_date for s in specs] == [date(2025, 1, 6), date(2025, 1, 20)]
