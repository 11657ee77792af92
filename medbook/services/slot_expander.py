"""
Slot expander - turns an availability window into concrete slot intervals.

Handles:
- Occurrence dates for recurring windows (daily / weekly / custom weekdays)
- Per-service slicing with continuous / fixed-hour / fixed-half-hour alignment
- Deterministic slot ids so re-expansion upserts instead of duplicating

Pure functions only; materialization lives in availability_service.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone
from typing import NamedTuple, Protocol, Sequence

from medbook.core.config import settings
from medbook.db.enums import SchedulingGranularity
from medbook.types import (
    CustomRecurrence,
    DailyRecurrence,
    NoRecurrence,
    Recurrence,
    WeeklyRecurrence,
)


SLOT_ID_NAMESPACE = uuid.UUID("6f1c5a2e-3b7d-4c1e-9a55-0d2f8e4b7c31")

GRANULARITY_MINUTES = {
    SchedulingGranularity.FIXED_HOUR: 60,
    SchedulingGranularity.FIXED_HALF_HOUR: 30,
}


# =============================================================================
# Types
# =============================================================================

class TimeSlot(NamedTuple):
    start: datetime
    end: datetime


class SlotSpec(NamedTuple):
    """One slot the expander wants to exist."""

    id: uuid.UUID
    window_id: uuid.UUID
    service_config_id: uuid.UUID
    service_id: uuid.UUID
    occurrence_key: str
    occurrence_date: date
    start: datetime
    end: datetime


class ServiceLike(Protocol):
    id: uuid.UUID
    service_id: uuid.UUID
    duration_minutes: int


class WindowLike(Protocol):
    id: uuid.UUID
    start_time: datetime
    end_time: datetime
    scheduling_granularity: str
    excluded_dates: list[str]

    @property
    def recurrence(self) -> Recurrence: ...

    @property
    def active_services(self) -> Sequence[ServiceLike]: ...


# =============================================================================
# Identity
# =============================================================================

def occurrence_key(window_id: uuid.UUID, occurrence_date: date) -> str:
    return f"{window_id}:{occurrence_date.isoformat()}"


def slot_id_for(
    window_id: uuid.UUID,
    service_config_id: uuid.UUID,
    start: datetime,
    end: datetime,
) -> uuid.UUID:
    """Stable slot id: same window/service/interval always maps to the same id."""
    start_utc = start.astimezone(timezone.utc).isoformat()
    end_utc = end.astimezone(timezone.utc).isoformat()
    return uuid.uuid5(
        SLOT_ID_NAMESPACE, f"{window_id}|{service_config_id}|{start_utc}|{end_utc}"
    )


# =============================================================================
# Slicing
# =============================================================================

def _align_up(value: datetime, step_minutes: int) -> datetime:
    """Round up to the next multiple of ``step_minutes`` past the hour."""
    value = _ceil_minute(value)
    remainder = value.minute % step_minutes
    if remainder:
        value += timedelta(minutes=step_minutes - remainder)
    return value


def _ceil_minute(value: datetime) -> datetime:
    if value.second or value.microsecond:
        value = value.replace(second=0, microsecond=0) + timedelta(minutes=1)
    return value


def generate_time_slots(
    start: datetime,
    end: datetime,
    duration_minutes: int,
    granularity: SchedulingGranularity | str,
) -> list[TimeSlot]:
    """
    Slice [start, end) into back-to-back slots of ``duration_minutes``.

    Fixed granularities align every slot start (the first one included) to
    the next :00 (or :00/:30) at or after the previous slot's end. A slot
    that would run past ``end`` is dropped, so a short interval yields an
    empty list.
    """
    if end <= start:
        raise ValueError("Availability end time must be after start time")
    if duration_minutes <= 0:
        raise ValueError("Service duration must be positive")

    granularity = SchedulingGranularity(granularity)
    step = GRANULARITY_MINUTES.get(granularity)
    duration = timedelta(minutes=duration_minutes)

    slots: list[TimeSlot] = []
    current = _ceil_minute(start)
    while True:
        if step:
            current = _align_up(current, step)
        slot_end = current + duration
        if slot_end > end:
            break
        slots.append(TimeSlot(start=current, end=slot_end))
        current = slot_end
    return slots


# =============================================================================
# Recurrence
# =============================================================================

def occurrence_dates(
    first_date: date,
    recurrence: Recurrence,
    date_start: date,
    date_end: date,
    excluded: set[date] | None = None,
) -> list[date]:
    """Dates in [date_start, date_end] on which the series has an occurrence."""
    excluded = excluded or set()

    if isinstance(recurrence, NoRecurrence):
        if date_start <= first_date <= date_end and first_date not in excluded:
            return [first_date]
        return []

    last = date_end
    if recurrence.until is not None and recurrence.until < last:
        last = recurrence.until

    if isinstance(recurrence, DailyRecurrence):
        weekdays = set(range(7))
    elif isinstance(recurrence, (WeeklyRecurrence, CustomRecurrence)):
        weekdays = set(recurrence.days)
    else:
        raise ValueError(f"Unsupported recurrence: {recurrence!r}")

    dates: list[date] = []
    current = max(first_date, date_start)
    while current <= last:
        if current.weekday() in weekdays and current not in excluded:
            dates.append(current)
        current += timedelta(days=1)
    return dates


def occurrence_interval(
    first_start: datetime, first_end: datetime, occurrence_date: date
) -> TimeSlot:
    """Repeat the first occurrence's clock times (UTC) on ``occurrence_date``."""
    length = first_end - first_start
    first_start = first_start.astimezone(timezone.utc)
    start = datetime.combine(occurrence_date, first_start.timetz())
    return TimeSlot(start=start, end=start + length)


def horizon_end(today: date | None = None) -> date:
    today = today or datetime.now(timezone.utc).date()
    return today + timedelta(days=settings.SLOT_EXPANSION_HORIZON_DAYS)


# =============================================================================
# Expansion
# =============================================================================

def expand(
    window: WindowLike,
    date_start: date,
    date_end: date,
    *,
    today: date | None = None,
) -> list[SlotSpec]:
    """
    Expand ``window`` into slot specs for occurrences in [date_start, date_end].

    The range is clipped to the materialization horizon. Calling twice with
    the same arguments returns identical ids.
    """
    date_end = min(date_end, horizon_end(today))
    if date_end < date_start:
        return []

    excluded = {date.fromisoformat(d) for d in (window.excluded_dates or [])}
    first_date = window.start_time.astimezone(timezone.utc).date()
    dates = occurrence_dates(first_date, window.recurrence, date_start, date_end, excluded)

    specs: list[SlotSpec] = []
    for occ_date in dates:
        interval = occurrence_interval(window.start_time, window.end_time, occ_date)
        key = occurrence_key(window.id, occ_date)
        for service in window.active_services:
            for slot in generate_time_slots(
                interval.start,
                interval.end,
                service.duration_minutes,
                window.scheduling_granularity,
            ):
                specs.append(
                    SlotSpec(
                        id=slot_id_for(window.id, service.id, slot.start, slot.end),
                        window_id=window.id,
                        service_config_id=service.id,
                        service_id=service.service_id,
                        occurrence_key=key,
                        occurrence_date=occ_date,
                        start=slot.start,
                        end=slot.end,
                    )
                )
    return specs
