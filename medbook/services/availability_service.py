"""
Availability service - business logic for availability windows and slots.

Handles:
- Window validation (time bounds, recurrence, overlap with other windows)
- Create / scoped edit / delete of windows
- Materializing expander output into slot rows (upsert + invalidation)
- Listing bookable slots
"""

from __future__ import annotations

import calendar
import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, NamedTuple, Sequence

from sqlalchemy import exists, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from medbook.core.config import settings
from medbook.core.structured_logging import build_log_context
from medbook.db.enums import EditScope, RecurrenceKind, SlotStatus
from medbook.db.models import AvailabilityWindow, OfferedService, Slot
from medbook.schemas.availability import (
    AvailabilityWindowCreate,
    AvailabilityWindowUpdate,
    OfferedServiceInput,
)
from medbook.services import slot_expander
from medbook.services.errors import PublishNotAllowed, WindowInvalid, WindowNotFound
from medbook.services.slot_expander import TimeSlot
from medbook.services.slot_state_service import (
    find_active_blocking_event,
    invalidate_slots,
    restore_slot,
)
from medbook.types import (
    CustomRecurrence,
    DailyRecurrence,
    NoRecurrence,
    OwnerRef,
    Recurrence,
    WeeklyRecurrence,
    owner_columns,
    recurrence_columns,
)

logger = logging.getLogger(__name__)

PublishPredicate = Callable[[OwnerRef], bool]


class MaterializeResult(NamedTuple):
    created: int
    existing: int
    invalidated: int
    detached: int
    restored: int = 0


class WindowChange(NamedTuple):
    window: AvailabilityWindow | None
    created_windows: list[uuid.UUID]
    slots_created: int
    slots_invalidated: int
    bookings_detached: int


# =============================================================================
# Helpers
# =============================================================================

def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _with_default_until(recurrence: Recurrence, first_date: date) -> Recurrence:
    """Recurring series without an end date run for DEFAULT_RECURRENCE_WEEKS."""
    if isinstance(recurrence, NoRecurrence) or recurrence.until is not None:
        return recurrence
    until = first_date + timedelta(weeks=settings.DEFAULT_RECURRENCE_WEEKS)
    if isinstance(recurrence, DailyRecurrence):
        return DailyRecurrence(until=until)
    if isinstance(recurrence, WeeklyRecurrence):
        return WeeklyRecurrence(days=recurrence.days, until=until)
    return CustomRecurrence(days=recurrence.days, until=until)


def _series_intervals(
    start: datetime,
    end: datetime,
    recurrence: Recurrence,
    excluded: Iterable[str],
    date_from: date,
    date_to: date,
) -> list[TimeSlot]:
    excluded_dates = {date.fromisoformat(d) for d in excluded}
    first_date = start.astimezone(timezone.utc).date()
    dates = slot_expander.occurrence_dates(
        first_date, recurrence, date_from, date_to, excluded_dates
    )
    return [slot_expander.occurrence_interval(start, end, d) for d in dates]


def _series_last_date(start: datetime, recurrence: Recurrence) -> date:
    first_date = start.astimezone(timezone.utc).date()
    if isinstance(recurrence, NoRecurrence):
        return first_date
    if recurrence.until is not None:
        return recurrence.until
    return first_date + timedelta(days=settings.SLOT_EXPANSION_HORIZON_DAYS)


def _intervals_overlap(a: Sequence[TimeSlot], b: Sequence[TimeSlot]) -> bool:
    return any(x.start < y.end and x.end > y.start for x in a for y in b)


# =============================================================================
# Validation
# =============================================================================

def validate_window(
    db: Session,
    owner: OwnerRef,
    start: datetime,
    end: datetime,
    recurrence: Recurrence,
    services: Sequence[OfferedServiceInput],
    *,
    now: datetime | None = None,
    excluded_dates: Iterable[str] = (),
    exclude_window_ids: Iterable[uuid.UUID] = (),
    check_time_bounds: bool = True,
) -> None:
    """
    Validate a window before it is persisted.

    Raises WindowInvalid listing every violated rule.
    """
    now = now or datetime.now(timezone.utc)
    errors: list[str] = []

    if end <= start:
        errors.append("End time must be after start time")
    elif end - start < timedelta(minutes=settings.MIN_WINDOW_MINUTES):
        errors.append(
            f"Availability must be at least {settings.MIN_WINDOW_MINUTES} minutes long"
        )

    if check_time_bounds:
        if start < now - timedelta(days=settings.MAX_WINDOW_PAST_DAYS):
            errors.append(
                f"Cannot create availability more than {settings.MAX_WINDOW_PAST_DAYS} days in the past"
            )
        if end > _add_months(now, settings.MAX_WINDOW_FUTURE_MONTHS):
            errors.append(
                f"Cannot create availability more than {settings.MAX_WINDOW_FUTURE_MONTHS} months in advance"
            )

    if not services:
        errors.append("At least one service must be offered")
    for service in services:
        if service.duration_minutes <= 0:
            errors.append("Service duration must be positive")
            break

    first_date = start.astimezone(timezone.utc).date()
    if isinstance(recurrence, (WeeklyRecurrence, CustomRecurrence)):
        if not recurrence.days:
            errors.append(f"{recurrence.kind.value.capitalize()} recurrence requires at least one day")
        elif any(d < 0 or d > 6 for d in recurrence.days):
            errors.append("Recurrence days must be between 0 (Monday) and 6 (Sunday)")
    if not isinstance(recurrence, NoRecurrence) and recurrence.until is not None:
        if recurrence.until < first_date:
            errors.append("Recurrence end date must be on or after the start date")

    if errors:
        raise WindowInvalid(errors)

    last_date = _series_last_date(start, recurrence)
    own = _series_intervals(start, end, recurrence, excluded_dates, first_date, last_date)

    for prev, nxt in zip(own, own[1:]):
        if prev.end > nxt.start:
            errors.append("Recurring occurrences would overlap each other")
            break

    series_end = own[-1].end if own else end
    others = db.execute(
        select(AvailabilityWindow).where(
            AvailabilityWindow.owned_by(owner),
            AvailabilityWindow.deleted_at.is_(None),
            AvailabilityWindow.id.notin_(list(exclude_window_ids)),
            AvailabilityWindow.start_time < series_end,
            or_(
                AvailabilityWindow.recurrence_kind != RecurrenceKind.NONE.value,
                AvailabilityWindow.end_time > start,
            ),
        )
    ).scalars().all()
    for other in others:
        other_intervals = _series_intervals(
            other.start_time,
            other.end_time,
            other.recurrence,
            other.excluded_dates or [],
            first_date - timedelta(days=1),
            last_date + timedelta(days=1),
        )
        if _intervals_overlap(own, other_intervals):
            errors.append("Availability overlaps with an existing availability window")
            break

    if errors:
        raise WindowInvalid(errors)


# =============================================================================
# Materialization
# =============================================================================

def materialize_slots(
    db: Session,
    window: AvailabilityWindow,
    date_start: date,
    date_end: date,
    *,
    now: datetime | None = None,
    _retry: bool = True,
) -> MaterializeResult:
    """
    Upsert the window's slots for occurrences in [date_start, date_end].

    New slots start BLOCKED when an active external event already overlaps
    them. Future slots the expander no longer produces are invalidated
    (booked ones are detached instead). Future INVALID slots the expander
    produces again are restored. Past slots are left untouched.
    """
    now = now or datetime.now(timezone.utc)
    date_end = min(date_end, slot_expander.horizon_end(now.date()))
    specs = slot_expander.expand(window, date_start, date_end, today=now.date())
    expected = {spec.id: spec for spec in specs}

    existing = {
        slot.id: slot
        for slot in db.execute(
            select(Slot).where(
                Slot.availability_window_id == window.id,
                Slot.occurrence_date >= date_start,
                Slot.occurrence_date <= date_end,
            )
        ).scalars()
    }

    owner = window.owner
    owner_values = owner_columns(owner)
    created = 0
    restored = 0
    for spec in specs:
        slot = existing.get(spec.id)
        if slot is not None:
            if slot.status == SlotStatus.INVALID.value:
                if slot.start_time >= now and restore_slot(db, slot, now):
                    restored += 1
                continue
            # Occurrence is back, so a booked slot is no longer orphaned
            slot.detached_at = None
            slot.last_calculated = now
            continue
        blocker = find_active_blocking_event(db, owner, spec.start, spec.end, now)
        db.add(
            Slot(
                id=spec.id,
                availability_window_id=window.id,
                service_id=spec.service_id,
                service_config_id=spec.service_config_id,
                occurrence_key=spec.occurrence_key,
                occurrence_date=spec.occurrence_date,
                start_time=spec.start,
                end_time=spec.end,
                status=(SlotStatus.BLOCKED if blocker else SlotStatus.AVAILABLE).value,
                blocked_by_event_id=blocker.id if blocker else None,
                last_calculated=now,
                **owner_values,
            )
        )
        created += 1

    stale = [
        slot for slot_id, slot in existing.items()
        if slot_id not in expected and slot.start_time >= now
    ]
    invalidated, detached = invalidate_slots(db, stale, now)

    try:
        db.flush()
    except IntegrityError:
        # Another request materialized the same occurrences first
        db.rollback()
        if not _retry:
            raise
        logger.info("Slot materialization raced window=%s, retrying", window.id)
        window = db.get(AvailabilityWindow, window.id)
        return materialize_slots(db, window, date_start, date_end, now=now, _retry=False)

    existing_count = len(specs) - created
    logger.info(
        "Materialized slots window=%s created=%s existing=%s invalidated=%s "
        "detached=%s restored=%s",
        window.id, created, existing_count, invalidated, detached, restored,
        extra=build_log_context(owner=owner),
    )
    return MaterializeResult(created, existing_count, invalidated, detached, restored)


def materialize_to_horizon(
    db: Session, window: AvailabilityWindow, *, now: datetime | None = None
) -> MaterializeResult:
    now = now or datetime.now(timezone.utc)
    first_date = window.start_time.astimezone(timezone.utc).date()
    date_start = max(first_date, now.date())
    return materialize_slots(
        db, window, date_start, slot_expander.horizon_end(now.date()), now=now
    )


# =============================================================================
# Windows
# =============================================================================

def get_window(db: Session, window_id: uuid.UUID) -> AvailabilityWindow:
    window = db.get(AvailabilityWindow, window_id)
    if not window or window.deleted_at is not None:
        raise WindowNotFound(f"Availability window {window_id} not found")
    return window


def list_windows(db: Session, owner: OwnerRef) -> list[AvailabilityWindow]:
    """Live windows of ``owner`` ordered by start."""
    return list(
        db.execute(
            select(AvailabilityWindow)
            .where(
                AvailabilityWindow.owned_by(owner),
                AvailabilityWindow.deleted_at.is_(None),
            )
            .order_by(AvailabilityWindow.start_time, AvailabilityWindow.id)
        ).scalars()
    )


def expand_window(
    db: Session,
    window_id: uuid.UUID,
    date_start: date,
    date_end: date,
    *,
    now: datetime | None = None,
) -> MaterializeResult:
    """Materialize one window over an explicit date range and commit."""
    if date_end < date_start:
        raise WindowInvalid(["date_end must not be before date_start"])
    window = get_window(db, window_id)
    result = materialize_slots(db, window, date_start, date_end, now=now)
    db.commit()
    return result


def _build_services(inputs: Sequence[OfferedServiceInput]) -> list[OfferedService]:
    return [
        OfferedService(
            service_id=item.service_id,
            duration_minutes=item.duration_minutes,
            price=item.price,
            is_online_available=item.is_online_available,
            is_in_person_available=item.is_in_person_available,
        )
        for item in inputs
    ]


def _copy_services(window: AvailabilityWindow) -> list[OfferedServiceInput]:
    return [
        OfferedServiceInput(
            service_id=s.service_id,
            duration_minutes=s.duration_minutes,
            price=s.price,
            is_online_available=s.is_online_available,
            is_in_person_available=s.is_in_person_available,
        )
        for s in window.active_services
    ]


def _sync_services(window: AvailabilityWindow, inputs: Sequence[OfferedServiceInput]) -> None:
    """Update services in place by service_id; dropped services are deactivated."""
    current = {s.service_id: s for s in window.services if s.is_active}
    wanted = {item.service_id: item for item in inputs}
    for service_id, service in current.items():
        item = wanted.get(service_id)
        if item is None:
            service.is_active = False
            continue
        if service.duration_minutes != item.duration_minutes:
            # New duration means new slot ids; keep the old row for history
            service.is_active = False
            window.services.extend(_build_services([item]))
            continue
        service.price = item.price
        service.is_online_available = item.is_online_available
        service.is_in_person_available = item.is_in_person_available
    window.services.extend(
        _build_services([item for sid, item in wanted.items() if sid not in current])
    )


def create_window(
    db: Session,
    data: AvailabilityWindowCreate,
    *,
    can_publish: PublishPredicate,
    now: datetime | None = None,
) -> WindowChange:
    """Validate, persist and materialize a new availability window."""
    now = now or datetime.now(timezone.utc)
    owner = data.owner.to_owner()
    if not can_publish(owner):
        raise PublishNotAllowed(f"Not allowed to publish availability for {owner}")

    first_date = data.start_time.astimezone(timezone.utc).date()
    recurrence = _with_default_until(data.recurrence.to_recurrence(), first_date)
    validate_window(
        db, owner, data.start_time, data.end_time, recurrence, data.services, now=now
    )

    window = AvailabilityWindow(
        start_time=data.start_time.astimezone(timezone.utc),
        end_time=data.end_time.astimezone(timezone.utc),
        scheduling_granularity=data.scheduling_granularity.value,
        requires_confirmation=data.requires_confirmation,
        is_online_available=data.is_online_available,
        is_in_person_available=data.is_in_person_available,
        excluded_dates=[],
        services=_build_services(data.services),
        **owner_columns(owner),
        **recurrence_columns(recurrence),
    )
    db.add(window)
    db.flush()

    result = materialize_to_horizon(db, window, now=now)
    db.commit()
    db.refresh(window)

    logger.info(
        "Availability window created window=%s owner=%s slots=%s",
        window.id, owner, result.created,
        extra=build_log_context(owner=owner),
    )
    return WindowChange(window, [], result.created, result.invalidated, result.detached)


def update_window(
    db: Session,
    window_id: uuid.UUID,
    data: AvailabilityWindowUpdate,
    *,
    can_publish: PublishPredicate,
    now: datetime | None = None,
) -> WindowChange:
    """
    Edit a window.

    ALL rewrites the series in place. THIS_AND_FUTURE ends the series the
    day before ``occurrence_date`` and starts a new series window there.
    THIS_OCCURRENCE excludes ``occurrence_date`` from the series and adds a
    one-off window. Affected booked slots are detached, never cancelled.
    """
    now = now or datetime.now(timezone.utc)
    window = get_window(db, window_id)
    owner = window.owner
    if not can_publish(owner):
        raise PublishNotAllowed(f"Not allowed to publish availability for {owner}")

    scope = data.scope
    first_date = window.start_time.astimezone(timezone.utc).date()
    if not window.is_recurring:
        scope = EditScope.ALL
    elif scope != EditScope.ALL:
        if data.occurrence_date is None:
            raise WindowInvalid(["occurrence_date is required for this edit scope"])
        if scope == EditScope.THIS_AND_FUTURE and data.occurrence_date == first_date:
            scope = EditScope.ALL

    if scope == EditScope.ALL:
        return _update_series(db, window, data, now=now)
    return _split_series(db, window, data, scope, now=now)


def _update_series(
    db: Session, window: AvailabilityWindow, data: AvailabilityWindowUpdate, *, now: datetime
) -> WindowChange:
    start = data.start_time or window.start_time
    end = data.end_time or window.end_time
    first_date = start.astimezone(timezone.utc).date()
    recurrence = (
        _with_default_until(data.recurrence.to_recurrence(), first_date)
        if data.recurrence is not None
        else window.recurrence
    )
    services = data.services if data.services is not None else _copy_services(window)

    validate_window(
        db, window.owner, start, end, recurrence, services,
        now=now,
        excluded_dates=window.excluded_dates or [],
        exclude_window_ids=[window.id],
        check_time_bounds=data.start_time is not None or data.end_time is not None,
    )

    window.start_time = start.astimezone(timezone.utc)
    window.end_time = end.astimezone(timezone.utc)
    for column, value in recurrence_columns(recurrence).items():
        setattr(window, column, value)
    _apply_flags(window, data)
    if data.services is not None:
        _sync_services(window, data.services)
    db.flush()

    result = materialize_to_horizon(db, window, now=now)
    db.commit()
    db.refresh(window)
    return WindowChange(window, [], result.created, result.invalidated, result.detached)


def _apply_flags(window: AvailabilityWindow, data: AvailabilityWindowUpdate) -> None:
    if data.scheduling_granularity is not None:
        window.scheduling_granularity = data.scheduling_granularity.value
    if data.requires_confirmation is not None:
        window.requires_confirmation = data.requires_confirmation
    if data.is_online_available is not None:
        window.is_online_available = data.is_online_available
    if data.is_in_person_available is not None:
        window.is_in_person_available = data.is_in_person_available


def _split_series(
    db: Session,
    window: AvailabilityWindow,
    data: AvailabilityWindowUpdate,
    scope: EditScope,
    *,
    now: datetime,
) -> WindowChange:
    occ_date = data.occurrence_date
    occurrences = _series_intervals(
        window.start_time, window.end_time, window.recurrence,
        window.excluded_dates or [], occ_date, occ_date,
    )
    if not occurrences:
        raise WindowInvalid([f"{occ_date.isoformat()} is not an occurrence of this window"])

    occurrence = occurrences[0]
    start = data.start_time or occurrence.start
    end = data.end_time or occurrence.end
    services = data.services if data.services is not None else _copy_services(window)
    series_recurrence = window.recurrence

    if scope == EditScope.THIS_AND_FUTURE:
        window.recurrence_until = occ_date - timedelta(days=1)
        if data.recurrence is not None:
            recurrence = _with_default_until(
                data.recurrence.to_recurrence(), start.astimezone(timezone.utc).date()
            )
        else:
            recurrence = series_recurrence
    else:
        window.excluded_dates = [*(window.excluded_dates or []), occ_date.isoformat()]
        recurrence = NoRecurrence()
    db.flush()

    try:
        validate_window(
            db, window.owner, start, end, recurrence, services,
            now=now, check_time_bounds=False,
        )
    except WindowInvalid:
        db.rollback()
        raise

    new_window = AvailabilityWindow(
        start_time=start.astimezone(timezone.utc),
        end_time=end.astimezone(timezone.utc),
        scheduling_granularity=window.scheduling_granularity,
        requires_confirmation=window.requires_confirmation,
        is_online_available=window.is_online_available,
        is_in_person_available=window.is_in_person_available,
        excluded_dates=[],
        series_id=window.series_id or window.id,
        services=_build_services(services),
        **owner_columns(window.owner),
        **recurrence_columns(recurrence),
    )
    _apply_flags(new_window, data)
    db.add(new_window)
    db.flush()

    old_result = materialize_slots(
        db, window, max(occ_date, now.date()), slot_expander.horizon_end(now.date()), now=now
    )
    new_result = materialize_to_horizon(db, new_window, now=now)
    db.commit()
    db.refresh(window)

    logger.info(
        "Availability series split window=%s new_window=%s scope=%s",
        window.id, new_window.id, scope.value,
        extra=build_log_context(owner=window.owner),
    )
    return WindowChange(
        window,
        [new_window.id],
        new_result.created,
        old_result.invalidated + new_result.invalidated,
        old_result.detached + new_result.detached,
    )


def delete_window(
    db: Session,
    window_id: uuid.UUID,
    *,
    can_publish: PublishPredicate,
    now: datetime | None = None,
) -> WindowChange:
    """
    Soft-delete a window.

    Future unbooked slots become INVALID; booked slots keep their booking and
    are detached. Historical slots are retained.
    """
    now = now or datetime.now(timezone.utc)
    window = get_window(db, window_id)
    if not can_publish(window.owner):
        raise PublishNotAllowed(f"Not allowed to publish availability for {window.owner}")

    future = db.execute(
        select(Slot).where(
            Slot.availability_window_id == window.id,
            Slot.start_time >= now,
        )
    ).scalars().all()
    invalidated, detached = invalidate_slots(db, future, now)
    window.deleted_at = now
    db.commit()

    logger.info(
        "Availability window deleted window=%s invalidated=%s detached=%s",
        window.id, invalidated, detached,
        extra=build_log_context(owner=window.owner),
    )
    return WindowChange(None, [], 0, invalidated, detached)


def expand_all_windows(db: Session, *, now: datetime | None = None) -> dict[str, int]:
    """Roll every live window forward to the horizon; one window per transaction."""
    now = now or datetime.now(timezone.utc)
    window_ids = list(
        db.execute(
            select(AvailabilityWindow.id).where(AvailabilityWindow.deleted_at.is_(None))
        ).scalars()
    )
    totals = {"windows_processed": 0, "windows_failed": 0, "slots_created": 0}
    for window_id in window_ids:
        try:
            window = db.get(AvailabilityWindow, window_id)
            result = materialize_to_horizon(db, window, now=now)
            db.commit()
        except Exception:
            db.rollback()
            totals["windows_failed"] += 1
            logger.exception("Slot expansion failed window=%s", window_id)
            continue
        totals["windows_processed"] += 1
        totals["slots_created"] += result.created
    return totals


# =============================================================================
# Slots
# =============================================================================

def list_available_slots(
    db: Session,
    owner: OwnerRef,
    date_start: date,
    date_end: date,
    *,
    service_id: uuid.UUID | None = None,
    now: datetime | None = None,
    limit: int | None = None,
) -> list[Slot]:
    """Future AVAILABLE slots that do not overlap an already booked slot."""
    now = now or datetime.now(timezone.utc)
    booked = aliased(Slot)
    overlaps_booked = exists().where(
        Slot.owned_by(owner, booked),
        booked.status == SlotStatus.BOOKED.value,
        booked.start_time < Slot.end_time,
        booked.end_time > Slot.start_time,
    )
    query = (
        select(Slot)
        .where(
            Slot.owned_by(owner),
            Slot.status == SlotStatus.AVAILABLE.value,
            Slot.start_time >= now,
            Slot.occurrence_date >= date_start,
            Slot.occurrence_date <= date_end,
            ~overlaps_booked,
        )
        .order_by(Slot.start_time, Slot.id)
    )
    if service_id is not None:
        query = query.where(Slot.service_id == service_id)
    if limit is not None:
        query = query.limit(limit)
    return list(db.execute(query).scalars())
