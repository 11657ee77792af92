"""
Slot blocking - applies external calendar events to materialized slots.

Handles:
- Blocking AVAILABLE slots overlapped by a blocking event
- Flagging the event with a conflict when it overlaps booked slots
- Unblocking (or handing over) slots when an event goes away
- Idempotent regeneration per owner and across all synced owners
- Blocking statistics for dashboards

Overlap is half-open: slot.start < event.end AND slot.end > event.start.
Functions here flush but do not commit; callers own the transaction and
publish notifications after commit via publish_blocking_notifications.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import NamedTuple, TypedDict

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from medbook.core.structured_logging import build_log_context
from medbook.db.enums import BookingStatus, SlotStatus
from medbook.db.models import Booking, CalendarEvent, CalendarIntegration, Slot
from medbook.services import notification_service
from medbook.services.slot_state_service import (
    SlotEvent,
    compare_and_set,
    find_active_blocking_event,
    has_active_booking_clause,
    next_status,
)
from medbook.types import OwnerRef, owner_from_columns

logger = logging.getLogger(__name__)


class BlockingResult(NamedTuple):
    blocked_count: int
    slot_ids: list[uuid.UUID]
    conflict_booking_ids: list[uuid.UUID]
    new_conflict: bool


class RegenerationResult(NamedTuple):
    events_processed: int
    slots_blocked: int
    slots_released: int
    conflicts: int


class GlobalRegenerationResult(TypedDict):
    owners_processed: int
    owners_failed: int
    events_processed: int
    slots_blocked: int


class BlockingStats(TypedDict):
    total_future_slots: int
    available_slots: int
    booked_slots: int
    blocked_slots: int
    blocking_events: int
    events_with_conflicts: int


def conflict_details_message(booking_count: int) -> str:
    return f"Overlaps with {booking_count} existing booking(s)"


def _overlaps(start_col, end_col, start: datetime, end: datetime):
    return (start_col < end) & (end_col > start)


# =============================================================================
# Block / unblock
# =============================================================================

def block_slots_from_event(
    db: Session,
    event: CalendarEvent,
    owner: OwnerRef,
    *,
    now: datetime | None = None,
) -> BlockingResult:
    """
    Block the owner's slots overlapped by ``event``.

    Booked slots are never touched; if any overlap, the event gets
    has_conflict=True. A slot already blocked by a different active event
    keeps its original blocker. Safe to call repeatedly.
    """
    now = now or datetime.now(timezone.utc)
    if not event.blocks_availability or event.end_time < now:
        return BlockingResult(0, [], [], False)

    overlap = _overlaps(Slot.start_time, Slot.end_time, event.start_time, event.end_time)

    booking_ids = list(
        db.execute(
            select(Booking.id)
            .join(Slot, Booking.slot_id == Slot.id)
            .where(
                Slot.owned_by(owner),
                overlap,
                Booking.status != BookingStatus.CANCELLED.value,
            )
            .order_by(Booking.id)
        ).scalars()
    )

    candidates = db.execute(
        select(Slot).where(
            Slot.owned_by(owner),
            overlap,
            Slot.status.in_([SlotStatus.AVAILABLE.value, SlotStatus.BLOCKED.value]),
            ~has_active_booking_clause(),
        )
    ).scalars().all()

    blocked_count = 0
    slot_ids: list[uuid.UUID] = []
    for slot in candidates:
        if slot.status == SlotStatus.BLOCKED.value and slot.blocked_by_event_id is not None:
            if slot.blocked_by_event_id == event.id:
                slot_ids.append(slot.id)
            continue
        target = next_status(slot.status, SlotEvent.BLOCK)
        # Re-checked at write time: a concurrent claim wins over blocking
        if compare_and_set(
            db,
            slot.id,
            [SlotStatus(slot.status)],
            criteria=[~has_active_booking_clause()],
            status=target.value,
            blocked_by_event_id=event.id,
            last_calculated=now,
        ):
            blocked_count += 1
            slot_ids.append(slot.id)

    new_conflict = bool(booking_ids) and not event.has_conflict
    if booking_ids:
        event.has_conflict = True
        event.conflict_details = conflict_details_message(len(booking_ids))
    elif event.has_conflict and event.conflict_resolved_at is None:
        event.has_conflict = False
        event.conflict_details = None
    db.flush()

    if booking_ids:
        logger.warning(
            "Calendar event overlaps bookings event=%s owner=%s bookings=%s",
            event.id,
            owner,
            len(booking_ids),
            extra=build_log_context(owner=owner, event_id=event.id),
        )
    return BlockingResult(blocked_count, slot_ids, booking_ids, new_conflict)


def unblock_slots_from_event(
    db: Session,
    event_id: uuid.UUID,
    owner: OwnerRef,
    *,
    now: datetime | None = None,
) -> int:
    """
    Release slots blocked by ``event_id``.

    A slot still overlapped by another active blocking event is handed over
    to that event instead of becoming AVAILABLE. Returns the number of slots
    made AVAILABLE.
    """
    now = now or datetime.now(timezone.utc)
    slots = db.execute(
        select(Slot).where(
            Slot.blocked_by_event_id == event_id,
            Slot.status == SlotStatus.BLOCKED.value,
        )
    ).scalars().all()

    released = 0
    for slot in slots:
        if _release_blocked_slot(db, slot, owner, now, previous_event_id=event_id):
            released += 1
    db.flush()
    return released


def _release_blocked_slot(
    db: Session,
    slot: Slot,
    owner: OwnerRef,
    now: datetime,
    *,
    previous_event_id: uuid.UUID | None,
) -> bool:
    """Hand a BLOCKED slot to another active blocker, else make it AVAILABLE."""
    blocker_criteria = (
        [Slot.blocked_by_event_id == previous_event_id]
        if previous_event_id is not None
        else [Slot.blocked_by_event_id.is_(None)]
    )
    handover = find_active_blocking_event(
        db, owner, slot.start_time, slot.end_time, now,
        exclude_event_id=previous_event_id,
    )
    if handover is not None:
        compare_and_set(
            db,
            slot.id,
            [SlotStatus.BLOCKED],
            criteria=blocker_criteria,
            blocked_by_event_id=handover.id,
            last_calculated=now,
        )
        return False

    target = next_status(slot.status, SlotEvent.UNBLOCK)
    return compare_and_set(
        db,
        slot.id,
        [SlotStatus.BLOCKED],
        criteria=[*blocker_criteria, ~has_active_booking_clause()],
        status=target.value,
        blocked_by_event_id=None,
        last_calculated=now,
    )


def publish_blocking_notifications(
    event: CalendarEvent,
    owner: OwnerRef,
    result: BlockingResult,
    dispatcher: notification_service.NotificationDispatcher | None = None,
) -> None:
    """Emit SlotBlocked / ConflictDetected once the blocking transaction committed."""
    if result.blocked_count:
        notification_service.dispatch(
            notification_service.SlotBlocked(
                event_id=event.id, owner=owner, slot_ids=tuple(result.slot_ids)
            ),
            dispatcher,
        )
    if result.new_conflict:
        notification_service.dispatch(
            notification_service.ConflictDetected(
                event_id=event.id,
                owner=owner,
                booking_ids=tuple(result.conflict_booking_ids),
                details=conflict_details_message(len(result.conflict_booking_ids)),
            ),
            dispatcher,
        )


# =============================================================================
# Regeneration
# =============================================================================

def _owner_events_query(owner: OwnerRef, now: datetime):
    return (
        select(CalendarEvent)
        .join(CalendarIntegration, CalendarEvent.calendar_integration_id == CalendarIntegration.id)
        .where(
            CalendarIntegration.owned_by(owner),
            CalendarEvent.blocks_availability.is_(True),
            CalendarEvent.end_time >= now,
        )
        .order_by(CalendarEvent.start_time, CalendarEvent.id)
    )


def regenerate_slots_for_owner(
    db: Session,
    owner: OwnerRef,
    *,
    now: datetime | None = None,
    dispatcher: notification_service.NotificationDispatcher | None = None,
) -> RegenerationResult:
    """
    Re-derive blocking state for every future blocking event of ``owner``.

    Repair pass: first releases BLOCKED slots whose blocker is gone, no longer
    blocks, or no longer overlaps; then re-applies every active event. Each
    event commits on its own. Slots that acquired bookings are never
    unblocked.
    """
    now = now or datetime.now(timezone.utc)

    stale = db.execute(
        select(Slot).where(
            Slot.owned_by(owner),
            Slot.status == SlotStatus.BLOCKED.value,
            Slot.end_time >= now,
        )
    ).scalars().all()
    released = 0
    for slot in stale:
        blocker = slot.blocked_by_event
        if (
            blocker is not None
            and blocker.blocks_availability
            and blocker.end_time >= now
            and blocker.start_time < slot.end_time
            and blocker.end_time > slot.start_time
        ):
            continue
        if _release_blocked_slot(
            db, slot, owner, now,
            previous_event_id=blocker.id if blocker is not None else None,
        ):
            released += 1
    db.commit()

    events = db.execute(_owner_events_query(owner, now)).scalars().all()
    blocked = 0
    conflicts = 0
    for event in events:
        result = block_slots_from_event(db, event, owner, now=now)
        db.commit()
        publish_blocking_notifications(event, owner, result, dispatcher)
        blocked += result.blocked_count
        if result.conflict_booking_ids:
            conflicts += 1

    logger.info(
        "Regenerated slot blocking owner=%s events=%s blocked=%s released=%s",
        owner, len(events), blocked, released,
        extra=build_log_context(owner=owner),
    )
    return RegenerationResult(len(events), blocked, released, conflicts)


def regenerate_slots_for_all_owners(
    db: Session,
    *,
    now: datetime | None = None,
    dispatcher: notification_service.NotificationDispatcher | None = None,
) -> GlobalRegenerationResult:
    """Run regeneration for every owner with a sync-enabled integration."""
    now = now or datetime.now(timezone.utc)
    rows = db.execute(
        select(
            CalendarIntegration.owner_type,
            CalendarIntegration.provider_id,
            CalendarIntegration.organization_id,
            CalendarIntegration.location_id,
        )
        .where(CalendarIntegration.sync_enabled.is_(True))
        .distinct()
    ).all()

    totals: GlobalRegenerationResult = {
        "owners_processed": 0,
        "owners_failed": 0,
        "events_processed": 0,
        "slots_blocked": 0,
    }
    for row in rows:
        owner = owner_from_columns(*row)
        try:
            result = regenerate_slots_for_owner(db, owner, now=now, dispatcher=dispatcher)
        except Exception:
            db.rollback()
            totals["owners_failed"] += 1
            logger.exception(
                "Slot regeneration failed owner=%s",
                owner,
                extra=build_log_context(owner=owner),
            )
            continue
        totals["owners_processed"] += 1
        totals["events_processed"] += result.events_processed
        totals["slots_blocked"] += result.slots_blocked
    return totals


# =============================================================================
# Stats
# =============================================================================

def get_blocking_stats(
    db: Session, owner: OwnerRef, *, now: datetime | None = None
) -> BlockingStats:
    now = now or datetime.now(timezone.utc)
    counts = dict(
        db.execute(
            select(Slot.status, func.count(Slot.id))
            .where(Slot.owned_by(owner), Slot.start_time >= now)
            .group_by(Slot.status)
        ).all()
    )
    owner_events = (
        select(func.count(CalendarEvent.id))
        .join(CalendarIntegration, CalendarEvent.calendar_integration_id == CalendarIntegration.id)
        .where(CalendarIntegration.owned_by(owner), CalendarEvent.end_time >= now)
    )
    blocking_events = db.execute(
        owner_events.where(CalendarEvent.blocks_availability.is_(True))
    ).scalar_one()
    events_with_conflicts = db.execute(
        owner_events.where(CalendarEvent.has_conflict.is_(True))
    ).scalar_one()

    return {
        "total_future_slots": sum(counts.values()),
        "available_slots": counts.get(SlotStatus.AVAILABLE.value, 0),
        "booked_slots": counts.get(SlotStatus.BOOKED.value, 0),
        "blocked_slots": counts.get(SlotStatus.BLOCKED.value, 0),
        "blocking_events": blocking_events,
        "events_with_conflicts": events_with_conflicts,
    }
