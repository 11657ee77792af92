"""
Slot state machine - the only place slot status is written.

Handles:
- Transition table (claim / cancel / block / unblock / invalidate / restore)
- Row locking for read-check-write sequences
- Compare-and-set status writes (UPDATE ... WHERE status IN (...))
- Releasing a slot to AVAILABLE or back to BLOCKED after cancellation

Every writer (booking, calendar blocking, conflict auto-resolution, window
edits) goes through compare_and_set so no update is unconditional.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Iterable

from sqlalchemy import exists, select, update
from sqlalchemy.orm import Session

from medbook.db.enums import BookingStatus, SlotStatus
from medbook.db.models import Booking, CalendarEvent, CalendarIntegration, Slot
from medbook.services.errors import InvalidSlotTransition, SlotNotAvailable, SlotNotFound
from medbook.types import OwnerRef

logger = logging.getLogger(__name__)


class SlotEvent(str, Enum):
    CLAIM = "claim"
    CANCEL = "cancel"
    BLOCK = "block"
    UNBLOCK = "unblock"
    INVALIDATE = "invalidate"
    RESTORE = "restore"


# (from, event) -> to. Guards are evaluated in next_status.
TRANSITIONS: dict[tuple[SlotStatus, SlotEvent], SlotStatus] = {
    (SlotStatus.AVAILABLE, SlotEvent.CLAIM): SlotStatus.BOOKED,
    (SlotStatus.BOOKED, SlotEvent.CANCEL): SlotStatus.AVAILABLE,
    (SlotStatus.AVAILABLE, SlotEvent.BLOCK): SlotStatus.BLOCKED,
    (SlotStatus.BLOCKED, SlotEvent.BLOCK): SlotStatus.BLOCKED,
    (SlotStatus.BOOKED, SlotEvent.BLOCK): SlotStatus.BOOKED,
    (SlotStatus.BLOCKED, SlotEvent.UNBLOCK): SlotStatus.AVAILABLE,
    (SlotStatus.AVAILABLE, SlotEvent.INVALIDATE): SlotStatus.INVALID,
    (SlotStatus.BLOCKED, SlotEvent.INVALIDATE): SlotStatus.INVALID,
    (SlotStatus.INVALID, SlotEvent.INVALIDATE): SlotStatus.INVALID,
    (SlotStatus.INVALID, SlotEvent.RESTORE): SlotStatus.AVAILABLE,
}


def next_status(
    current: SlotStatus | str,
    event: SlotEvent,
    *,
    has_booking: bool = False,
    overlapping_event_active: bool = False,
) -> SlotStatus:
    """
    Resolve the target state for ``event``.

    Claims on anything but an unbooked AVAILABLE slot raise SlotNotAvailable.
    A BOOKED slot hit by a blocking event stays BOOKED (the caller flags a
    conflict). Booked slots are never invalidated.
    A restored slot comes back BLOCKED when an active event overlaps it.
    """
    current = SlotStatus(current)

    if event == SlotEvent.CLAIM:
        if current != SlotStatus.AVAILABLE or has_booking:
            raise SlotNotAvailable(None, current.value)
        return SlotStatus.BOOKED

    if event == SlotEvent.BLOCK and current == SlotStatus.AVAILABLE and has_booking:
        return SlotStatus.AVAILABLE

    target = TRANSITIONS.get((current, event))
    if target is None:
        raise InvalidSlotTransition(current.value, event.value)

    if event in (SlotEvent.CANCEL, SlotEvent.RESTORE) and overlapping_event_active:
        return SlotStatus.BLOCKED
    return target


# =============================================================================
# Persistence helpers
# =============================================================================

def has_active_booking_clause():
    """Correlated EXISTS for a non-cancelled booking on the outer Slot row."""
    return exists().where(
        Booking.slot_id == Slot.id,
        Booking.status != BookingStatus.CANCELLED.value,
    )


def lock_slot(db: Session, slot_id: uuid.UUID) -> Slot:
    """Load a slot with a row lock (BEGIN IMMEDIATE on SQLite)."""
    slot = db.execute(
        select(Slot).where(Slot.id == slot_id).with_for_update()
    ).scalar_one_or_none()
    if not slot:
        raise SlotNotFound(f"Slot {slot_id} not found")
    return slot


def compare_and_set(
    db: Session,
    slot_id: uuid.UUID,
    expected: Iterable[SlotStatus],
    *,
    criteria: Iterable = (),
    **values,
) -> bool:
    """
    Write ``values`` only if the slot is still in one of ``expected``.

    Returns False when the row changed underneath us.
    """
    statuses = [s.value for s in expected]
    result = db.execute(
        update(Slot)
        .where(Slot.id == slot_id, Slot.status.in_(statuses), *criteria)
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


def find_active_blocking_event(
    db: Session,
    owner: OwnerRef,
    start: datetime,
    end: datetime,
    now: datetime,
    *,
    exclude_event_id: uuid.UUID | None = None,
) -> CalendarEvent | None:
    """First still-active blocking event of ``owner`` overlapping [start, end)."""
    query = (
        select(CalendarEvent)
        .join(CalendarIntegration, CalendarEvent.calendar_integration_id == CalendarIntegration.id)
        .where(
            CalendarIntegration.owned_by(owner),
            CalendarEvent.blocks_availability.is_(True),
            CalendarEvent.end_time >= now,
            CalendarEvent.start_time < end,
            CalendarEvent.end_time > start,
        )
        .order_by(CalendarEvent.start_time, CalendarEvent.id)
        .limit(1)
    )
    if exclude_event_id is not None:
        query = query.where(CalendarEvent.id != exclude_event_id)
    return db.execute(query).scalar_one_or_none()


def release_slot(db: Session, slot: Slot, now: datetime) -> SlotStatus:
    """
    BOOKED -> AVAILABLE, or BLOCKED when an active external event still
    overlaps. A detached slot (its occurrence was edited away) goes to
    INVALID instead. The caller has already cancelled the booking and holds
    the slot lock.
    """
    blocker = None
    if slot.detached_at is not None:
        target = SlotStatus.INVALID
    else:
        blocker = find_active_blocking_event(
            db, slot.owner, slot.start_time, slot.end_time, now
        )
        target = next_status(
            slot.status, SlotEvent.CANCEL, overlapping_event_active=blocker is not None
        )
    ok = compare_and_set(
        db,
        slot.id,
        [SlotStatus.BOOKED],
        criteria=[~has_active_booking_clause()],
        status=target.value,
        blocked_by_event_id=blocker.id if blocker else None,
        last_calculated=now,
    )
    if not ok:
        raise InvalidSlotTransition(slot.status, SlotEvent.CANCEL.value)
    logger.info("Slot released slot=%s status=%s", slot.id, target.value)
    return target


def invalidate_slots(
    db: Session, slots: Iterable[Slot], now: datetime
) -> tuple[int, int]:
    """
    Retire slots whose occurrence no longer exists.

    Unbooked slots become INVALID. Booked slots keep their booking and are
    stamped detached_at so the conflict detector reports them.

    Returns (invalidated, detached).
    """
    invalidated = 0
    detached = 0
    for slot in slots:
        if slot.status == SlotStatus.INVALID.value:
            continue
        if slot.status == SlotStatus.BOOKED.value:
            if slot.detached_at is None:
                slot.detached_at = now
                detached += 1
            continue
        if compare_and_set(
            db,
            slot.id,
            [SlotStatus.AVAILABLE, SlotStatus.BLOCKED],
            criteria=[~has_active_booking_clause()],
            status=SlotStatus.INVALID.value,
            blocked_by_event_id=None,
            last_calculated=now,
        ):
            invalidated += 1
    return invalidated, detached


def restore_slot(db: Session, slot: Slot, now: datetime) -> SlotStatus | None:
    """
    Bring an INVALID slot back once its occurrence is produced again.

    Returns the new status, or None if the slot changed underneath us or
    still carries an active booking.
    """
    blocker = find_active_blocking_event(
        db, slot.owner, slot.start_time, slot.end_time, now
    )
    target = next_status(
        slot.status, SlotEvent.RESTORE, overlapping_event_active=blocker is not None
    )
    ok = compare_and_set(
        db,
        slot.id,
        [SlotStatus.INVALID],
        criteria=[~has_active_booking_clause()],
        status=target.value,
        blocked_by_event_id=blocker.id if blocker else None,
        detached_at=None,
        last_calculated=now,
    )
    if not ok:
        return None
    logger.info("Slot restored slot=%s status=%s", slot.id, target.value)
    return target
