"""
Booking service - claims slots for clients and manages booking lifecycle.

Handles:
- Atomic slot claim (lock, check, CAS to BOOKED, insert booking)
- Inline double-booking prevention across overlapping slots of one owner
- Cancellation (slot returns to AVAILABLE, or BLOCKED if an event overlaps)
- Status transitions (confirm, complete, no-show) and cancellation requests

Notifications are dispatched only after the transaction commits.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medbook.core.structured_logging import build_log_context
from medbook.db.enums import BookingStatus, SlotStatus
from medbook.db.models import AvailabilityWindow, Booking, Slot
from medbook.schemas.booking import BookingCreate, GuestClientInput, RegisteredClientInput
from medbook.services import notification_service
from medbook.services.errors import (
    BookingNotFound,
    BookingValidationError,
    SchedulingError,
    SlotNotAvailable,
)
from medbook.services.slot_state_service import (
    SlotEvent,
    compare_and_set,
    has_active_booking_clause,
    lock_slot,
    next_status,
    release_slot,
)

logger = logging.getLogger(__name__)


# Allowed manual transitions; cancellation goes through cancel_booking
BOOKING_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.NO_SHOW},
}

CANCELLABLE_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)


def get_booking(db: Session, booking_id: uuid.UUID) -> Booking:
    booking = db.get(Booking, booking_id)
    if not booking:
        raise BookingNotFound(f"Booking {booking_id} not found")
    return booking


def _client_columns(client: RegisteredClientInput | GuestClientInput) -> dict:
    if isinstance(client, RegisteredClientInput):
        return {"client_user_id": client.user_id}
    if not (client.email or client.phone or client.whatsapp):
        raise BookingValidationError("Guest bookings need at least one contact channel")
    return {
        "guest_name": client.name.strip(),
        "guest_email": str(client.email) if client.email else None,
        "guest_phone": client.phone,
        "guest_whatsapp": client.whatsapp,
    }


def _has_overlapping_booking(db: Session, slot: Slot) -> bool:
    """Another slot of the same owner overlapping ``slot`` is already booked."""
    return db.execute(
        select(Slot.id)
        .where(
            Slot.owned_by(slot.owner),
            Slot.id != slot.id,
            Slot.status == SlotStatus.BOOKED.value,
            Slot.start_time < slot.end_time,
            Slot.end_time > slot.start_time,
            has_active_booking_clause(),
        )
        .limit(1)
    ).first() is not None


# =============================================================================
# Claim
# =============================================================================

def book_slot(
    db: Session,
    data: BookingCreate,
    *,
    now: datetime | None = None,
    dispatcher: notification_service.NotificationDispatcher | None = None,
) -> Booking:
    """
    Claim ``data.slot_id`` for a client.

    Runs as one transaction: lock slot, verify AVAILABLE with no active
    booking, insert the booking, flip the slot to BOOKED. Losing a race
    raises SlotNotAvailable; the caller should offer a different slot
    rather than retry this one.
    """
    now = now or datetime.now(timezone.utc)
    client_columns = _client_columns(data.client)

    try:
        slot = lock_slot(db, data.slot_id)
        window = db.execute(
            select(AvailabilityWindow)
            .where(AvailabilityWindow.id == slot.availability_window_id)
            .with_for_update()
        ).scalar_one()

        if window.deleted_at is not None or slot.detached_at is not None:
            raise SlotNotAvailable(slot.id, slot.status)
        if slot.start_time <= now:
            raise SlotNotAvailable(slot.id, slot.status)

        try:
            next_status(slot.status, SlotEvent.CLAIM, has_booking=slot.active_booking is not None)
        except SlotNotAvailable:
            raise SlotNotAvailable(slot.id, slot.status) from None

        if _has_overlapping_booking(db, slot):
            raise SlotNotAvailable(slot.id, slot.status)

        claimed = compare_and_set(
            db,
            slot.id,
            [SlotStatus.AVAILABLE],
            criteria=[~has_active_booking_clause()],
            status=SlotStatus.BOOKED.value,
            blocked_by_event_id=None,
            last_calculated=now,
        )
        if not claimed:
            raise SlotNotAvailable(slot.id, slot.status)

        status = (
            BookingStatus.PENDING if window.requires_confirmation else BookingStatus.CONFIRMED
        )
        booking = Booking(
            slot_id=slot.id,
            status=status.value,
            confirmed_at=now if status == BookingStatus.CONFIRMED else None,
            notes=data.notes,
            notification_preferences=data.notification_preferences.model_dump(),
            **client_columns,
        )
        db.add(booking)
        db.flush()
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(
            "Slot claim lost on unique constraint slot=%s", data.slot_id,
            extra=build_log_context(slot_id=data.slot_id),
        )
        raise SlotNotAvailable(data.slot_id) from None
    except SchedulingError:
        db.rollback()
        raise

    db.refresh(booking)
    owner = slot.owner
    logger.info(
        "Slot booked slot=%s booking=%s status=%s", slot.id, booking.id, booking.status,
        extra=build_log_context(owner=owner, slot_id=slot.id, booking_id=booking.id),
    )
    notification_service.dispatch(
        notification_service.BookingCreated(
            booking_id=booking.id,
            slot_id=slot.id,
            owner=owner,
            start_time=slot.start_time,
            end_time=slot.end_time,
            status=booking.status,
            notification_preferences=dict(booking.notification_preferences or {}),
        ),
        dispatcher,
    )
    return booking


# =============================================================================
# Lifecycle
# =============================================================================

def cancel_booking(
    db: Session,
    booking_id: uuid.UUID,
    *,
    reason: str | None = None,
    cancelled_by_user_id: uuid.UUID | None = None,
    now: datetime | None = None,
    dispatcher: notification_service.NotificationDispatcher | None = None,
) -> Booking:
    """Cancel a booking and release its slot."""
    now = now or datetime.now(timezone.utc)
    try:
        booking = db.execute(
            select(Booking).where(Booking.id == booking_id).with_for_update()
        ).scalar_one_or_none()
        if not booking:
            raise BookingNotFound(f"Booking {booking_id} not found")
        if booking.status not in CANCELLABLE_STATUSES:
            raise BookingValidationError(
                f"Cannot cancel booking with status {booking.status}"
            )

        slot = lock_slot(db, booking.slot_id)
        booking.status = BookingStatus.CANCELLED.value
        booking.cancelled_at = now
        booking.cancellation_reason = reason
        booking.cancelled_by_user_id = cancelled_by_user_id
        db.flush()

        slot_status = SlotStatus(slot.status)
        if slot_status == SlotStatus.BOOKED:
            slot_status = release_slot(db, slot, now)
        db.commit()
    except SchedulingError:
        db.rollback()
        raise

    db.refresh(booking)
    owner = slot.owner
    logger.info(
        "Booking cancelled booking=%s slot=%s slot_status=%s",
        booking.id, slot.id, slot_status.value,
        extra=build_log_context(owner=owner, slot_id=slot.id, booking_id=booking.id),
    )
    notification_service.dispatch(
        notification_service.BookingCancelled(
            booking_id=booking.id,
            slot_id=slot.id,
            owner=owner,
            slot_status=slot_status.value,
            reason=reason,
        ),
        dispatcher,
    )
    return booking


def transition_booking(
    db: Session,
    booking_id: uuid.UUID,
    status: BookingStatus,
    *,
    now: datetime | None = None,
    dispatcher: notification_service.NotificationDispatcher | None = None,
) -> Booking:
    """Move a booking along PENDING -> CONFIRMED -> COMPLETED / NO_SHOW."""
    now = now or datetime.now(timezone.utc)
    if status == BookingStatus.CANCELLED:
        return cancel_booking(db, booking_id, now=now, dispatcher=dispatcher)

    booking = get_booking(db, booking_id)
    current = BookingStatus(booking.status)
    if status not in BOOKING_TRANSITIONS.get(current, set()):
        raise BookingValidationError(
            f"Cannot change booking status from {current.value} to {status.value}"
        )

    booking.status = status.value
    if status == BookingStatus.CONFIRMED:
        booking.confirmed_at = now
    db.commit()
    db.refresh(booking)
    logger.info(
        "Booking status changed booking=%s from=%s to=%s",
        booking.id, current.value, status.value,
        extra=build_log_context(booking_id=booking.id),
    )
    return booking


def request_cancellation(
    db: Session,
    booking_id: uuid.UUID,
    *,
    now: datetime | None = None,
    commit: bool = True,
) -> Booking:
    """
    Flag a booking for cancellation by the owner.

    Used when a conflict is resolved in favour of the external event; the
    actual cancellation is a separate, human-confirmed step.
    """
    now = now or datetime.now(timezone.utc)
    booking = get_booking(db, booking_id)
    if booking.status not in CANCELLABLE_STATUSES:
        raise BookingValidationError(
            f"Cannot request cancellation for booking with status {booking.status}"
        )
    if booking.cancellation_requested_at is None:
        booking.cancellation_requested_at = now
    if commit:
        db.commit()
        db.refresh(booking)
    return booking
