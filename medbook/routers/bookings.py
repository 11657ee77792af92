"""Bookings router - claim, cancel and status changes.

A failed claim returns 409 with code ``slot_unavailable`` so clients can
re-offer other slots instead of showing a generic error.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from medbook.core.config import settings
from medbook.core.deps import (
    CurrentActor,
    can_publish_availability,
    get_calendar_client,
    get_current_actor,
    get_db,
    get_notification_dispatcher,
)
from medbook.core.rate_limit import limiter
from medbook.db.enums import BookingStatus
from medbook.db.models import Booking
from medbook.schemas.booking import (
    BookingCancel,
    BookingCreate,
    BookingRead,
    BookingStatusUpdate,
    SlotUnavailableResponse,
)
from medbook.services import booking_service, calendar_sync_service
from medbook.services.calendar_provider import CalendarProviderClient
from medbook.services.errors import (
    BookingNotFound,
    BookingValidationError,
    SlotNotAvailable,
    SlotNotFound,
)
from medbook.services.notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)

router = APIRouter()


def _booking_to_read(booking: Booking) -> BookingRead:
    """Convert Booking model to read schema."""
    return BookingRead(
        id=booking.id,
        slot_id=booking.slot_id,
        status=booking.status,
        client_user_id=booking.client_user_id,
        guest_name=booking.guest_name,
        guest_email=booking.guest_email,
        guest_phone=booking.guest_phone,
        guest_whatsapp=booking.guest_whatsapp,
        notes=booking.notes,
        notification_preferences=dict(booking.notification_preferences or {}),
        start_time=booking.slot.start_time,
        end_time=booking.slot.end_time,
        confirmed_at=booking.confirmed_at,
        cancelled_at=booking.cancelled_at,
        cancellation_reason=booking.cancellation_reason,
        cancellation_requested_at=booking.cancellation_requested_at,
        external_event_id=booking.external_event_id,
        created_at=booking.created_at,
    )


def _slot_unavailable(exc: SlotNotAvailable) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail=SlotUnavailableResponse(detail=str(exc), slot_id=exc.slot_id).model_dump(
            mode="json"
        ),
    )


def _require_owner_access(actor: CurrentActor, booking: Booking) -> None:
    if not can_publish_availability(actor, booking.slot.owner):
        raise HTTPException(status_code=403, detail="Not allowed to manage this booking")


@router.post(
    "",
    response_model=BookingRead,
    status_code=201,
    responses={409: {"model": SlotUnavailableResponse}},
)
@limiter.limit(settings.RATE_LIMIT_BOOKING)
async def claim_slot(
    request: Request,
    data: BookingCreate,
    db: Session = Depends(get_db),
    client: CalendarProviderClient = Depends(get_calendar_client),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """
    Claim a slot.

    The booking is committed before the calendar export runs; export
    failures are logged and never affect the booking.
    """
    try:
        booking = booking_service.book_slot(db, data, dispatcher=dispatcher)
    except SlotNotAvailable as e:
        raise _slot_unavailable(e)
    except SlotNotFound:
        raise HTTPException(status_code=404, detail="Slot not found")
    except BookingValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    await calendar_sync_service.export_booking_to_calendar(db, booking, client)
    return _booking_to_read(booking)


@router.get("/{booking_id}", response_model=BookingRead)
def get_booking(
    booking_id: UUID,
    actor: CurrentActor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    try:
        booking = booking_service.get_booking(db, booking_id)
    except BookingNotFound:
        raise HTTPException(status_code=404, detail="Booking not found")
    if booking.client_user_id != actor.user_id:
        _require_owner_access(actor, booking)
    return _booking_to_read(booking)


@router.post("/{booking_id}/cancel", response_model=BookingRead)
async def cancel_booking(
    booking_id: UUID,
    data: BookingCancel,
    actor: CurrentActor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    client: CalendarProviderClient = Depends(get_calendar_client),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """Cancel a booking; the slot reopens unless an external event still covers it."""
    try:
        booking = booking_service.get_booking(db, booking_id)
        if booking.client_user_id != actor.user_id:
            _require_owner_access(actor, booking)
        booking = booking_service.cancel_booking(
            db,
            booking_id,
            reason=data.reason,
            cancelled_by_user_id=actor.user_id,
            dispatcher=dispatcher,
        )
    except BookingNotFound:
        raise HTTPException(status_code=404, detail="Booking not found")
    except BookingValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    await calendar_sync_service.remove_booking_from_calendar(db, booking, client)
    return _booking_to_read(booking)


@router.patch("/{booking_id}/status", response_model=BookingRead)
def update_booking_status(
    booking_id: UUID,
    data: BookingStatusUpdate,
    actor: CurrentActor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """Confirm, complete or mark a booking as no-show (owner side)."""
    try:
        booking = booking_service.get_booking(db, booking_id)
        _require_owner_access(actor, booking)
        if data.status == BookingStatus.CANCELLED:
            booking = booking_service.cancel_booking(
                db, booking_id, cancelled_by_user_id=actor.user_id, dispatcher=dispatcher
            )
        else:
            booking = booking_service.transition_booking(db, booking_id, data.status)
    except BookingNotFound:
        raise HTTPException(status_code=404, detail="Booking not found")
    except BookingValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _booking_to_read(booking)
