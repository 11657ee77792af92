"""Availability router - windows, scoped edits, expansion and bookable slots."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from medbook.core.deps import get_db, get_owner_ref, get_publish_policy
from medbook.db.models import AvailabilityWindow, Slot
from medbook.schemas.availability import (
    AvailabilityWindowCreate,
    AvailabilityWindowRead,
    AvailabilityWindowUpdate,
    ExpandRequest,
    MaterializeResultRead,
    OfferedServiceRead,
    SlotRead,
    WindowChangeRead,
)
from medbook.services import availability_service
from medbook.services.availability_service import PublishPredicate, WindowChange
from medbook.services.errors import PublishNotAllowed, WindowInvalid, WindowNotFound
from medbook.types import OwnerRef

router = APIRouter()
slots_router = APIRouter()


# =============================================================================
# Helper Functions
# =============================================================================

def _window_to_read(window: AvailabilityWindow) -> AvailabilityWindowRead:
    """Convert AvailabilityWindow model to read schema."""
    return AvailabilityWindowRead(
        id=window.id,
        owner_type=window.owner_type,
        provider_id=window.provider_id,
        organization_id=window.organization_id,
        location_id=window.location_id,
        start_time=window.start_time,
        end_time=window.end_time,
        recurrence_kind=window.recurrence_kind,
        recurrence_days=window.recurrence_days,
        recurrence_until=window.recurrence_until,
        excluded_dates=list(window.excluded_dates or []),
        series_id=window.series_id,
        scheduling_granularity=window.scheduling_granularity,
        requires_confirmation=window.requires_confirmation,
        is_online_available=window.is_online_available,
        is_in_person_available=window.is_in_person_available,
        services=[
            OfferedServiceRead(
                id=s.id,
                service_id=s.service_id,
                duration_minutes=s.duration_minutes,
                price=s.price,
                is_online_available=s.is_online_available,
                is_in_person_available=s.is_in_person_available,
            )
            for s in window.active_services
        ],
        created_at=window.created_at,
        updated_at=window.updated_at,
    )


def _change_to_read(change: WindowChange) -> WindowChangeRead:
    return WindowChangeRead(
        window=_window_to_read(change.window) if change.window else None,
        created_windows=list(change.created_windows),
        slots_created=change.slots_created,
        slots_invalidated=change.slots_invalidated,
        bookings_detached=change.bookings_detached,
    )


def _slot_to_read(slot: Slot) -> SlotRead:
    return SlotRead(
        id=slot.id,
        availability_window_id=slot.availability_window_id,
        service_id=slot.service_id,
        service_config_id=slot.service_config_id,
        occurrence_date=slot.occurrence_date,
        start_time=slot.start_time,
        end_time=slot.end_time,
        status=slot.status,
        blocked_by_event_id=slot.blocked_by_event_id,
    )


def _invalid(exc: WindowInvalid) -> HTTPException:
    return HTTPException(status_code=422, detail={"code": "window_invalid", "errors": exc.errors})


# =============================================================================
# Windows
# =============================================================================

@router.get("", response_model=list[AvailabilityWindowRead])
def list_windows(
    owner: OwnerRef = Depends(get_owner_ref),
    db: Session = Depends(get_db),
):
    """List live availability windows of an owner."""
    return [_window_to_read(w) for w in availability_service.list_windows(db, owner)]


@router.post("", response_model=WindowChangeRead, status_code=201)
def create_window(
    data: AvailabilityWindowCreate,
    can_publish: PublishPredicate = Depends(get_publish_policy),
    db: Session = Depends(get_db),
):
    """Create a window and materialize its slots up to the horizon."""
    try:
        change = availability_service.create_window(db, data, can_publish=can_publish)
    except PublishNotAllowed as e:
        raise HTTPException(status_code=403, detail=str(e))
    except WindowInvalid as e:
        raise _invalid(e)
    return _change_to_read(change)


@router.get("/{window_id}", response_model=AvailabilityWindowRead)
def get_window(window_id: UUID, db: Session = Depends(get_db)):
    try:
        return _window_to_read(availability_service.get_window(db, window_id))
    except WindowNotFound:
        raise HTTPException(status_code=404, detail="Availability window not found")


@router.patch("/{window_id}", response_model=WindowChangeRead)
def update_window(
    window_id: UUID,
    data: AvailabilityWindowUpdate,
    can_publish: PublishPredicate = Depends(get_publish_policy),
    db: Session = Depends(get_db),
):
    """
    Edit a window.

    ``scope`` selects this occurrence, this and future occurrences, or the
    whole series. Booked slots are kept and reported as detached.
    """
    try:
        change = availability_service.update_window(
            db, window_id, data, can_publish=can_publish
        )
    except WindowNotFound:
        raise HTTPException(status_code=404, detail="Availability window not found")
    except PublishNotAllowed as e:
        raise HTTPException(status_code=403, detail=str(e))
    except WindowInvalid as e:
        raise _invalid(e)
    return _change_to_read(change)


@router.delete("/{window_id}", response_model=WindowChangeRead)
def delete_window(
    window_id: UUID,
    can_publish: PublishPredicate = Depends(get_publish_policy),
    db: Session = Depends(get_db),
):
    try:
        change = availability_service.delete_window(db, window_id, can_publish=can_publish)
    except WindowNotFound:
        raise HTTPException(status_code=404, detail="Availability window not found")
    except PublishNotAllowed as e:
        raise HTTPException(status_code=403, detail=str(e))
    return _change_to_read(change)


@router.post("/{window_id}/expand", response_model=MaterializeResultRead)
def expand_window(
    window_id: UUID,
    data: ExpandRequest,
    can_publish: PublishPredicate = Depends(get_publish_policy),
    db: Session = Depends(get_db),
):
    """Materialize slots for an explicit date range (idempotent)."""
    try:
        window = availability_service.get_window(db, window_id)
        if not can_publish(window.owner):
            raise HTTPException(status_code=403, detail="Not allowed to publish availability")
        result = availability_service.expand_window(
            db, window_id, data.date_start, data.date_end
        )
    except WindowNotFound:
        raise HTTPException(status_code=404, detail="Availability window not found")
    except WindowInvalid as e:
        raise _invalid(e)
    return MaterializeResultRead(**result._asdict())


# =============================================================================
# Slots
# =============================================================================

@slots_router.get("", response_model=list[SlotRead])
def list_available_slots(
    date_start: date,
    date_end: date,
    service_id: UUID | None = None,
    limit: int = Query(200, ge=1, le=1000),
    owner: OwnerRef = Depends(get_owner_ref),
    db: Session = Depends(get_db),
):
    """Bookable future slots of an owner in a date range."""
    if date_end < date_start:
        raise HTTPException(status_code=422, detail="date_end must not be before date_start")
    slots = availability_service.list_available_slots(
        db, owner, date_start, date_end, service_id=service_id, limit=limit
    )
    return [_slot_to_read(s) for s in slots]
