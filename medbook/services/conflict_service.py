"""
Conflict service - detects and resolves scheduling inconsistencies.

Handles:
- EVENT_OVERLAPS_BOOKING: flagged calendar events overlapping booked slots
- DOUBLE_BOOKING: overlapping active bookings of one owner (sweep line)
- SLOT_STATE_MISMATCH: slot status disagreeing with booking existence
- DETACHED_BOOKING: bookings whose window occurrence was edited away
- Auto-resolution (slot state mismatches only) and manual resolution
- Dashboard summary

Conflicts are derived on every scan rather than stored; ids are stable
strings built from the rows involved.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, TypedDict

from sqlalchemy import select
from sqlalchemy.orm import Session

from medbook.core.structured_logging import build_log_context
from medbook.db.enums import (
    BookingStatus,
    ConflictResolution,
    ConflictSeverity,
    ConflictType,
    SlotStatus,
)
from medbook.db.models import Booking, CalendarEvent, CalendarIntegration, Slot
from medbook.services import booking_service
from medbook.services.errors import ConflictNotAutoResolvable, ConflictNotFound
from medbook.services.slot_blocking_service import unblock_slots_from_event
from medbook.services.slot_state_service import (
    compare_and_set,
    has_active_booking_clause,
    lock_slot,
    release_slot,
)
from medbook.types import OwnerRef

logger = logging.getLogger(__name__)

SEVERITY_RANK = {
    ConflictSeverity.CRITICAL: 0,
    ConflictSeverity.HIGH: 1,
    ConflictSeverity.MEDIUM: 2,
    ConflictSeverity.LOW: 3,
}

SUGGESTED_RESOLUTIONS = {
    ConflictType.EVENT_OVERLAPS_BOOKING: (
        "Keep the booking and stop the event blocking availability, "
        "or keep the event and cancel the booking"
    ),
    ConflictType.DOUBLE_BOOKING: "Cancel or move one of the overlapping bookings",
    ConflictType.DETACHED_BOOKING: "Contact the client to confirm or reschedule",
}


@dataclass(frozen=True)
class ConflictRecord:
    id: str
    conflict_type: ConflictType
    severity: ConflictSeverity
    description: str
    detected_at: datetime
    auto_resolvable: bool
    suggested_resolution: str
    slot_ids: tuple[uuid.UUID, ...] = ()
    booking_ids: tuple[uuid.UUID, ...] = ()
    event_id: uuid.UUID | None = None


class ResolutionResult(NamedTuple):
    success: bool
    message: str


class ConflictSummary(TypedDict):
    total: int
    by_type: dict[str, int]
    by_severity: dict[str, int]
    auto_resolvable: int
    oldest_detected_at: datetime | None


def determine_severity(
    booking_status: str,
    event_start: datetime,
    event_end: datetime,
    now: datetime,
) -> ConflictSeverity:
    """Severity of an event/booking overlap."""
    if booking_status == BookingStatus.CANCELLED.value:
        return ConflictSeverity.LOW
    if booking_status == BookingStatus.PENDING.value:
        return ConflictSeverity.MEDIUM
    if event_end < now:
        return ConflictSeverity.LOW
    until_start = event_start - now
    if until_start <= timedelta(hours=24):
        return ConflictSeverity.CRITICAL
    if until_start <= timedelta(days=7):
        return ConflictSeverity.HIGH
    return ConflictSeverity.MEDIUM


# =============================================================================
# Detection
# =============================================================================

def _event_booking_conflicts(db: Session, owner: OwnerRef, now: datetime) -> list[ConflictRecord]:
    rows = db.execute(
        select(CalendarEvent, Slot, Booking)
        .join(CalendarIntegration, CalendarEvent.calendar_integration_id == CalendarIntegration.id)
        .join(
            Slot,
            (Slot.start_time < CalendarEvent.end_time)
            & (Slot.end_time > CalendarEvent.start_time),
        )
        .join(Booking, Booking.slot_id == Slot.id)
        .where(
            CalendarIntegration.owned_by(owner),
            Slot.owned_by(owner),
            CalendarEvent.has_conflict.is_(True),
            CalendarEvent.end_time >= now,
        )
        .order_by(CalendarEvent.start_time, Booking.id)
    ).all()

    records = []
    for event, slot, booking in rows:
        records.append(
            ConflictRecord(
                id=f"event-booking:{event.id}:{booking.id}",
                conflict_type=ConflictType.EVENT_OVERLAPS_BOOKING,
                severity=determine_severity(
                    booking.status, event.start_time, event.end_time, now
                ),
                description=(
                    f"Calendar event '{event.title}' overlaps a {booking.status} appointment "
                    f"at {slot.start_time.isoformat()}"
                ),
                detected_at=event.updated_at,
                auto_resolvable=False,
                suggested_resolution=SUGGESTED_RESOLUTIONS[ConflictType.EVENT_OVERLAPS_BOOKING],
                slot_ids=(slot.id,),
                booking_ids=(booking.id,),
                event_id=event.id,
            )
        )
    return records


def _double_booking_conflicts(db: Session, owner: OwnerRef, now: datetime) -> list[ConflictRecord]:
    rows = db.execute(
        select(Slot, Booking)
        .join(Booking, Booking.slot_id == Slot.id)
        .where(
            Slot.owned_by(owner),
            Slot.end_time > now,
            Booking.status != BookingStatus.CANCELLED.value,
        )
        .order_by(Slot.start_time, Slot.end_time, Booking.id)
    ).all()

    records = []
    seen: set[tuple[str, str]] = set()
    active: list[tuple[Slot, Booking]] = []
    for slot, booking in rows:
        active = [(s, b) for s, b in active if s.end_time > slot.start_time]
        for other_slot, other_booking in active:
            if other_booking.id == booking.id:
                continue
            a, b = sorted((str(other_booking.id), str(booking.id)))
            if (a, b) in seen:
                continue
            seen.add((a, b))
            records.append(
                ConflictRecord(
                    id=f"double-booking:{a}:{b}",
                    conflict_type=ConflictType.DOUBLE_BOOKING,
                    severity=ConflictSeverity.CRITICAL,
                    description=(
                        f"Two bookings overlap at {slot.start_time.isoformat()}"
                    ),
                    detected_at=max(other_booking.created_at, booking.created_at),
                    auto_resolvable=False,
                    suggested_resolution=SUGGESTED_RESOLUTIONS[ConflictType.DOUBLE_BOOKING],
                    slot_ids=(other_slot.id, slot.id),
                    booking_ids=(other_booking.id, booking.id),
                )
            )
        active.append((slot, booking))
    return records


def _slot_state_conflicts(db: Session, owner: OwnerRef) -> list[ConflictRecord]:
    records = []

    unmarked = db.execute(
        select(Slot).where(
            Slot.owned_by(owner),
            Slot.status.in_([SlotStatus.AVAILABLE.value, SlotStatus.BLOCKED.value]),
            has_active_booking_clause(),
        )
    ).scalars().all()
    for slot in unmarked:
        records.append(
            ConflictRecord(
                id=f"slot-state:{slot.id}",
                conflict_type=ConflictType.SLOT_STATE_MISMATCH,
                severity=ConflictSeverity.HIGH,
                description=f"Slot is marked {slot.status} but has an active booking",
                detected_at=slot.updated_at,
                auto_resolvable=True,
                suggested_resolution="Mark slot as booked",
                slot_ids=(slot.id,),
            )
        )

    orphaned = db.execute(
        select(Slot).where(
            Slot.owned_by(owner),
            Slot.status == SlotStatus.BOOKED.value,
            ~has_active_booking_clause(),
        )
    ).scalars().all()
    for slot in orphaned:
        records.append(
            ConflictRecord(
                id=f"slot-state:{slot.id}",
                conflict_type=ConflictType.SLOT_STATE_MISMATCH,
                severity=ConflictSeverity.MEDIUM,
                description="Slot is marked booked but has no active booking",
                detected_at=slot.updated_at,
                auto_resolvable=True,
                suggested_resolution="Mark slot as available",
                slot_ids=(slot.id,),
            )
        )
    return records


def _detached_booking_conflicts(db: Session, owner: OwnerRef, now: datetime) -> list[ConflictRecord]:
    rows = db.execute(
        select(Slot, Booking)
        .join(Booking, Booking.slot_id == Slot.id)
        .where(
            Slot.owned_by(owner),
            Slot.detached_at.is_not(None),
            Slot.end_time >= now,
            Booking.status != BookingStatus.CANCELLED.value,
        )
        .order_by(Slot.start_time)
    ).all()
    return [
        ConflictRecord(
            id=f"detached-booking:{booking.id}",
            conflict_type=ConflictType.DETACHED_BOOKING,
            severity=ConflictSeverity.HIGH,
            description=(
                f"Availability for the booking at {slot.start_time.isoformat()} "
                "was changed or removed"
            ),
            detected_at=slot.detached_at,
            auto_resolvable=False,
            suggested_resolution=SUGGESTED_RESOLUTIONS[ConflictType.DETACHED_BOOKING],
            slot_ids=(slot.id,),
            booking_ids=(booking.id,),
        )
        for slot, booking in rows
    ]


def detect_conflicts(
    db: Session, owner: OwnerRef, *, now: datetime | None = None
) -> list[ConflictRecord]:
    """Union of all conflict scans for ``owner``, most severe first."""
    now = now or datetime.now(timezone.utc)
    records = (
        _event_booking_conflicts(db, owner, now)
        + _double_booking_conflicts(db, owner, now)
        + _slot_state_conflicts(db, owner)
        + _detached_booking_conflicts(db, owner, now)
    )
    records.sort(key=lambda r: (SEVERITY_RANK[r.severity], r.detected_at, r.id))
    return records


def get_conflict_summary(
    db: Session, owner: OwnerRef, *, now: datetime | None = None
) -> ConflictSummary:
    records = detect_conflicts(db, owner, now=now)
    by_type = {t.value: 0 for t in ConflictType}
    by_severity = {s.value: 0 for s in ConflictSeverity}
    for record in records:
        by_type[record.conflict_type.value] += 1
        by_severity[record.severity.value] += 1
    return {
        "total": len(records),
        "by_type": by_type,
        "by_severity": by_severity,
        "auto_resolvable": sum(1 for r in records if r.auto_resolvable),
        "oldest_detected_at": min((r.detected_at for r in records), default=None),
    }


# =============================================================================
# Resolution
# =============================================================================

def _parse_ids(conflict_id: str, expected_parts: int) -> list[uuid.UUID]:
    parts = conflict_id.split(":")[1:]
    if len(parts) != expected_parts:
        raise ConflictNotFound(f"Malformed conflict id {conflict_id}")
    try:
        return [uuid.UUID(part) for part in parts]
    except ValueError:
        raise ConflictNotFound(f"Malformed conflict id {conflict_id}") from None


def auto_resolve_conflict(
    db: Session, conflict_id: str, *, now: datetime | None = None
) -> ResolutionResult:
    """
    Correct a slot state mismatch.

    Only ``slot-state:`` ids are auto-resolvable; anything else raises
    ConflictNotAutoResolvable.
    """
    now = now or datetime.now(timezone.utc)
    if not conflict_id.startswith("slot-state:"):
        raise ConflictNotAutoResolvable(conflict_id)
    (slot_id,) = _parse_ids(conflict_id, 1)

    try:
        slot = lock_slot(db, slot_id)
        has_booking = slot.active_booking is not None
        status = SlotStatus(slot.status)

        if has_booking and status in (SlotStatus.AVAILABLE, SlotStatus.BLOCKED):
            ok = compare_and_set(
                db,
                slot.id,
                [status],
                criteria=[has_active_booking_clause()],
                status=SlotStatus.BOOKED.value,
                blocked_by_event_id=None,
                last_calculated=now,
            )
            target = SlotStatus.BOOKED
        elif not has_booking and status == SlotStatus.BOOKED:
            target = release_slot(db, slot, now)
            ok = True
        else:
            db.rollback()
            return ResolutionResult(False, "Slot state is already consistent")

        if not ok:
            db.rollback()
            return ResolutionResult(False, "Slot changed during resolution")
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Slot state mismatch resolved slot=%s from=%s to=%s",
        slot_id, status.value, target.value,
        extra=build_log_context(slot_id=slot_id),
    )
    return ResolutionResult(True, f"Slot status changed from {status.value} to {target.value}")


def resolve_conflict(
    db: Session,
    conflict_id: str,
    resolution: ConflictResolution,
    *,
    now: datetime | None = None,
) -> ResolutionResult:
    """
    Apply a manual decision to an event/booking overlap.

    KEEP_BOOKING_REMOVE_EVENT stops the event blocking availability and
    marks the conflict resolved. KEEP_EVENT_CANCEL_BOOKING flags the booking
    for cancellation by the owner.
    """
    now = now or datetime.now(timezone.utc)
    if not conflict_id.startswith("event-booking:"):
        return ResolutionResult(
            False, "Only event/booking overlaps support manual resolution"
        )
    event_id, booking_id = _parse_ids(conflict_id, 2)

    event = db.get(CalendarEvent, event_id)
    booking = db.get(Booking, booking_id)
    if event is None or booking is None:
        raise ConflictNotFound(f"Conflict {conflict_id} not found")

    owner = event.integration.owner
    log_context = build_log_context(owner=owner, event_id=event.id, booking_id=booking.id)

    if resolution == ConflictResolution.KEEP_BOOKING_REMOVE_EVENT:
        event.blocks_availability = False
        event.has_conflict = False
        event.conflict_details = None
        event.conflict_resolved_at = now
        released = unblock_slots_from_event(db, event.id, owner, now=now)
        db.commit()
        logger.info(
            "Conflict resolved keeping booking event=%s booking=%s released=%s",
            event.id, booking.id, released,
            extra=log_context,
        )
        return ResolutionResult(True, "Event no longer blocks availability; booking kept")

    if resolution == ConflictResolution.KEEP_EVENT_CANCEL_BOOKING:
        if booking.status not in booking_service.CANCELLABLE_STATUSES:
            return ResolutionResult(
                False, f"Booking is already {booking.status}; nothing to cancel"
            )
        booking_service.request_cancellation(db, booking.id, now=now, commit=False)
        event.conflict_details = "Booking flagged for cancellation"
        db.commit()
        logger.info(
            "Conflict resolved keeping event event=%s booking=%s",
            event.id, booking.id,
            extra=log_context,
        )
        return ResolutionResult(True, "Booking flagged for cancellation")

    return ResolutionResult(False, f"Unsupported resolution {resolution.value}")
