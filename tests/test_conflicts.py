"""
Tests for Conflict Service.

Coverage:
- Severity rules for event/booking overlaps
- Detection of each conflict type, alone and together
- Auto-resolution of slot state mismatches
- Manual resolution of event/booking overlaps
- Summary counts
"""

import uuid
from datetime import timedelta

import pytest

from conftest import MONDAY, NOW, allow_all, at, window_slots
from medbook.db.enums import (
    BookingStatus,
    ConflictResolution,
    ConflictSeverity,
    ConflictType,
    SlotStatus,
)
from medbook.db.models import Booking
from medbook.schemas.booking import BookingCreate
from medbook.services import availability_service, booking_service, conflict_service
from medbook.services.errors import ConflictNotAutoResolvable, ConflictNotFound
from medbook.services.slot_blocking_service import block_slots_from_event
from medbook.services.slot_state_service import compare_and_set


def _book(db, slot):
    return booking_service.book_slot(
        db,
        BookingCreate(slot_id=slot.id, client={"kind": "registered", "user_id": str(uuid.uuid4())}),
        now=NOW,
    )


def _raw_booking(db, slot):
    """Insert a booking without touching slot state."""
    booking = Booking(
        slot_id=slot.id,
        client_user_id=uuid.uuid4(),
        status=BookingStatus.CONFIRMED.value,
        notification_preferences={},
    )
    db.add(booking)
    db.commit()
    return booking


@pytest.fixture
def overlap(db, slots, make_event, provider_owner):
    """Booked 10:00 slot under an external event spanning 09:30-10:30."""
    booking = _book(db, slots[1])
    event = make_event(at(MONDAY, 9, 30), at(MONDAY, 10, 30))
    block_slots_from_event(db, event, provider_owner, now=NOW)
    db.commit()
    return event, booking


# =============================================================================
# Severity
# =============================================================================

@pytest.mark.parametrize(
    "status,starts_in,expected",
    [
        (BookingStatus.CANCELLED.value, timedelta(hours=1), ConflictSeverity.LOW),
        (BookingStatus.PENDING.value, timedelta(hours=1), ConflictSeverity.MEDIUM),
        (BookingStatus.CONFIRMED.value, timedelta(hours=-3), ConflictSeverity.LOW),
        (BookingStatus.CONFIRMED.value, timedelta(hours=12), ConflictSeverity.CRITICAL),
        (BookingStatus.CONFIRMED.value, timedelta(days=3), ConflictSeverity.HIGH),
        (BookingStatus.CONFIRMED.value, timedelta(days=30), ConflictSeverity.MEDIUM),
    ],
)
def test_determine_severity(status, starts_in, expected):
    start = NOW + starts_in
    severity = conflict_service.determine_severity(status, start, start + timedelta(hours=1), NOW)
    assert severity == expected


# =============================================================================
# Detection
# =============================================================================

def test_event_overlapping_booking_is_detected(db, overlap, provider_owner):
    event, booking = overlap

    (record,) = conflict_service.detect_conflicts(db, provider_owner, now=NOW)

    assert record.id == f"event-booking:{event.id}:{booking.id}"
    assert record.conflict_type == ConflictType.EVENT_OVERLAPS_BOOKING
    assert record.severity == ConflictSeverity.HIGH
    assert record.event_id == event.id
    assert record.booking_ids == (booking.id,)
    assert record.auto_resolvable is False


def test_consistent_schedule_has_no_conflicts(db, slots, provider_owner):
    _book(db, slots[0])
    assert conflict_service.detect_conflicts(db, provider_owner, now=NOW) == []


def test_available_slot_with_booking_is_mismatch(db, slots, provider_owner):
    _raw_booking(db, slots[0])

    (record,) = conflict_service.detect_conflicts(db, provider_owner, now=NOW)

    assert record.id == f"slot-state:{slots[0].id}"
    assert record.severity == ConflictSeverity.HIGH
    assert record.auto_resolvable is True


def test_booked_slot_without_booking_is_mismatch(db, slots, provider_owner):
    compare_and_set(db, slots[0].id, [SlotStatus.AVAILABLE], status=SlotStatus.BOOKED.value)
    db.commit()

    (record,) = conflict_service.detect_conflicts(db, provider_owner, now=NOW)

    assert record.conflict_type == ConflictType.SLOT_STATE_MISMATCH
    assert record.severity == ConflictSeverity.MEDIUM


def test_overlapping_bookings_are_double_booking(db, make_window, provider_owner):
    change = make_window(
        services=[
            {"service_id": str(uuid.uuid4()), "duration_minutes": 60},
            {"service_id": str(uuid.uuid4()), "duration_minutes": 30},
        ]
    )
    hour, half = sorted(
        (s for s in window_slots(db, change.window.id) if s.start_time == at(MONDAY, 9)),
        key=lambda s: s.duration_minutes,
        reverse=True,
    )
    first = _book(db, hour)
    compare_and_set(db, half.id, [SlotStatus.AVAILABLE], status=SlotStatus.BOOKED.value)
    second = _raw_booking(db, half)

    records = conflict_service.detect_conflicts(db, provider_owner, now=NOW)

    assert [r.conflict_type for r in records] == [ConflictType.DOUBLE_BOOKING]
    a, b = sorted((str(first.id), str(second.id)))
    assert records[0].id == f"double-booking:{a}:{b}"
    assert records[0].severity == ConflictSeverity.CRITICAL


def test_detached_booking_is_detected(db, window, slots, provider_owner):
    booking = _book(db, slots[0])
    availability_service.delete_window(db, window.id, can_publish=allow_all, now=NOW)

    (record,) = conflict_service.detect_conflicts(db, provider_owner, now=NOW)

    assert record.id == f"detached-booking:{booking.id}"
    assert record.conflict_type == ConflictType.DETACHED_BOOKING
    assert record.severity == ConflictSeverity.HIGH


def test_conflicts_are_scoped_to_owner(db, overlap, org_owner):
    assert conflict_service.detect_conflicts(db, org_owner, now=NOW) == []


def test_cancelled_booking_under_event_is_low(db, slots, overlap, provider_owner):
    event, booking = overlap
    booking_service.cancel_booking(db, booking.id, reason="Patient moved", now=NOW)

    (record,) = conflict_service.detect_conflicts(db, provider_owner, now=NOW)

    assert record.id == f"event-booking:{event.id}:{booking.id}"
    assert record.severity == ConflictSeverity.LOW
    db.refresh(slots[1])
    assert slots[1].status == SlotStatus.BLOCKED.value


def test_one_record_per_conflict_case(db, slots, overlap, make_window, provider_owner):
    tuesday = MONDAY + timedelta(days=1)
    wednesday = MONDAY + timedelta(days=2)
    event, overlapped = overlap

    _raw_booking(db, slots[2])

    paired = make_window(
        at(tuesday, 9),
        at(tuesday, 12),
        services=[
            {"service_id": str(uuid.uuid4()), "duration_minutes": 60},
            {"service_id": str(uuid.uuid4()), "duration_minutes": 30},
        ],
    ).window
    hour, half = sorted(
        (s for s in window_slots(db, paired.id) if s.start_time == at(tuesday, 9)),
        key=lambda s: s.duration_minutes,
        reverse=True,
    )
    first = _book(db, hour)
    compare_and_set(db, half.id, [SlotStatus.AVAILABLE], status=SlotStatus.BOOKED.value)
    second = _raw_booking(db, half)

    dropped = make_window(at(wednesday, 9), at(wednesday, 10)).window
    (dropped_slot,) = window_slots(db, dropped.id)
    detached = _book(db, dropped_slot)
    availability_service.delete_window(db, dropped.id, can_publish=allow_all, now=NOW)

    records = conflict_service.detect_conflicts(db, provider_owner, now=NOW)

    a, b = sorted((str(first.id), str(second.id)))
    assert sorted(r.id for r in records) == sorted(
        [
            f"event-booking:{event.id}:{overlapped.id}",
            f"double-booking:{a}:{b}",
            f"slot-state:{slots[2].id}",
            f"detached-booking:{detached.id}",
        ]
    )
    assert {r.conflict_type for r in records} == set(ConflictType)


def test_conflict_summary(db, overlap, provider_owner):
    summary = conflict_service.get_conflict_summary(db, provider_owner, now=NOW)

    assert summary["total"] == 1
    assert summary["by_type"][ConflictType.EVENT_OVERLAPS_BOOKING.value] == 1
    assert summary["by_type"][ConflictType.DOUBLE_BOOKING.value] == 0
    assert summary["by_severity"][ConflictSeverity.HIGH.value] == 1
    assert summary["auto_resolvable"] == 0
    assert summary["oldest_detected_at"] is not None


# =============================================================================
# Auto-resolution
# =============================================================================

def test_auto_resolve_marks_slot_booked(db, slots, provider_owner):
    _raw_booking(db, slots[0])
    conflict_id = f"slot-state:{slots[0].id}"

    result = conflict_service.auto_resolve_conflict(db, conflict_id, now=NOW)

    assert result.success is True
    assert result.message == "Slot status changed from available to booked"
    db.refresh(slots[0])
    assert slots[0].status == SlotStatus.BOOKED.value

    again = conflict_service.auto_resolve_conflict(db, conflict_id, now=NOW)
    assert again.success is False
    assert again.message == "Slot state is already consistent"


def test_auto_resolve_releases_orphaned_slot(db, slots):
    compare_and_set(db, slots[0].id, [SlotStatus.AVAILABLE], status=SlotStatus.BOOKED.value)
    db.commit()

    result = conflict_service.auto_resolve_conflict(db, f"slot-state:{slots[0].id}", now=NOW)

    assert result.success is True
    db.refresh(slots[0])
    assert slots[0].status == SlotStatus.AVAILABLE.value


def test_auto_resolve_refuses_other_types(db, overlap):
    event, booking = overlap
    with pytest.raises(ConflictNotAutoResolvable):
        conflict_service.auto_resolve_conflict(db, f"event-booking:{event.id}:{booking.id}")


def test_auto_resolve_malformed_id(db):
    with pytest.raises(ConflictNotFound):
        conflict_service.auto_resolve_conflict(db, "slot-state:not-a-uuid")


# =============================================================================
# Manual resolution
# =============================================================================

def test_keep_booking_stops_event_blocking(db, slots, overlap, provider_owner):
    event, booking = overlap

    result = conflict_service.resolve_conflict(
        db,
        f"event-booking:{event.id}:{booking.id}",
        ConflictResolution.KEEP_BOOKING_REMOVE_EVENT,
        now=NOW,
    )

    assert result.success is True
    db.refresh(event)
    db.refresh(slots[0])
    assert event.blocks_availability is False
    assert event.conflict_resolved_at == NOW
    assert slots[0].status == SlotStatus.AVAILABLE.value
    assert conflict_service.detect_conflicts(db, provider_owner, now=NOW) == []


def test_keep_event_flags_booking(db, overlap):
    event, booking = overlap

    result = conflict_service.resolve_conflict(
        db,
        f"event-booking:{event.id}:{booking.id}",
        ConflictResolution.KEEP_EVENT_CANCEL_BOOKING,
        now=NOW,
    )

    assert result.success is True
    db.refresh(booking)
    db.refresh(event)
    assert booking.cancellation_requested_at == NOW
    assert booking.status == BookingStatus.CONFIRMED.value
    assert event.conflict_details == "Booking flagged for cancellation"


def test_manual_review_is_not_applied(db, overlap):
    event, booking = overlap
    result = conflict_service.resolve_conflict(
        db, f"event-booking:{event.id}:{booking.id}", ConflictResolution.MANUAL_REVIEW, now=NOW
    )
    assert result.success is False


def test_manual_resolution_only_for_event_overlaps(db):
    result = conflict_service.resolve_conflict(
        db,
        f"double-booking:{uuid.uuid4()}:{uuid.uuid4()}",
        ConflictResolution.KEEP_BOOKING_REMOVE_EVENT,
    )
    assert result.success is False


def test_manual_resolution_unknown_rows(db):
    with pytest.raises(ConflictNotFound):
        conflict_service.resolve_conflict(
            db,
            f"event-booking:{uuid.uuid4()}:{uuid.uuid4()}",
            ConflictResolution.KEEP_BOOKING_REMOVE_EVENT,
        )


def test_keep_event_for_cancelled_booking_is_not_applied(db, overlap):
    event, booking = overlap
    booking_service.cancel_booking(db, booking.id, now=NOW)

    result = conflict_service.resolve_conflict(
        db,
        f"event-booking:{event.id}:{booking.id}",
        ConflictResolution.KEEP_EVENT_CANCEL_BOOKING,
        now=NOW,
    )

    assert result.success is False
    db.refresh(booking)
    assert booking.cancellation_requested_at is None
