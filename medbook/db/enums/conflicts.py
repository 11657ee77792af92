"""Conflict detection enums."""

from enum import Enum


class ConflictType(str, Enum):
    EVENT_OVERLAPS_BOOKING = "event_overlaps_booking"
    DOUBLE_BOOKING = "double_booking"
    SLOT_STATE_MISMATCH = "slot_state_mismatch"
    # Booked slot whose window occurrence was edited or deleted
    DETACHED_BOOKING = "detached_booking"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ConflictResolution(str, Enum):
    """Manual resolutions for an event/booking overlap."""

    KEEP_BOOKING_REMOVE_EVENT = "keep_booking_remove_event"
    KEEP_EVENT_CANCEL_BOOKING = "keep_event_cancel_booking"
    MANUAL_REVIEW = "manual_review"
