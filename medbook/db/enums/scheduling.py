"""Availability, slot and booking enums."""

from enum import Enum


class OwnerType(str, Enum):
    """Who publishes an availability window or owns a calendar."""

    PROVIDER = "provider"
    ORGANIZATION_LOCATION = "organization_location"


class RecurrenceKind(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"


class SchedulingGranularity(str, Enum):
    """
    How slot start times are aligned inside an occurrence.

    CONTINUOUS: back-to-back from the occurrence start
    FIXED_HOUR: starts on :00 only
    FIXED_HALF_HOUR: starts on :00 or :30
    """

    CONTINUOUS = "continuous"
    FIXED_HOUR = "fixed_hour"
    FIXED_HALF_HOUR = "fixed_half_hour"


class SlotStatus(str, Enum):
    """
    Materialized slot lifecycle.

    Flow: available → booked → available (cancel)
              ↕ blocked (external calendar event)
          any → invalid (window edited/deleted)
    """

    AVAILABLE = "available"
    BOOKED = "booked"
    BLOCKED = "blocked"
    INVALID = "invalid"


class BookingStatus(str, Enum):
    """
    Booking lifecycle status.

    Flow: pending → confirmed → completed
              ↘ cancelled
                          ↘ no_show
    """

    PENDING = "pending"  # Awaiting owner confirmation
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class EditScope(str, Enum):
    """Which occurrences of a recurring window an edit applies to."""

    THIS_OCCURRENCE = "this_occurrence"
    THIS_AND_FUTURE = "this_and_future"
    ALL = "all"


# Bookings in these states hold their slot
ACTIVE_BOOKING_STATUSES = (
    BookingStatus.PENDING,
    BookingStatus.CONFIRMED,
    BookingStatus.COMPLETED,
    BookingStatus.NO_SHOW,
)

DEFAULT_SLOT_STATUS = SlotStatus.AVAILABLE
