"""SQLAlchemy ORM models."""

from medbook.db.models.calendar import (
    CalendarEvent,
    CalendarIntegration,
    CalendarSyncOperation,
)
from medbook.db.models.scheduling import (
    AvailabilityWindow,
    Booking,
    OfferedService,
    Slot,
)

__all__ = [
    "AvailabilityWindow",
    "Booking",
    "CalendarEvent",
    "CalendarIntegration",
    "CalendarSyncOperation",
    "OfferedService",
    "Slot",
]
