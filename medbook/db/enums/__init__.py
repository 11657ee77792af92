"""Enum definitions for application constants."""

from medbook.db.enums.calendar import (
    CalendarProvider,
    SyncErrorType,
    SyncMode,
    SyncOperationStatus,
)
from medbook.db.enums.conflicts import (
    ConflictResolution,
    ConflictSeverity,
    ConflictType,
)
from medbook.db.enums.scheduling import (
    ACTIVE_BOOKING_STATUSES,
    BookingStatus,
    DEFAULT_SLOT_STATUS,
    EditScope,
    OwnerType,
    RecurrenceKind,
    SchedulingGranularity,
    SlotStatus,
)

__all__ = [
    "ACTIVE_BOOKING_STATUSES",
    "BookingStatus",
    "CalendarProvider",
    "ConflictResolution",
    "ConflictSeverity",
    "ConflictType",
    "DEFAULT_SLOT_STATUS",
    "EditScope",
    "OwnerType",
    "RecurrenceKind",
    "SchedulingGranularity",
    "SlotStatus",
    "SyncErrorType",
    "SyncMode",
    "SyncOperationStatus",
]
