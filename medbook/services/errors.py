"""Error taxonomy for the scheduling core."""


class SchedulingError(Exception):
    """Base exception for scheduling errors."""

    pass


# =============================================================================
# Slots & bookings
# =============================================================================

class SlotNotFound(SchedulingError):
    """Slot does not exist."""

    pass


class SlotNotAvailable(SchedulingError):
    """
    Claim attempted on a slot that is not AVAILABLE.

    Recoverable: the caller should offer a different slot.
    """

    def __init__(self, slot_id, status: str | None = None):
        self.slot_id = slot_id
        self.status = status
        super().__init__("Selected slot is no longer available")


class InvalidSlotTransition(SchedulingError):
    """State machine rejected a slot transition."""

    def __init__(self, current: str, event: str):
        self.current = current
        self.event = event
        super().__init__(f"Cannot apply {event} to slot in state {current}")


class BookingNotFound(SchedulingError):
    """Booking does not exist."""

    pass


class BookingValidationError(SchedulingError):
    """Booking request is malformed (client info, status transition)."""

    pass


# =============================================================================
# Availability windows
# =============================================================================

class WindowInvalid(SchedulingError):
    """Availability window violates time or recurrence constraints."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class WindowNotFound(SchedulingError):
    """Availability window does not exist or was deleted."""

    pass


class PublishNotAllowed(SchedulingError):
    """Current actor may not publish availability for this owner."""

    pass


# =============================================================================
# External calendar
# =============================================================================

class CalendarProviderError(SchedulingError):
    """External calendar API call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class TokenRefreshFailed(CalendarProviderError):
    """Credentials expired or revoked; the integration must be reconnected."""

    pass


class SyncTokenInvalid(CalendarProviderError):
    """Incremental sync token rejected by the provider (HTTP 410)."""

    pass


class IntegrationNotFound(SchedulingError):
    """Calendar integration does not exist."""

    pass


class IntegrationSyncDisabled(SchedulingError):
    """Sync requested for an integration with sync disabled."""

    pass


# =============================================================================
# Conflicts
# =============================================================================

class ConflictNotFound(SchedulingError):
    """Conflict id is malformed or the conflict no longer exists."""

    pass


class ConflictNotAutoResolvable(SchedulingError):
    """Conflict type requires a manual decision."""

    def __init__(self, conflict_id: str):
        self.conflict_id = conflict_id
        super().__init__("Conflict is not auto-resolvable")
