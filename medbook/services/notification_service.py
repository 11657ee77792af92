"""
Notification Service - emits scheduling events to delivery collaborators.

Handlers (email/SMS/WhatsApp delivery, webhooks, calendar export) subscribe
per event type. Dispatch happens after the originating transaction commits;
a failing handler is logged and never propagates back into the booking or
sync flow.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, TypeAlias

from medbook.core.structured_logging import build_log_context
from medbook.types import OwnerRef

logger = logging.getLogger(__name__)


# =============================================================================
# Events
# =============================================================================

@dataclass(frozen=True)
class BookingCreated:
    booking_id: uuid.UUID
    slot_id: uuid.UUID
    owner: OwnerRef
    start_time: datetime
    end_time: datetime
    status: str
    notification_preferences: dict = field(default_factory=dict)


@dataclass(frozen=True)
class BookingCancelled:
    booking_id: uuid.UUID
    slot_id: uuid.UUID
    owner: OwnerRef
    slot_status: str
    reason: str | None = None


@dataclass(frozen=True)
class SlotBlocked:
    event_id: uuid.UUID
    owner: OwnerRef
    slot_ids: tuple[uuid.UUID, ...]


@dataclass(frozen=True)
class ConflictDetected:
    event_id: uuid.UUID
    owner: OwnerRef
    booking_ids: tuple[uuid.UUID, ...]
    details: str


SchedulingNotification: TypeAlias = (
    BookingCreated | BookingCancelled | SlotBlocked | ConflictDetected
)
Handler: TypeAlias = Callable[[SchedulingNotification], None]


# =============================================================================
# Dispatcher
# =============================================================================

class NotificationDispatcher:
    """Fan-out of scheduling events to subscribed handlers."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: type, handler: Handler) -> None:
        if handler in self._handlers[event_type]:
            self._handlers[event_type].remove(handler)

    def dispatch(self, event: SchedulingNotification) -> int:
        """
        Deliver ``event`` to every handler.

        Returns the number of handlers that failed. Failures are logged with
        identifiers only.
        """
        failed = 0
        for handler in list(self._handlers[type(event)]):
            try:
                handler(event)
            except Exception:
                failed += 1
                logger.exception(
                    "Notification handler failed event=%s handler=%s",
                    type(event).__name__,
                    getattr(handler, "__name__", repr(handler)),
                    extra=build_log_context(owner=getattr(event, "owner", None)),
                )
        return failed


_default_dispatcher = NotificationDispatcher()


def get_dispatcher() -> NotificationDispatcher:
    """Process-wide dispatcher; hosts register delivery handlers on it at startup."""
    return _default_dispatcher


def dispatch(
    event: SchedulingNotification, dispatcher: NotificationDispatcher | None = None
) -> int:
    return (dispatcher or get_dispatcher()).dispatch(event)
