"""
Calendar sync service - reconciles external calendars with internal slots.

Handles:
- Access token refresh before use (5 minute buffer)
- FULL_SYNC (fixed window) and INCREMENTAL_SYNC (sync token) passes
- Upserting CalendarEvent mirrors and applying slot blocking per event
- Sync operation audit rows
- Scheduled batch sync with error categorisation, backoff and auto-disable
- Connecting / disconnecting integrations
- Exporting bookings to the owner's calendar (best effort)

Each fetched event is applied in its own transaction, so a pass interrupted
midway leaves consistent partial progress that the next pass resumes.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import TypedDict

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from medbook.core.config import settings
from medbook.core.structured_logging import build_log_context
from medbook.db.enums import SlotStatus, SyncErrorType, SyncMode, SyncOperationStatus
from medbook.db.models import (
    Booking,
    CalendarEvent,
    CalendarIntegration,
    CalendarSyncOperation,
    Slot,
)
from medbook.services import notification_service, slot_blocking_service
from medbook.services.calendar_provider import (
    CalendarProviderClient,
    EventPage,
    EventPayload,
    ExternalEvent,
    TokenGrant,
)
from medbook.services.errors import (
    CalendarProviderError,
    IntegrationNotFound,
    IntegrationSyncDisabled,
    SyncTokenInvalid,
    TokenRefreshFailed,
)
from medbook.types import OwnerRef, owner_columns

logger = logging.getLogger(__name__)


class SyncResult(TypedDict):
    mode: str
    imported: int
    removed: int
    failed: int
    blocked: int
    unblocked: int
    conflicts: int


class ScheduledSyncResult(TypedDict):
    processed: int
    succeeded: int
    failed: int
    disabled: int


class _EventOutcome(TypedDict):
    imported: int
    removed: int
    blocked: int
    unblocked: int
    conflict: bool


# =============================================================================
# Integrations
# =============================================================================

def get_integration(db: Session, integration_id: uuid.UUID) -> CalendarIntegration:
    integration = db.get(CalendarIntegration, integration_id)
    if not integration:
        raise IntegrationNotFound(f"Calendar integration {integration_id} not found")
    return integration


def get_owner_integration(db: Session, owner: OwnerRef) -> CalendarIntegration | None:
    return db.execute(
        select(CalendarIntegration)
        .where(
            CalendarIntegration.owned_by(owner),
            CalendarIntegration.sync_enabled.is_(True),
        )
        .order_by(CalendarIntegration.created_at)
        .limit(1)
    ).scalar_one_or_none()


def connect_integration(
    db: Session,
    owner: OwnerRef,
    grant: TokenGrant,
    *,
    calendar_id: str = "primary",
    account_email: str | None = None,
    auto_create_meet_links: bool = False,
) -> CalendarIntegration:
    """Store credentials from a completed OAuth exchange."""
    integration = CalendarIntegration(
        access_token=grant.access_token,
        refresh_token=grant.refresh_token,
        expires_at=grant.expires_at,
        calendar_id=calendar_id,
        account_email=account_email,
        auto_create_meet_links=auto_create_meet_links,
        **owner_columns(owner),
    )
    db.add(integration)
    db.commit()
    db.refresh(integration)
    logger.info(
        "Calendar integration connected integration=%s owner=%s",
        integration.id, owner,
        extra=build_log_context(owner=owner, integration_id=integration.id),
    )
    return integration


async def disconnect_integration(
    db: Session,
    integration_id: uuid.UUID,
    client: CalendarProviderClient,
    *,
    now: datetime | None = None,
) -> int:
    """
    Revoke credentials, drop mirrored events and release the slots they blocked.

    Returns the number of slots made AVAILABLE.
    """
    now = now or datetime.now(timezone.utc)
    integration = get_integration(db, integration_id)
    owner = integration.owner

    try:
        await client.revoke_token(integration.refresh_token or integration.access_token)
    except CalendarProviderError:
        logger.warning(
            "Token revoke failed integration=%s, continuing disconnect",
            integration.id,
            extra=build_log_context(integration_id=integration.id),
        )

    released = 0
    for event in list(integration.events):
        released += _remove_event(db, event, owner, now)
    db.expire(integration, ["events"])
    db.delete(integration)
    db.commit()
    logger.info(
        "Calendar integration disconnected integration=%s released=%s",
        integration_id, released,
        extra=build_log_context(owner=owner, integration_id=integration_id),
    )
    return released


async def ensure_fresh_access_token(
    db: Session,
    integration: CalendarIntegration,
    client: CalendarProviderClient,
    *,
    now: datetime | None = None,
) -> str:
    """
    Return a usable access token, refreshing when it expires within the buffer.

    On refresh failure sync_failure_count is incremented and
    TokenRefreshFailed propagates (the owner must reconnect).
    """
    now = now or datetime.now(timezone.utc)
    buffer = timedelta(minutes=settings.TOKEN_REFRESH_BUFFER_MINUTES)
    if integration.expires_at - now >= buffer:
        return integration.access_token

    try:
        grant = await client.refresh_token(integration.refresh_token or "")
    except TokenRefreshFailed as exc:
        db.rollback()
        _increment_failure_count(db, integration, str(exc), categorize_error(exc))
        db.commit()
        logger.warning(
            "Token refresh failed integration=%s failures=%s",
            integration.id, integration.sync_failure_count,
            extra=build_log_context(owner=integration.owner, integration_id=integration.id),
        )
        raise

    integration.access_token = grant.access_token
    integration.expires_at = grant.expires_at
    if grant.refresh_token:
        integration.refresh_token = grant.refresh_token
    db.commit()
    return grant.access_token


def _increment_failure_count(
    db: Session,
    integration: CalendarIntegration,
    message: str,
    error_type: SyncErrorType,
) -> None:
    db.execute(
        update(CalendarIntegration)
        .where(CalendarIntegration.id == integration.id)
        .values(
            sync_failure_count=CalendarIntegration.sync_failure_count + 1,
            last_error=message[:1000],
            last_error_type=error_type.value,
        )
        .execution_options(synchronize_session="fetch")
    )


# =============================================================================
# Sync
# =============================================================================

def _sync_window(now: datetime) -> tuple[datetime, datetime]:
    span = timedelta(days=settings.FULL_SYNC_WINDOW_DAYS)
    return now - span, now + span


async def _fetch(
    client: CalendarProviderClient,
    integration: CalendarIntegration,
    access_token: str,
    mode: SyncMode,
    now: datetime,
) -> EventPage:
    if mode == SyncMode.INCREMENTAL_SYNC:
        return await client.list_events(
            access_token, integration.calendar_id, sync_token=integration.next_sync_token
        )
    time_min, time_max = _sync_window(now)
    return await client.list_events(
        access_token, integration.calendar_id, time_min=time_min, time_max=time_max
    )


async def sync_integration(
    db: Session,
    integration: CalendarIntegration,
    mode: SyncMode,
    client: CalendarProviderClient,
    *,
    now: datetime | None = None,
    dispatcher: notification_service.NotificationDispatcher | None = None,
) -> SyncResult:
    """
    Run one sync pass for ``integration``.

    Incremental sync without a stored token runs as a full sync. A rejected
    sync token is cleared and the pass is retried once as FULL_SYNC. When any
    event fails to apply the new token is discarded so the next pass is full.
    """
    now = now or datetime.now(timezone.utc)
    if not integration.sync_enabled:
        raise IntegrationSyncDisabled(f"Sync disabled for integration {integration.id}")
    if mode == SyncMode.INCREMENTAL_SYNC and not integration.next_sync_token:
        mode = SyncMode.FULL_SYNC

    owner = integration.owner
    log_context = build_log_context(owner=owner, integration_id=integration.id)
    operation = CalendarSyncOperation(
        calendar_integration_id=integration.id, sync_mode=mode.value, started_at=now
    )
    db.add(operation)
    db.commit()

    try:
        access_token = await ensure_fresh_access_token(db, integration, client, now=now)
        try:
            page = await _fetch(client, integration, access_token, mode, now)
        except SyncTokenInvalid:
            logger.warning(
                "Sync token rejected integration=%s, falling back to full sync",
                integration.id,
                extra=log_context,
            )
            integration.next_sync_token = None
            mode = SyncMode.FULL_SYNC
            operation.sync_mode = mode.value
            db.commit()
            page = await _fetch(client, integration, access_token, mode, now)

        result = _apply_page(db, integration, owner, page, mode, now, dispatcher)

        if result["failed"]:
            # The token would skip past events that were rolled back
            logger.warning(
                "Calendar sync had %s failed events integration=%s, next pass runs full",
                result["failed"], integration.id,
                extra=log_context,
            )
            integration.next_sync_token = None
        else:
            integration.next_sync_token = page.next_sync_token
        integration.last_synced_at = now
        integration.sync_failure_count = 0
        integration.next_retry_at = None
        integration.last_error = None
        integration.last_error_type = None
        if mode == SyncMode.FULL_SYNC:
            integration.last_full_sync_at = now

        operation.status = SyncOperationStatus.SUCCESS.value
        operation.completed_at = datetime.now(timezone.utc)
        operation.events_processed = len(page.events)
        operation.events_imported = result["imported"]
        operation.events_removed = result["removed"]
        operation.events_failed = result["failed"]
        operation.slots_blocked = result["blocked"]
        operation.slots_unblocked = result["unblocked"]
        operation.conflicts_flagged = result["conflicts"]
        db.commit()
    except Exception as exc:
        db.rollback()
        operation.status = SyncOperationStatus.FAILED.value
        operation.completed_at = datetime.now(timezone.utc)
        operation.error_message = str(exc)[:1000]
        db.commit()
        logger.exception(
            "Calendar sync failed integration=%s mode=%s", integration.id, mode.value,
            extra=log_context,
        )
        raise

    logger.info(
        "Calendar sync complete integration=%s mode=%s imported=%s removed=%s "
        "blocked=%s unblocked=%s conflicts=%s failed=%s",
        integration.id, mode.value, result["imported"], result["removed"],
        result["blocked"], result["unblocked"], result["conflicts"], result["failed"],
        extra=log_context,
    )
    return result


def _apply_page(
    db: Session,
    integration: CalendarIntegration,
    owner: OwnerRef,
    page: EventPage,
    mode: SyncMode,
    now: datetime,
    dispatcher: notification_service.NotificationDispatcher | None,
) -> SyncResult:
    result: SyncResult = {
        "mode": mode.value,
        "imported": 0,
        "removed": 0,
        "failed": 0,
        "blocked": 0,
        "unblocked": 0,
        "conflicts": 0,
    }

    def _record(outcome: _EventOutcome) -> None:
        result["imported"] += outcome["imported"]
        result["removed"] += outcome["removed"]
        result["blocked"] += outcome["blocked"]
        result["unblocked"] += outcome["unblocked"]
        if outcome["conflict"]:
            result["conflicts"] += 1

    for external in page.events:
        try:
            outcome, event, blocking = _apply_event(db, integration, owner, external, now)
            db.commit()
        except Exception:
            db.rollback()
            result["failed"] += 1
            logger.exception(
                "Failed to apply calendar event integration=%s external_event=%s",
                integration.id, external.id,
                extra=build_log_context(owner=owner, integration_id=integration.id),
            )
            continue
        _record(outcome)
        if event is not None and blocking is not None:
            slot_blocking_service.publish_blocking_notifications(
                event, owner, blocking, dispatcher
            )

    if mode == SyncMode.FULL_SYNC:
        seen = {e.id for e in page.events if not e.is_removed}
        time_min, time_max = _sync_window(now)
        missing = db.execute(
            select(CalendarEvent).where(
                CalendarEvent.calendar_integration_id == integration.id,
                CalendarEvent.start_time < time_max,
                CalendarEvent.end_time > time_min,
                CalendarEvent.external_event_id.notin_(seen),
            )
        ).scalars().all()
        for event in missing:
            try:
                unblocked = _remove_event(db, event, owner, now)
                db.commit()
            except Exception:
                db.rollback()
                result["failed"] += 1
                logger.exception(
                    "Failed to remove stale calendar event integration=%s event=%s",
                    integration.id, event.id,
                    extra=build_log_context(owner=owner, event_id=event.id),
                )
                continue
            result["removed"] += 1
            result["unblocked"] += unblocked

    return result


def _is_exported_booking(db: Session, external_event_id: str) -> bool:
    return db.execute(
        select(Booking.id).where(Booking.external_event_id == external_event_id).limit(1)
    ).first() is not None


def _apply_event(
    db: Session,
    integration: CalendarIntegration,
    owner: OwnerRef,
    external: ExternalEvent,
    now: datetime,
) -> tuple[_EventOutcome, CalendarEvent | None, slot_blocking_service.BlockingResult | None]:
    """Upsert one external event and apply its blocking effect (no commit)."""
    outcome: _EventOutcome = {
        "imported": 0, "removed": 0, "blocked": 0, "unblocked": 0, "conflict": False,
    }
    event = db.execute(
        select(CalendarEvent).where(
            CalendarEvent.calendar_integration_id == integration.id,
            CalendarEvent.external_event_id == external.id,
        )
    ).scalar_one_or_none()

    if external.is_removed or external.start is None or external.end is None:
        if event is not None:
            outcome["unblocked"] = _remove_event(db, event, owner, now)
            outcome["removed"] = 1
        return outcome, None, None

    # Our own exported bookings come back in the feed; they never block
    blocks = external.blocks_availability and not _is_exported_booking(db, external.id)

    if event is None:
        event = CalendarEvent(
            calendar_integration_id=integration.id,
            external_event_id=external.id,
            title=external.title,
            start_time=external.start,
            end_time=external.end,
            is_all_day=external.is_all_day,
            etag=external.etag,
            last_synced_at=now,
            blocks_availability=blocks,
            has_conflict=False,
            version=1,
        )
        db.add(event)
        db.flush()
    else:
        if event.conflict_resolved_at is not None:
            # A "keep booking" resolution stays in force across resyncs
            blocks = False
        moved = event.start_time != external.start or event.end_time != external.end
        changed = (
            moved
            or event.etag != external.etag
            or event.blocks_availability != blocks
            or event.title != external.title
        )
        event.last_synced_at = now
        if not changed:
            return outcome, None, None
        if moved or not blocks:
            outcome["unblocked"] = slot_blocking_service.unblock_slots_from_event(
                db, event.id, owner, now=now
            )
        event.title = external.title
        event.start_time = external.start
        event.end_time = external.end
        event.is_all_day = external.is_all_day
        event.etag = external.etag
        event.blocks_availability = blocks
        event.version += 1
        if not blocks and event.conflict_resolved_at is None:
            event.has_conflict = False
            event.conflict_details = None
        db.flush()

    outcome["imported"] = 1
    blocking = slot_blocking_service.block_slots_from_event(db, event, owner, now=now)
    outcome["blocked"] = blocking.blocked_count
    outcome["conflict"] = bool(blocking.conflict_booking_ids)
    return outcome, event, blocking


def _remove_event(
    db: Session, event: CalendarEvent, owner: OwnerRef, now: datetime
) -> int:
    """Release slots blocked by ``event`` and delete the mirror row."""
    released = slot_blocking_service.unblock_slots_from_event(db, event.id, owner, now=now)
    # Anything still pointing here is non-BLOCKED history
    db.execute(
        update(Slot)
        .where(Slot.blocked_by_event_id == event.id, Slot.status != SlotStatus.BLOCKED.value)
        .values(blocked_by_event_id=None)
        .execution_options(synchronize_session="fetch")
    )
    db.delete(event)
    db.flush()
    return released


# =============================================================================
# Scheduled sync & retry policy
# =============================================================================

BACKOFF_SCHEDULE_MINUTES = [0, 1, 5, 15, 60, 360]

NON_RETRYABLE_ERRORS = {
    SyncErrorType.TOKEN_INVALID,
    SyncErrorType.AUTH_FAILED,
    SyncErrorType.INVALID_GRANT,
    SyncErrorType.CALENDAR_NOT_FOUND,
    SyncErrorType.PERMISSION_DENIED,
}


def categorize_error(exc: BaseException) -> SyncErrorType:
    """Map a sync failure to a SyncErrorType using status code and message."""
    message = str(exc).lower()
    status = getattr(exc, "status_code", None)

    if "invalid_grant" in message:
        return SyncErrorType.INVALID_GRANT
    if "timed out" in message or "timeout" in message:
        return SyncErrorType.TIMEOUT
    if "network" in message or "connection" in message:
        return SyncErrorType.NETWORK_ERROR
    if isinstance(exc, TokenRefreshFailed):
        return SyncErrorType.TOKEN_INVALID
    if status == 429 or "rate limit" in message:
        return SyncErrorType.RATE_LIMIT
    if status == 401 or "unauthorized" in message:
        return SyncErrorType.TOKEN_EXPIRED
    if status == 403 or "permission" in message:
        return SyncErrorType.PERMISSION_DENIED
    if status == 404 or "not found" in message:
        return SyncErrorType.CALENDAR_NOT_FOUND
    if "auth" in message:
        return SyncErrorType.AUTH_FAILED
    return SyncErrorType.UNKNOWN


def is_retryable(error_type: SyncErrorType) -> bool:
    return error_type not in NON_RETRYABLE_ERRORS


def retry_delay(failure_count: int) -> timedelta:
    index = min(max(failure_count, 0), len(BACKOFF_SCHEDULE_MINUTES) - 1)
    return timedelta(minutes=BACKOFF_SCHEDULE_MINUTES[index])


def record_sync_failure(
    db: Session,
    integration: CalendarIntegration,
    exc: BaseException,
    *,
    now: datetime | None = None,
) -> SyncErrorType:
    """
    Schedule the next retry or disable sync for a failed integration.

    Token refresh failures were already counted by ensure_fresh_access_token.
    """
    now = now or datetime.now(timezone.utc)
    error_type = categorize_error(exc)
    if not isinstance(exc, TokenRefreshFailed):
        _increment_failure_count(db, integration, str(exc), error_type)
    else:
        integration.last_error = str(exc)[:1000]
        integration.last_error_type = error_type.value
    db.flush()
    db.refresh(integration)

    if not is_retryable(error_type) or integration.sync_failure_count >= settings.MAX_SYNC_RETRIES:
        integration.sync_enabled = False
        integration.next_retry_at = None
        logger.warning(
            "Calendar sync auto-disabled integration=%s error_type=%s failures=%s",
            integration.id, error_type.value, integration.sync_failure_count,
            extra=build_log_context(owner=integration.owner, integration_id=integration.id),
        )
    else:
        integration.next_retry_at = now + retry_delay(integration.sync_failure_count)
    db.commit()
    return error_type


def due_integrations_query(now: datetime):
    stale_before = now - timedelta(minutes=settings.SYNC_INTERVAL_MINUTES)
    return (
        select(CalendarIntegration)
        .where(
            CalendarIntegration.sync_enabled.is_(True),
            or_(
                and_(
                    CalendarIntegration.next_retry_at.is_not(None),
                    CalendarIntegration.next_retry_at <= now,
                ),
                and_(
                    CalendarIntegration.next_retry_at.is_(None),
                    or_(
                        CalendarIntegration.last_synced_at.is_(None),
                        CalendarIntegration.last_synced_at <= stale_before,
                    ),
                ),
            ),
        )
        .order_by(CalendarIntegration.last_synced_at.nulls_first(), CalendarIntegration.id)
        .limit(settings.SYNC_BATCH_SIZE)
    )


async def run_scheduled_syncs(
    db: Session,
    client: CalendarProviderClient,
    *,
    now: datetime | None = None,
    dispatcher: notification_service.NotificationDispatcher | None = None,
) -> ScheduledSyncResult:
    """Sync every due integration; one failure never stops the batch."""
    now = now or datetime.now(timezone.utc)
    integrations = db.execute(due_integrations_query(now)).scalars().all()
    totals: ScheduledSyncResult = {"processed": 0, "succeeded": 0, "failed": 0, "disabled": 0}

    for integration in integrations:
        totals["processed"] += 1
        mode = (
            SyncMode.INCREMENTAL_SYNC if integration.next_sync_token else SyncMode.FULL_SYNC
        )
        try:
            await sync_integration(
                db, integration, mode, client, now=now, dispatcher=dispatcher
            )
        except Exception as exc:
            db.rollback()
            record_sync_failure(db, integration, exc, now=now)
            totals["failed"] += 1
            if not integration.sync_enabled:
                totals["disabled"] += 1
            continue
        totals["succeeded"] += 1

    logger.info(
        "Scheduled calendar sync processed=%s succeeded=%s failed=%s disabled=%s",
        totals["processed"], totals["succeeded"], totals["failed"], totals["disabled"],
    )
    return totals


# =============================================================================
# Booking export
# =============================================================================

async def export_booking_to_calendar(
    db: Session,
    booking: Booking,
    client: CalendarProviderClient,
    *,
    now: datetime | None = None,
) -> str | None:
    """
    Create an event for ``booking`` on the owner's calendar.

    Best effort: failures are logged and None is returned; the booking is
    never affected.
    """
    slot = booking.slot
    owner = slot.owner
    integration = get_owner_integration(db, owner)
    if integration is None:
        return None

    payload = EventPayload(
        title="Appointment",
        start=slot.start_time,
        end=slot.end_time,
        attendee_emails=(booking.guest_email,) if booking.guest_email else (),
        create_meet_link=integration.auto_create_meet_links,
        request_id=str(booking.id),
    )
    try:
        access_token = await ensure_fresh_access_token(db, integration, client, now=now)
        external_id = await client.create_event(access_token, integration.calendar_id, payload)
    except CalendarProviderError:
        logger.exception(
            "Booking calendar export failed booking=%s integration=%s",
            booking.id, integration.id,
            extra=build_log_context(
                owner=owner, integration_id=integration.id, booking_id=booking.id
            ),
        )
        return None

    booking.external_event_id = external_id
    db.commit()
    return external_id


async def remove_booking_from_calendar(
    db: Session,
    booking: Booking,
    client: CalendarProviderClient,
    *,
    now: datetime | None = None,
) -> bool:
    """Delete the exported event of a cancelled booking (best effort)."""
    if not booking.external_event_id:
        return False
    owner = booking.slot.owner
    integration = get_owner_integration(db, owner)
    if integration is None:
        return False
    try:
        access_token = await ensure_fresh_access_token(db, integration, client, now=now)
        await client.delete_event(
            access_token, integration.calendar_id, booking.external_event_id
        )
    except CalendarProviderError:
        logger.exception(
            "Booking calendar removal failed booking=%s integration=%s",
            booking.id, integration.id,
            extra=build_log_context(
                owner=owner, integration_id=integration.id, booking_id=booking.id
            ),
        )
        return False

    removed_event_id = booking.external_event_id
    booking.external_event_id = None
    db.commit()
    logger.info(
        "Booking removed from calendar booking=%s external_event=%s",
        booking.id, removed_event_id,
        extra=build_log_context(owner=owner, integration_id=integration.id, booking_id=booking.id),
    )
    return True
