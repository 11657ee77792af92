"""
Tests for Calendar Sync Service.

Coverage:
- Full and incremental sync passes against a fake provider
- Sync token invalidation fallback to full sync
- Moved, removed and pruned events
- Exported bookings never block availability
- Token refresh, rotation and failure counting
- Error categorisation, backoff and auto-disable
- Scheduled batch sync
- Disconnect and booking export
"""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import literal_column, select

from conftest import MONDAY, NOW, at
from medbook.db.enums import SlotStatus, SyncErrorType, SyncMode, SyncOperationStatus
from medbook.db.models import CalendarEvent, CalendarIntegration, CalendarSyncOperation
from medbook.schemas.booking import BookingCreate
from medbook.services import booking_service, calendar_sync_service
from medbook.services.calendar_provider import EventPage, ExternalEvent, TokenGrant
from medbook.services.errors import (
    CalendarProviderError,
    IntegrationSyncDisabled,
    SyncTokenInvalid,
    TokenRefreshFailed,
)
from medbook.types import ProviderOwner


def _event(external_id="evt-1", start=None, end=None, *, status="confirmed", **kwargs):
    return ExternalEvent(
        id=external_id,
        status=status,
        title=kwargs.pop("title", "Dentist"),
        start=start if start is not None else at(MONDAY, 9, 30),
        end=end if end is not None else at(MONDAY, 10, 30),
        **kwargs,
    )


def _removed(external_id="evt-1"):
    return ExternalEvent(id=external_id, status="cancelled", title="", start=None, end=None)


def _events(db, integration):
    return list(
        db.execute(
            select(CalendarEvent).where(CalendarEvent.calendar_integration_id == integration.id)
        ).scalars()
    )


def _book(db, slot, **client):
    return booking_service.book_slot(
        db,
        BookingCreate(
            slot_id=slot.id,
            client=client or {"kind": "registered", "user_id": str(uuid.uuid4())},
        ),
        now=NOW,
    )


async def _sync(db, integration, client, mode=SyncMode.FULL_SYNC, now=NOW):
    return await calendar_sync_service.sync_integration(db, integration, mode, client, now=now)


# =============================================================================
# Sync passes
# =============================================================================

@pytest.mark.asyncio
async def test_full_sync_imports_and_blocks(db, slots, integration, calendar_client):
    calendar_client.pages = [EventPage([_event()], next_sync_token="sync-1")]

    result = await _sync(db, integration, calendar_client)

    assert result["mode"] == SyncMode.FULL_SYNC.value
    assert (result["imported"], result["blocked"], result["failed"]) == (1, 2, 0)
    assert integration.next_sync_token == "sync-1"
    assert integration.last_full_sync_at == NOW
    assert calendar_client.list_calls[0]["time_min"] == NOW - timedelta(days=90)
    db.refresh(slots[0])
    assert slots[0].status == SlotStatus.BLOCKED.value

    operation = db.execute(select(CalendarSyncOperation)).scalar_one()
    assert operation.status == SyncOperationStatus.SUCCESS.value
    assert operation.events_imported == 1


@pytest.mark.asyncio
async def test_incremental_without_token_runs_full(db, integration, calendar_client):
    calendar_client.pages = [EventPage([], next_sync_token="sync-1")]

    result = await _sync(db, integration, calendar_client, SyncMode.INCREMENTAL_SYNC)

    assert result["mode"] == SyncMode.FULL_SYNC.value
    assert calendar_client.list_calls[0]["sync_token"] is None


@pytest.mark.asyncio
async def test_incremental_removal_unblocks(db, slots, integration, calendar_client):
    calendar_client.pages = [
        EventPage([_event()], next_sync_token="sync-1"),
        EventPage([_removed()], next_sync_token="sync-2"),
    ]
    await _sync(db, integration, calendar_client)

    result = await _sync(db, integration, calendar_client, SyncMode.INCREMENTAL_SYNC)

    assert calendar_client.list_calls[1]["sync_token"] == "sync-1"
    assert (result["removed"], result["unblocked"]) == (1, 2)
    assert _events(db, integration) == []
    db.refresh(slots[0])
    assert slots[0].status == SlotStatus.AVAILABLE.value


@pytest.mark.asyncio
async def test_invalid_sync_token_falls_back_to_full(db, integration, calendar_client):
    integration.next_sync_token = "stale"
    db.commit()
    calendar_client.pages = [
        SyncTokenInvalid("Sync token is no longer valid", 410),
        EventPage([_event()], next_sync_token="sync-2"),
    ]

    result = await _sync(db, integration, calendar_client, SyncMode.INCREMENTAL_SYNC)

    assert result["mode"] == SyncMode.FULL_SYNC.value
    assert [c["sync_token"] for c in calendar_client.list_calls] == ["stale", None]
    assert integration.next_sync_token == "sync-2"


@pytest.mark.asyncio
async def test_moved_event_reblocks(db, slots, integration, calendar_client):
    calendar_client.pages = [
        EventPage([_event(etag="1")], next_sync_token="sync-1"),
        EventPage(
            [_event(start=at(MONDAY, 11), end=at(MONDAY, 11, 30), etag="2")],
            next_sync_token="sync-2",
        ),
    ]
    await _sync(db, integration, calendar_client)

    result = await _sync(db, integration, calendar_client, SyncMode.INCREMENTAL_SYNC)

    assert (result["unblocked"], result["blocked"]) == (2, 1)
    for slot in slots:
        db.refresh(slot)
    assert [s.status for s in slots] == [
        SlotStatus.AVAILABLE.value,
        SlotStatus.AVAILABLE.value,
        SlotStatus.BLOCKED.value,
    ]
    (event,) = _events(db, integration)
    assert event.version == 2


@pytest.mark.asyncio
async def test_unchanged_event_is_not_rewritten(db, integration, calendar_client):
    calendar_client.pages = [
        EventPage([_event(etag="1")], next_sync_token="sync-1"),
        EventPage([_event(etag="1")], next_sync_token="sync-2"),
    ]
    await _sync(db, integration, calendar_client)
    await _sync(db, integration, calendar_client, SyncMode.INCREMENTAL_SYNC)

    (event,) = _events(db, integration)
    assert event.version == 1


@pytest.mark.asyncio
async def test_full_sync_prunes_missing_events(db, slots, integration, calendar_client):
    calendar_client.pages = [
        EventPage([_event()], next_sync_token="sync-1"),
        EventPage([], next_sync_token="sync-2"),
    ]
    await _sync(db, integration, calendar_client)

    result = await _sync(db, integration, calendar_client)

    assert result["removed"] == 1
    assert _events(db, integration) == []


@pytest.mark.asyncio
async def test_transparent_event_does_not_block(db, slots, integration, calendar_client):
    calendar_client.pages = [
        EventPage([_event(transparency="transparent")], next_sync_token="sync-1")
    ]

    result = await _sync(db, integration, calendar_client)

    assert result["blocked"] == 0
    (event,) = _events(db, integration)
    assert event.blocks_availability is False


@pytest.mark.asyncio
async def test_conflicting_event_is_counted(db, slots, integration, calendar_client):
    _book(db, slots[1])
    calendar_client.pages = [EventPage([_event()], next_sync_token="sync-1")]

    result = await _sync(db, integration, calendar_client)

    assert result["conflicts"] == 1
    (event,) = _events(db, integration)
    assert event.has_conflict is True


@pytest.mark.asyncio
async def test_exported_booking_event_never_blocks(db, slots, integration, calendar_client):
    booking = _book(db, slots[1])
    booking.external_event_id = "exported-1"
    db.commit()
    calendar_client.pages = [
        EventPage(
            [_event("exported-1", at(MONDAY, 10), at(MONDAY, 11))], next_sync_token="sync-1"
        )
    ]

    result = await _sync(db, integration, calendar_client)

    assert (result["blocked"], result["conflicts"]) == (0, 0)
    (event,) = _events(db, integration)
    assert event.blocks_availability is False
    assert event.has_conflict is False


@pytest.mark.asyncio
async def test_disabled_integration_refuses_sync(db, integration, calendar_client):
    integration.sync_enabled = False
    db.commit()

    with pytest.raises(IntegrationSyncDisabled):
        await _sync(db, integration, calendar_client)


@pytest.mark.asyncio
async def test_provider_failure_marks_operation_failed(db, integration, calendar_client):
    calendar_client.pages = [CalendarProviderError("List events failed: rate limit exceeded", 429)]

    with pytest.raises(CalendarProviderError):
        await _sync(db, integration, calendar_client)

    operation = db.execute(select(CalendarSyncOperation)).scalar_one()
    assert operation.status == SyncOperationStatus.FAILED.value
    assert "rate limit" in operation.error_message


@pytest.mark.asyncio
async def test_failed_event_forces_next_pass_full(db, slots, integration, calendar_client, monkeypatch):
    calendar_client.pages = [
        EventPage([], next_sync_token="sync-1"),
        EventPage([_event()], next_sync_token="sync-2"),
        EventPage([_event()], next_sync_token="sync-3"),
    ]
    await _sync(db, integration, calendar_client)

    real_block = calendar_sync_service.slot_blocking_service.block_slots_from_event
    calls = []

    def flaky_block(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise RuntimeError("deadlock detected")
        return real_block(*args, **kwargs)

    monkeypatch.setattr(
        calendar_sync_service.slot_blocking_service, "block_slots_from_event", flaky_block
    )

    failed_pass = await _sync(db, integration, calendar_client, SyncMode.INCREMENTAL_SYNC)

    assert failed_pass["failed"] == 1
    assert integration.next_sync_token is None
    assert _events(db, integration) == []

    retry = await _sync(db, integration, calendar_client, SyncMode.INCREMENTAL_SYNC)

    assert retry["mode"] == SyncMode.FULL_SYNC.value
    assert calendar_client.list_calls[2]["sync_token"] is None
    assert (retry["imported"], retry["failed"]) == (1, 0)
    assert integration.next_sync_token == "sync-3"
    db.refresh(slots[0])
    assert slots[0].status == SlotStatus.BLOCKED.value


# =============================================================================
# Tokens
# =============================================================================

@pytest.mark.asyncio
async def test_expiring_token_is_refreshed_and_rotated(db, integration, calendar_client):
    integration.expires_at = NOW + timedelta(minutes=2)
    db.commit()
    calendar_client.refresh_result = TokenGrant(
        access_token="access-2", expires_at=NOW + timedelta(hours=1), refresh_token="refresh-2"
    )

    token = await calendar_sync_service.ensure_fresh_access_token(
        db, integration, calendar_client, now=NOW
    )

    assert token == "access-2"
    assert calendar_client.refresh_calls == ["refresh-1"]
    db.expire_all()
    stored = db.get(CalendarIntegration, integration.id)
    assert stored.access_token == "access-2"
    assert stored.refresh_token == "refresh-2"


@pytest.mark.asyncio
async def test_fresh_token_is_not_refreshed(db, integration, calendar_client):
    token = await calendar_sync_service.ensure_fresh_access_token(
        db, integration, calendar_client, now=NOW
    )
    assert token == "access-1"
    assert calendar_client.refresh_calls == []


@pytest.mark.asyncio
async def test_refresh_failure_counts_and_propagates(db, integration, calendar_client):
    integration.expires_at = NOW - timedelta(minutes=1)
    db.commit()
    calendar_client.refresh_result = TokenRefreshFailed("Token refresh failed: invalid_grant", 400)

    with pytest.raises(TokenRefreshFailed):
        await _sync(db, integration, calendar_client)

    db.refresh(integration)
    assert integration.sync_failure_count == 1
    assert integration.last_error_type == SyncErrorType.INVALID_GRANT.value
    operation = db.execute(select(CalendarSyncOperation)).scalar_one()
    assert operation.status == SyncOperationStatus.FAILED.value


def test_tokens_are_encrypted_at_rest(db, integration):
    table = CalendarIntegration.__table__
    raw = db.execute(
        select(literal_column("access_token")).select_from(table).where(table.c.id == integration.id)
    ).scalar_one()
    assert raw != "access-1"
    assert integration.access_token == "access-1"


# =============================================================================
# Retry policy
# =============================================================================

@pytest.mark.parametrize(
    "exc,expected",
    [
        (CalendarProviderError("List events failed: rate limit exceeded", 429), SyncErrorType.RATE_LIMIT),
        (CalendarProviderError("Request timed out: read"), SyncErrorType.TIMEOUT),
        (CalendarProviderError("Network error: unreachable"), SyncErrorType.NETWORK_ERROR),
        (TokenRefreshFailed("Token refresh failed: invalid_grant", 400), SyncErrorType.INVALID_GRANT),
        (TokenRefreshFailed("No refresh token available"), SyncErrorType.TOKEN_INVALID),
        (CalendarProviderError("List events failed: unauthorized (token expired)", 401), SyncErrorType.TOKEN_EXPIRED),
        (CalendarProviderError("List events failed: permission denied", 403), SyncErrorType.PERMISSION_DENIED),
        (CalendarProviderError("List events failed: calendar not found", 404), SyncErrorType.CALENDAR_NOT_FOUND),
        (ValueError("boom"), SyncErrorType.UNKNOWN),
    ],
)
def test_categorize_error(exc, expected):
    assert calendar_sync_service.categorize_error(exc) == expected


def test_retry_delay_follows_backoff_schedule():
    assert calendar_sync_service.retry_delay(0) == timedelta(0)
    assert calendar_sync_service.retry_delay(1) == timedelta(minutes=1)
    assert calendar_sync_service.retry_delay(3) == timedelta(minutes=15)
    assert calendar_sync_service.retry_delay(99) == timedelta(hours=6)


def test_retryable_failure_schedules_retry(db, integration):
    error_type = calendar_sync_service.record_sync_failure(
        db, integration, CalendarProviderError("rate limit exceeded", 429), now=NOW
    )

    assert error_type == SyncErrorType.RATE_LIMIT
    assert integration.sync_failure_count == 1
    assert integration.sync_enabled is True
    assert integration.next_retry_at == NOW + timedelta(minutes=1)


def test_non_retryable_failure_disables_sync(db, integration):
    calendar_sync_service.record_sync_failure(
        db, integration, CalendarProviderError("permission denied", 403), now=NOW
    )

    assert integration.sync_enabled is False
    assert integration.next_retry_at is None


def test_too_many_failures_disable_sync(db, integration):
    integration.sync_failure_count = 4
    db.commit()

    calendar_sync_service.record_sync_failure(
        db, integration, CalendarProviderError("Network error: reset"), now=NOW
    )

    assert integration.sync_failure_count == 5
    assert integration.sync_enabled is False


def test_token_failure_is_not_counted_twice(db, integration):
    integration.sync_failure_count = 1
    db.commit()

    calendar_sync_service.record_sync_failure(
        db, integration, TokenRefreshFailed("Token refresh failed: invalid_grant", 400), now=NOW
    )

    assert integration.sync_failure_count == 1
    assert integration.sync_enabled is False


# =============================================================================
# Scheduled sync
# =============================================================================

def _connect(db, **overrides):
    integration = calendar_sync_service.connect_integration(
        db,
        ProviderOwner(provider_id=uuid.uuid4()),
        TokenGrant(access_token="a", refresh_token="r", expires_at=NOW + timedelta(hours=1)),
    )
    for key, value in overrides.items():
        setattr(integration, key, value)
    db.commit()
    return integration


@pytest.mark.asyncio
async def test_scheduled_sync_isolates_failures(db, calendar_client):
    first = _connect(db)
    second = _connect(db)
    _connect(db, next_retry_at=NOW + timedelta(minutes=10))
    _connect(db, sync_enabled=False)
    _connect(db, last_synced_at=NOW - timedelta(minutes=1))
    calendar_client.pages = [
        EventPage([], next_sync_token="sync-1"),
        CalendarProviderError("List events failed: rate limit exceeded", 429),
    ]

    totals = await calendar_sync_service.run_scheduled_syncs(db, calendar_client, now=NOW)

    assert totals == {"processed": 2, "succeeded": 1, "failed": 1, "disabled": 0}
    db.refresh(first)
    db.refresh(second)
    failed = first if first.sync_failure_count else second
    assert failed.next_retry_at == NOW + timedelta(minutes=1)
    assert failed.last_error_type == SyncErrorType.RATE_LIMIT.value


# =============================================================================
# Disconnect & export
# =============================================================================

@pytest.mark.asyncio
async def test_disconnect_releases_blocked_slots(db, slots, integration, calendar_client):
    calendar_client.pages = [EventPage([_event()], next_sync_token="sync-1")]
    await _sync(db, integration, calendar_client)
    integration_id = integration.id

    released = await calendar_sync_service.disconnect_integration(
        db, integration_id, calendar_client, now=NOW
    )

    assert released == 2
    assert calendar_client.revoked == ["refresh-1"]
    assert db.get(CalendarIntegration, integration_id) is None
    for slot in slots:
        db.refresh(slot)
    assert all(s.status == SlotStatus.AVAILABLE.value for s in slots)


@pytest.mark.asyncio
async def test_booking_export_stores_external_id(db, slots, integration, calendar_client):
    booking = _book(db, slots[0], kind="guest", name="Ana", email="ana@example.com")

    external_id = await calendar_sync_service.export_booking_to_calendar(
        db, booking, calendar_client, now=NOW
    )

    assert external_id == "exported-1"
    assert booking.external_event_id == "exported-1"
    payload = calendar_client.created[0]
    assert payload.start == at(MONDAY, 9)
    assert payload.attendee_emails == ("ana@example.com",)
    assert payload.request_id == str(booking.id)


@pytest.mark.asyncio
async def test_booking_export_failure_keeps_booking(db, slots, integration, calendar_client):
    booking = _book(db, slots[0])
    calendar_client.create_error = CalendarProviderError("Create event failed with status 500", 500)

    assert await calendar_sync_service.export_booking_to_calendar(
        db, booking, calendar_client, now=NOW
    ) is None
    db.refresh(booking)
    assert booking.external_event_id is None
    assert booking.status == "confirmed"


@pytest.mark.asyncio
async def test_booking_export_without_integration_is_skipped(db, slots, calendar_client):
    booking = _book(db, slots[0])
    assert await calendar_sync_service.export_booking_to_calendar(
        db, booking, calendar_client, now=NOW
    ) is None
    assert calendar_client.created == []


@pytest.mark.asyncio
async def test_cancelled_booking_is_removed_from_calendar(db, slots, integration, calendar_client):
    booking = _book(db, slots[0])
    await calendar_sync_service.export_booking_to_calendar(db, booking, calendar_client, now=NOW)
    booking_service.cancel_booking(db, booking.id, now=NOW)

    removed = await calendar_sync_service.remove_booking_from_calendar(
        db, booking, calendar_client, now=NOW
    )

    assert removed is True
    assert calendar_client.deleted == ["exported-1"]
    db.refresh(booking)
    assert booking.external_event_id is None
    assert await calendar_sync_service.remove_booking_from_calendar(
        db, booking, calendar_client, now=NOW
    ) is False
    assert calendar_client.deleted == ["exported-1"]
