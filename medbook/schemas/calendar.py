"""Calendar integration schemas - sync requests, results and stats."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from medbook.db.enums import SyncMode


class SyncRequest(BaseModel):
    """Schema for triggering a sync pass."""
    mode: SyncMode = SyncMode.INCREMENTAL_SYNC


class SyncResultRead(BaseModel):
    mode: SyncMode
    imported: int
    removed: int
    failed: int
    blocked: int
    unblocked: int
    conflicts: int


class CalendarIntegrationRead(BaseModel):
    """Schema for reading an integration (tokens are never returned)."""
    id: UUID
    provider: str
    owner_type: str
    provider_id: UUID | None
    organization_id: UUID | None
    location_id: UUID | None
    account_email: str | None
    calendar_id: str
    sync_enabled: bool
    sync_failure_count: int
    last_synced_at: datetime | None
    last_full_sync_at: datetime | None
    next_retry_at: datetime | None
    last_error_type: str | None


class BlockingStatsRead(BaseModel):
    total_future_slots: int
    available_slots: int
    booked_slots: int
    blocked_slots: int
    blocking_events: int
    events_with_conflicts: int


class DisconnectResult(BaseModel):
    slots_released: int


class ScheduledSyncRead(BaseModel):
    processed: int
    succeeded: int
    failed: int
    disabled: int


class RegenerationRead(BaseModel):
    owners_processed: int
    owners_failed: int
    events_processed: int
    slots_blocked: int
