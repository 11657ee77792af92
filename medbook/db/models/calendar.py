"""External calendar integrations, mirrored events and sync audit rows."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, CheckConstraint, ForeignKey, Index, Integer, String, Text, Uuid,
    UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medbook.db.base import Base
from medbook.db.enums import CalendarProvider, SyncOperationStatus
from medbook.db.models.owners import OWNER_SHAPE_CHECK, OwnerColumns
from medbook.db.types import EncryptedString


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CalendarIntegration(OwnerColumns, Base):
    """
    OAuth credentials and sync state linking an owner to an external calendar.

    Tokens are Fernet-encrypted at rest. The access token is refreshed before
    use whenever it expires within the refresh buffer.
    """

    __tablename__ = "calendar_integrations"
    __table_args__ = (
        Index("idx_calendar_integrations_provider_owner", "provider_id"),
        Index(
            "idx_calendar_integrations_org_location", "organization_id", "location_id"
        ),
        Index("idx_calendar_integrations_sync_due", "sync_enabled", "next_retry_at"),
        CheckConstraint(OWNER_SHAPE_CHECK, name="ck_calendar_integration_owner_shape"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(
        String(20), default=CalendarProvider.GOOGLE.value, nullable=False
    )
    account_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    access_token: Mapped[str] = mapped_column(EncryptedString, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(EncryptedString, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)

    calendar_id: Mapped[str] = mapped_column(String(255), default="primary", nullable=False)
    next_sync_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sync_failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    auto_create_meet_links: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_full_sync_at: Mapped[datetime | None] = mapped_column(nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_type: Mapped[str | None] = mapped_column(String(30), nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=_utcnow, onupdate=_utcnow, nullable=False
    )

    # Relationships
    events: Mapped[list["CalendarEvent"]] = relationship(
        back_populates="integration", cascade="all, delete-orphan"
    )
    sync_operations: Mapped[list["CalendarSyncOperation"]] = relationship(
        back_populates="integration", cascade="all, delete-orphan"
    )


class CalendarEvent(Base):
    """
    Internal mirror of one external calendar entry.

    Blocking events mark overlapping AVAILABLE slots BLOCKED. When a booked
    slot overlaps, the event is flagged with has_conflict instead.
    """

    __tablename__ = "calendar_events"
    __table_args__ = (
        UniqueConstraint(
            "calendar_integration_id", "external_event_id",
            name="uq_calendar_event_external_id",
        ),
        Index("idx_calendar_events_time", "calendar_integration_id", "start_time", "end_time"),
        Index("idx_calendar_events_conflict", "has_conflict"),
        CheckConstraint("end_time > start_time", name="ck_calendar_event_time_order"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    calendar_integration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("calendar_integrations.id", ondelete="CASCADE"), nullable=False
    )
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    start_time: Mapped[datetime] = mapped_column(nullable=False)
    end_time: Mapped[datetime] = mapped_column(nullable=False)
    is_all_day: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    etag: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_synced_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)

    blocks_availability: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    has_conflict: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    conflict_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    conflict_resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=_utcnow, onupdate=_utcnow, nullable=False
    )

    # Relationships
    integration: Mapped["CalendarIntegration"] = relationship(back_populates="events")
    blocked_slots: Mapped[list["Slot"]] = relationship(back_populates="blocked_by_event")


class CalendarSyncOperation(Base):
    """Audit row for one sync pass (status plus per-event counters)."""

    __tablename__ = "calendar_sync_operations"
    __table_args__ = (
        Index("idx_calendar_sync_ops_integration", "calendar_integration_id", "started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    calendar_integration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("calendar_integrations.id", ondelete="CASCADE"), nullable=False
    )
    sync_mode: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=SyncOperationStatus.IN_PROGRESS.value, nullable=False
    )
    started_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    events_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    events_imported: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    events_removed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    events_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    slots_blocked: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    slots_unblocked: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    conflicts_flagged: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    integration: Mapped["CalendarIntegration"] = relationship(back_populates="sync_operations")
