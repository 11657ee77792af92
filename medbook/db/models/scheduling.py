"""Availability windows, materialized slots and bookings."""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Date, ForeignKey, Index, Integer, Numeric,
    String, Text, Uuid, and_, text
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medbook.db.base import Base
from medbook.db.enums import (
    BookingStatus,
    RecurrenceKind,
    SchedulingGranularity,
    SlotStatus,
)
from medbook.db.models.owners import OWNER_SHAPE_CHECK, OwnerColumns
from medbook.types import Recurrence, recurrence_from_columns


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Availability
# =============================================================================

class AvailabilityWindow(OwnerColumns, Base):
    """
    Declared interval during which an owner offers appointments.

    Recurring windows are stored once; every occurrence repeats the
    start/end clock times of the first occurrence. Weekdays use
    Monday=0, Sunday=6. Deleted windows are kept (soft delete) so historical
    slots keep their parent.
    """

    __tablename__ = "availability_windows"
    __table_args__ = (
        Index(
            "idx_availability_windows_provider", "provider_id", "start_time",
        ),
        Index(
            "idx_availability_windows_org_location",
            "organization_id", "location_id", "start_time",
        ),
        Index("idx_availability_windows_series", "series_id"),
        CheckConstraint("end_time > start_time", name="ck_window_time_order"),
        CheckConstraint(OWNER_SHAPE_CHECK, name="ck_window_owner_shape"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    start_time: Mapped[datetime] = mapped_column(nullable=False)
    end_time: Mapped[datetime] = mapped_column(nullable=False)

    # Recurrence
    recurrence_kind: Mapped[str] = mapped_column(
        String(20), default=RecurrenceKind.NONE.value, nullable=False
    )
    recurrence_days: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)
    recurrence_until: Mapped[date | None] = mapped_column(Date, nullable=True)
    # ISO dates removed from the series by single-occurrence edits
    excluded_dates: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    # Windows split off by "this and future" / "this occurrence" edits share the series id
    series_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    scheduling_granularity: Mapped[str] = mapped_column(
        String(30), default=SchedulingGranularity.CONTINUOUS.value, nullable=False
    )
    requires_confirmation: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_online_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_in_person_available: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=_utcnow, onupdate=_utcnow, nullable=False
    )

    # Relationships
    services: Mapped[list["OfferedService"]] = relationship(
        back_populates="window",
        cascade="all, delete-orphan",
        order_by="OfferedService.created_at",
    )
    slots: Mapped[list["Slot"]] = relationship(back_populates="window")

    @property
    def recurrence(self) -> Recurrence:
        return recurrence_from_columns(
            self.recurrence_kind, self.recurrence_days, self.recurrence_until
        )

    @property
    def is_recurring(self) -> bool:
        return self.recurrence_kind != RecurrenceKind.NONE.value

    @property
    def active_services(self) -> list["OfferedService"]:
        return [s for s in self.services if s.is_active]


class OfferedService(Base):
    """
    Service offered inside a window (the slot's service configuration).

    Rows are deactivated rather than deleted when a window edit drops a
    service, so historical slots keep their configuration.
    """

    __tablename__ = "offered_services"
    __table_args__ = (
        Index("idx_offered_services_window", "availability_window_id"),
        CheckConstraint("duration_minutes > 0", name="ck_offered_service_duration"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    availability_window_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("availability_windows.id", ondelete="CASCADE"), nullable=False
    )
    # Catalog reference (catalog lives outside the scheduling core)
    service_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    is_online_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_in_person_available: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)

    window: Mapped["AvailabilityWindow"] = relationship(back_populates="services")


# =============================================================================
# Slots
# =============================================================================

class Slot(OwnerColumns, Base):
    """
    One concrete bookable unit materialized from a window occurrence.

    Ids are derived from (window, service config, start, end) so that
    re-expansion upserts instead of duplicating. Owner columns are copied
    from the window for overlap queries.

    State invariants:
        AVAILABLE: no active booking, blocked_by_event_id is NULL
        BOOKED: exactly one active booking
        BLOCKED: blocked_by_event_id set, no active booking
    """

    __tablename__ = "slots"
    __table_args__ = (
        Index("idx_slots_provider_time", "provider_id", "start_time", "end_time"),
        Index(
            "idx_slots_org_location_time",
            "organization_id", "location_id", "start_time", "end_time",
        ),
        Index("idx_slots_window_occurrence", "availability_window_id", "occurrence_date"),
        Index("idx_slots_blocked_by", "blocked_by_event_id"),
        Index("idx_slots_status", "status"),
        CheckConstraint("end_time > start_time", name="ck_slot_time_order"),
        CheckConstraint(
            "status != 'blocked' OR blocked_by_event_id IS NOT NULL",
            name="ck_slot_blocked_has_event",
        ),
        CheckConstraint(OWNER_SHAPE_CHECK, name="ck_slot_owner_shape"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    availability_window_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("availability_windows.id", ondelete="CASCADE"), nullable=False
    )
    service_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    service_config_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("offered_services.id", ondelete="CASCADE"), nullable=False
    )

    # "{window_id}:{occurrence date}" back-reference for scoped series edits
    occurrence_key: Mapped[str] = mapped_column(String(80), nullable=False)
    occurrence_date: Mapped[date] = mapped_column(Date, nullable=False)

    start_time: Mapped[datetime] = mapped_column(nullable=False)
    end_time: Mapped[datetime] = mapped_column(nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=SlotStatus.AVAILABLE.value,
        server_default=text(f"'{SlotStatus.AVAILABLE.value}'"),
        nullable=False,
    )
    blocked_by_event_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("calendar_events.id", ondelete="SET NULL"), nullable=True
    )
    # Set when a booked slot's occurrence was edited/deleted underneath it
    detached_at: Mapped[datetime | None] = mapped_column(nullable=True)

    last_calculated: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=_utcnow, onupdate=_utcnow, nullable=False
    )

    # Relationships
    window: Mapped["AvailabilityWindow"] = relationship(back_populates="slots")
    service_config: Mapped["OfferedService"] = relationship()
    blocked_by_event: Mapped["CalendarEvent | None"] = relationship(
        back_populates="blocked_slots"
    )
    bookings: Mapped[list["Booking"]] = relationship(
        back_populates="slot", order_by="Booking.created_at"
    )
    active_booking: Mapped["Booking | None"] = relationship(
        primaryjoin=lambda: and_(
            Booking.slot_id == Slot.id,
            Booking.status != BookingStatus.CANCELLED.value,
        ),
        uselist=False,
        viewonly=True,
    )

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)


# =============================================================================
# Bookings
# =============================================================================

class Booking(Base):
    """
    A client's claim on one slot.

    Either a registered client (client_user_id) or a guest (guest_name plus
    at least one contact channel). Cancelled bookings stay attached to their
    slot for history; at most one non-cancelled booking exists per slot.
    """

    __tablename__ = "bookings"
    __table_args__ = (
        Index(
            "uq_bookings_active_slot",
            "slot_id",
            unique=True,
            postgresql_where=text("status != 'cancelled'"),
            sqlite_where=text("status != 'cancelled'"),
        ),
        Index("idx_bookings_status", "status"),
        Index("idx_bookings_client", "client_user_id"),
        CheckConstraint(
            "(client_user_id IS NULL) != (guest_name IS NULL)",
            name="ck_booking_client_xor_guest",
        ),
        CheckConstraint(
            "guest_name IS NULL OR guest_email IS NOT NULL "
            "OR guest_phone IS NOT NULL OR guest_whatsapp IS NOT NULL",
            name="ck_booking_guest_contact",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    slot_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("slots.id", ondelete="RESTRICT"), nullable=False
    )

    # Client
    client_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    guest_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    guest_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    guest_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    guest_whatsapp: Mapped[str | None] = mapped_column(String(50), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # {"email": bool, "sms": bool, "whatsapp": bool}
    notification_preferences: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        server_default=text(f"'{BookingStatus.PENDING.value}'"),
        nullable=False,
    )

    confirmed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_by_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Set when a conflict resolution keeps the external event
    cancellation_requested_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # External calendar export (best effort)
    external_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=_utcnow, onupdate=_utcnow, nullable=False
    )

    slot: Mapped["Slot"] = relationship(back_populates="bookings")

    @property
    def is_guest(self) -> bool:
        return self.client_user_id is None
