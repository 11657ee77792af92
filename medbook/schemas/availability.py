"""Availability schemas - Pydantic models for windows and slots API."""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, Field

from medbook.db.enums import EditScope, SchedulingGranularity
from medbook.types import (
    CustomRecurrence,
    DailyRecurrence,
    NoRecurrence,
    OrganizationLocationOwner,
    OwnerRef,
    ProviderOwner,
    Recurrence,
    WeeklyRecurrence,
)


Weekday = Annotated[int, Field(ge=0, le=6, description="Monday=0, Sunday=6")]


# =============================================================================
# Owner
# =============================================================================

class ProviderOwnerInput(BaseModel):
    """Schema for a provider owner reference."""
    kind: Literal["provider"] = "provider"
    provider_id: UUID

    def to_owner(self) -> OwnerRef:
        return ProviderOwner(provider_id=self.provider_id)


class OrganizationLocationOwnerInput(BaseModel):
    """Schema for an organization + location owner reference."""
    kind: Literal["organization_location"] = "organization_location"
    organization_id: UUID
    location_id: UUID

    def to_owner(self) -> OwnerRef:
        return OrganizationLocationOwner(
            organization_id=self.organization_id, location_id=self.location_id
        )


OwnerInput = Annotated[
    Union[ProviderOwnerInput, OrganizationLocationOwnerInput],
    Field(discriminator="kind"),
]


# =============================================================================
# Recurrence
# =============================================================================

class NoRecurrenceInput(BaseModel):
    kind: Literal["none"] = "none"

    def to_recurrence(self) -> Recurrence:
        return NoRecurrence()


class DailyRecurrenceInput(BaseModel):
    kind: Literal["daily"] = "daily"
    until: date | None = None

    def to_recurrence(self) -> Recurrence:
        return DailyRecurrence(until=self.until)


class WeeklyRecurrenceInput(BaseModel):
    kind: Literal["weekly"] = "weekly"
    days: list[Weekday] = Field(default_factory=list)
    until: date | None = None

    def to_recurrence(self) -> Recurrence:
        return WeeklyRecurrence(days=tuple(self.days), until=self.until)


class CustomRecurrenceInput(BaseModel):
    kind: Literal["custom"] = "custom"
    days: list[Weekday] = Field(default_factory=list)
    until: date | None = None

    def to_recurrence(self) -> Recurrence:
        return CustomRecurrence(days=tuple(self.days), until=self.until)


RecurrenceInput = Annotated[
    Union[NoRecurrenceInput, DailyRecurrenceInput, WeeklyRecurrenceInput, CustomRecurrenceInput],
    Field(discriminator="kind"),
]


# =============================================================================
# Windows
# =============================================================================

class OfferedServiceInput(BaseModel):
    """Schema for a service offered inside a window."""
    service_id: UUID
    duration_minutes: int = Field(..., ge=1, le=480)
    price: Decimal | None = Field(None, ge=0)
    is_online_available: bool = True
    is_in_person_available: bool = False


class AvailabilityWindowCreate(BaseModel):
    """Schema for creating an availability window."""
    owner: OwnerInput
    start_time: AwareDatetime
    end_time: AwareDatetime
    recurrence: RecurrenceInput = Field(default_factory=NoRecurrenceInput)
    scheduling_granularity: SchedulingGranularity = SchedulingGranularity.CONTINUOUS
    requires_confirmation: bool = False
    is_online_available: bool = True
    is_in_person_available: bool = False
    services: list[OfferedServiceInput] = Field(default_factory=list)


class AvailabilityWindowUpdate(BaseModel):
    """
    Schema for editing a window.

    For recurring windows, ``occurrence_date`` selects the occurrence that
    THIS_OCCURRENCE / THIS_AND_FUTURE edits start from. Times are the new
    start/end of that occurrence.
    """
    scope: EditScope = EditScope.ALL
    occurrence_date: date | None = None
    start_time: AwareDatetime | None = None
    end_time: AwareDatetime | None = None
    recurrence: RecurrenceInput | None = None
    scheduling_granularity: SchedulingGranularity | None = None
    requires_confirmation: bool | None = None
    is_online_available: bool | None = None
    is_in_person_available: bool | None = None
    services: list[OfferedServiceInput] | None = None


class OfferedServiceRead(BaseModel):
    """Schema for reading an offered service."""
    id: UUID
    service_id: UUID
    duration_minutes: int
    price: Decimal | None
    is_online_available: bool
    is_in_person_available: bool


class AvailabilityWindowRead(BaseModel):
    """Schema for reading an availability window."""
    id: UUID
    owner_type: str
    provider_id: UUID | None
    organization_id: UUID | None
    location_id: UUID | None
    start_time: datetime
    end_time: datetime
    recurrence_kind: str
    recurrence_days: list[int] | None
    recurrence_until: date | None
    excluded_dates: list[str]
    series_id: UUID | None
    scheduling_granularity: str
    requires_confirmation: bool
    is_online_available: bool
    is_in_person_available: bool
    services: list[OfferedServiceRead]
    created_at: datetime
    updated_at: datetime


class WindowChangeRead(BaseModel):
    """Schema for the outcome of a window create/edit/delete."""
    window: AvailabilityWindowRead | None
    created_windows: list[UUID] = Field(default_factory=list)
    slots_created: int = 0
    slots_invalidated: int = 0
    bookings_detached: int = 0


class ExpandRequest(BaseModel):
    """Schema for materializing a window over a date range."""
    date_start: date
    date_end: date


class MaterializeResultRead(BaseModel):
    created: int
    existing: int
    invalidated: int
    detached: int
    restored: int = 0


# =============================================================================
# Slots
# =============================================================================

class SlotRead(BaseModel):
    """Schema for reading a slot."""
    id: UUID
    availability_window_id: UUID
    service_id: UUID
    service_config_id: UUID
    occurrence_date: date
    start_time: datetime
    end_time: datetime
    status: str
    blocked_by_event_id: UUID | None
