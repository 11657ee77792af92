"""Booking schemas - Pydantic models for claiming and managing slots."""

from datetime import datetime
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, model_validator

from medbook.db.enums import BookingStatus


# =============================================================================
# Client info
# =============================================================================

class RegisteredClientInput(BaseModel):
    """Schema for a booking made by a registered client."""
    kind: Literal["registered"] = "registered"
    user_id: UUID


class GuestClientInput(BaseModel):
    """Schema for a guest booking; at least one contact channel is required."""
    kind: Literal["guest"] = "guest"
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(None, max_length=50)
    whatsapp: str | None = Field(None, max_length=50)

    @model_validator(mode="after")
    def require_contact(self) -> "GuestClientInput":
        if not (self.email or self.phone or self.whatsapp):
            raise ValueError("Guest bookings need an email, phone or WhatsApp contact")
        return self


ClientInput = Annotated[
    Union[RegisteredClientInput, GuestClientInput],
    Field(discriminator="kind"),
]


class NotificationPreferences(BaseModel):
    email: bool = True
    sms: bool = False
    whatsapp: bool = False


# =============================================================================
# Requests
# =============================================================================

class BookingCreate(BaseModel):
    """Schema for claiming a slot."""
    slot_id: UUID
    client: ClientInput
    notes: str | None = Field(None, max_length=2000)
    notification_preferences: NotificationPreferences = Field(
        default_factory=NotificationPreferences
    )


class BookingCancel(BaseModel):
    """Schema for cancelling a booking."""
    reason: str | None = Field(None, max_length=2000)
    cancelled_by_user_id: UUID | None = None


class BookingStatusUpdate(BaseModel):
    """Schema for confirming / completing / marking a booking as no-show."""
    status: BookingStatus


# =============================================================================
# Responses
# =============================================================================

class BookingRead(BaseModel):
    """Schema for reading a booking."""
    id: UUID
    slot_id: UUID
    status: str
    client_user_id: UUID | None
    guest_name: str | None
    guest_email: str | None
    guest_phone: str | None
    guest_whatsapp: str | None
    notes: str | None
    notification_preferences: dict
    start_time: datetime
    end_time: datetime
    confirmed_at: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    cancellation_requested_at: datetime | None
    external_event_id: str | None
    created_at: datetime


class SlotUnavailableResponse(BaseModel):
    """Returned with 409 so clients can re-offer other slots."""
    code: Literal["slot_unavailable"] = "slot_unavailable"
    detail: str
    slot_id: UUID | None = None
