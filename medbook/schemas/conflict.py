"""Conflict schemas - detected conflicts, summary and resolution requests."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from medbook.db.enums import ConflictResolution, ConflictSeverity, ConflictType


class ConflictRead(BaseModel):
    """Schema for one detected conflict."""
    id: str
    conflict_type: ConflictType
    severity: ConflictSeverity
    description: str
    detected_at: datetime
    auto_resolvable: bool
    suggested_resolution: str
    slot_ids: list[UUID]
    booking_ids: list[UUID]
    event_id: UUID | None


class ConflictSummaryRead(BaseModel):
    total: int
    by_type: dict[str, int]
    by_severity: dict[str, int]
    auto_resolvable: int
    oldest_detected_at: datetime | None


class ConflictResolveRequest(BaseModel):
    """Schema for a manual resolution of an event/booking overlap."""
    resolution: ConflictResolution


class ResolutionResultRead(BaseModel):
    success: bool
    message: str
