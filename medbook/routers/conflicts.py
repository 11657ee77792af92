"""Conflicts router - detection, summary and resolution."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from medbook.core.deps import (
    CurrentActor,
    can_publish_availability,
    get_current_actor,
    get_db,
    get_owner_ref,
)
from medbook.schemas.conflict import (
    ConflictRead,
    ConflictResolveRequest,
    ConflictSummaryRead,
    ResolutionResultRead,
)
from medbook.services import conflict_service
from medbook.services.errors import (
    BookingValidationError,
    ConflictNotAutoResolvable,
    ConflictNotFound,
    SlotNotFound,
)
from medbook.types import OwnerRef

router = APIRouter()


def _require_owner_access(actor: CurrentActor, owner: OwnerRef) -> None:
    if not can_publish_availability(actor, owner):
        raise HTTPException(status_code=403, detail="Not allowed to view conflicts for this owner")


@router.get("", response_model=list[ConflictRead])
def list_conflicts(
    owner: OwnerRef = Depends(get_owner_ref),
    actor: CurrentActor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """All current conflicts of an owner, most severe first."""
    _require_owner_access(actor, owner)
    return [
        ConflictRead(
            id=r.id,
            conflict_type=r.conflict_type,
            severity=r.severity,
            description=r.description,
            detected_at=r.detected_at,
            auto_resolvable=r.auto_resolvable,
            suggested_resolution=r.suggested_resolution,
            slot_ids=list(r.slot_ids),
            booking_ids=list(r.booking_ids),
            event_id=r.event_id,
        )
        for r in conflict_service.detect_conflicts(db, owner)
    ]


@router.get("/summary", response_model=ConflictSummaryRead)
def get_conflict_summary(
    owner: OwnerRef = Depends(get_owner_ref),
    actor: CurrentActor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    _require_owner_access(actor, owner)
    return ConflictSummaryRead(**conflict_service.get_conflict_summary(db, owner))


@router.post("/{conflict_id}/auto-resolve", response_model=ResolutionResultRead)
def auto_resolve_conflict(
    conflict_id: str,
    owner: OwnerRef = Depends(get_owner_ref),
    actor: CurrentActor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """Fix a slot state mismatch. Other conflict types return 409."""
    _require_owner_access(actor, owner)
    try:
        result = conflict_service.auto_resolve_conflict(db, conflict_id)
    except ConflictNotAutoResolvable as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (ConflictNotFound, SlotNotFound):
        raise HTTPException(status_code=404, detail="Conflict not found")
    return ResolutionResultRead(success=result.success, message=result.message)


@router.post("/{conflict_id}/resolve", response_model=ResolutionResultRead)
def resolve_conflict(
    conflict_id: str,
    data: ConflictResolveRequest,
    owner: OwnerRef = Depends(get_owner_ref),
    actor: CurrentActor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """Keep the booking or keep the external event for an overlap conflict."""
    _require_owner_access(actor, owner)
    try:
        result = conflict_service.resolve_conflict(db, conflict_id, data.resolution)
    except ConflictNotFound:
        raise HTTPException(status_code=404, detail="Conflict not found")
    except BookingValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return ResolutionResultRead(success=result.success, message=result.message)
