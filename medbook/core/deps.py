"""FastAPI dependencies for the actor, authorization, database and collaborators."""

from dataclasses import dataclass, field
from typing import Generator
from uuid import UUID

from fastapi import Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from medbook.db.session import SessionLocal
from medbook.services import notification_service
from medbook.services.availability_service import PublishPredicate
from medbook.services.calendar_provider import CalendarProviderClient, GoogleCalendarClient
from medbook.types import OrganizationLocationOwner, OwnerRef, ProviderOwner

# Organization roles allowed to publish availability for their locations
PUBLISHING_ROLES = {"owner", "admin", "manager"}


@dataclass(frozen=True)
class CurrentActor:
    """
    Identity supplied by the host application's auth layer.

    ``organization_roles`` maps organization id to the actor's role there.
    """

    user_id: UUID
    role: str
    provider_id: UUID | None = None
    organization_roles: dict[UUID, str] = field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_actor(request: Request) -> CurrentActor:
    """
    Read the actor the host auth middleware placed on ``request.state``.

    Raises:
        HTTPException 401: No authenticated actor
    """
    actor = getattr(request.state, "actor", None)
    if not isinstance(actor, CurrentActor):
        raise HTTPException(status_code=401, detail="Not authenticated")
    return actor


def can_publish_availability(actor: CurrentActor, owner: OwnerRef) -> bool:
    if actor.is_admin:
        return True
    if isinstance(owner, ProviderOwner):
        return actor.provider_id is not None and actor.provider_id == owner.provider_id
    return actor.organization_roles.get(owner.organization_id) in PUBLISHING_ROLES


def get_publish_policy(
    actor: CurrentActor = Depends(get_current_actor),
) -> PublishPredicate:
    """Bind the publish predicate to the current actor."""
    return lambda owner: can_publish_availability(actor, owner)


def get_owner_ref(
    provider_id: UUID | None = Query(None),
    organization_id: UUID | None = Query(None),
    location_id: UUID | None = Query(None),
) -> OwnerRef:
    """Owner from query params: provider_id XOR (organization_id + location_id)."""
    if provider_id and not (organization_id or location_id):
        return ProviderOwner(provider_id=provider_id)
    if organization_id and location_id and not provider_id:
        return OrganizationLocationOwner(
            organization_id=organization_id, location_id=location_id
        )
    raise HTTPException(
        status_code=422,
        detail="Pass provider_id, or organization_id together with location_id",
    )


def get_calendar_client() -> CalendarProviderClient:
    return GoogleCalendarClient()


def get_notification_dispatcher() -> notification_service.NotificationDispatcher:
    return notification_service.get_dispatcher()
