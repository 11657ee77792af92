"""Calendar integration router - manual sync, blocking stats, disconnect."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from medbook.core.deps import (
    CurrentActor,
    can_publish_availability,
    get_calendar_client,
    get_current_actor,
    get_db,
    get_notification_dispatcher,
)
from medbook.db.models import CalendarIntegration
from medbook.schemas.calendar import (
    BlockingStatsRead,
    CalendarIntegrationRead,
    DisconnectResult,
    SyncRequest,
    SyncResultRead,
)
from medbook.services import calendar_sync_service, slot_blocking_service
from medbook.services.calendar_provider import CalendarProviderClient
from medbook.services.errors import (
    CalendarProviderError,
    IntegrationNotFound,
    IntegrationSyncDisabled,
    TokenRefreshFailed,
)
from medbook.services.notification_service import NotificationDispatcher

router = APIRouter()


def _integration_to_read(integration: CalendarIntegration) -> CalendarIntegrationRead:
    return CalendarIntegrationRead(
        id=integration.id,
        provider=integration.provider,
        owner_type=integration.owner_type,
        provider_id=integration.provider_id,
        organization_id=integration.organization_id,
        location_id=integration.location_id,
        account_email=integration.account_email,
        calendar_id=integration.calendar_id,
        sync_enabled=integration.sync_enabled,
        sync_failure_count=integration.sync_failure_count,
        last_synced_at=integration.last_synced_at,
        last_full_sync_at=integration.last_full_sync_at,
        next_retry_at=integration.next_retry_at,
        last_error_type=integration.last_error_type,
    )


def _get_owned_integration(
    db: Session, integration_id: UUID, actor: CurrentActor
) -> CalendarIntegration:
    try:
        integration = calendar_sync_service.get_integration(db, integration_id)
    except IntegrationNotFound:
        raise HTTPException(status_code=404, detail="Calendar integration not found")
    if not can_publish_availability(actor, integration.owner):
        raise HTTPException(status_code=403, detail="Not allowed to manage this integration")
    return integration


@router.get("/{integration_id}", response_model=CalendarIntegrationRead)
def get_integration(
    integration_id: UUID,
    actor: CurrentActor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return _integration_to_read(_get_owned_integration(db, integration_id, actor))


@router.post("/{integration_id}/sync", response_model=SyncResultRead)
async def sync_integration(
    integration_id: UUID,
    data: SyncRequest,
    actor: CurrentActor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    client: CalendarProviderClient = Depends(get_calendar_client),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """
    Run a sync pass now.

    409 ``reconnect_required`` means the stored credentials no longer work
    and the owner must connect the calendar again.
    """
    integration = _get_owned_integration(db, integration_id, actor)
    try:
        result = await calendar_sync_service.sync_integration(
            db, integration, data.mode, client, dispatcher=dispatcher
        )
    except TokenRefreshFailed as e:
        raise HTTPException(
            status_code=409, detail={"code": "reconnect_required", "message": str(e)}
        )
    except IntegrationSyncDisabled as e:
        raise HTTPException(status_code=409, detail=str(e))
    except CalendarProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return SyncResultRead(**result)


@router.get("/{integration_id}/stats", response_model=BlockingStatsRead)
def get_blocking_stats(
    integration_id: UUID,
    actor: CurrentActor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    integration = _get_owned_integration(db, integration_id, actor)
    return BlockingStatsRead(**slot_blocking_service.get_blocking_stats(db, integration.owner))


@router.delete("/{integration_id}", response_model=DisconnectResult)
async def disconnect_integration(
    integration_id: UUID,
    actor: CurrentActor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    client: CalendarProviderClient = Depends(get_calendar_client),
):
    """Revoke credentials and release every slot the calendar was blocking."""
    _get_owned_integration(db, integration_id, actor)
    released = await calendar_sync_service.disconnect_integration(db, integration_id, client)
    return DisconnectResult(slots_released=released)
