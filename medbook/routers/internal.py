"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from an external scheduler (cron, GH Actions, Cloud Scheduler).
"""

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from medbook.core.config import settings
from medbook.core.deps import get_calendar_client, get_db, get_notification_dispatcher
from medbook.schemas.calendar import RegenerationRead, ScheduledSyncRead
from medbook.services import availability_service, calendar_sync_service, slot_blocking_service
from medbook.services.calendar_provider import CalendarProviderClient
from medbook.services.notification_service import NotificationDispatcher

router = APIRouter(prefix="/internal/scheduled", tags=["internal"])


def verify_internal_secret(x_internal_secret: str = Header(...)):
    """Verify the internal secret header."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if x_internal_secret != expected:
        raise HTTPException(status_code=403, detail="Invalid internal secret")


class ExpandWindowsResponse(BaseModel):
    windows_processed: int
    windows_failed: int
    slots_created: int


@router.post(
    "/calendar-sync",
    response_model=ScheduledSyncRead,
    dependencies=[Depends(verify_internal_secret)],
)
async def run_calendar_sync(
    db: Session = Depends(get_db),
    client: CalendarProviderClient = Depends(get_calendar_client),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """
    Sync every due calendar integration.

    Integrations in backoff are skipped until next_retry_at; repeated or
    non-retryable failures disable sync for that integration.
    """
    result = await calendar_sync_service.run_scheduled_syncs(db, client, dispatcher=dispatcher)
    return ScheduledSyncRead(**result)


@router.post(
    "/regenerate-slots",
    response_model=RegenerationRead,
    dependencies=[Depends(verify_internal_secret)],
)
def regenerate_slots(
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """Repair pass: re-derive slot blocking for every synced owner."""
    result = slot_blocking_service.regenerate_slots_for_all_owners(db, dispatcher=dispatcher)
    return RegenerationRead(**result)


@router.post(
    "/expand-windows",
    response_model=ExpandWindowsResponse,
    dependencies=[Depends(verify_internal_secret)],
)
def expand_windows(db: Session = Depends(get_db)):
    """Roll slot materialization forward to the expansion horizon."""
    return ExpandWindowsResponse(**availability_service.expand_all_windows(db))
