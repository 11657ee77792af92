"""Calendar provider client - vendor-neutral interface plus the Google implementation.

Handles:
- Event listing by time window (full sync) or sync token (incremental sync)
- Event creation/update/deletion for exported bookings
- OAuth token refresh and revocation

The scheduling core depends only on CalendarProviderClient. GoogleCalendarClient
talks to the Google REST API directly over httpx.

Note: Requires calendar.readonly and calendar.events scopes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import httpx

from medbook.core.config import settings
from medbook.services.errors import (
    CalendarProviderError,
    SyncTokenInvalid,
    TokenRefreshFailed,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Types
# =============================================================================

@dataclass(frozen=True)
class ExternalEvent:
    """One entry from the provider's event feed."""
    id: str
    status: str
    title: str
    start: datetime | None
    end: datetime | None
    is_all_day: bool = False
    etag: str | None = None
    transparency: str | None = None

    @property
    def is_removed(self) -> bool:
        return self.status == "cancelled"

    @property
    def blocks_availability(self) -> bool:
        # "transparent" events are shown as free time
        return self.transparency != "transparent"


@dataclass(frozen=True)
class EventPage:
    events: list[ExternalEvent]
    next_sync_token: str | None


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None


@dataclass(frozen=True)
class EventPayload:
    """Outbound event (booking export)."""
    title: str
    start: datetime
    end: datetime
    description: str | None = None
    attendee_emails: tuple[str, ...] = ()
    create_meet_link: bool = False
    request_id: str | None = None


class CalendarProviderClient(Protocol):
    async def list_events(
        self,
        access_token: str,
        calendar_id: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        sync_token: str | None = None,
    ) -> EventPage: ...

    async def create_event(
        self, access_token: str, calendar_id: str, payload: EventPayload
    ) -> str: ...

    async def update_event(
        self, access_token: str, calendar_id: str, event_id: str, payload: EventPayload
    ) -> None: ...

    async def delete_event(
        self, access_token: str, calendar_id: str, event_id: str
    ) -> None: ...

    async def refresh_token(self, refresh_token: str) -> TokenGrant: ...

    async def revoke_token(self, token: str) -> None: ...


# =============================================================================
# Parsing
# =============================================================================

def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_google_event(item: dict[str, Any]) -> ExternalEvent:
    """
    Map a Google event resource to an ExternalEvent.

    All-day events carry ``date`` instead of ``dateTime``; they span
    midnight UTC to midnight UTC of the (exclusive) end date. Cancelled
    entries in incremental feeds may have no start/end at all.
    """
    start_data = item.get("start") or {}
    end_data = item.get("end") or {}
    is_all_day = "date" in start_data and "dateTime" not in start_data

    start: datetime | None = None
    end: datetime | None = None
    if is_all_day:
        start = datetime.fromisoformat(start_data["date"]).replace(tzinfo=timezone.utc)
        end = datetime.fromisoformat(end_data.get("date", start_data["date"])).replace(
            tzinfo=timezone.utc
        )
        if end <= start:
            end = start + timedelta(days=1)
    elif start_data.get("dateTime") and end_data.get("dateTime"):
        start = _parse_datetime(start_data["dateTime"])
        end = _parse_datetime(end_data["dateTime"])

    return ExternalEvent(
        id=item.get("id", ""),
        status=item.get("status", "confirmed"),
        title=item.get("summary") or "Untitled Event",
        start=start,
        end=end,
        is_all_day=is_all_day,
        etag=item.get("etag"),
        transparency=item.get("transparency"),
    )


def _event_body(payload: EventPayload) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": payload.title,
        "start": {"dateTime": payload.start.isoformat(), "timeZone": "UTC"},
        "end": {"dateTime": payload.end.isoformat(), "timeZone": "UTC"},
    }
    if payload.description:
        body["description"] = payload.description
    if payload.attendee_emails:
        body["attendees"] = [{"email": e} for e in payload.attendee_emails]
    if payload.create_meet_link:
        body["conferenceData"] = {
            "createRequest": {
                "requestId": payload.request_id or payload.start.isoformat(),
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }
    return body


# =============================================================================
# Google
# =============================================================================

class GoogleCalendarClient:
    """CalendarProviderClient backed by the Google Calendar REST API."""

    def __init__(
        self,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        api_base: str | None = None,
        token_url: str | None = None,
        revoke_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        max_results: int = 250,
    ) -> None:
        self.client_id = client_id if client_id is not None else settings.GOOGLE_CLIENT_ID
        self.client_secret = (
            client_secret if client_secret is not None else settings.GOOGLE_CLIENT_SECRET
        )
        self.api_base = (api_base or settings.GOOGLE_CALENDAR_API_BASE).rstrip("/")
        self.token_url = token_url or settings.GOOGLE_TOKEN_URL
        self.revoke_url = revoke_url or settings.GOOGLE_REVOKE_URL
        self.timeout = timeout or settings.GOOGLE_API_TIMEOUT_SECONDS
        self.transport = transport
        self.max_results = max_results

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def _events_url(self, calendar_id: str, event_id: str | None = None) -> str:
        url = f"{self.api_base}/calendars/{calendar_id}/events"
        return f"{url}/{event_id}" if event_id else url

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise CalendarProviderError(f"Request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise CalendarProviderError(f"Network error: {exc}") from exc
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        status = response.status_code
        if status < 400:
            return
        if status == 410:
            raise SyncTokenInvalid("Sync token is no longer valid", status)
        if status == 401:
            raise CalendarProviderError(f"{action} failed: unauthorized (token expired)", status)
        if status == 403:
            raise CalendarProviderError(f"{action} failed: permission denied", status)
        if status == 404:
            raise CalendarProviderError(f"{action} failed: calendar not found", status)
        if status == 429:
            raise CalendarProviderError(f"{action} failed: rate limit exceeded", status)
        raise CalendarProviderError(f"{action} failed with status {status}", status)

    async def list_events(
        self,
        access_token: str,
        calendar_id: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        sync_token: str | None = None,
    ) -> EventPage:
        """
        Fetch every page of events.

        With ``sync_token`` only changes since the token are returned (including
        cancelled entries); otherwise the [time_min, time_max] window is listed.
        """
        base_params: dict[str, str] = {
            "singleEvents": "true",
            "maxResults": str(self.max_results),
        }
        if sync_token:
            base_params["syncToken"] = sync_token
        else:
            if time_min is None or time_max is None:
                raise ValueError("time_min and time_max are required without a sync token")
            base_params["timeMin"] = time_min.isoformat()
            base_params["timeMax"] = time_max.isoformat()
            base_params["orderBy"] = "startTime"

        events: list[ExternalEvent] = []
        page_token: str | None = None
        next_sync_token: str | None = None
        while True:
            params = dict(base_params)
            if page_token:
                params["pageToken"] = page_token
            response = await self._send(
                "GET",
                self._events_url(calendar_id),
                headers={"Authorization": f"Bearer {access_token}"},
                params=params,
            )
            self._raise_for_status(response, "List events")
            data = response.json()
            for item in data.get("items", []):
                try:
                    events.append(parse_google_event(item))
                except (KeyError, ValueError):
                    logger.warning("Skipping unparseable calendar event id=%s", item.get("id"))
            page_token = data.get("nextPageToken")
            if not page_token:
                next_sync_token = data.get("nextSyncToken")
                break
        return EventPage(events=events, next_sync_token=next_sync_token)

    async def create_event(
        self, access_token: str, calendar_id: str, payload: EventPayload
    ) -> str:
        params: dict[str, str] = {}
        if payload.attendee_emails:
            params["sendUpdates"] = "all"
        if payload.create_meet_link:
            params["conferenceDataVersion"] = "1"
        response = await self._send(
            "POST",
            self._events_url(calendar_id),
            headers={"Authorization": f"Bearer {access_token}"},
            json=_event_body(payload),
            params=params,
        )
        self._raise_for_status(response, "Create event")
        return response.json()["id"]

    async def update_event(
        self, access_token: str, calendar_id: str, event_id: str, payload: EventPayload
    ) -> None:
        response = await self._send(
            "PATCH",
            self._events_url(calendar_id, event_id),
            headers={"Authorization": f"Bearer {access_token}"},
            json=_event_body(payload),
        )
        self._raise_for_status(response, "Update event")

    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        response = await self._send(
            "DELETE",
            self._events_url(calendar_id, event_id),
            headers={"Authorization": f"Bearer {access_token}"},
        )
        # Already gone is fine
        if response.status_code in (404, 410):
            return
        self._raise_for_status(response, "Delete event")

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        """
        Exchange a refresh token for a new access token.

        Google may rotate the refresh token; the new one is returned when sent.
        """
        if not refresh_token:
            raise TokenRefreshFailed("No refresh token available")
        try:
            response = await self._send(
                "POST",
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except CalendarProviderError as exc:
            raise TokenRefreshFailed(str(exc)) from exc

        if response.status_code != 200:
            error = ""
            try:
                error = response.json().get("error", "")
            except ValueError:
                pass
            raise TokenRefreshFailed(
                f"Token refresh failed: {error or response.status_code}",
                response.status_code,
            )

        data = response.json()
        expires_in = data.get("expires_in")
        expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
            if expires_in
            else datetime.now(timezone.utc) + timedelta(days=settings.TOKEN_FALLBACK_EXPIRY_DAYS)
        )
        return TokenGrant(
            access_token=data["access_token"],
            expires_at=expires_at,
            refresh_token=data.get("refresh_token"),
        )

    async def revoke_token(self, token: str) -> None:
        response = await self._send("POST", self.revoke_url, params={"token": token})
        if response.status_code not in (200, 400):
            # 400 means the token was already invalid
            self._raise_for_status(response, "Revoke token")
