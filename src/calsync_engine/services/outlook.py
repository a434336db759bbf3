"""Microsoft Graph (Outlook) calendar adapter."""

from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
import pytz
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .base import BaseProviderAdapter, ProviderAuthenticationError, ProviderError, RateLimitedError
from ..config import Settings
from ..database import ConnectionDB
from ..models import CanonicalEvent, ExternalCalendar, Provider, TokenGrant

GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"
SCOPES = [
    "https://graph.microsoft.com/Calendars.ReadWrite",
    "https://graph.microsoft.com/User.Read",
    "offline_access",
]


def _graph_datetime(dt: datetime) -> str:
    """Graph expects naive ISO timestamps paired with an explicit timeZone."""
    return dt.astimezone(pytz.UTC).replace(tzinfo=None).isoformat()


class OutlookCalendarAdapter(BaseProviderAdapter):
    """Outlook calendars through Microsoft Graph v1.0."""

    provider = Provider.OUTLOOK

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        super().__init__(settings)
        self._client = client or httpx.AsyncClient(timeout=settings.request_timeout_seconds)

    async def aclose(self) -> None:
        await self._client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(RateLimitedError),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        response = await self._client.request(method, url, **kwargs)
        if response.status_code == 429:
            raise RateLimitedError(response.status_code)
        return response

    async def _request(
        self,
        connection: ConnectionDB,
        method: str,
        url: str,
        description: str,
        **kwargs,
    ) -> httpx.Response:
        if not connection.access_token:
            raise ProviderAuthenticationError(self.provider, "Connection has no access token")

        headers = {
            "Authorization": f"Bearer {connection.access_token}",
            "Prefer": 'outlook.timezone="UTC"',
        }
        if not url.startswith("http"):
            url = f"{GRAPH_API_BASE}{url}"

        try:
            response = await self._send(method, url, headers=headers, **kwargs)
        except RateLimitedError as e:
            raise ProviderError(self.provider, f"{description}: rate limited", e)
        except httpx.HTTPError as e:
            raise ProviderError(self.provider, f"{description}: {e}", e)

        if response.status_code == 401:
            raise ProviderAuthenticationError(self.provider, f"{description}: access token rejected")
        if response.status_code >= 400:
            raise ProviderError(
                self.provider,
                f"{description}: HTTP {response.status_code} {response.text[:200]}"
            )
        return response

    def _json(self, response: httpx.Response, description: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(self.provider, f"{description}: malformed response", e)
        if not isinstance(data, dict):
            raise ProviderError(self.provider, f"{description}: unexpected response body")
        return data

    async def _get_paged(self, connection: ConnectionDB, url: str, description: str, params=None) -> List[Dict[str, Any]]:
        items = []
        while url:
            response = await self._request(connection, "GET", url, description, params=params)
            data = self._json(response, description)
            items.extend(data.get("value", []))
            # nextLink already carries the query string
            url = data.get("@odata.nextLink")
            params = None
        return items

    async def list_calendars(self, connection: ConnectionDB) -> List[ExternalCalendar]:
        description = "Failed to list Outlook calendars"
        items = await self._get_paged(connection, "/me/calendars", description)
        try:
            return [
                ExternalCalendar(
                    id=item["id"],
                    name=item.get("name") or "Unnamed Calendar",
                    color=item.get("hexColor") or item.get("color"),
                    raw=item,
                )
                for item in items
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise ProviderError(self.provider, f"{description}: malformed calendar entry", e)

    async def list_events(
        self,
        connection: ConnectionDB,
        calendar_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        description = f"Failed to list Outlook events for {calendar_id}"
        if time_min and time_max:
            return await self._get_paged(
                connection,
                f"/me/calendars/{calendar_id}/calendarView",
                description,
                params={
                    "startDateTime": _graph_datetime(time_min),
                    "endDateTime": _graph_datetime(time_max),
                    "$top": 100,
                },
            )
        return await self._get_paged(
            connection, f"/me/calendars/{calendar_id}/events", description, params={"$top": 100}
        )

    async def create_event(
        self, connection: ConnectionDB, calendar_id: str, event: CanonicalEvent
    ) -> Dict[str, Any]:
        response = await self._request(
            connection, "POST", f"/me/calendars/{calendar_id}/events",
            "Failed to create Outlook event", json=self._to_graph_body(event),
        )
        return self._json(response, "Failed to create Outlook event")

    async def update_event(
        self, connection: ConnectionDB, calendar_id: str, event_id: str, event: CanonicalEvent
    ) -> Dict[str, Any]:
        response = await self._request(
            connection, "PATCH", f"/me/calendars/{calendar_id}/events/{event_id}",
            f"Failed to update Outlook event {event_id}", json=self._to_graph_body(event),
        )
        return self._json(response, f"Failed to update Outlook event {event_id}")

    async def delete_event(self, connection: ConnectionDB, calendar_id: str, event_id: str) -> None:
        await self._request(
            connection, "DELETE", f"/me/calendars/{calendar_id}/events/{event_id}",
            f"Failed to delete Outlook event {event_id}",
        )

    async def refresh_credentials(self, connection: ConnectionDB) -> TokenGrant:
        if not connection.refresh_token:
            raise ProviderAuthenticationError(self.provider, "No refresh token available")

        try:
            response = await self._send(
                "POST",
                self.settings.outlook_token_url,
                data={
                    "client_id": self.settings.outlook_client_id or "",
                    "client_secret": self.settings.outlook_client_secret or "",
                    "refresh_token": connection.refresh_token,
                    "grant_type": "refresh_token",
                    "scope": " ".join(SCOPES),
                },
            )
        except RateLimitedError as e:
            raise ProviderError(self.provider, "Token refresh rate limited", e)
        except httpx.HTTPError as e:
            raise ProviderError(self.provider, f"Token refresh failed: {e}", e)

        if response.status_code in (400, 401):
            raise ProviderAuthenticationError(
                self.provider, f"Refresh token rejected: {response.text[:200]}"
            )
        if response.status_code != 200:
            raise ProviderError(self.provider, f"Token refresh failed: HTTP {response.status_code}")

        data = self._json(response, "Token refresh failed")
        try:
            return TokenGrant(
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token"),
                expires_in=data.get("expires_in"),
            )
        except (KeyError, ValueError) as e:
            raise ProviderError(self.provider, "Token refresh failed: malformed token response", e)

    def _to_graph_body(self, event: CanonicalEvent) -> Dict[str, Any]:
        """Convert a canonical event into a Graph event resource."""
        body: Dict[str, Any] = {
            "subject": event.title,
            "start": {"dateTime": _graph_datetime(event.start_time), "timeZone": "UTC"},
            "end": {"dateTime": _graph_datetime(event.end_time), "timeZone": "UTC"},
            "isAllDay": event.is_all_day,
        }
        if event.description:
            body["body"] = {"contentType": "text", "content": event.description}
        if event.location:
            body["location"] = {"displayName": event.location}
        if event.attendees:
            body["attendees"] = [
                {
                    "emailAddress": {"address": a.email, "name": a.name},
                    "type": a.role.value,
                }
                for a in event.attendees
            ]
        if event.reminders:
            body["isReminderOn"] = True
            body["reminderMinutesBeforeStart"] = min(r.minutes for r in event.reminders)
        return body
