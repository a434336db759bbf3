"""Google Calendar adapter."""

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import pytz
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .base import BaseProviderAdapter, ProviderAuthenticationError, ProviderError
from ..database import ConnectionDB
from ..models import CanonicalEvent, ExternalCalendar, Provider, TokenGrant

SCOPES = ['https://www.googleapis.com/auth/calendar']


def _is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, HttpError) and exc.resp.status == 429


class GoogleCalendarAdapter(BaseProviderAdapter):
    """Google Calendar API v3 through the official client library.

    The client is synchronous, so every request runs in the loop's default
    executor.
    """

    provider = Provider.GOOGLE

    def _credentials(self, connection: ConnectionDB) -> Credentials:
        if not connection.access_token and not connection.refresh_token:
            raise ProviderAuthenticationError(self.provider, "Connection has no stored credentials")
        expiry = connection.token_expires_at
        return Credentials(
            token=connection.access_token,
            refresh_token=connection.refresh_token,
            token_uri=self.settings.google_token_uri,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            scopes=SCOPES,
            # google-auth compares against naive UTC
            expiry=expiry.astimezone(pytz.UTC).replace(tzinfo=None) if expiry else None,
        )

    def _service(self, connection: ConnectionDB):
        return build('calendar', 'v3', credentials=self._credentials(connection), cache_discovery=False)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(_is_rate_limited),
        reraise=True,
    )
    async def _execute(self, request_factory: Callable[[], Any]) -> Dict[str, Any]:
        return await asyncio.get_event_loop().run_in_executor(
            None,
            lambda: request_factory().execute()
        )

    async def _call(self, description: str, request_factory: Callable[[], Any]) -> Dict[str, Any]:
        try:
            return await self._execute(request_factory)
        except HttpError as e:
            if e.resp.status in (401, 403):
                raise ProviderAuthenticationError(self.provider, f"{description}: access denied", e)
            raise ProviderError(self.provider, f"{description}: HTTP {e.resp.status}", e)
        except RefreshError as e:
            raise ProviderAuthenticationError(self.provider, f"{description}: credential refresh rejected", e)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(self.provider, f"{description}: {e}", e)

    async def list_calendars(self, connection: ConnectionDB) -> List[ExternalCalendar]:
        service = self._service(connection)
        calendars = []
        page_token = None

        while True:
            params = {'pageToken': page_token} if page_token else {}
            result = await self._call(
                "Failed to list Google calendars",
                lambda: service.calendarList().list(**params)
            )
            for cal_data in result.get('items', []):
                calendars.append(ExternalCalendar(
                    id=cal_data['id'],
                    name=cal_data.get('summaryOverride') or cal_data.get('summary', 'Unnamed Calendar'),
                    description=cal_data.get('description'),
                    color=cal_data.get('backgroundColor'),
                    time_zone=cal_data.get('timeZone'),
                    raw=cal_data,
                ))
            page_token = result.get('nextPageToken')
            if not page_token:
                break

        return calendars

    async def list_events(
        self,
        connection: ConnectionDB,
        calendar_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        service = self._service(connection)
        events = []
        page_token = None

        while True:
            params: Dict[str, Any] = {
                'calendarId': calendar_id,
                'maxResults': 250,
                'singleEvents': True,
                'orderBy': 'startTime',
            }
            if time_min:
                params['timeMin'] = time_min.isoformat()
            if time_max:
                params['timeMax'] = time_max.isoformat()
            if page_token:
                params['pageToken'] = page_token

            result = await self._call(
                f"Failed to list Google events for {calendar_id}",
                lambda: service.events().list(**params)
            )
            events.extend(result.get('items', []))

            page_token = result.get('nextPageToken')
            if not page_token:
                break

        return events

    async def create_event(
        self, connection: ConnectionDB, calendar_id: str, event: CanonicalEvent
    ) -> Dict[str, Any]:
        service = self._service(connection)
        body = self._to_google_body(event)
        return await self._call(
            "Failed to create Google event",
            lambda: service.events().insert(calendarId=calendar_id, body=body)
        )

    async def update_event(
        self, connection: ConnectionDB, calendar_id: str, event_id: str, event: CanonicalEvent
    ) -> Dict[str, Any]:
        service = self._service(connection)
        body = self._to_google_body(event)
        return await self._call(
            f"Failed to update Google event {event_id}",
            lambda: service.events().update(calendarId=calendar_id, eventId=event_id, body=body)
        )

    async def delete_event(self, connection: ConnectionDB, calendar_id: str, event_id: str) -> None:
        service = self._service(connection)
        await self._call(
            f"Failed to delete Google event {event_id}",
            lambda: service.events().delete(calendarId=calendar_id, eventId=event_id)
        )

    async def refresh_credentials(self, connection: ConnectionDB) -> TokenGrant:
        if not connection.refresh_token:
            raise ProviderAuthenticationError(self.provider, "No refresh token available")

        creds = self._credentials(connection)
        try:
            await asyncio.get_event_loop().run_in_executor(None, lambda: creds.refresh(Request()))
        except RefreshError as e:
            raise ProviderAuthenticationError(self.provider, f"Refresh token rejected: {e}", e)
        except Exception as e:
            raise ProviderError(self.provider, f"Failed to refresh Google token: {e}", e)

        expires_in = None
        if creds.expiry:
            remaining = creds.expiry.replace(tzinfo=pytz.UTC) - datetime.now(pytz.UTC)
            expires_in = max(int(remaining.total_seconds()), 0)

        return TokenGrant(
            access_token=creds.token,
            refresh_token=creds.refresh_token if creds.refresh_token != connection.refresh_token else None,
            expires_in=expires_in,
        )

    def _to_google_body(self, event: CanonicalEvent) -> Dict[str, Any]:
        """Convert a canonical event into a Google event resource."""
        if event.is_all_day:
            start = {'date': event.start_time.date().isoformat()}
            end = {'date': event.end_time.date().isoformat()}
        else:
            start = {'dateTime': event.start_time.isoformat(), 'timeZone': event.time_zone}
            end = {'dateTime': event.end_time.isoformat(), 'timeZone': event.time_zone}

        body: Dict[str, Any] = {
            'summary': event.title,
            'start': start,
            'end': end,
            'status': event.status.value,
        }
        if event.description:
            body['description'] = event.description
        if event.location:
            body['location'] = event.location
        if event.attendees:
            body['attendees'] = [
                {
                    'email': a.email,
                    'displayName': a.name,
                    'optional': a.role.value == 'optional',
                }
                for a in event.attendees
            ]
        if event.reminders:
            body['reminders'] = {
                'useDefault': False,
                'overrides': [
                    {'method': 'email' if r.method.value == 'email' else 'popup', 'minutes': r.minutes}
                    for r in event.reminders
                ],
            }
        return body
