"""Read-only iCalendar feed subscription adapter."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx
from icalendar import Calendar
import pytz
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .base import BaseProviderAdapter, ProviderError, RateLimitedError, ReadOnlyProviderError
from ..config import Settings
from ..database import ConnectionDB
from ..models import CanonicalEvent, ExternalCalendar, Provider, TokenGrant

SUBSCRIPTION_CALENDAR_ID = "ical-subscription"


def _as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _to_utc(value) -> datetime:
    """Normalize a DATE or DATE-TIME value for window comparison."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return pytz.UTC.localize(value)
        return value.astimezone(pytz.UTC)
    return pytz.UTC.localize(datetime.combine(value, datetime.min.time()))


def _address(value) -> Optional[str]:
    if value is None:
        return None
    address = str(value)
    if address.lower().startswith('mailto:'):
        address = address[len('mailto:'):]
    return address or None


class ICalFeedAdapter(BaseProviderAdapter):
    """Subscription to a remote .ics document.

    Exposes a single synthetic calendar and no credentials. Write operations
    and credential refresh are rejected.
    """

    provider = Provider.ICAL

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        super().__init__(settings)
        self._client = client or httpx.AsyncClient(
            timeout=settings.request_timeout_seconds,
            follow_redirects=True,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _feed_url(self, connection: ConnectionDB) -> str:
        url = (connection.connection_metadata or {}).get('url')
        if not url:
            raise ProviderError(self.provider, "iCal subscription has no feed URL")
        if url.startswith('webcal://'):
            url = 'https://' + url[len('webcal://'):]
        return url

    async def list_calendars(self, connection: ConnectionDB) -> List[ExternalCalendar]:
        metadata = connection.connection_metadata or {}
        return [ExternalCalendar(
            id=SUBSCRIPTION_CALENDAR_ID,
            name=metadata.get('name') or connection.account_name or 'iCal Subscription',
            description='Subscribed iCal feed',
            raw={'url': metadata.get('url')},
        )]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(RateLimitedError),
        reraise=True,
    )
    async def _fetch(self, url: str) -> httpx.Response:
        response = await self._client.get(url)
        if response.status_code == 429:
            raise RateLimitedError(response.status_code)
        return response

    async def list_events(
        self,
        connection: ConnectionDB,
        calendar_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        url = self._feed_url(connection)
        try:
            response = await self._fetch(url)
        except RateLimitedError as e:
            raise ProviderError(self.provider, "Feed fetch rate limited", e)
        except httpx.HTTPError as e:
            raise ProviderError(self.provider, f"Failed to fetch iCal feed: {e}", e)

        if response.status_code >= 400:
            raise ProviderError(self.provider, f"Failed to fetch iCal feed: HTTP {response.status_code}")

        try:
            cal = Calendar.from_ical(response.content)
        except (ValueError, IndexError, KeyError) as e:
            raise ProviderError(self.provider, f"Malformed iCal feed: {e}", e)

        events = []
        for component in cal.walk('VEVENT'):
            parsed = self._parse_vevent(component)
            if parsed is None:
                continue
            start, end = parsed.pop('_start'), parsed.pop('_end')
            if time_min and end < time_min:
                continue
            if time_max and start > time_max:
                continue
            events.append(parsed)
        return events

    def _parse_vevent(self, vevent) -> Optional[Dict[str, Any]]:
        """Flatten a VEVENT into a JSON-safe dict."""
        uid = vevent.get('uid')
        dtstart = vevent.get('dtstart')
        if not uid or not dtstart:
            self.logger.warning("Skipping VEVENT without UID or DTSTART")
            return None

        start_value = dtstart.dt
        all_day = not isinstance(start_value, datetime)

        dtend = vevent.get('dtend')
        if dtend is not None:
            end_value = dtend.dt
        elif vevent.get('duration') is not None:
            end_value = start_value + vevent.get('duration').dt
        elif all_day:
            end_value = start_value + timedelta(days=1)
        else:
            end_value = start_value

        time_zone = 'UTC'
        if not all_day and start_value.tzinfo is not None:
            time_zone = getattr(start_value.tzinfo, 'zone', None) or str(start_value.tzinfo)

        organizer = None
        if vevent.get('organizer') is not None:
            org = vevent.get('organizer')
            organizer = {'email': _address(org), 'name': org.params.get('CN')}

        attendees = []
        for attendee in _as_list(vevent.get('attendee')):
            email = _address(attendee)
            if not email:
                continue
            params = getattr(attendee, 'params', {})
            attendees.append({
                'email': email,
                'name': params.get('CN'),
                'partstat': params.get('PARTSTAT'),
                'role': params.get('ROLE'),
                'cutype': params.get('CUTYPE'),
            })

        alarms = []
        for alarm in vevent.walk('VALARM'):
            trigger = alarm.get('trigger')
            if trigger is None or not isinstance(trigger.dt, timedelta):
                continue
            alarms.append({
                'action': str(alarm.get('action', 'DISPLAY')),
                'minutes': int(abs(trigger.dt.total_seconds()) // 60),
            })

        last_modified = vevent.get('last-modified')

        return {
            'uid': str(uid),
            'summary': str(vevent.get('summary')) if vevent.get('summary') else None,
            'description': str(vevent.get('description')) if vevent.get('description') else None,
            'location': str(vevent.get('location')) if vevent.get('location') else None,
            'start': start_value.isoformat(),
            'end': end_value.isoformat(),
            'all_day': all_day,
            'time_zone': time_zone,
            'status': str(vevent.get('status')) if vevent.get('status') else None,
            'organizer': organizer,
            'attendees': attendees,
            'alarms': alarms,
            'last_modified': _to_utc(last_modified.dt).isoformat() if last_modified else None,
            '_start': _to_utc(start_value),
            '_end': _to_utc(end_value),
        }

    def _read_only(self, operation: str) -> ReadOnlyProviderError:
        return ReadOnlyProviderError(
            self.provider, f"iCal subscriptions are read-only; cannot {operation}"
        )

    async def create_event(
        self, connection: ConnectionDB, calendar_id: str, event: CanonicalEvent
    ) -> Dict[str, Any]:
        raise self._read_only("create events")

    async def update_event(
        self, connection: ConnectionDB, calendar_id: str, event_id: str, event: CanonicalEvent
    ) -> Dict[str, Any]:
        raise self._read_only("update events")

    async def delete_event(self, connection: ConnectionDB, calendar_id: str, event_id: str) -> None:
        raise self._read_only("delete events")

    async def refresh_credentials(self, connection: ConnectionDB) -> TokenGrant:
        raise ReadOnlyProviderError(self.provider, "iCal subscriptions do not use tokens")
