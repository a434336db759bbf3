"""Tests for provider adapters and the adapter factory."""

import json
from datetime import datetime, timedelta

import httplib2
import httpx
import pytest
import pytz
from googleapiclient.errors import HttpError

from calsync_engine.database import ConnectionDB
from calsync_engine.exceptions import ValidationError
from calsync_engine.models import AttendeeRole, Attendee, CanonicalEvent, Provider, Reminder
from calsync_engine.reconciliation import map_ical_event
from calsync_engine.services import (
    CalDAVAdapter, GoogleCalendarAdapter, ICalFeedAdapter, OutlookCalendarAdapter,
    ProviderAdapterFactory, ProviderAuthenticationError, ProviderError,
    ProviderNotImplementedError, ReadOnlyProviderError,
)
from calsync_engine.services.ical import SUBSCRIPTION_CALENDAR_ID

from conftest import FakeAdapter


FEED = "\r\n".join([
    "BEGIN:VCALENDAR",
    "VERSION:2.0",
    "PRODID:-//Example//Feed//EN",
    "BEGIN:VEVENT",
    "UID:standup@example.com",
    "DTSTAMP:20261001T000000Z",
    "DTSTART:20261020T090000Z",
    "DTEND:20261020T093000Z",
    "SUMMARY:Standup",
    "LAST-MODIFIED:20261001T080000Z",
    "ORGANIZER;CN=Boss:mailto:boss@example.com",
    "ATTENDEE;CN=Alice;PARTSTAT=ACCEPTED;ROLE=REQ-PARTICIPANT:mailto:alice@example.com",
    "BEGIN:VALARM",
    "ACTION:DISPLAY",
    "DESCRIPTION:Reminder",
    "TRIGGER:-PT15M",
    "END:VALARM",
    "END:VEVENT",
    "BEGIN:VEVENT",
    "UID:holiday@example.com",
    "DTSTAMP:20261001T000000Z",
    "DTSTART;VALUE=DATE:20261225",
    "SUMMARY:Holiday",
    "END:VEVENT",
    "BEGIN:VEVENT",
    "UID:ancient@example.com",
    "DTSTAMP:20261001T000000Z",
    "DTSTART:20200101T090000Z",
    "DTEND:20200101T100000Z",
    "SUMMARY:Ancient",
    "END:VEVENT",
    "END:VCALENDAR",
    "",
])

WINDOW = (datetime(2026, 9, 18, tzinfo=pytz.UTC), datetime(2027, 10, 18, tzinfo=pytz.UTC))


def transient_connection(provider=Provider.OUTLOOK, **kwargs) -> ConnectionDB:
    kwargs.setdefault('access_token', 'access-token')
    kwargs.setdefault('refresh_token', 'refresh-token')
    return ConnectionDB(user_id='user-1', provider=provider.value, account_email='me@example.com', **kwargs)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestFactory:

    def test_selects_adapter_per_provider(self, settings):
        factory = ProviderAdapterFactory(settings)

        assert isinstance(factory.get('google'), GoogleCalendarAdapter)
        assert isinstance(factory.get(Provider.OUTLOOK), OutlookCalendarAdapter)
        assert isinstance(factory.get('ical'), ICalFeedAdapter)
        assert isinstance(factory.get('caldav'), CalDAVAdapter)
        assert factory.get('apple') is factory.get('caldav')
        assert factory.get('google') is factory.get('google')

    def test_unknown_provider(self, settings):
        with pytest.raises(ValidationError):
            ProviderAdapterFactory(settings).get('myspace')

    @pytest.mark.asyncio
    async def test_overrides_and_close(self, settings):
        fake = FakeAdapter(settings, Provider.ICAL)
        factory = ProviderAdapterFactory(settings, overrides={'ical': fake})

        assert factory.get(Provider.ICAL) is fake
        await factory.aclose()
        assert fake.closed


class TestCalDAV:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("call", [
        lambda a, c: a.list_calendars(c),
        lambda a, c: a.list_events(c, 'home'),
        lambda a, c: a.delete_event(c, 'home', 'e1'),
        lambda a, c: a.refresh_credentials(c),
    ])
    async def test_every_operation_not_implemented(self, settings, call):
        with pytest.raises(ProviderNotImplementedError, match="not yet implemented"):
            await call(CalDAVAdapter(settings), transient_connection(Provider.APPLE))


class TestICalFeed:

    def _adapter(self, settings, handler):
        return ICalFeedAdapter(settings, client=mock_client(handler))

    @pytest.mark.asyncio
    async def test_single_synthetic_calendar(self, settings):
        adapter = self._adapter(settings, lambda request: httpx.Response(500))
        connection = transient_connection(
            Provider.ICAL, connection_metadata={'url': 'https://example.com/cal.ics', 'name': 'Holidays'}
        )

        calendars = await adapter.list_calendars(connection)

        assert [(c.id, c.name) for c in calendars] == [(SUBSCRIPTION_CALENDAR_ID, 'Holidays')]

    @pytest.mark.asyncio
    async def test_parses_feed_within_window(self, settings):
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return httpx.Response(200, text=FEED)

        adapter = self._adapter(settings, handler)
        connection = transient_connection(Provider.ICAL, connection_metadata={'url': 'webcal://example.com/cal.ics'})

        events = await adapter.list_events(connection, SUBSCRIPTION_CALENDAR_ID, *WINDOW)

        assert requested == ['https://example.com/cal.ics']
        assert [e['uid'] for e in events] == ['standup@example.com', 'holiday@example.com']

        standup, holiday = events
        assert standup['summary'] == 'Standup'
        assert standup['all_day'] is False
        assert standup['organizer'] == {'email': 'boss@example.com', 'name': 'Boss'}
        assert standup['attendees'][0]['email'] == 'alice@example.com'
        assert standup['attendees'][0]['partstat'] == 'ACCEPTED'
        assert standup['alarms'] == [{'action': 'DISPLAY', 'minutes': 15}]
        assert standup['last_modified'] == '2026-10-01T08:00:00+00:00'
        assert '_start' not in standup
        assert holiday['all_day'] is True
        assert (holiday['start'], holiday['end']) == ('2026-12-25', '2026-12-26')

        event = map_ical_event(standup)
        assert event.start_time == datetime(2026, 10, 20, 9, tzinfo=pytz.UTC)
        assert event.attendees[0].role == AttendeeRole.REQUIRED

    @pytest.mark.asyncio
    async def test_http_failure(self, settings):
        adapter = self._adapter(settings, lambda request: httpx.Response(404))
        connection = transient_connection(Provider.ICAL, connection_metadata={'url': 'https://example.com/cal.ics'})

        with pytest.raises(ProviderError, match="HTTP 404"):
            await adapter.list_events(connection, SUBSCRIPTION_CALENDAR_ID)

    @pytest.mark.asyncio
    async def test_malformed_feed(self, settings):
        adapter = self._adapter(settings, lambda request: httpx.Response(200, text="this is not a calendar"))
        connection = transient_connection(Provider.ICAL, connection_metadata={'url': 'https://example.com/cal.ics'})

        with pytest.raises(ProviderError, match="Malformed"):
            await adapter.list_events(connection, SUBSCRIPTION_CALENDAR_ID)

    @pytest.mark.asyncio
    async def test_missing_url(self, settings):
        adapter = self._adapter(settings, lambda request: httpx.Response(200, text=FEED))

        with pytest.raises(ProviderError, match="no feed URL"):
            await adapter.list_events(transient_connection(Provider.ICAL), SUBSCRIPTION_CALENDAR_ID)

    @pytest.mark.asyncio
    async def test_read_only(self, settings):
        adapter = self._adapter(settings, lambda request: httpx.Response(200, text=FEED))
        connection = transient_connection(Provider.ICAL, connection_metadata={'url': 'https://example.com/cal.ics'})
        event = CanonicalEvent(
            external_id='x',
            start_time=datetime(2026, 10, 20, 9, tzinfo=pytz.UTC),
            end_time=datetime(2026, 10, 20, 10, tzinfo=pytz.UTC),
        )

        with pytest.raises(ReadOnlyProviderError):
            await adapter.create_event(connection, SUBSCRIPTION_CALENDAR_ID, event)
        with pytest.raises(ReadOnlyProviderError):
            await adapter.delete_event(connection, SUBSCRIPTION_CALENDAR_ID, 'x')
        with pytest.raises(ReadOnlyProviderError, match="do not use tokens"):
            await adapter.refresh_credentials(connection)


class TestOutlook:

    @pytest.mark.asyncio
    async def test_list_calendars_follows_next_link(self, settings):
        seen = []

        def handler(request):
            seen.append((request.url.path, request.url.params.get('$skip'), request.headers['Authorization']))
            if request.url.params.get('$skip'):
                return httpx.Response(200, json={'value': [{'id': 'cal-2', 'name': 'Team'}]})
            return httpx.Response(200, json={
                'value': [{'id': 'cal-1', 'name': 'Calendar', 'hexColor': '#0078d4'}],
                '@odata.nextLink': 'https://graph.microsoft.com/v1.0/me/calendars?$skip=1',
            })

        adapter = OutlookCalendarAdapter(settings, client=mock_client(handler))
        calendars = await adapter.list_calendars(transient_connection())

        assert [(c.id, c.name) for c in calendars] == [('cal-1', 'Calendar'), ('cal-2', 'Team')]
        assert calendars[0].color == '#0078d4'
        assert seen == [
            ('/v1.0/me/calendars', None, 'Bearer access-token'),
            ('/v1.0/me/calendars', '1', 'Bearer access-token'),
        ]

    @pytest.mark.asyncio
    async def test_list_events_uses_calendar_view(self, settings):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={'value': [{'id': 'evt-1', 'subject': 'Review'}]})

        adapter = OutlookCalendarAdapter(settings, client=mock_client(handler))
        events = await adapter.list_events(transient_connection(), 'cal-1', *WINDOW)

        assert events == [{'id': 'evt-1', 'subject': 'Review'}]
        request = seen[0]
        assert request.url.path == '/v1.0/me/calendars/cal-1/calendarView'
        assert request.url.params['startDateTime'] == '2026-09-18T00:00:00'
        assert request.url.params['endDateTime'] == '2027-10-18T00:00:00'
        assert request.headers['Prefer'] == 'outlook.timezone="UTC"'

    @pytest.mark.asyncio
    async def test_rejected_token(self, settings):
        adapter = OutlookCalendarAdapter(settings, client=mock_client(lambda request: httpx.Response(401)))

        with pytest.raises(ProviderAuthenticationError):
            await adapter.list_calendars(transient_connection())

    @pytest.mark.asyncio
    async def test_server_error(self, settings):
        adapter = OutlookCalendarAdapter(
            settings, client=mock_client(lambda request: httpx.Response(503, text="unavailable"))
        )

        with pytest.raises(ProviderError, match="HTTP 503"):
            await adapter.list_events(transient_connection(), 'cal-1')

    @pytest.mark.asyncio
    async def test_malformed_response(self, settings):
        adapter = OutlookCalendarAdapter(
            settings, client=mock_client(lambda request: httpx.Response(200, text="<html>oops</html>"))
        )

        with pytest.raises(ProviderError, match="malformed response") as exc_info:
            await adapter.list_calendars(transient_connection())

        assert isinstance(exc_info.value.cause, ValueError)

    @pytest.mark.asyncio
    async def test_calendar_entry_without_id(self, settings):
        adapter = OutlookCalendarAdapter(
            settings, client=mock_client(lambda request: httpx.Response(200, json={'value': [{'name': 'x'}]}))
        )

        with pytest.raises(ProviderError, match="malformed calendar entry"):
            await adapter.list_calendars(transient_connection())

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, settings):
        responses = [httpx.Response(429), httpx.Response(200, json={'value': []})]
        adapter = OutlookCalendarAdapter(settings, client=mock_client(lambda request: responses.pop(0)))

        assert await adapter.list_calendars(transient_connection()) == []
        assert responses == []

    @pytest.mark.asyncio
    async def test_refresh_credentials(self, settings):
        def handler(request):
            assert str(request.url) == settings.outlook_token_url
            form = dict(item.split('=', 1) for item in request.content.decode().split('&'))
            assert form['grant_type'] == 'refresh_token'
            assert form['refresh_token'] == 'refresh-token'
            return httpx.Response(200, json={
                'access_token': 'new-access', 'refresh_token': 'new-refresh', 'expires_in': 3599,
            })

        adapter = OutlookCalendarAdapter(settings, client=mock_client(handler))
        grant = await adapter.refresh_credentials(transient_connection())

        assert (grant.access_token, grant.refresh_token, grant.expires_in) == ('new-access', 'new-refresh', 3599)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(200, json={'error': 'x'}),
        httpx.Response(200, text="not json"),
    ])
    async def test_malformed_token_response(self, settings, response):
        adapter = OutlookCalendarAdapter(settings, client=mock_client(lambda request: response))

        with pytest.raises(ProviderError, match="Token refresh failed") as exc_info:
            await adapter.refresh_credentials(transient_connection())

        assert not isinstance(exc_info.value, ProviderAuthenticationError)
        assert exc_info.value.cause is not None

    @pytest.mark.asyncio
    async def test_refresh_rejected(self, settings):
        adapter = OutlookCalendarAdapter(
            settings,
            client=mock_client(lambda request: httpx.Response(400, json={'error': 'invalid_grant'})),
        )

        with pytest.raises(ProviderAuthenticationError, match="Refresh token rejected"):
            await adapter.refresh_credentials(transient_connection())

        with pytest.raises(ProviderAuthenticationError, match="No refresh token"):
            await adapter.refresh_credentials(transient_connection(refresh_token=None))

    def test_graph_body(self, settings):
        adapter = OutlookCalendarAdapter(settings, client=mock_client(lambda request: httpx.Response(200)))
        body = adapter._to_graph_body(CanonicalEvent(
            external_id='x',
            title='Review',
            start_time=datetime(2026, 10, 20, 9, tzinfo=pytz.UTC),
            end_time=datetime(2026, 10, 20, 10, tzinfo=pytz.UTC),
            attendees=[Attendee(email='a@example.com', role=AttendeeRole.OPTIONAL)],
            reminders=[Reminder(minutes=30), Reminder(minutes=10)],
        ))

        assert body['start'] == {'dateTime': '2026-10-20T09:00:00', 'timeZone': 'UTC'}
        assert body['attendees'][0]['type'] == 'optional'
        assert body['reminderMinutesBeforeStart'] == 10


class TestGoogle:

    @staticmethod
    def _http_error(status):
        content = json.dumps({'error': {'code': status, 'message': 'failure'}}).encode()
        return HttpError(httplib2.Response({'status': status}), content)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,expected", [
        (401, ProviderAuthenticationError),
        (403, ProviderAuthenticationError),
        (404, ProviderError),
    ])
    async def test_http_errors_are_mapped(self, settings, status, expected):
        adapter = GoogleCalendarAdapter(settings)
        error = self._http_error(status)

        class FailingRequest:
            def execute(self):
                raise error

        with pytest.raises(expected) as exc_info:
            await adapter._call("Failed to list Google calendars", FailingRequest)

        assert exc_info.value.cause is error

    @pytest.mark.asyncio
    async def test_refresh_requires_refresh_token(self, settings):
        with pytest.raises(ProviderAuthenticationError):
            await GoogleCalendarAdapter(settings).refresh_credentials(
                transient_connection(Provider.GOOGLE, refresh_token=None)
            )

    def test_all_day_body(self, settings):
        body = GoogleCalendarAdapter(settings)._to_google_body(CanonicalEvent(
            external_id='x',
            title='Holiday',
            start_time=datetime(2026, 12, 25, tzinfo=pytz.UTC),
            end_time=datetime(2026, 12, 26, tzinfo=pytz.UTC),
            is_all_day=True,
        ))

        assert body['start'] == {'date': '2026-12-25'}
        assert body['end'] == {'date': '2026-12-26'}
        assert body['status'] == 'confirmed'


class FakeGoogleRequest:
    def __init__(self, result):
        self.result = result

    def execute(self):
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeGoogleResource:
    """Stands in for ``service.calendarList()`` / ``service.events()``."""

    def __init__(self, pages):
        self.pages = list(pages)
        self.calls = []

    def list(self, **params):
        self.calls.append(params)
        return FakeGoogleRequest(self.pages.pop(0))


class FakeGoogleService:

    def __init__(self, calendar_pages=(), event_pages=()):
        self.calendar_list = FakeGoogleResource(calendar_pages)
        self.event_list = FakeGoogleResource(event_pages)

    def calendarList(self):
        return self.calendar_list

    def events(self):
        return self.event_list


class FakeGoogleCredentials:

    def __init__(self, refresh_token='refresh-token'):
        self.token = 'access-token'
        self.refresh_token = refresh_token
        self.expiry = None

    def refresh(self, request):
        self.token = 'new-access'
        self.expiry = datetime.now(pytz.UTC).replace(tzinfo=None) + timedelta(hours=1)


class TestGoogleRequests:

    @staticmethod
    def _adapter(settings, service=None, credentials=None):
        adapter = GoogleCalendarAdapter(settings)
        if service is not None:
            adapter._service = lambda connection: service
        if credentials is not None:
            adapter._credentials = lambda connection: credentials
        return adapter

    @pytest.mark.asyncio
    async def test_list_calendars_follows_page_token(self, settings):
        service = FakeGoogleService(calendar_pages=[
            {'items': [{'id': 'primary', 'summary': 'Me', 'backgroundColor': '#9fe1e7'}], 'nextPageToken': 'p2'},
            {'items': [{'id': 'team', 'summary': 'Team', 'summaryOverride': 'Team (shared)'}]},
        ])

        calendars = await self._adapter(settings, service).list_calendars(transient_connection(Provider.GOOGLE))

        assert [(c.id, c.name) for c in calendars] == [('primary', 'Me'), ('team', 'Team (shared)')]
        assert calendars[0].color == '#9fe1e7'
        assert service.calendar_list.calls == [{}, {'pageToken': 'p2'}]

    @pytest.mark.asyncio
    async def test_list_events_window_and_paging(self, settings):
        service = FakeGoogleService(event_pages=[
            {'items': [{'id': 'e1'}], 'nextPageToken': 'p2'},
            {'items': [{'id': 'e2'}]},
        ])

        events = await self._adapter(settings, service).list_events(
            transient_connection(Provider.GOOGLE), 'primary', *WINDOW
        )

        assert [e['id'] for e in events] == ['e1', 'e2']
        first, second = service.event_list.calls
        assert first['calendarId'] == 'primary'
        assert first['singleEvents'] is True
        assert first['timeMin'] == '2026-09-18T00:00:00+00:00'
        assert first['timeMax'] == '2027-10-18T00:00:00+00:00'
        assert 'pageToken' not in first
        assert second['pageToken'] == 'p2'
        assert second['timeMin'] == first['timeMin']

    @pytest.mark.asyncio
    async def test_list_events_without_window(self, settings):
        service = FakeGoogleService(event_pages=[{'items': []}])

        assert await self._adapter(settings, service).list_events(
            transient_connection(Provider.GOOGLE), 'primary'
        ) == []
        [params] = service.event_list.calls
        assert 'timeMin' not in params
        assert 'timeMax' not in params

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, settings):
        service = FakeGoogleService(calendar_pages=[
            TestGoogle._http_error(429),
            {'items': [{'id': 'primary', 'summary': 'Me'}]},
        ])

        calendars = await self._adapter(settings, service).list_calendars(transient_connection(Provider.GOOGLE))

        assert [c.id for c in calendars] == ['primary']
        assert len(service.calendar_list.calls) == 2

    @pytest.mark.asyncio
    async def test_server_error_is_not_retried(self, settings):
        service = FakeGoogleService(calendar_pages=[TestGoogle._http_error(500)])

        with pytest.raises(ProviderError, match="HTTP 500"):
            await self._adapter(settings, service).list_calendars(transient_connection(Provider.GOOGLE))

        assert len(service.calendar_list.calls) == 1

    @pytest.mark.asyncio
    async def test_refresh_credentials(self, settings):
        adapter = self._adapter(settings, credentials=FakeGoogleCredentials())

        grant = await adapter.refresh_credentials(transient_connection(Provider.GOOGLE))

        assert grant.access_token == 'new-access'
        # unchanged refresh token is not echoed back
        assert grant.refresh_token is None
        assert 3500 < grant.expires_in <= 3600

    @pytest.mark.asyncio
    async def test_refresh_returns_rotated_refresh_token(self, settings):
        adapter = self._adapter(settings, credentials=FakeGoogleCredentials(refresh_token='rotated'))

        grant = await adapter.refresh_credentials(transient_connection(Provider.GOOGLE))

        assert grant.refresh_token == 'rotated'
