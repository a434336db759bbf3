from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from calsync_engine.config import Settings
from calsync_engine.connection_store import ConnectionStore
from calsync_engine.database import DatabaseManager
from calsync_engine.models import ExternalCalendar, Provider, TokenGrant
from calsync_engine.services import BaseProviderAdapter, ProviderAdapterFactory
from calsync_engine.sync_engine import SyncOrchestrator
from calsync_engine.sync_log import SyncLogStore


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
    )


class FakeClock:
    """Settable clock shared by the components under test."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeAdapter(BaseProviderAdapter):
    """In-memory provider: calendars, per-calendar payloads and injectable failures."""

    def __init__(self, settings, provider: Provider = Provider.GOOGLE):
        self.provider = provider
        super().__init__(settings)
        self.calendars: List[ExternalCalendar] = []
        self.events: Dict[str, List[Dict[str, Any]]] = {}
        self.calendar_errors: Dict[str, Exception] = {}
        self.list_calendars_error: Optional[Exception] = None
        self.refresh_result: Optional[TokenGrant] = None
        self.refresh_error: Optional[Exception] = None
        self.list_events_calls: List[tuple] = []
        self.closed = False

    def add_calendar(self, calendar_id: str, name: str = None, events=None) -> None:
        self.calendars.append(ExternalCalendar(id=calendar_id, name=name or calendar_id, time_zone='UTC'))
        self.events[calendar_id] = list(events or [])

    async def list_calendars(self, connection):
        if self.list_calendars_error:
            raise self.list_calendars_error
        return list(self.calendars)

    async def list_events(self, connection, calendar_id, time_min=None, time_max=None):
        self.list_events_calls.append((calendar_id, time_min, time_max))
        if calendar_id in self.calendar_errors:
            raise self.calendar_errors[calendar_id]
        return list(self.events.get(calendar_id, []))

    async def create_event(self, connection, calendar_id, event):
        raise NotImplementedError

    async def update_event(self, connection, calendar_id, event_id, event):
        raise NotImplementedError

    async def delete_event(self, connection, calendar_id, event_id):
        raise NotImplementedError

    async def refresh_credentials(self, connection):
        if self.refresh_error:
            raise self.refresh_error
        return self.refresh_result

    async def aclose(self):
        self.closed = True


def google_payload(event_id: str, summary: str = "Standup", updated: Optional[str] = "2026-10-01T08:00:00Z",
                   start: str = "2026-10-20T09:00:00Z", end: str = "2026-10-20T09:30:00Z") -> Dict[str, Any]:
    payload = {
        'id': event_id,
        'summary': summary,
        'status': 'confirmed',
        'start': {'dateTime': start},
        'end': {'dateTime': end},
    }
    if updated:
        payload['updated'] = updated
    return payload


@pytest.fixture
def settings(tmp_path):
    return TestSettings(
        google_client_id='x' * 20,
        google_client_secret='y' * 20,
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db',
        request_timeout_seconds=5,
    )


@pytest.fixture
def db(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    yield manager
    manager.dispose()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 18, 12, 0, tzinfo=pytz.UTC))


@pytest.fixture
def store(clock):
    return ConnectionStore(clock=clock)


@pytest.fixture
def log_store(clock):
    return SyncLogStore(retention_days=30, clock=clock)


@pytest.fixture
def fake_adapter(settings):
    return FakeAdapter(settings, Provider.GOOGLE)


@pytest.fixture
def adapters(settings, fake_adapter):
    return ProviderAdapterFactory(settings, overrides={Provider.GOOGLE: fake_adapter})


@pytest.fixture
def orchestrator(settings, db, adapters, store, log_store, clock):
    return SyncOrchestrator(settings, db, adapters, store=store, log_store=log_store, clock=clock)


@pytest.fixture
def make_connection(db, store):
    """Create a connection and return its ID."""
    def _make(user_id='user-1', provider='google', account_email='me@example.com', **kwargs):
        kwargs.setdefault('access_token', 'access-token')
        kwargs.setdefault('refresh_token', 'refresh-token')
        with db.get_session() as session:
            connection = store.create_connection(session, user_id, provider, account_email, **kwargs)
            return connection.id
    return _make
