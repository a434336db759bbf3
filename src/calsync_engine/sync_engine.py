"""Sync orchestration: one run per connection, one SyncLog per run."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from .config import Settings
from .connection_store import ConnectionStore
from .database import CalendarDB, ConnectionDB, DatabaseManager, SyncLogDB, utcnow
from .exceptions import ConnectionNotFoundError, CredentialExpiredError
from .models import ExternalCalendar, SyncCounts, SyncLogStatus, SyncType
from .reconciliation import ReconciliationEngine
from .services import BaseProviderAdapter, ProviderAdapterFactory, ProviderTimeoutError
from .sync_log import SyncLogStore

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Runs the sync of a single connection.

    Calendars and events are processed sequentially. Each calendar is an
    isolation unit: a failure while mirroring or fetching one calendar aborts
    that calendar only, and reconciled events already committed stay.
    """

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        adapters: ProviderAdapterFactory,
        store: Optional[ConnectionStore] = None,
        log_store: Optional[SyncLogStore] = None,
        reconciler: Optional[ReconciliationEngine] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the orchestrator.

        Args:
            settings: Application settings
            db_manager: Source of database sessions
            adapters: Provider adapter factory
            store: Connection store (shares ``clock`` when omitted)
            log_store: Sync log store
            reconciler: Per-event reconciliation engine
            clock: Source of the current time
        """
        self.settings = settings
        self.db_manager = db_manager
        self.adapters = adapters
        self.clock = clock
        self.store = store or ConnectionStore(clock=clock)
        self.log_store = log_store or SyncLogStore(settings.sync_log_retention_days, clock=clock)
        self.reconciler = reconciler or ReconciliationEngine(clock=clock)
        self.logger = logger

    async def run_sync(self, connection, sync_type: Optional[SyncType] = None) -> SyncLogDB:
        """Sync one connection and return its completed SyncLog.

        Args:
            connection: Connection record or its ID
            sync_type: Forced sync type; derived from ``last_sync_at`` when omitted

        Raises:
            ConnectionNotFoundError: If the connection does not exist
            CredentialExpiredError: If the access token is known to be expired
        """
        connection_id = connection.id if isinstance(connection, ConnectionDB) else connection

        with self.db_manager.get_session() as session:
            conn = self.store.get(session, connection_id)
            if conn is None:
                raise ConnectionNotFoundError(str(connection_id))

            now = self.clock()
            if conn.is_token_expired(now):
                raise CredentialExpiredError(str(conn.id), conn.token_expires_at)

            if sync_type is None:
                sync_type = SyncType.FULL if conn.last_sync_at is None else SyncType.INCREMENTAL

            log = self.log_store.open(session, conn, sync_type)
            self.logger.info(f"Starting {sync_type.value} sync for connection {conn.id} ({conn.provider})")

            try:
                await self._run(session, conn, log)
            except Exception as e:
                # Anything unexpected still ends in a recorded failure
                self.logger.exception(f"Unexpected failure syncing connection {conn.id}")
                session.rollback()
                if log.is_running:
                    self._fail(session, conn, log, f"Unexpected sync failure: {e}", SyncCounts())

            session.refresh(log)
            return log

    async def run_manual_sync(self, connection) -> SyncLogDB:
        """Run a sync on demand, bypassing the due-for-sync predicate."""
        return await self.run_sync(connection, SyncType.MANUAL)

    async def _run(self, session: Session, conn: ConnectionDB, log: SyncLogDB) -> None:
        counts = SyncCounts()
        adapter = self.adapters.get(conn.provider)

        try:
            calendars = await self._bounded(adapter, adapter.list_calendars(conn), "list calendars")
        except Exception as e:
            self.logger.warning(f"Listing calendars failed for connection {conn.id}: {e}")
            session.rollback()
            self._fail(session, conn, log, str(e), counts)
            return

        settings = conn.settings
        time_min, time_max = self.sync_window(log.started_at, settings.sync_past_days, settings.sync_future_days)

        failures: Dict[str, str] = {}
        failed_events = 0
        for external_calendar in calendars:
            try:
                calendar = self.upsert_calendar(session, conn, external_calendar)
                if not settings.import_events:
                    continue
                payloads = await self._bounded(
                    adapter,
                    adapter.list_events(conn, external_calendar.id, time_min, time_max),
                    f"list events for {external_calendar.id}",
                )
                result = self.reconciler.reconcile_all(session, conn, calendar, payloads)
            except Exception as e:
                session.rollback()
                failures[external_calendar.id] = str(e)
                self.logger.warning(
                    f"Sync of calendar {external_calendar.id} failed for connection {conn.id}: {e}"
                )
                continue

            counts.add(SyncCounts(
                processed=result['processed'],
                created=result['created'],
                updated=result['updated'],
            ))
            failed_events += result['failed']

        details: Dict[str, Any] = {
            'calendars': len(calendars),
            'failed_calendars': failures,
            'failed_events': failed_events,
        }

        if not failures:
            self.store.record_success(session, conn, at=log.started_at)
            self.log_store.complete(session, log, SyncLogStatus.SUCCESS, counts, details=details)
            self.logger.info(
                f"Sync complete for connection {conn.id}: {counts.processed} processed, "
                f"{counts.created} created, {counts.updated} updated"
            )
            return

        status = SyncLogStatus.ERROR if len(failures) == len(calendars) else SyncLogStatus.PARTIAL
        message = next(iter(failures.values()))
        self.store.record_error(session, conn, message)
        self.log_store.complete(session, log, status, counts, error=message, details=details)
        self.logger.warning(
            f"Sync for connection {conn.id} finished with status {status.value}: "
            f"{len(failures)} of {len(calendars)} calendars failed"
        )

    def _fail(self, session: Session, conn: ConnectionDB, log: SyncLogDB, message: str, counts: SyncCounts) -> None:
        self.store.record_error(session, conn, message)
        self.log_store.complete(session, log, SyncLogStatus.ERROR, counts, error=message)

    async def _bounded(self, adapter: BaseProviderAdapter, call: Awaitable, description: str):
        """Await an adapter call under the configured time bound."""
        timeout = self.settings.request_timeout_seconds
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(adapter.provider, f"Timed out after {timeout}s trying to {description}")

    @staticmethod
    def sync_window(now: datetime, past_days: int, future_days: int) -> Tuple[datetime, datetime]:
        return now - timedelta(days=past_days), now + timedelta(days=future_days)

    def upsert_calendar(self, session: Session, conn: ConnectionDB, external: ExternalCalendar) -> CalendarDB:
        """Create or refresh the internal calendar mirroring ``external``."""
        calendar = session.query(CalendarDB).filter(
            CalendarDB.owner_id == conn.user_id,
            CalendarDB.provider == conn.provider,
            CalendarDB.external_id == external.id,
        ).first()

        if calendar is None:
            calendar = CalendarDB(
                owner_id=conn.user_id,
                provider=conn.provider,
                external_id=external.id,
                created_by=conn.user_id,
                sync_enabled=True,
            )
            session.add(calendar)

        calendar.connection_id = conn.id
        calendar.name = external.name
        calendar.description = external.description
        calendar.color = external.color
        calendar.time_zone = external.time_zone or calendar.time_zone or 'UTC'
        calendar.external_data = external.raw
        session.commit()
        return calendar
