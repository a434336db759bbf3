"""Periodic triggers: sync, credential refresh, derived events."""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import Settings
from .connection_store import ConnectionStore
from .database import DatabaseManager, SyncLogDB, utcnow
from .exceptions import CredentialExpiredError
from .services import ProviderAdapterFactory, ProviderTimeoutError
from .sync_engine import SyncOrchestrator
from .sync_log import SyncLogStore

logger = logging.getLogger(__name__)

DerivedEventsJob = Callable[[str], Awaitable[None]]


def seconds_until_next_tick(interval_seconds: float, now: Optional[float] = None) -> float:
    """Delay until the next wall-clock multiple of ``interval_seconds``."""
    now = time.time() if now is None else now
    remainder = now % interval_seconds
    return interval_seconds - remainder


class Scheduler:
    """Owns the periodic jobs of the host process.

    Each job runs as its own asyncio task, firing on wall-clock multiples of
    its interval. Within a firing, connections are handled one at a time and
    a failure never ends the loop.
    """

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        orchestrator: SyncOrchestrator,
        adapters: ProviderAdapterFactory,
        store: Optional[ConnectionStore] = None,
        log_store: Optional[SyncLogStore] = None,
        derived_events_job: Optional[DerivedEventsJob] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.db_manager = db_manager
        self.orchestrator = orchestrator
        self.adapters = adapters
        self.store = store or orchestrator.store
        self.log_store = log_store or orchestrator.log_store
        self.derived_events_job = derived_events_job
        self.clock = clock
        self.logger = logger
        self._tasks: List[asyncio.Task] = []
        self.last_runs: Dict[str, datetime] = {}

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Start the periodic tasks on the running event loop."""
        if self.running:
            return

        jobs = [
            ('sync', self.settings.sync_interval_minutes, self.run_sync_pass),
            ('token-refresh', self.settings.token_refresh_interval_minutes, self.run_refresh_pass),
        ]
        if self.derived_events_job is not None:
            jobs.append(('derived-events', self.settings.derived_events_interval_minutes, self.run_derived_events_pass))

        self._tasks = [
            asyncio.create_task(self._periodic(name, minutes * 60, job), name=f"scheduler-{name}")
            for name, minutes, job in jobs
        ]
        self.logger.info(f"Scheduler started with jobs: {', '.join(name for name, _, _ in jobs)}")

    async def stop(self) -> None:
        """Cancel the periodic tasks and wait for them to finish."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self.logger.info("Scheduler stopped")

    async def _periodic(self, name: str, interval_seconds: float, job: Callable[[], Awaitable[Any]]) -> None:
        job_logger = self.logger.getChild(name)
        while True:
            await asyncio.sleep(seconds_until_next_tick(interval_seconds))
            try:
                await job()
                self.last_runs[name] = self.clock()
            except asyncio.CancelledError:
                raise
            except Exception:
                job_logger.exception(f"Scheduled {name} job failed")

    async def run_sync_pass(self) -> List[SyncLogDB]:
        """Sync every connection that is due, sequentially."""
        with self.db_manager.get_session() as session:
            due_ids = [c.id for c in self.store.find_due_for_sync(session)]

        if not due_ids:
            self.logger.debug("No connections due for sync")
            return []

        self.logger.info(f"Sync pass: {len(due_ids)} connections due")
        logs = []
        for connection_id in due_ids:
            try:
                logs.append(await self.orchestrator.run_sync(connection_id))
            except CredentialExpiredError as e:
                # The refresh job owns expired credentials
                self.logger.info(f"Skipping connection {connection_id}: {e}")
            except Exception:
                self.logger.exception(f"Sync of connection {connection_id} failed")
        return logs

    async def run_refresh_pass(self) -> Dict[str, int]:
        """Refresh expired credentials, then purge expired sync logs."""
        refreshed = failed = 0
        timeout = self.settings.request_timeout_seconds

        with self.db_manager.get_session() as session:
            for connection in self.store.find_with_expired_credentials(session):
                try:
                    adapter = self.adapters.get(connection.provider)
                    try:
                        grant = await asyncio.wait_for(adapter.refresh_credentials(connection), timeout=timeout)
                    except asyncio.TimeoutError:
                        raise ProviderTimeoutError(
                            adapter.provider, f"Timed out after {timeout}s refreshing credentials"
                        )
                    self.store.update_credentials(
                        session, connection, grant.access_token, grant.refresh_token, grant.expires_in
                    )
                    refreshed += 1
                    self.logger.info(f"Refreshed credentials for connection {connection.id}")
                except Exception as e:
                    session.rollback()
                    failed += 1
                    self.store.record_error(session, connection, f"Credential refresh failed: {e}")
                    self.logger.warning(f"Credential refresh failed for connection {connection.id}: {e}")

            purged = self.log_store.purge_expired(session)

        return {'refreshed': refreshed, 'failed': failed, 'purged': purged}

    async def run_derived_events_pass(self) -> int:
        """Regenerate derived events for every calendar owner."""
        if self.derived_events_job is None:
            return 0

        with self.db_manager.get_session() as session:
            owners = self.store.list_calendar_owners(session)

        completed = 0
        for owner_id in owners:
            try:
                await self.derived_events_job(owner_id)
                completed += 1
            except Exception:
                self.logger.exception(f"Derived events job failed for owner {owner_id}")
        return completed
