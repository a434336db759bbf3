"""Append-only audit records of sync runs."""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from .database import ConnectionDB, SyncLogDB, utcnow
from .models import SyncCounts, SyncLogStatus, SyncType

logger = logging.getLogger(__name__)


class SyncLogStore:
    """Creates, completes and queries sync logs.

    A log is opened before any provider call and completed exactly once.
    Logs expire ``retention_days`` after they start and are removed by
    ``purge_expired``.
    """

    def __init__(self, retention_days: int = 30, clock: Callable[[], datetime] = utcnow):
        self.retention_days = retention_days
        self.clock = clock

    def open(self, session: Session, connection: ConnectionDB, sync_type: SyncType) -> SyncLogDB:
        started_at = self.clock()
        log = SyncLogDB(
            connection_id=connection.id,
            sync_type=SyncType(sync_type).value,
            status=None,
            started_at=started_at,
            expires_at=started_at + timedelta(days=self.retention_days),
            events_processed=0,
            events_created=0,
            events_updated=0,
            events_deleted=0,
            details={},
        )
        session.add(log)
        session.commit()
        return log

    def complete(
        self,
        session: Session,
        log: SyncLogDB,
        status: SyncLogStatus,
        counts: Optional[SyncCounts] = None,
        error: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> SyncLogDB:
        """Close a running log.

        Raises:
            ValueError: If the log was already completed
        """
        if not log.is_running:
            raise ValueError(f"Sync log {log.id} is already completed")

        counts = counts or SyncCounts()
        log.status = SyncLogStatus(status).value
        log.completed_at = self.clock()
        log.events_processed = counts.processed
        log.events_created = counts.created
        log.events_updated = counts.updated
        log.events_deleted = counts.deleted
        log.error = error
        if details:
            log.details = {**(log.details or {}), **details}
        session.commit()
        return log

    def find_by_connection(self, session: Session, connection_id, limit: int = 50) -> List[SyncLogDB]:
        return session.query(SyncLogDB).filter(
            SyncLogDB.connection_id == connection_id
        ).order_by(SyncLogDB.started_at.desc()).limit(limit).all()

    def find_recent_errors(self, session: Session, hours: int = 24) -> List[SyncLogDB]:
        since = self.clock() - timedelta(hours=hours)
        return session.query(SyncLogDB).filter(
            SyncLogDB.status == SyncLogStatus.ERROR.value,
            SyncLogDB.started_at >= since,
        ).order_by(SyncLogDB.started_at.desc()).all()

    def purge_expired(self, session: Session) -> int:
        deleted = session.query(SyncLogDB).filter(
            SyncLogDB.expires_at < self.clock()
        ).delete(synchronize_session=False)
        session.commit()
        if deleted:
            logger.info(f"Purged {deleted} expired sync logs")
        return deleted
