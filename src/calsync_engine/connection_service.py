"""User-facing connection operations exposed to the host process and CLI."""

import asyncio
import logging
from collections import Counter
from typing import Any, Dict, List, Optional

from .config import Settings
from .connection_store import ConnectionStore
from .database import ConnectionDB, DatabaseManager, SyncLogDB
from .exceptions import CredentialExpiredError
from .models import (
    Notification, NotificationMethod, NotificationPriority, RelatedEntity, SyncLogStatus,
)
from .notifications import LoggingNotifier, Notifier
from .services import ProviderAdapterFactory
from .sync_engine import SyncOrchestrator
from .sync_log import SyncLogStore

logger = logging.getLogger(__name__)

ENTITY_TYPE = "calendar_connection"


class ConnectionService:
    """Connect, manual sync, reset, disconnect, probe and audit connections.

    Every operation that takes a ``user_id`` raises
    ``ConnectionNotFoundError`` when the connection does not belong to that
    user.
    """

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        orchestrator: SyncOrchestrator,
        adapters: ProviderAdapterFactory,
        notifier: Optional[Notifier] = None,
    ):
        self.settings = settings
        self.db_manager = db_manager
        self.orchestrator = orchestrator
        self.adapters = adapters
        self.store: ConnectionStore = orchestrator.store
        self.log_store: SyncLogStore = orchestrator.log_store
        self.notifier = notifier or LoggingNotifier()
        self.logger = logger

    def connect(self, user_id: str, provider: str, account_email: str, **kwargs) -> Dict[str, Any]:
        """Create a connection; see ``ConnectionStore.create_connection`` for options."""
        with self.db_manager.get_session() as session:
            connection = self.store.create_connection(session, user_id, provider, account_email, **kwargs)
            return connection.to_dict(self.store.clock())

    def list_connections(self, user_id: str, active_only: bool = True) -> List[Dict[str, Any]]:
        with self.db_manager.get_session() as session:
            now = self.store.clock()
            return [c.to_dict(now) for c in self.store.find_by_user(session, user_id, active_only)]

    def get_connection(self, connection_id: str, user_id: str) -> Dict[str, Any]:
        with self.db_manager.get_session() as session:
            return self.store.get_for_user(session, connection_id, user_id).to_dict(self.store.clock())

    async def manual_sync(self, connection_id: str, user_id: str) -> SyncLogDB:
        """Sync now, regardless of schedule, and notify the user of the outcome.

        A partial run is reported as a failure.

        Raises:
            ConnectionNotFoundError: If the connection is not the user's
            CredentialExpiredError: If the access token has expired (after notifying)
        """
        with self.db_manager.get_session() as session:
            connection = self.store.get_for_user(session, connection_id, user_id)
            provider, account_email = connection.provider, connection.account_email

        try:
            log = await self.orchestrator.run_manual_sync(connection.id)
        except CredentialExpiredError as e:
            await self._notify_failure(connection_id, user_id, str(e))
            raise

        if log.status == SyncLogStatus.SUCCESS.value:
            await self._notify(Notification(
                priority=NotificationPriority.LOW,
                title="Calendar Sync Complete",
                message=f"Successfully synced calendar: {account_email}",
                recipient_user_id=user_id,
                related_entity=RelatedEntity(entity_type=ENTITY_TYPE, entity_id=str(connection_id)),
                methods=[NotificationMethod.IN_APP],
                metadata={'provider': provider, 'account_email': account_email},
            ))
        else:
            await self._notify_failure(connection_id, user_id, log.error or f"Sync finished with status {log.status}")
        return log

    def reset_errors(self, connection_id: str, user_id: str) -> Dict[str, Any]:
        with self.db_manager.get_session() as session:
            connection = self.store.get_for_user(session, connection_id, user_id)
            self.store.reset_errors(session, connection)
            self.logger.info(f"Errors reset for connection {connection.id}")
            return {
                'id': str(connection.id),
                'error_count': connection.error_count,
                'sync_enabled': connection.sync_enabled,
            }

    def disconnect(self, connection_id: str, user_id: str) -> None:
        with self.db_manager.get_session() as session:
            connection = self.store.get_for_user(session, connection_id, user_id)
            self.store.disconnect(session, connection)

    def update_sync_settings(self, connection_id: str, user_id: str, **kwargs) -> Dict[str, Any]:
        with self.db_manager.get_session() as session:
            connection = self.store.get_for_user(session, connection_id, user_id)
            return self.store.update_sync_settings(session, connection, **kwargs).to_dict(self.store.clock())

    async def test_connection(self, connection_id: str, user_id: str) -> Dict[str, Any]:
        """Probe the provider with a calendar listing; health state is not touched."""
        with self.db_manager.get_session() as session:
            connection = self.store.get_for_user(session, connection_id, user_id)

        result: Dict[str, Any] = {
            'provider': connection.provider,
            'account_email': connection.account_email,
        }
        try:
            adapter = self.adapters.get(connection.provider)
            calendars = await asyncio.wait_for(
                adapter.list_calendars(connection),
                timeout=self.settings.request_timeout_seconds,
            )
        except asyncio.TimeoutError:
            result.update(status='error', calendars_found=0, error="Connection test timed out")
        except Exception as e:
            result.update(status='error', calendars_found=0, error=str(e))
        else:
            result.update(status='connected', calendars_found=len(calendars))
        return result

    def sync_logs(self, connection_id: str, user_id: str, limit: int = 50) -> Dict[str, Any]:
        with self.db_manager.get_session() as session:
            connection = self.store.get_for_user(session, connection_id, user_id)
            logs = self.log_store.find_by_connection(session, connection.id, limit)
            return {
                'connection_id': str(connection.id),
                'logs': [log.to_dict() for log in logs],
                'total': len(logs),
            }

    def connection_stats(self, user_id: str, recent: int = 10) -> Dict[str, Any]:
        """Connection counts per state and provider, plus the latest sync runs."""
        with self.db_manager.get_session() as session:
            connections = self.store.find_by_user(session, user_id, active_only=False)
            active = [c for c in connections if c.is_active]
            recent_logs = []
            if connections:
                recent_logs = session.query(SyncLogDB).filter(
                    SyncLogDB.connection_id.in_([c.id for c in connections])
                ).order_by(SyncLogDB.started_at.desc()).limit(recent).all()

            return {
                'total_connections': len(connections),
                'active_connections': len(active),
                'sync_enabled_connections': len([c for c in active if c.sync_enabled]),
                'connections_by_provider': dict(Counter(c.provider for c in active)),
                'recent_sync_activity': [
                    {
                        'connection_id': str(log.connection_id),
                        'status': log.status,
                        'started_at': log.started_at.isoformat(),
                        'completed_at': log.completed_at.isoformat() if log.completed_at else None,
                        'events_processed': log.events_processed,
                    }
                    for log in recent_logs
                ],
            }

    async def _notify_failure(self, connection_id: str, user_id: str, error: str) -> None:
        await self._notify(Notification(
            priority=NotificationPriority.MEDIUM,
            title="Calendar Sync Failed",
            message=f"Failed to sync calendar: {error}",
            recipient_user_id=user_id,
            related_entity=RelatedEntity(entity_type=ENTITY_TYPE, entity_id=str(connection_id)),
            methods=[NotificationMethod.IN_APP, NotificationMethod.EMAIL],
            metadata={'error': error},
        ))

    async def _notify(self, notification: Notification) -> None:
        try:
            await self.notifier.notify(notification)
        except Exception:
            self.logger.exception(f"Failed to deliver notification '{notification.title}'")
