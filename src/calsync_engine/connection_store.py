"""Connection records: credentials, sync configuration and health state."""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import CalendarDB, ConnectionDB, utcnow
from .exceptions import ConnectionNotFoundError, ValidationError
from .models import CIRCUIT_BREAKER_THRESHOLD, Provider, SyncSettings

logger = logging.getLogger(__name__)

MIN_SYNC_FREQUENCY_MINUTES = 5
MAX_SYNC_FREQUENCY_MINUTES = 1440


class ConnectionStore:
    """Owns connection records and their health state machine.

    The derived status (inactive, disabled, error, expired, active) is never
    stored; see ``ConnectionDB.derive_status``.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.logger = logger

    # Lookups

    def get(self, session: Session, connection_id) -> Optional[ConnectionDB]:
        try:
            key = connection_id if isinstance(connection_id, UUID) else UUID(str(connection_id))
        except ValueError:
            return None
        return session.get(ConnectionDB, key)

    def get_for_user(self, session: Session, connection_id, user_id: str) -> ConnectionDB:
        """Get a connection owned by ``user_id``.

        Raises:
            ConnectionNotFoundError: If it does not exist or belongs to someone else
        """
        connection = self.get(session, connection_id)
        if connection is None or connection.user_id != user_id:
            raise ConnectionNotFoundError(str(connection_id))
        return connection

    def find_by_user(self, session: Session, user_id: str, active_only: bool = True) -> List[ConnectionDB]:
        query = session.query(ConnectionDB).filter(ConnectionDB.user_id == user_id)
        if active_only:
            query = query.filter(ConnectionDB.is_active.is_(True))
        return query.order_by(ConnectionDB.provider, ConnectionDB.account_email).all()

    def find_by_provider(self, session: Session, provider: Provider, active_only: bool = True) -> List[ConnectionDB]:
        query = session.query(ConnectionDB).filter(ConnectionDB.provider == Provider(provider).value)
        if active_only:
            query = query.filter(ConnectionDB.is_active.is_(True))
        return query.all()

    def find_due_for_sync(self, session: Session) -> List[ConnectionDB]:
        """Connections a scheduled sync pass should process.

        Active, sync enabled, under the breaker threshold, and either never
        synced or synced at least ``sync_frequency_minutes`` ago.
        """
        now = self.clock()
        candidates = session.query(ConnectionDB).filter(
            ConnectionDB.is_active.is_(True),
            ConnectionDB.sync_enabled.is_(True),
            ConnectionDB.error_count < CIRCUIT_BREAKER_THRESHOLD,
        ).order_by(ConnectionDB.created_at).all()
        # Frequency is per row, so the elapsed-time check runs here
        return [c for c in candidates if c.is_due(now)]

    def find_with_expired_credentials(self, session: Session) -> List[ConnectionDB]:
        now = self.clock()
        return session.query(ConnectionDB).filter(
            ConnectionDB.is_active.is_(True),
            ConnectionDB.token_expires_at.isnot(None),
            ConnectionDB.token_expires_at < now,
        ).order_by(ConnectionDB.token_expires_at).all()

    def list_calendar_owners(self, session: Session) -> List[str]:
        rows = session.query(CalendarDB.owner_id).distinct().order_by(CalendarDB.owner_id).all()
        return [row[0] for row in rows]

    # Lifecycle

    def create_connection(
        self,
        session: Session,
        user_id: str,
        provider: str,
        account_email: str,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_in_seconds: Optional[int] = None,
        account_name: Optional[str] = None,
        sync_frequency_minutes: int = 15,
        sync_settings: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConnectionDB:
        """Create a new connection.

        Raises:
            ValidationError: Unknown provider, duplicate account, or invalid settings
        """
        try:
            provider_enum = Provider(provider)
        except ValueError:
            raise ValidationError(f"Invalid calendar provider: {provider}")

        account_email = account_email.strip().lower()
        existing = session.query(ConnectionDB).filter(
            ConnectionDB.user_id == user_id,
            ConnectionDB.provider == provider_enum.value,
            ConnectionDB.account_email == account_email,
        ).first()
        if existing is not None:
            raise ValidationError("Calendar connection already exists for this account")

        self._validate_frequency(sync_frequency_minutes)
        settings = self._validate_settings(SyncSettings(), sync_settings or {})

        connection = ConnectionDB(
            user_id=user_id,
            provider=provider_enum.value,
            account_email=account_email,
            account_name=account_name or account_email,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=self._expiry(expires_in_seconds),
            sync_frequency_minutes=sync_frequency_minutes,
            sync_settings=settings.model_dump(mode='json'),
            connection_metadata=dict(metadata or {}),
        )
        session.add(connection)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ValidationError("Calendar connection already exists for this account")

        self.logger.info(f"Created {provider_enum.value} connection {connection.id} for {account_email}")
        return connection

    def update_sync_settings(
        self,
        session: Session,
        connection: ConnectionDB,
        sync_enabled: Optional[bool] = None,
        sync_frequency_minutes: Optional[int] = None,
        settings: Optional[Dict[str, Any]] = None,
    ) -> ConnectionDB:
        if sync_enabled is not None:
            connection.sync_enabled = sync_enabled
        if sync_frequency_minutes is not None:
            self._validate_frequency(sync_frequency_minutes)
            connection.sync_frequency_minutes = sync_frequency_minutes
        if settings:
            merged = self._validate_settings(connection.settings, settings)
            connection.sync_settings = merged.model_dump(mode='json')
        session.commit()
        return connection

    def disconnect(self, session: Session, connection: ConnectionDB) -> ConnectionDB:
        connection.is_active = False
        connection.sync_enabled = False
        session.commit()
        self.logger.info(f"Disconnected connection {connection.id}")
        return connection

    def reactivate(self, session: Session, connection: ConnectionDB) -> ConnectionDB:
        connection.is_active = True
        session.commit()
        return connection

    # Health transitions

    def record_success(self, session: Session, connection: ConnectionDB, at: Optional[datetime] = None) -> ConnectionDB:
        connection.last_sync_at = at or self.clock()
        connection.error_count = 0
        connection.last_error = None
        session.commit()
        return connection

    def record_error(self, session: Session, connection: ConnectionDB, message: str) -> ConnectionDB:
        """Count a failed attempt; the breaker trips at the threshold."""
        connection.error_count = (connection.error_count or 0) + 1
        connection.last_error = message
        connection.last_sync_at = self.clock()
        session.commit()

        if not connection.sync_enabled and connection.error_count >= CIRCUIT_BREAKER_THRESHOLD:
            self.logger.warning(
                f"Connection {connection.id} disabled after {connection.error_count} consecutive errors"
            )
        return connection

    def reset_errors(self, session: Session, connection: ConnectionDB) -> ConnectionDB:
        connection.error_count = 0
        connection.last_error = None
        connection.sync_enabled = True
        session.commit()
        return connection

    def update_credentials(
        self,
        session: Session,
        connection: ConnectionDB,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in_seconds: Optional[int] = None,
    ) -> ConnectionDB:
        connection.access_token = access_token
        if refresh_token:
            connection.refresh_token = refresh_token
        connection.token_expires_at = self._expiry(expires_in_seconds)
        connection.error_count = 0
        connection.last_error = None
        session.commit()
        return connection

    # Helpers

    def _expiry(self, expires_in_seconds: Optional[int]) -> Optional[datetime]:
        if not expires_in_seconds:
            return None
        return self.clock() + timedelta(seconds=expires_in_seconds)

    def _validate_frequency(self, minutes: int) -> None:
        if not MIN_SYNC_FREQUENCY_MINUTES <= minutes <= MAX_SYNC_FREQUENCY_MINUTES:
            raise ValidationError(
                f"Sync frequency must be between {MIN_SYNC_FREQUENCY_MINUTES} "
                f"and {MAX_SYNC_FREQUENCY_MINUTES} minutes"
            )

    def _validate_settings(self, current: SyncSettings, updates: Dict[str, Any]) -> SyncSettings:
        try:
            return SyncSettings(**{**current.model_dump(), **updates})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid sync settings: {e}")
