"""Database models and session management for connections, sync logs and mirrored calendars."""

from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    create_engine, event, Column, String, DateTime, Boolean, Text, Integer,
    ForeignKey, Index, UniqueConstraint, JSON,
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.types import TypeDecorator, CHAR
import pytz

from .config import Settings
from .models import (
    CIRCUIT_BREAKER_THRESHOLD, ERROR_WARNING_THRESHOLD, ConnectionStatus,
    Provider, SyncLogStatus, SyncSettings,
)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgresUUID())
        else:
            return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return str(value)
        else:
            if not isinstance(value, UUID):
                return "%.32x" % UUID(value).int
            else:
                return "%.32x" % value.int

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        else:
            if not isinstance(value, UUID):
                return UUID(value)
            return value


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, always hands back timezone-aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is not None:
            value = value.astimezone(pytz.UTC)
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=pytz.UTC)
        return value.astimezone(pytz.UTC)


class ConnectionDB(Base):
    """A user's credentialed link to one external provider account."""

    __tablename__ = 'calendar_connections'

    id = Column(GUID(), primary_key=True, default=uuid4)
    user_id = Column(String(255), nullable=False, index=True)
    provider = Column(String(20), nullable=False)

    account_email = Column(String(255), nullable=False)
    account_name = Column(String(255), nullable=True)

    # Credentials
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(UTCDateTime(), nullable=True)

    # Sync configuration
    is_active = Column(Boolean, nullable=False, default=True)
    sync_enabled = Column(Boolean, nullable=False, default=True)
    sync_frequency_minutes = Column(Integer, nullable=False, default=15)
    last_sync_at = Column(UTCDateTime(), nullable=True)
    sync_settings = Column(JSON, nullable=False, default=dict)

    # Health
    error_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    connection_metadata = Column('metadata', JSON, nullable=False, default=dict)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    sync_logs = relationship("SyncLogDB", back_populates="connection")

    __table_args__ = (
        UniqueConstraint('user_id', 'provider', 'account_email', name='uq_connection_account'),
        Index('idx_connection_user_active', 'user_id', 'is_active'),
        Index('idx_connection_provider_account', 'provider', 'account_email'),
        Index('idx_connection_token_expiry', 'token_expires_at'),
        Index('idx_connection_last_sync', 'last_sync_at'),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault('is_active', True)
        kwargs.setdefault('sync_enabled', True)
        kwargs.setdefault('sync_frequency_minutes', 15)
        kwargs.setdefault('error_count', 0)
        kwargs.setdefault('sync_settings', SyncSettings().model_dump(mode='json'))
        kwargs.setdefault('connection_metadata', {})
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return (
            f"<ConnectionDB {self.id} {self.provider}:{self.account_email} "
            f"errors={self.error_count} sync_enabled={self.sync_enabled}>"
        )

    @property
    def provider_enum(self) -> Provider:
        return Provider(self.provider)

    @property
    def settings(self) -> SyncSettings:
        """Typed view of the stored sync settings."""
        return SyncSettings(**(self.sync_settings or {}))

    def is_token_expired(self, now: Optional[datetime] = None) -> bool:
        if self.token_expires_at is None:
            return False
        return self.token_expires_at < (now or utcnow())

    def derive_status(self, now: Optional[datetime] = None) -> ConnectionStatus:
        """Health label evaluated from the stored fields."""
        if not self.is_active:
            return ConnectionStatus.INACTIVE
        if not self.sync_enabled:
            return ConnectionStatus.DISABLED
        if (self.error_count or 0) > ERROR_WARNING_THRESHOLD:
            return ConnectionStatus.ERROR
        if self.is_token_expired(now):
            return ConnectionStatus.EXPIRED
        return ConnectionStatus.ACTIVE

    @property
    def sync_status(self) -> ConnectionStatus:
        return self.derive_status()

    @property
    def next_sync_at(self) -> Optional[datetime]:
        if self.last_sync_at is None or not self.sync_enabled:
            return None
        return self.last_sync_at + timedelta(minutes=self.sync_frequency_minutes)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """The due-for-sync predicate for a single record."""
        if not (self.is_active and self.sync_enabled):
            return False
        if (self.error_count or 0) >= CIRCUIT_BREAKER_THRESHOLD:
            return False
        if self.last_sync_at is None:
            return True
        now = now or utcnow()
        return now - self.last_sync_at >= timedelta(minutes=self.sync_frequency_minutes)

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        """Public view of the connection; credentials are never included.

        ``now`` is the instant the derived ``sync_status`` is evaluated at.
        """
        return {
            'id': str(self.id),
            'user_id': self.user_id,
            'provider': self.provider,
            'account_email': self.account_email,
            'account_name': self.account_name,
            'is_active': self.is_active,
            'sync_enabled': self.sync_enabled,
            'sync_frequency_minutes': self.sync_frequency_minutes,
            'last_sync_at': self.last_sync_at.isoformat() if self.last_sync_at else None,
            'next_sync_at': self.next_sync_at.isoformat() if self.next_sync_at else None,
            'token_expires_at': self.token_expires_at.isoformat() if self.token_expires_at else None,
            'sync_settings': self.sync_settings,
            'error_count': self.error_count,
            'last_error': self.last_error,
            'sync_status': self.derive_status(now).value,
        }


@event.listens_for(ConnectionDB.is_active, 'set', active_history=True)
def _on_active_changed(target, value, oldvalue, initiator):
    if not value:
        target.access_token = None
        target.refresh_token = None
        target.token_expires_at = None
    elif oldvalue is False:
        target.error_count = 0
        target.last_error = None


@event.listens_for(ConnectionDB.error_count, 'set')
def _on_error_count_changed(target, value, oldvalue, initiator):
    if value is not None and value >= CIRCUIT_BREAKER_THRESHOLD:
        target.sync_enabled = False


class SyncLogDB(Base):
    """Audit record of one sync run."""

    __tablename__ = 'calendar_sync_logs'

    id = Column(GUID(), primary_key=True, default=uuid4)
    connection_id = Column(GUID(), ForeignKey('calendar_connections.id'), nullable=False, index=True)
    sync_type = Column(String(20), nullable=False)  # 'full', 'incremental', 'manual'
    status = Column(String(20), nullable=True)  # NULL while running

    started_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    completed_at = Column(UTCDateTime(), nullable=True)
    expires_at = Column(UTCDateTime(), nullable=False)

    events_processed = Column(Integer, nullable=False, default=0)
    events_created = Column(Integer, nullable=False, default=0)
    events_updated = Column(Integer, nullable=False, default=0)
    events_deleted = Column(Integer, nullable=False, default=0)

    error = Column(Text, nullable=True)
    details = Column(JSON, nullable=False, default=dict)

    connection = relationship("ConnectionDB", back_populates="sync_logs")

    __table_args__ = (
        Index('idx_sync_log_connection_started', 'connection_id', 'started_at'),
        Index('idx_sync_log_status_started', 'status', 'started_at'),
        Index('idx_sync_log_expires', 'expires_at'),
    )

    @property
    def is_running(self) -> bool:
        return self.completed_at is None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            'id': str(self.id),
            'connection_id': str(self.connection_id),
            'sync_type': self.sync_type,
            'status': self.status,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'duration_seconds': self.duration_seconds,
            'events_processed': self.events_processed,
            'events_created': self.events_created,
            'events_updated': self.events_updated,
            'events_deleted': self.events_deleted,
            'error': self.error,
            'details': self.details,
        }

    @property
    def succeeded(self) -> bool:
        return self.status == SyncLogStatus.SUCCESS.value


class CalendarDB(Base):
    """Internal calendar, mirroring an external one when provider/external_id are set."""

    __tablename__ = 'calendars'

    id = Column(GUID(), primary_key=True, default=uuid4)
    owner_id = Column(String(255), nullable=False, index=True)
    connection_id = Column(GUID(), ForeignKey('calendar_connections.id'), nullable=True)

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    color = Column(String(20), nullable=True)
    time_zone = Column(String(64), nullable=False, default='UTC')

    provider = Column(String(20), nullable=True)
    external_id = Column(String(1000), nullable=True)
    external_data = Column(JSON, nullable=True)
    sync_enabled = Column(Boolean, nullable=False, default=True)

    created_by = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    events = relationship("CalendarEventDB", back_populates="calendar")

    __table_args__ = (
        UniqueConstraint('owner_id', 'provider', 'external_id', name='uq_calendar_external'),
        Index('idx_calendar_provider_external', 'provider', 'external_id'),
    )


class CalendarEventDB(Base):
    """Internal event; provider-sourced rows are keyed by (calendar_id, external_id)."""

    __tablename__ = 'calendar_events'

    id = Column(GUID(), primary_key=True, default=uuid4)
    calendar_id = Column(GUID(), ForeignKey('calendars.id'), nullable=False, index=True)

    title = Column(String(1024), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(1024), nullable=True)

    start_time = Column(UTCDateTime(), nullable=False)
    end_time = Column(UTCDateTime(), nullable=False)
    is_all_day = Column(Boolean, nullable=False, default=False)
    time_zone = Column(String(64), nullable=False, default='UTC')
    status = Column(String(20), nullable=False, default='confirmed')

    organizer = Column(JSON, nullable=True)
    attendees = Column(JSON, nullable=False, default=list)
    reminders = Column(JSON, nullable=False, default=list)

    external_id = Column(String(1000), nullable=True)
    # Last provider payload, kept for diagnostics only
    external_data = Column(JSON, nullable=True)

    created_by = Column(String(255), nullable=True)
    updated_by = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    # Reconciliation clock; written explicitly on every create/update
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    calendar = relationship("CalendarDB", back_populates="events")

    __table_args__ = (
        UniqueConstraint('calendar_id', 'external_id', name='uq_event_external'),
        Index('idx_event_calendar_start', 'calendar_id', 'start_time'),
    )


class DatabaseManager:
    """Database manager owning the engine and session factory."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(
            autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def dispose(self) -> None:
        self.engine.dispose()
