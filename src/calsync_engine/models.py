"""Data models for calendar synchronization."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, validator
import pytz


# A connection with this many consecutive failures stops syncing until reset.
CIRCUIT_BREAKER_THRESHOLD = 10
# Above this many failures the connection reports the "error" status.
ERROR_WARNING_THRESHOLD = 5

UNTITLED_EVENT = "Untitled Event"


class Provider(str, Enum):
    """External calendar provider."""

    GOOGLE = "google"
    OUTLOOK = "outlook"
    CALDAV = "caldav"
    APPLE = "apple"
    ICAL = "ical"


class ConflictResolution(str, Enum):
    """Which side wins when both copies changed."""

    LOCAL = "local"
    REMOTE = "remote"
    MANUAL = "manual"


class SyncType(str, Enum):
    """Kind of sync run recorded in a sync log."""

    FULL = "full"
    INCREMENTAL = "incremental"
    MANUAL = "manual"


class SyncLogStatus(str, Enum):
    """Terminal status of a sync run."""

    SUCCESS = "success"
    ERROR = "error"
    PARTIAL = "partial"


class ConnectionStatus(str, Enum):
    """Health label derived from a connection's stored fields."""

    INACTIVE = "inactive"
    DISABLED = "disabled"
    ERROR = "error"
    EXPIRED = "expired"
    ACTIVE = "active"


class ReconcileOutcome(str, Enum):
    """Result of reconciling one external event."""

    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


class EventStatus(str, Enum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class AttendeeStatus(str, Enum):
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TENTATIVE = "tentative"
    NEEDS_ACTION = "needs_action"


class AttendeeRole(str, Enum):
    REQUIRED = "required"
    OPTIONAL = "optional"
    RESOURCE = "resource"


class ReminderMethod(str, Enum):
    EMAIL = "email"
    POPUP = "popup"
    SMS = "sms"
    PUSH = "push"


class SyncSettings(BaseModel):
    """Per-connection sync configuration."""

    import_events: bool = Field(True)
    export_events: bool = Field(False)
    bidirectional_sync: bool = Field(False)
    sync_past_days: int = Field(30, ge=0, le=365)
    sync_future_days: int = Field(365, ge=1, le=1095)
    conflict_resolution: ConflictResolution = Field(ConflictResolution.REMOTE)


class TokenGrant(BaseModel):
    """Credentials returned by a provider refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = Field(None, description="Seconds until the access token expires")


class ExternalCalendar(BaseModel):
    """Calendar as listed by a provider."""

    id: str = Field(..., description="Provider calendar ID")
    name: str = Field(..., description="Calendar display name")
    description: Optional[str] = Field(None)
    color: Optional[str] = Field(None)
    time_zone: Optional[str] = Field(None)
    raw: Dict[str, Any] = Field(default_factory=dict, description="Provider payload")


class Organizer(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None


class Attendee(BaseModel):
    email: str
    name: Optional[str] = None
    status: AttendeeStatus = AttendeeStatus.NEEDS_ACTION
    role: AttendeeRole = AttendeeRole.REQUIRED


class Reminder(BaseModel):
    method: ReminderMethod = ReminderMethod.POPUP
    minutes: int = Field(..., ge=0)


class CanonicalEvent(BaseModel):
    """Provider-agnostic representation of an external event."""

    external_id: str = Field(..., description="Event ID at the provider")
    title: str = Field(UNTITLED_EVENT)
    description: Optional[str] = Field(None)
    location: Optional[str] = Field(None)
    start_time: datetime
    end_time: datetime
    is_all_day: bool = Field(False)
    time_zone: str = Field("UTC")
    status: EventStatus = Field(EventStatus.CONFIRMED)
    organizer: Optional[Organizer] = Field(None)
    attendees: List[Attendee] = Field(default_factory=list)
    reminders: List[Reminder] = Field(default_factory=list)
    last_modified: Optional[datetime] = Field(
        None, description="Provider last-modified marker, when the provider exposes one"
    )

    @validator('start_time', 'end_time', 'last_modified', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    def stored_fields(self) -> Dict[str, Any]:
        """Columns written to the internal event row."""
        return {
            'title': self.title,
            'description': self.description,
            'location': self.location,
            'start_time': self.start_time,
            'end_time': self.end_time,
            'is_all_day': self.is_all_day,
            'time_zone': self.time_zone,
            'status': self.status.value,
            'organizer': self.organizer.model_dump(mode='json') if self.organizer else None,
            'attendees': [a.model_dump(mode='json') for a in self.attendees],
            'reminders': [r.model_dump(mode='json') for r in self.reminders],
        }


class SyncCounts(BaseModel):
    """Counters accumulated over a sync run."""

    processed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0

    def add(self, other: 'SyncCounts') -> None:
        self.processed += other.processed
        self.created += other.created
        self.updated += other.updated
        self.deleted += other.deleted


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class NotificationMethod(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    PUSH = "push"


class RelatedEntity(BaseModel):
    entity_type: str
    entity_id: str


class Notification(BaseModel):
    """Message handed to the notification collaborator."""

    priority: NotificationPriority
    title: str
    message: str
    recipient_user_id: str
    related_entity: RelatedEntity
    methods: List[NotificationMethod] = Field(default_factory=lambda: [NotificationMethod.IN_APP])
    metadata: Dict[str, Any] = Field(default_factory=dict)
