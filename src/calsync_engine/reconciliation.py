"""Per-event reconciliation of provider payloads against internal events."""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from dateutil import parser as date_parser
import pytz
from sqlalchemy.orm import Session

from .database import CalendarDB, CalendarEventDB, ConnectionDB, utcnow
from .models import (
    UNTITLED_EVENT, Attendee, AttendeeRole, AttendeeStatus, CanonicalEvent,
    EventStatus, Organizer, Provider, ReconcileOutcome, Reminder, ReminderMethod,
)

logger = logging.getLogger(__name__)


def _parse_datetime(value: Optional[str], time_zone: Optional[str] = None) -> Optional[datetime]:
    """Parse an ISO date or datetime, localizing naive values to ``time_zone``."""
    if not value:
        return None
    dt = date_parser.parse(value)
    if dt.tzinfo is None:
        try:
            tz = pytz.timezone(time_zone) if time_zone else pytz.UTC
        except pytz.UnknownTimeZoneError:
            tz = pytz.UTC
        dt = tz.localize(dt)
    return dt.astimezone(pytz.UTC)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


# Google Calendar

GOOGLE_ATTENDEE_STATUS = {
    'accepted': AttendeeStatus.ACCEPTED,
    'declined': AttendeeStatus.DECLINED,
    'tentative': AttendeeStatus.TENTATIVE,
    'needsAction': AttendeeStatus.NEEDS_ACTION,
}

GOOGLE_EVENT_STATUS = {
    'confirmed': EventStatus.CONFIRMED,
    'tentative': EventStatus.TENTATIVE,
    'cancelled': EventStatus.CANCELLED,
}


def map_google_event(payload: Dict[str, Any], default_time_zone: str = 'UTC') -> CanonicalEvent:
    start = payload.get('start') or {}
    end = payload.get('end') or {}
    is_all_day = 'date' in start and 'dateTime' not in start
    time_zone = start.get('timeZone') or default_time_zone

    if is_all_day:
        start_time = _parse_datetime(start['date'], time_zone)
        end_time = _parse_datetime(end.get('date') or start['date'], time_zone)
    else:
        start_time = _parse_datetime(start.get('dateTime'), time_zone)
        end_time = _parse_datetime(end.get('dateTime'), end.get('timeZone') or time_zone)
    if start_time is None:
        raise ValueError(f"Google event {payload.get('id')} has no start time")

    organizer = None
    if payload.get('organizer'):
        organizer = Organizer(
            email=payload['organizer'].get('email'),
            name=payload['organizer'].get('displayName'),
        )

    attendees = []
    for attendee in payload.get('attendees') or []:
        if not attendee.get('email'):
            continue
        if attendee.get('resource'):
            role = AttendeeRole.RESOURCE
        elif attendee.get('optional'):
            role = AttendeeRole.OPTIONAL
        else:
            role = AttendeeRole.REQUIRED
        attendees.append(Attendee(
            email=attendee['email'],
            name=attendee.get('displayName'),
            status=GOOGLE_ATTENDEE_STATUS.get(attendee.get('responseStatus'), AttendeeStatus.NEEDS_ACTION),
            role=role,
        ))

    reminders = []
    for override in (payload.get('reminders') or {}).get('overrides') or []:
        method = ReminderMethod.EMAIL if override.get('method') == 'email' else ReminderMethod.POPUP
        reminders.append(Reminder(method=method, minutes=override.get('minutes', 0)))

    return CanonicalEvent(
        external_id=payload['id'],
        title=_text(payload.get('summary')) or UNTITLED_EVENT,
        description=_text(payload.get('description')),
        location=_text(payload.get('location')),
        start_time=start_time,
        end_time=end_time or start_time,
        is_all_day=is_all_day,
        time_zone=time_zone,
        status=GOOGLE_EVENT_STATUS.get(payload.get('status'), EventStatus.CONFIRMED),
        organizer=organizer,
        attendees=attendees,
        reminders=reminders,
        last_modified=_parse_datetime(payload.get('updated')),
    )


# Microsoft Graph

OUTLOOK_ATTENDEE_STATUS = {
    'accepted': AttendeeStatus.ACCEPTED,
    'organizer': AttendeeStatus.ACCEPTED,
    'declined': AttendeeStatus.DECLINED,
    'tentativelyAccepted': AttendeeStatus.TENTATIVE,
    'notResponded': AttendeeStatus.NEEDS_ACTION,
    'none': AttendeeStatus.NEEDS_ACTION,
}

OUTLOOK_ATTENDEE_ROLE = {
    'required': AttendeeRole.REQUIRED,
    'optional': AttendeeRole.OPTIONAL,
    'resource': AttendeeRole.RESOURCE,
}


def map_outlook_event(payload: Dict[str, Any], default_time_zone: str = 'UTC') -> CanonicalEvent:
    start = payload.get('start') or {}
    end = payload.get('end') or {}
    time_zone = start.get('timeZone') or default_time_zone

    start_time = _parse_datetime(start.get('dateTime'), time_zone)
    end_time = _parse_datetime(end.get('dateTime'), end.get('timeZone') or time_zone)
    if start_time is None:
        raise ValueError(f"Outlook event {payload.get('id')} has no start time")

    if payload.get('isCancelled'):
        status = EventStatus.CANCELLED
    elif payload.get('showAs') == 'tentative':
        status = EventStatus.TENTATIVE
    else:
        status = EventStatus.CONFIRMED

    organizer = None
    organizer_address = (payload.get('organizer') or {}).get('emailAddress')
    if organizer_address:
        organizer = Organizer(email=organizer_address.get('address'), name=organizer_address.get('name'))

    attendees = []
    for attendee in payload.get('attendees') or []:
        address = attendee.get('emailAddress') or {}
        if not address.get('address'):
            continue
        attendees.append(Attendee(
            email=address['address'],
            name=address.get('name'),
            status=OUTLOOK_ATTENDEE_STATUS.get(
                (attendee.get('status') or {}).get('response'), AttendeeStatus.NEEDS_ACTION
            ),
            role=OUTLOOK_ATTENDEE_ROLE.get(attendee.get('type'), AttendeeRole.REQUIRED),
        ))

    reminders = []
    if payload.get('isReminderOn') and payload.get('reminderMinutesBeforeStart') is not None:
        reminders.append(Reminder(method=ReminderMethod.POPUP, minutes=payload['reminderMinutesBeforeStart']))

    return CanonicalEvent(
        external_id=payload['id'],
        title=_text(payload.get('subject')) or UNTITLED_EVENT,
        description=_text((payload.get('body') or {}).get('content')),
        location=_text((payload.get('location') or {}).get('displayName')),
        start_time=start_time,
        end_time=end_time or start_time,
        is_all_day=bool(payload.get('isAllDay')),
        time_zone=time_zone,
        status=status,
        organizer=organizer,
        attendees=attendees,
        reminders=reminders,
        last_modified=_parse_datetime(payload.get('lastModifiedDateTime')),
    )


# iCalendar (feed subscriptions and CalDAV)

ICAL_PARTSTAT = {
    'ACCEPTED': AttendeeStatus.ACCEPTED,
    'DECLINED': AttendeeStatus.DECLINED,
    'TENTATIVE': AttendeeStatus.TENTATIVE,
    'NEEDS-ACTION': AttendeeStatus.NEEDS_ACTION,
}

ICAL_ALARM_METHOD = {
    'EMAIL': ReminderMethod.EMAIL,
    'DISPLAY': ReminderMethod.POPUP,
    'AUDIO': ReminderMethod.POPUP,
}


def _ical_role(attendee: Dict[str, Any]) -> AttendeeRole:
    if (attendee.get('cutype') or '').upper() in ('RESOURCE', 'ROOM'):
        return AttendeeRole.RESOURCE
    if (attendee.get('role') or '').upper() in ('OPT-PARTICIPANT', 'NON-PARTICIPANT'):
        return AttendeeRole.OPTIONAL
    return AttendeeRole.REQUIRED


def map_ical_event(payload: Dict[str, Any], default_time_zone: str = 'UTC') -> CanonicalEvent:
    time_zone = payload.get('time_zone') or default_time_zone
    start_time = _parse_datetime(payload.get('start'), time_zone)
    end_time = _parse_datetime(payload.get('end'), time_zone)
    if start_time is None:
        raise ValueError(f"iCal event {payload.get('uid')} has no start time")

    organizer = None
    if payload.get('organizer'):
        organizer = Organizer(**payload['organizer'])

    attendees = [
        Attendee(
            email=attendee['email'],
            name=attendee.get('name'),
            status=ICAL_PARTSTAT.get((attendee.get('partstat') or '').upper(), AttendeeStatus.NEEDS_ACTION),
            role=_ical_role(attendee),
        )
        for attendee in payload.get('attendees') or []
        if attendee.get('email')
    ]

    reminders = [
        Reminder(
            method=ICAL_ALARM_METHOD.get((alarm.get('action') or '').upper(), ReminderMethod.POPUP),
            minutes=alarm.get('minutes', 0),
        )
        for alarm in payload.get('alarms') or []
    ]

    status = EventStatus.CONFIRMED
    if payload.get('status'):
        try:
            status = EventStatus(payload['status'].lower())
        except ValueError:
            pass

    return CanonicalEvent(
        external_id=payload['uid'],
        title=_text(payload.get('summary')) or UNTITLED_EVENT,
        description=_text(payload.get('description')),
        location=_text(payload.get('location')),
        start_time=start_time,
        end_time=end_time or start_time,
        is_all_day=bool(payload.get('all_day')),
        time_zone=time_zone,
        status=status,
        organizer=organizer,
        attendees=attendees,
        reminders=reminders,
        last_modified=_parse_datetime(payload.get('last_modified')),
    )


EVENT_MAPPERS: Dict[Provider, Callable[..., CanonicalEvent]] = {
    Provider.GOOGLE: map_google_event,
    Provider.OUTLOOK: map_outlook_event,
    Provider.CALDAV: map_ical_event,
    Provider.APPLE: map_ical_event,
    Provider.ICAL: map_ical_event,
}


def to_canonical(provider: Provider, payload: Dict[str, Any], default_time_zone: str = 'UTC') -> CanonicalEvent:
    """Map a provider-native event payload onto the canonical shape.

    Raises:
        ValueError: If the payload lacks an identifier or start time
    """
    return EVENT_MAPPERS[Provider(provider)](payload, default_time_zone)


class ReconciliationEngine:
    """Decides create, update or skip for each external event.

    An existing internal event is overwritten only when the provider's
    last-modified marker is strictly newer than the row's ``updated_at``.
    A payload without a last-modified marker never overwrites.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def reconcile(
        self,
        session: Session,
        connection: ConnectionDB,
        calendar: CalendarDB,
        payload: Dict[str, Any],
    ) -> ReconcileOutcome:
        """Reconcile one payload and commit the result.

        Raises:
            ValueError: If the payload cannot be mapped
        """
        event = to_canonical(connection.provider_enum, payload, calendar.time_zone or 'UTC')

        try:
            existing = session.query(CalendarEventDB).filter(
                CalendarEventDB.calendar_id == calendar.id,
                CalendarEventDB.external_id == event.external_id,
            ).first()

            now = self.clock()
            # Never stamp behind the provider's marker, or a skewed clock re-applies it every run
            stamp = max(now, event.last_modified) if event.last_modified else now
            if existing is None:
                session.add(CalendarEventDB(
                    calendar_id=calendar.id,
                    external_id=event.external_id,
                    external_data=payload,
                    created_by=connection.user_id,
                    updated_by=connection.user_id,
                    created_at=now,
                    updated_at=stamp,
                    **event.stored_fields()
                ))
                outcome = ReconcileOutcome.CREATED
            elif event.last_modified is not None and event.last_modified > existing.updated_at:
                for field, value in event.stored_fields().items():
                    setattr(existing, field, value)
                existing.external_data = payload
                existing.updated_by = connection.user_id
                existing.updated_at = stamp
                outcome = ReconcileOutcome.UPDATED
            else:
                return ReconcileOutcome.SKIPPED

            session.commit()
            return outcome
        except Exception:
            session.rollback()
            raise

    def reconcile_all(
        self,
        session: Session,
        connection: ConnectionDB,
        calendar: CalendarDB,
        payloads: List[Dict[str, Any]],
    ) -> Dict[str, int]:
        """Reconcile a batch; a failing event is logged and counted, never raised."""
        counts = {'processed': 0, 'created': 0, 'updated': 0, 'skipped': 0, 'failed': 0}
        for payload in payloads:
            try:
                outcome = self.reconcile(session, connection, calendar, payload)
            except Exception as e:
                counts['failed'] += 1
                logger.warning(
                    f"Failed to reconcile event {payload.get('id') or payload.get('uid')} "
                    f"for connection {connection.id}: {e}"
                )
                continue
            counts['processed'] += 1
            counts[outcome.value] += 1
        return counts
