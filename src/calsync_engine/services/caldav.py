"""CalDAV adapter placeholder.

Serves both ``caldav`` and ``apple`` connections so that every provider has an
adapter. Every operation fails with ``ProviderNotImplementedError``.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from .base import BaseProviderAdapter, ProviderNotImplementedError
from ..database import ConnectionDB
from ..models import CanonicalEvent, ExternalCalendar, Provider, TokenGrant


class CalDAVAdapter(BaseProviderAdapter):

    provider = Provider.CALDAV

    def _not_implemented(self, operation: str) -> ProviderNotImplementedError:
        return ProviderNotImplementedError(
            self.provider, f"CalDAV {operation} is not yet implemented"
        )

    async def list_calendars(self, connection: ConnectionDB) -> List[ExternalCalendar]:
        raise self._not_implemented("calendar listing")

    async def list_events(
        self,
        connection: ConnectionDB,
        calendar_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        raise self._not_implemented("event listing")

    async def create_event(
        self, connection: ConnectionDB, calendar_id: str, event: CanonicalEvent
    ) -> Dict[str, Any]:
        raise self._not_implemented("event creation")

    async def update_event(
        self, connection: ConnectionDB, calendar_id: str, event_id: str, event: CanonicalEvent
    ) -> Dict[str, Any]:
        raise self._not_implemented("event update")

    async def delete_event(self, connection: ConnectionDB, calendar_id: str, event_id: str) -> None:
        raise self._not_implemented("event deletion")

    async def refresh_credentials(self, connection: ConnectionDB) -> TokenGrant:
        raise self._not_implemented("credential refresh")
