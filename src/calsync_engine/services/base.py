"""Provider adapter interface shared by every external calendar provider."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from ..config import Settings
from ..database import ConnectionDB
from ..models import CanonicalEvent, ExternalCalendar, Provider, TokenGrant

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Any adapter-level failure, tagged with the provider that raised it."""

    def __init__(self, provider: Provider, message: str, cause: Optional[BaseException] = None):
        self.provider = Provider(provider)
        self.message = message
        self.cause = cause
        super().__init__(f"[{self.provider.value}] {message}")


class ProviderAuthenticationError(ProviderError):
    """The provider rejected the stored credentials."""
    pass


class ProviderNotImplementedError(ProviderError):
    """The adapter exists but has no backing implementation yet."""
    pass


class ReadOnlyProviderError(ProviderError):
    """Write or credential operation against a read-only, tokenless provider."""
    pass


class ProviderTimeoutError(ProviderError):
    """A provider call exceeded the configured time bound."""
    pass


class RateLimitedError(Exception):
    """HTTP 429; retried inside a single call before surfacing as a ProviderError."""

    def __init__(self, status_code: int = 429):
        super().__init__(f"Rate limited: HTTP {status_code}")
        self.status_code = status_code


class BaseProviderAdapter(ABC):
    """Uniform capability interface over one external calendar provider.

    Adapters are stateless with respect to connections: every call takes the
    connection whose credentials and metadata it should use. ``list_events``
    returns provider-native payloads; mapping to the canonical shape is the
    reconciliation layer's job.
    """

    provider: Provider

    def __init__(self, settings: Settings):
        """Initialize provider adapter.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.logger = logger.getChild(self.provider.value)

    @abstractmethod
    async def list_calendars(self, connection: ConnectionDB) -> List[ExternalCalendar]:
        """List the calendars visible to the connection.

        Raises:
            ProviderError: If calendars cannot be retrieved
        """
        pass

    @abstractmethod
    async def list_events(
        self,
        connection: ConnectionDB,
        calendar_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """List native event payloads in a calendar, optionally bounded by a window.

        Raises:
            ProviderError: If events cannot be retrieved
        """
        pass

    @abstractmethod
    async def create_event(
        self, connection: ConnectionDB, calendar_id: str, event: CanonicalEvent
    ) -> Dict[str, Any]:
        """Create an event and return the provider's payload for it."""
        pass

    @abstractmethod
    async def update_event(
        self, connection: ConnectionDB, calendar_id: str, event_id: str, event: CanonicalEvent
    ) -> Dict[str, Any]:
        """Overwrite an event and return the provider's payload for it."""
        pass

    @abstractmethod
    async def delete_event(self, connection: ConnectionDB, calendar_id: str, event_id: str) -> None:
        pass

    @abstractmethod
    async def refresh_credentials(self, connection: ConnectionDB) -> TokenGrant:
        """Exchange the connection's refresh token for a new access token.

        Raises:
            ProviderAuthenticationError: If no refresh token is stored or the grant is rejected
        """
        pass

    async def aclose(self) -> None:
        """Release transport resources."""
        pass

    def _error(self, message: str, cause: Optional[BaseException] = None) -> ProviderError:
        return ProviderError(self.provider, message, cause)
