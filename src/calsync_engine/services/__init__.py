"""Provider adapters and the factory that selects one per provider."""

from typing import Dict, Optional, Type

from .base import (
    BaseProviderAdapter,
    ProviderAuthenticationError,
    ProviderError,
    ProviderNotImplementedError,
    ProviderTimeoutError,
    RateLimitedError,
    ReadOnlyProviderError,
)
from .caldav import CalDAVAdapter
from .google import GoogleCalendarAdapter
from .ical import ICalFeedAdapter
from .outlook import OutlookCalendarAdapter
from ..config import Settings
from ..exceptions import ValidationError
from ..models import Provider

ADAPTER_CLASSES: Dict[Provider, Type[BaseProviderAdapter]] = {
    Provider.GOOGLE: GoogleCalendarAdapter,
    Provider.OUTLOOK: OutlookCalendarAdapter,
    Provider.CALDAV: CalDAVAdapter,
    Provider.APPLE: CalDAVAdapter,
    Provider.ICAL: ICalFeedAdapter,
}


class ProviderAdapterFactory:
    """Hands out one adapter instance per adapter class.

    ``overrides`` replaces the adapter for specific providers, which is how
    tests substitute in-memory fakes.
    """

    def __init__(
        self,
        settings: Settings,
        overrides: Optional[Dict[Provider, BaseProviderAdapter]] = None,
    ):
        self.settings = settings
        self._overrides = {Provider(k): v for k, v in (overrides or {}).items()}
        self._instances: Dict[Type[BaseProviderAdapter], BaseProviderAdapter] = {}

    def get(self, provider) -> BaseProviderAdapter:
        """Adapter for ``provider``.

        Raises:
            ValidationError: If the provider is unknown
        """
        try:
            provider = Provider(provider)
        except ValueError:
            raise ValidationError(f"Unsupported calendar provider: {provider}")

        if provider in self._overrides:
            return self._overrides[provider]

        adapter_class = ADAPTER_CLASSES[provider]
        if adapter_class not in self._instances:
            self._instances[adapter_class] = adapter_class(self.settings)
        return self._instances[adapter_class]

    async def aclose(self) -> None:
        for adapter in list(self._instances.values()) + list(self._overrides.values()):
            await adapter.aclose()
        self._instances.clear()


__all__ = [
    'ADAPTER_CLASSES',
    'BaseProviderAdapter',
    'CalDAVAdapter',
    'GoogleCalendarAdapter',
    'ICalFeedAdapter',
    'OutlookCalendarAdapter',
    'ProviderAdapterFactory',
    'ProviderAuthenticationError',
    'ProviderError',
    'ProviderNotImplementedError',
    'ProviderTimeoutError',
    'RateLimitedError',
    'ReadOnlyProviderError',
]
