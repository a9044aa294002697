"""Source id -> Provider lookup for the gateway."""

from __future__ import annotations

import logging

from dealhook.errors import UnknownProviderError
from dealhook.providers.base import Provider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Closed set of providers the gateway will accept deliveries for."""

    def __init__(self, providers: list[Provider] | None = None) -> None:
        self._providers: dict[str, Provider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        if provider.source in self._providers:
            raise ValueError(f"Provider already registered for source {provider.source!r}")
        self._providers[provider.source] = provider
        logger.info("Provider registered: %s (%s)", provider.source, type(provider).__name__)

    def get(self, source: str) -> Provider:
        provider = self._providers.get(source)
        if provider is None:
            raise UnknownProviderError()
        return provider

    def __contains__(self, source: object) -> bool:
        return source in self._providers

    @property
    def sources(self) -> list[str]:
        return sorted(self._providers)
