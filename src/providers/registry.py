"""Provider registry: maps resource kinds to provider instances."""

import logging
from typing import Optional

from providers.base import Provider
from reconciler.errors import ReferenceError

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Explicitly passed lookup of providers by kind."""

    def __init__(self, providers: Optional[list[Provider]] = None):
        self._providers: dict[str, Provider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: Provider, kind: Optional[str] = None) -> None:
        """Register a provider under its kind (or an explicit alias).

        Raises:
            ValueError: If the kind is already registered
        """
        kind = kind or provider.kind
        if kind in self._providers:
            raise ValueError(f"Provider kind '{kind}' already registered")
        self._providers[kind] = provider
        logger.debug(f"Registered provider '{kind}' ({type(provider).__name__})")

    def get(self, kind: str, resource_id: Optional[str] = None) -> Provider:
        """Get provider for a kind.

        Raises:
            ReferenceError: If no provider handles the kind
        """
        try:
            return self._providers[kind]
        except KeyError:
            raise ReferenceError(
                f"Unknown resource type '{kind}'. Available: {', '.join(self.kinds()) or 'none'}",
                resource_id,
            )

    def kinds(self) -> list[str]:
        return sorted(self._providers)

    def __contains__(self, kind: str) -> bool:
        return kind in self._providers


def default_registry() -> ProviderRegistry:
    """Registry with the built-in providers."""
    from providers.command import CommandProvider
    from providers.file import FileProvider
    from providers.http_check import HttpCheckProvider
    from providers.virtual import VirtualProvider

    return ProviderRegistry([
        VirtualProvider(),
        FileProvider(),
        CommandProvider(),
        HttpCheckProvider(),
    ])
