"""Provider registry.

Backends are instantiated lazily on first use, so commands that never touch
the hypervisor (``list`` with an empty registry, ``topology``) run on hosts
without libvirt installed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from vdc.config import settings
from vdc.errors import ValidationError

if TYPE_CHECKING:
    from vdc.providers.base import Provider

logger = logging.getLogger(__name__)


def _libvirt_factory() -> Provider:
    from vdc.providers.libvirt import LibvirtProvider
    return LibvirtProvider()


class ProviderRegistry:
    """Singleton registry of provisioning backends, keyed by name."""

    _instance: ProviderRegistry | None = None
    _factories: dict[str, Callable[[], Provider]]
    _providers: dict[str, Provider]

    def __new__(cls) -> ProviderRegistry:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._factories = {"libvirt": _libvirt_factory}
            cls._instance._providers = {}
        return cls._instance

    def register(self, name: str, factory: Callable[[], Provider]) -> None:
        """Register (or replace) a backend factory."""
        self._factories[name] = factory
        self._providers.pop(name, None)

    def get(self, name: str) -> Provider:
        """Get a provider by name, instantiating it on first use.

        Raises:
            ValidationError: If the backend is unknown or cannot be loaded
        """
        if name in self._providers:
            return self._providers[name]
        factory = self._factories.get(name)
        if factory is None:
            raise ValidationError(
                f"Unknown provider '{name}'",
                suggestions=[f"set VDC_PROVIDER to one of: {', '.join(sorted(self._factories))}"],
            )
        try:
            provider = factory()
        except ImportError as e:
            raise ValidationError(
                f"Provider '{name}' is not available: {e}",
                suggestions=["pip install 'vdc-manager[libvirt]'"],
            ) from e
        self._providers[name] = provider
        logger.info(f"Registered provider: {name}")
        return provider

    def list_available(self) -> list[str]:
        return sorted(self._factories)

    def reset(self) -> None:
        """Drop instantiated providers (mainly for testing)."""
        self._providers = {}


# Module-level singleton instance
_registry = ProviderRegistry()


def get_provider(name: str | None = None) -> Provider:
    """Get the configured provider, or the one named ``name``."""
    return _registry.get(name or settings.provider)


def register_provider(name: str, factory: Callable[[], Provider]) -> None:
    _registry.register(name, factory)


def list_providers() -> list[str]:
    return _registry.list_available()
