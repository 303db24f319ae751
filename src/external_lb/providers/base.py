"""Provider interface consumed by the reconciler, plus the provider registry."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Mapping

from external_lb.model import EndpointConfig

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """A provider call failed; the message names the endpoint or operation."""


# =============================================================================
# Provider Interface
# =============================================================================


class Provider(ABC):
    """Abstract base class for load balancer providers.

    All methods are synchronous and may block on network I/O. Mutating
    methods raise ``ProviderError`` instead of letting transport errors
    escape.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def health_check(self) -> None:
        """Probe connectivity, raising ``ProviderError`` on failure."""
        pass

    @abstractmethod
    def get_lb_configs(self) -> List[EndpointConfig]:
        """Return all endpoint configurations discoverable on the backend."""
        pass

    @abstractmethod
    def add_lb_config(self, config: EndpointConfig) -> str:
        """Add an endpoint configuration.

        Membership is union-added: existing members outside ``config.targets``
        are kept. Calling it twice with the same config is harmless. May
        return the endpoint's FQDN, or an empty string.
        """
        pass

    @abstractmethod
    def update_lb_config(self, config: EndpointConfig) -> str:
        """Converge the endpoint's membership to exactly ``config.targets``.

        May return the endpoint's FQDN, or an empty string.
        """
        pass

    @abstractmethod
    def remove_lb_config(self, config: EndpointConfig) -> None:
        """Remove all membership state of the endpoint; no-op if already absent."""
        pass


# =============================================================================
# Provider Registry
# =============================================================================

ProviderFactory = Callable[[Mapping[str, str]], Provider]


class ProviderRegistry:
    """Maps provider slugs to factories building a configured provider."""

    def __init__(self) -> None:
        self._factories: Dict[str, ProviderFactory] = {}

    def register(self, slug: str, factory: ProviderFactory) -> None:
        if slug in self._factories:
            raise ValueError(f"Provider '{slug}' tried to register twice")
        self._factories[slug] = factory

    def names(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, slug: object) -> bool:
        return slug in self._factories

    def create(self, slug: str, options: Mapping[str, str]) -> Provider:
        """Build the named provider from its options.

        Raises ``KeyError`` for unknown slugs; factories raise ``ProviderError``
        when options are missing or the backend is unreachable.
        """
        factory = self._factories.get(slug)
        if factory is None:
            raise KeyError(
                f"No such provider: '{slug}'. Supported providers: {', '.join(self.names())}"
            )
        provider = factory(options)
        logger.info(f"Configured provider {provider.name}")
        return provider


def require_option(options: Mapping[str, str], key: str) -> str:
    value = str(options.get(key) or "").strip()
    if not value:
        raise ProviderError(f"{key} is not set")
    return value
