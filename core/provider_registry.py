"""
Provider Registry - Central Registry for Upstream Providers

This module keeps track of every registered ``MarketDataProvider`` together
with its routing metadata (priority, capabilities, enabled flag). The
orchestrator asks the registry which providers can serve a data type and in
which order to try them.

Registration lives in memory only and is rebuilt at startup. Priority and the
enabled flag can be changed at runtime (e.g. to take a misbehaving vendor out
of rotation).

Example Usage:
    registry = ProviderRegistry()
    registry.register_provider(primary, priority=1)
    registry.register_provider(backup, priority=5, capabilities={"crypto"})

    registry.get_providers_by_capability("crypto")   # [primary, backup]
    registry.get_primary_provider("gold")            # primary
    registry.disable_provider("backup")
"""

from typing import Dict, Iterable, List, Optional

from core.logging import logger
from core.provider_interface import DATA_TYPES, MarketDataProvider
from core.schemas import ProviderRegistration


class ProviderRegistry:
    """
    Central registry of providers.

    Attributes:
        providers: Provider name -> registration
    """

    def __init__(self):
        self.providers: Dict[str, ProviderRegistration] = {}

    # ============================================
    # Registration
    # ============================================

    def register_provider(
        self,
        provider: MarketDataProvider,
        priority: int = 10,
        capabilities: Optional[Iterable[str]] = None,
        enabled: bool = True,
    ) -> ProviderRegistration:
        """
        Register (or replace) a provider.

        Args:
            provider: Provider instance
            priority: Lower number = tried first
            capabilities: Data types served (defaults to the provider's own)
            enabled: Whether the provider takes traffic

        Example:
            >>> registry.register_provider(provider, priority=1)
        """
        caps = set(capabilities) if capabilities is not None else set(getattr(provider, "capabilities", {"all"}))
        registration = ProviderRegistration(
            name=provider.name,
            priority=priority,
            capabilities=caps,
            enabled=enabled,
            provider=provider,
        )
        if provider.name.lower() in self.providers:
            logger.warning(f"Provider '{provider.name}' re-registered; previous registration replaced")
        self.providers[provider.name.lower()] = registration
        logger.info(
            f"Registered provider {provider.name} (priority {priority}, "
            f"capabilities {', '.join(sorted(caps))}, {'enabled' if enabled else 'disabled'})"
        )
        return registration

    def unregister_provider(self, name: str) -> bool:
        removed = self.providers.pop(name.lower(), None)
        if removed:
            logger.info(f"Unregistered provider {name}")
        return removed is not None

    # ============================================
    # Provider Retrieval Methods
    # ============================================

    def get_provider(self, name: str) -> MarketDataProvider:
        """
        Get a provider by name.

        Raises:
            ValueError: If the provider is not registered
        """
        registration = self.providers.get(name.lower())
        if registration is None:
            available = ", ".join(self.providers.keys())
            raise ValueError(f"Provider '{name}' is not registered. Available providers: {available}")
        return registration.provider

    def get_registration(self, name: str) -> Optional[ProviderRegistration]:
        return self.providers.get(name.lower())

    def has_provider(self, name: str) -> bool:
        return name.lower() in self.providers

    def list_providers(self) -> List[ProviderRegistration]:
        return sorted(self.providers.values(), key=lambda r: r.priority)

    def get_providers_by_capability(self, data_type: str) -> List[ProviderRegistration]:
        """
        Enabled providers that serve ``data_type``, by ascending priority.

        Example:
            >>> [r.name for r in registry.get_providers_by_capability("gold")]
            ['persianapi', 'backup']
        """
        return sorted(
            (r for r in self.providers.values() if r.enabled and r.supports(data_type)),
            key=lambda r: r.priority,
        )

    def get_primary_provider(self, data_type: str) -> Optional[ProviderRegistration]:
        candidates = self.get_providers_by_capability(data_type)
        return candidates[0] if candidates else None

    def get_fallback_providers(self, data_type: str) -> List[ProviderRegistration]:
        return self.get_providers_by_capability(data_type)[1:]

    # ============================================
    # Runtime Changes
    # ============================================

    def enable_provider(self, name: str) -> None:
        self._require(name).enabled = True
        logger.info(f"Provider {name} enabled")

    def disable_provider(self, name: str) -> None:
        self._require(name).enabled = False
        logger.warning(f"Provider {name} disabled")

    def update_provider_priority(self, name: str, priority: int) -> None:
        registration = self._require(name)
        old = registration.priority
        registration.priority = priority
        logger.info(f"Provider {name} priority changed {old} -> {priority}")

    def _require(self, name: str) -> ProviderRegistration:
        registration = self.providers.get(name.lower())
        if registration is None:
            raise ValueError(f"Provider '{name}' is not registered")
        return registration

    def validate_coverage(self) -> Dict[str, bool]:
        """
        Check every data type has at least one enabled provider.

        Returns:
            Data type -> covered
        """
        coverage = {data_type: bool(self.get_providers_by_capability(data_type)) for data_type in DATA_TYPES}
        missing = [d for d, ok in coverage.items() if not ok]
        if missing:
            logger.warning(f"No enabled provider for: {', '.join(missing)}")
        return coverage

    # ============================================
    # Lifecycle Management
    # ============================================

    async def initialize_all(self) -> None:
        """Initialize every provider. Failures are logged, the rest still start."""
        logger.info("Initializing all providers...")
        for name, registration in self.providers.items():
            try:
                await registration.provider.initialize()
                logger.info(f"{name} initialized successfully")
            except Exception as e:
                logger.error(f"Failed to initialize {name}: {e}")

    async def shutdown_all(self) -> None:
        logger.info("Shutting down all providers...")
        for name, registration in self.providers.items():
            try:
                await registration.provider.shutdown()
            except Exception as e:
                logger.error(f"Error shutting down {name}: {e}")

    async def health_check_all(self) -> Dict[str, bool]:
        """
        Validate credentials of every provider.

        Returns:
            Provider name -> healthy. Exceptions count as unhealthy.
        """
        results = {}
        for name, registration in self.providers.items():
            try:
                results[name] = await registration.provider.validate_api_key()
            except Exception as e:
                logger.warning(f"Health check failed for {name}: {e}")
                results[name] = False
        return results


# ============================================
# Global Registry Instance (Singleton)
# ============================================

_registry: Optional[ProviderRegistry] = None


def get_registry() -> ProviderRegistry:
    """Get the global ProviderRegistry instance (created on first call)."""
    global _registry
    if _registry is None:
        _registry = ProviderRegistry()
        logger.debug("Created global ProviderRegistry instance")
    return _registry
