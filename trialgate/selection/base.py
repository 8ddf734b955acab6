"""
Selection providers pick the preferred trial key for one call.

Returning None (or an empty string) means "no preference": the router then
uses the registration's default key as the preferred key.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

from ..core.models import SelectionContext
from ..core.naming import NamingConvention


class SelectionModeProvider(ABC):
    @property
    @abstractmethod
    def mode_identifier(self) -> str: ...

    @abstractmethod
    async def select_trial_key(self, context: SelectionContext) -> Optional[str]: ...

    def default_selector_name(self, service_type: Any, naming: NamingConvention) -> str:
        return naming.feature_flag_name_for(service_type)


class SelectionModeRegistry:
    """Mode identifier -> provider. Lookups ignore case."""

    def __init__(self, providers: Iterable[SelectionModeProvider] = ()):
        self._providers: Dict[str, SelectionModeProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: SelectionModeProvider) -> None:
        self._providers[provider.mode_identifier.casefold()] = provider

    def get(self, mode_identifier: str) -> Optional[SelectionModeProvider]:
        if not mode_identifier:
            return None
        return self._providers.get(mode_identifier.casefold())

    def __contains__(self, mode_identifier: str) -> bool:
        return self.get(mode_identifier) is not None

    def mode_identifiers(self):
        return sorted(p.mode_identifier for p in self._providers.values())

    @classmethod
    def with_builtin_providers(
        cls,
        flags: Any = None,
        values: Any = None,
        identity_provider: Any = None,
        extra: Iterable[SelectionModeProvider] = (),
    ) -> "SelectionModeRegistry":
        """Registry with the flag, configuration and sticky providers wired to
        the given backing stores. A built-in is skipped when its store is None."""
        from .config_value import ConfigurationValueProvider
        from .flag import BooleanFeatureFlagProvider
        from .sticky import StickyRoutingProvider

        registry = cls()
        if flags is not None:
            registry.register(BooleanFeatureFlagProvider(flags))
        if values is not None:
            registry.register(ConfigurationValueProvider(values))
        if identity_provider is not None:
            registry.register(StickyRoutingProvider(identity_provider))
        for provider in extra:
            registry.register(provider)
        return registry
