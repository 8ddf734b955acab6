"""
Sticky routing: the same identity always lands on the same trial.

    index = uint64(sha256(identity + "\\x01" + experiment)[:8]) % len(keys)
    key   = sorted(keys)[index]

The experiment name is part of the hash input so that one identity is
spread independently across different experiments. Keys are sorted before
indexing so registration order never changes the assignment.
"""
import hashlib
from typing import Any, Callable, Optional, Sequence

from ..core.errors import StickyRoutingError
from ..core.models import SelectionContext, SelectionMode, service_name
from ..core.naming import NamingConvention
from ..core.pipeline import maybe_await
from .base import SelectionModeProvider

_SEPARATOR = "\u0001"


def stable_hash(identity: str, name: str) -> int:
    """First 8 bytes of sha256(identity + "\\x01" + name) as an unsigned int."""
    digest = hashlib.sha256(f"{identity}{_SEPARATOR}{name}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def select_trial(identity: str, experiment_name: str, trial_keys: Sequence[str]) -> str:
    if not trial_keys:
        raise StickyRoutingError(f"No trial keys to route '{experiment_name}' between")
    if len(trial_keys) == 1:
        return trial_keys[0]

    ordered = sorted(trial_keys)
    index = stable_hash(identity, experiment_name) % len(ordered)
    return ordered[index]


IdentityProvider = Callable[[SelectionContext], Any]


class StickyRoutingProvider(SelectionModeProvider):
    """Routes by caller identity. No identity means no preference."""

    def __init__(self, identity_provider: IdentityProvider):
        self._identity_provider = identity_provider

    @property
    def mode_identifier(self) -> str:
        return SelectionMode.STICKY_ROUTING.value

    async def select_trial_key(self, context: SelectionContext) -> Optional[str]:
        identity = await maybe_await(self._identity_provider(context))
        if not identity:
            return None
        return select_trial(str(identity), context.selector_name, context.trial_keys)

    def default_selector_name(self, service_type: Any, naming: NamingConvention) -> str:
        return naming.kebab_name_for(service_type) or service_name(service_type)
