"""
Percentage rollout: include a stable share of identities in a trial.

    bucket   = stable_hash(identity, seed + ":" + rollout_name) % 100
    included = bucket < percentage

The rollout name is the selector name, so one identity is included or
excluded independently per rollout. Included identities get
`included_key`; everyone else (and calls without an identity) get
`excluded_key`, where None means "no preference".
"""
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

from ..core.models import SelectionContext
from ..core.naming import NamingConvention
from ..core.pipeline import maybe_await
from .base import SelectionModeProvider
from .sticky import IdentityProvider, stable_hash

ROLLOUT_MODE = "Rollout"


def rollout_bucket(identity: str, rollout_name: str, seed: Optional[str] = None) -> int:
    return stable_hash(identity, f"{seed or ''}:{rollout_name}") % 100


def is_included(identity: str, rollout_name: str, percentage: int, seed: Optional[str] = None) -> bool:
    if percentage <= 0:
        return False
    if percentage >= 100:
        return True
    return rollout_bucket(identity, rollout_name, seed) < percentage


def allocate_bucket(identity: str, rollout_name: str, weights: Sequence[int], seed: Optional[str] = None) -> int:
    """Index of the weighted bucket an identity falls in. Weights should sum to 100."""
    if not weights:
        raise ValueError("At least one weight is required")
    bucket = rollout_bucket(identity, rollout_name, seed)
    cumulative = 0
    for index, weight in enumerate(weights):
        cumulative += weight
        if bucket < cumulative:
            return index
    return len(weights) - 1


@dataclass(frozen=True)
class RolloutOptions:
    percentage: int = 100
    included_key: str = "true"
    excluded_key: Optional[str] = None
    seed: Optional[str] = None

    def __post_init__(self):
        if not 0 <= self.percentage <= 100:
            raise ValueError(f"Rollout percentage must be between 0 and 100, got {self.percentage}")
        if not self.included_key:
            raise ValueError("Rollout included_key cannot be empty")


class RolloutProvider(SelectionModeProvider):
    """Custom mode "Rollout".

    `overrides` maps a selector name to its own RolloutOptions; every other
    selector uses `options`.
    """

    def __init__(
        self,
        identity_provider: IdentityProvider,
        options: Optional[RolloutOptions] = None,
        overrides: Optional[Mapping[str, RolloutOptions]] = None,
    ):
        self._identity_provider = identity_provider
        self._options = options or RolloutOptions()
        self._overrides = dict(overrides or {})

    @property
    def mode_identifier(self) -> str:
        return ROLLOUT_MODE

    def options_for(self, selector_name: str) -> RolloutOptions:
        return self._overrides.get(selector_name, self._options)

    async def select_trial_key(self, context: SelectionContext) -> Optional[str]:
        options = self.options_for(context.selector_name)
        identity = await maybe_await(self._identity_provider(context))
        if not identity:
            return options.excluded_key
        if is_included(str(identity), context.selector_name, options.percentage, options.seed):
            return options.included_key
        return options.excluded_key

    def default_selector_name(self, service_type: Any, naming: NamingConvention) -> str:
        return f"Rollout:{naming.feature_flag_name_for(service_type)}"
