"""
Rule-based targeting on caller attributes.

A targeting context (user id plus attributes) comes from the context
provider. Rules registered for the selector name are tried in order and
the first match wins; with no rules for the selector, `default_rule`
decides between `matched_key` and `unmatched_key`.
"""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..core.models import SelectionContext
from ..core.naming import NamingConvention
from ..core.pipeline import maybe_await
from .base import SelectionModeProvider
from .rollout import is_included

TARGETING_MODE = "Targeting"


@dataclass(frozen=True)
class TargetingContext:
    user_id: Optional[str] = None
    attributes: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def get(self, name: str) -> Any:
        return self.attributes.get(name)

    def has(self, name: str) -> bool:
        return name in self.attributes


Rule = Callable[[TargetingContext], bool]


# =============================================================================
# Rules
# =============================================================================

def always() -> Rule:
    return lambda ctx: True


def never() -> Rule:
    return lambda ctx: False


def users(*user_ids: str) -> Rule:
    wanted = {u.casefold() for u in user_ids}
    return lambda ctx: ctx.user_id is not None and ctx.user_id.casefold() in wanted


def attribute_equals(name: str, value: Any) -> Rule:
    return lambda ctx: ctx.has(name) and ctx.get(name) == value


def attribute_in(name: str, *values: Any) -> Rule:
    return lambda ctx: ctx.has(name) and ctx.get(name) in values


def has_attribute(name: str) -> Rule:
    return lambda ctx: ctx.has(name)


def all_of(*rules: Rule) -> Rule:
    return lambda ctx: all(rule(ctx) for rule in rules)


def any_of(*rules: Rule) -> Rule:
    return lambda ctx: any(rule(ctx) for rule in rules)


def negate(rule: Rule) -> Rule:
    return lambda ctx: not rule(ctx)


def percentage(share: int, seed: Optional[str] = None) -> Rule:
    """Stable share of user ids; contexts without a user id never match."""
    return lambda ctx: ctx.user_id is not None and is_included(ctx.user_id, seed or "targeting", share)


# =============================================================================
# Provider
# =============================================================================

class TargetingRules:
    """Selector name -> ordered (rule, trial key) pairs. Lookups ignore case."""

    def __init__(self):
        self._rules: Dict[str, List[Tuple[Rule, str]]] = {}

    def add_rule(self, selector_name: str, rule: Rule, key: str) -> "TargetingRules":
        self._rules.setdefault(selector_name.casefold(), []).append((rule, key))
        return self

    def rules_for(self, selector_name: str) -> List[Tuple[Rule, str]]:
        return list(self._rules.get(selector_name.casefold(), ()))


ContextProvider = Callable[[SelectionContext], Any]


class TargetingProvider(SelectionModeProvider):
    """Custom mode "Targeting". No targeting context means no preference."""

    def __init__(
        self,
        context_provider: ContextProvider,
        rules: Optional[TargetingRules] = None,
        default_rule: Optional[Rule] = None,
        matched_key: str = "true",
        unmatched_key: Optional[str] = None,
    ):
        self._context_provider = context_provider
        self._rules = rules or TargetingRules()
        self._default_rule = default_rule
        self._matched_key = matched_key
        self._unmatched_key = unmatched_key

    @property
    def mode_identifier(self) -> str:
        return TARGETING_MODE

    async def select_trial_key(self, context: SelectionContext) -> Optional[str]:
        targeting = await maybe_await(self._context_provider(context))
        if targeting is None:
            return None

        rules = self._rules.rules_for(context.selector_name)
        if not rules:
            if self._default_rule is not None and self._default_rule(targeting):
                return self._matched_key
            return self._unmatched_key

        for rule, key in rules:
            if rule(targeting):
                return key
        return None

    def default_selector_name(self, service_type: Any, naming: NamingConvention) -> str:
        return f"Targeting:{naming.feature_flag_name_for(service_type)}"


def targeting_context(user_id: Optional[str] = None, attributes: Optional[Mapping[str, Any]] = None,
                      **extra: Any) -> TargetingContext:
    merged = {**(attributes or {}), **extra}
    return TargetingContext(user_id=user_id, attributes=MappingProxyType(merged))
