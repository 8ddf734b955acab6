"""
Error-policy cascade: preferred key -> ordered candidate keys.

Pure functions, no I/O. The result always starts with the preferred key
and never repeats a key.
"""
from typing import Iterable, Tuple

from .models import ErrorPolicyKind, Registration


def _dedupe(keys: Iterable[str]) -> Tuple[str, ...]:
    seen = set()
    out = []
    for key in keys:
        if key not in seen:
            seen.add(key)
            out.append(key)
    return tuple(out)


def build_candidates(preferred_key: str, registration: Registration) -> Tuple[str, ...]:
    """Expand the preferred key under the registration's error policy.

    Throw              -> (preferred,)
    RedirectDefault    -> (preferred, default) unless preferred is default
    RedirectAny        -> (preferred, *other keys sorted)
    RedirectSpecific   -> (preferred, fallback) unless preferred is fallback
    RedirectOrdered    -> (preferred, *ordered keys without preferred)
    """
    policy = registration.error_policy
    kind = policy.kind

    if kind == ErrorPolicyKind.THROW:
        return (preferred_key,)

    if kind == ErrorPolicyKind.REDIRECT_DEFAULT:
        return _dedupe((preferred_key, registration.default_key))

    if kind == ErrorPolicyKind.REDIRECT_ANY:
        others = sorted(k for k in registration.trials if k != preferred_key)
        return (preferred_key, *others)

    if kind == ErrorPolicyKind.REDIRECT_SPECIFIC:
        if policy.fallback_key is None:
            return (preferred_key,)
        return _dedupe((preferred_key, policy.fallback_key))

    if kind == ErrorPolicyKind.REDIRECT_ORDERED:
        return _dedupe((preferred_key, *policy.ordered_keys))

    return (preferred_key,)
