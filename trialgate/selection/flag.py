from typing import Any, Mapping, Optional

from ..core.models import SelectionContext, SelectionMode
from ..core.pipeline import maybe_await
from .base import SelectionModeProvider


class StaticFlags:
    """Flag source backed by a plain mapping; unknown flags are off."""

    def __init__(self, flags: Optional[Mapping[str, bool]] = None):
        self._flags = dict(flags or {})

    def set(self, name: str, enabled: bool) -> None:
        self._flags[name] = enabled

    def is_enabled(self, name: str) -> bool:
        return bool(self._flags.get(name, False))


class BooleanFeatureFlagProvider(SelectionModeProvider):
    """Maps a boolean flag onto the trial keys "true" / "false".

    `flags` needs an `is_enabled(name)` method, sync or async.
    """

    def __init__(self, flags: Any):
        self._flags = flags

    @property
    def mode_identifier(self) -> str:
        return SelectionMode.BOOLEAN_FEATURE_FLAG.value

    async def select_trial_key(self, context: SelectionContext) -> Optional[str]:
        enabled = await maybe_await(self._flags.is_enabled(context.selector_name))
        return "true" if enabled else "false"
