from typing import Any, Mapping, Optional

from ..core.models import SelectionContext, SelectionMode
from ..core.naming import NamingConvention
from .base import SelectionModeProvider


class ConfigurationValueProvider(SelectionModeProvider):
    """Reads the trial key from a configuration mapping.

    The mapping is read on every call, so updates to a live mapping are
    picked up without rebuilding anything. Missing or blank values mean no
    preference.
    """

    def __init__(self, values: Mapping[str, Any]):
        self._values = values

    @property
    def mode_identifier(self) -> str:
        return SelectionMode.CONFIGURATION_VALUE.value

    async def select_trial_key(self, context: SelectionContext) -> Optional[str]:
        value = self._values.get(context.selector_name)
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    def default_selector_name(self, service_type: Any, naming: NamingConvention) -> str:
        return naming.configuration_key_for(service_type)
