"""
Default names for selectors derived from a service type.

    PaymentProcessor  -> flag "PaymentProcessor"
                      -> configuration key "Experiments:PaymentProcessor"
                      -> kebab name "payment-processor"
"""
from typing import Any

from .models import service_name


class NamingConvention:
    def feature_flag_name_for(self, service_type: Any) -> str:
        return service_name(service_type)

    def configuration_key_for(self, service_type: Any) -> str:
        return f"Experiments:{service_name(service_type)}"

    def kebab_name_for(self, service_type: Any) -> str:
        return to_kebab_case(service_name(service_type))


DEFAULT_NAMING = NamingConvention()


def to_kebab_case(name: str) -> str:
    # IMyService -> my-service
    if len(name) > 1 and name[0] == "I" and name[1].isupper():
        name = name[1:]

    out = []
    for i, c in enumerate(name):
        if c.isupper():
            if out:
                prev_is_lower = i > 0 and name[i - 1].islower()
                next_is_lower = i + 1 < len(name) and name[i + 1].islower()
                if prev_is_lower or next_is_lower:
                    out.append("-")
            out.append(c.lower())
        else:
            out.append(c)
    return "".join(out)
