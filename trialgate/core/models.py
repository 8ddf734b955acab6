from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, model_validator


class SelectionMode(str, Enum):
    BOOLEAN_FEATURE_FLAG = "BooleanFeatureFlag"
    CONFIGURATION_VALUE = "ConfigurationValue"
    STICKY_ROUTING = "StickyRouting"
    CUSTOM = "Custom"


class ErrorPolicyKind(str, Enum):
    THROW = "Throw"
    REDIRECT_DEFAULT = "RedirectDefault"
    REDIRECT_ANY = "RedirectAny"
    REDIRECT_SPECIFIC = "RedirectSpecific"
    REDIRECT_ORDERED = "RedirectOrdered"


class TimeoutAction(str, Enum):
    THROW_EXCEPTION = "ThrowException"
    FALLBACK_TO_DEFAULT = "FallbackToDefault"
    FALLBACK_TO_SPECIFIC_TRIAL = "FallbackToSpecificTrial"


class CircuitOpenAction(str, Enum):
    THROW = "Throw"
    FAIL_ATTEMPT = "FailAttempt"
    FALLBACK_TO_DEFAULT = "FallbackToDefault"
    FALLBACK_TO_SPECIFIC_TRIAL = "FallbackToSpecificTrial"


def service_name(service_type: Any) -> str:
    """Short display name for a service type (class or plain string)."""
    if isinstance(service_type, str):
        return service_type
    return getattr(service_type, "__name__", str(service_type))


def service_id(service_type: Any) -> str:
    """Fully qualified identifier, used as kill switch and registry key."""
    if isinstance(service_type, str):
        return service_type
    module = getattr(service_type, "__module__", None)
    qualname = getattr(service_type, "__qualname__", service_name(service_type))
    return f"{module}.{qualname}" if module else qualname


@dataclass(frozen=True)
class ErrorPolicy:
    """How a preferred trial key is expanded into a fallback cascade."""
    kind: ErrorPolicyKind = ErrorPolicyKind.THROW
    fallback_key: Optional[str] = None
    ordered_keys: Tuple[str, ...] = ()

    @classmethod
    def throw(cls) -> "ErrorPolicy":
        return cls(ErrorPolicyKind.THROW)

    @classmethod
    def redirect_default(cls) -> "ErrorPolicy":
        return cls(ErrorPolicyKind.REDIRECT_DEFAULT)

    @classmethod
    def redirect_any(cls) -> "ErrorPolicy":
        return cls(ErrorPolicyKind.REDIRECT_ANY)

    @classmethod
    def redirect_specific(cls, fallback_key: str) -> "ErrorPolicy":
        if not fallback_key:
            raise ValueError("RedirectSpecific requires a fallback key")
        return cls(ErrorPolicyKind.REDIRECT_SPECIFIC, fallback_key=fallback_key)

    @classmethod
    def redirect_ordered(cls, *keys: str) -> "ErrorPolicy":
        if not keys:
            raise ValueError("At least one fallback trial key must be specified.")
        return cls(ErrorPolicyKind.REDIRECT_ORDERED, ordered_keys=tuple(keys))

    def referenced_keys(self) -> Tuple[str, ...]:
        """Trial keys this policy names explicitly."""
        if self.kind == ErrorPolicyKind.REDIRECT_SPECIFIC and self.fallback_key:
            return (self.fallback_key,)
        if self.kind == ErrorPolicyKind.REDIRECT_ORDERED:
            return self.ordered_keys
        return ()


@dataclass(frozen=True)
class TimeoutPolicy:
    timeout_ms: int
    action: TimeoutAction = TimeoutAction.THROW_EXCEPTION
    fallback_key: Optional[str] = None

    def __post_init__(self):
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got: {self.timeout_ms}")
        if self.action == TimeoutAction.FALLBACK_TO_SPECIFIC_TRIAL and not self.fallback_key:
            raise ValueError("FallbackToSpecificTrial timeout action requires fallback_key")

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0


class CircuitBreakerOptions(BaseModel):
    """Sliding-window circuit breaker settings (all durations in ms)."""
    failure_ratio_threshold: float = Field(0.5, gt=0.0, le=1.0)
    minimum_throughput: int = Field(10, ge=1)
    sampling_duration_ms: int = Field(10_000, ge=1)
    break_duration_ms: int = Field(30_000, ge=1)
    on_circuit_open: CircuitOpenAction = CircuitOpenAction.THROW
    fallback_key: Optional[str] = None

    @model_validator(mode="after")
    def fallback_key_when_needed(self) -> "CircuitBreakerOptions":
        if self.on_circuit_open == CircuitOpenAction.FALLBACK_TO_SPECIFIC_TRIAL and not self.fallback_key:
            raise ValueError("FallbackToSpecificTrial circuit action requires fallback_key")
        return self


@dataclass(frozen=True)
class Registration:
    """Immutable description of one experiment over a service type.

    Built and validated by RegistrationBuilder; never mutated afterwards.
    The circuit breaker and kill switch are shared, synchronized state
    objects owned by the registration.
    """
    service_type: Any
    trials: Mapping[str, Any]
    default_key: str
    selection_mode: SelectionMode
    mode_identifier: str
    selector_name: str
    error_policy: ErrorPolicy = field(default_factory=ErrorPolicy.throw)
    experiment_name: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    activation_predicate: Optional[Callable[[Mapping[str, Any]], bool]] = None
    timeout: Optional[TimeoutPolicy] = None
    circuit_breaker: Any = None
    kill_switch: Any = None
    metrics: Any = None
    decorator_factories: Tuple[Any, ...] = ()

    @property
    def name(self) -> str:
        return self.experiment_name or service_name(self.service_type)

    @property
    def trial_keys(self) -> Tuple[str, ...]:
        return tuple(self.trials.keys())

    def effective_trial_key(self, trial_key: str) -> str:
        """Unknown keys resolve to the default trial instead of failing."""
        return trial_key if trial_key in self.trials else self.default_key

    def has_time_bounds(self) -> bool:
        return self.start_time is not None or self.end_time is not None

    def __str__(self) -> str:
        return (
            f"{service_name(self.service_type)} ({self.selection_mode.value}) "
            f"selector='{self.selector_name}' default='{self.default_key}' "
            f"trials=[{','.join(self.trials)}]"
        )


@dataclass(frozen=True)
class SelectionContext:
    service_type: Any
    selector_name: str
    default_key: str
    trial_keys: Tuple[str, ...]
    services: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class InvocationContext:
    service_type: Any
    method_name: str
    trial_key: str
    args: Tuple[Any, ...] = ()
    kwargs: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


def freeze_mapping(values: Optional[Dict[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(values or {}))
