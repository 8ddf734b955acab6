"""
Fluent builder for immutable Registration values.

    registration = (
        RegistrationBuilder(PaymentProcessor)
        .add_default_trial("stripe", StripeProcessor)
        .add_trial("adyen", AdyenProcessor)
        .using_configuration_key()
        .on_error_redirect_default()
        .with_timeout(500)
        .build()
    )
"""
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import RegistrationError
from .models import (
    CircuitBreakerOptions,
    ErrorPolicy,
    Registration,
    SelectionMode,
    TimeoutAction,
    TimeoutPolicy,
    service_name,
)
from .naming import DEFAULT_NAMING, NamingConvention
from .resilience import NOOP_KILL_SWITCH, CircuitBreaker, KillSwitch


class RegistrationBuilder:
    def __init__(self, service_type: Any):
        if service_type is None:
            raise RegistrationError("service_type is required")
        self._service_type = service_type
        self._trials: Dict[str, Any] = {}
        self._default_key: Optional[str] = None
        self._selection_mode = SelectionMode.BOOLEAN_FEATURE_FLAG
        self._mode_identifier: Optional[str] = None
        self._selector_name: Optional[str] = None
        self._error_policy = ErrorPolicy.throw()
        self._experiment_name: Optional[str] = None
        self._start_time: Optional[datetime] = None
        self._end_time: Optional[datetime] = None
        self._predicate: Optional[Callable[[Mapping[str, Any]], bool]] = None
        self._timeout: Optional[TimeoutPolicy] = None
        self._breaker_options: Optional[CircuitBreakerOptions] = None
        self._breaker_emitter = None
        self._kill_switch: KillSwitch = NOOP_KILL_SWITCH
        self._metrics = None
        self._decorators: List[Any] = []

    # -------------------------------------------------------------------------
    # Trials
    # -------------------------------------------------------------------------

    def add_trial(self, key: str, implementation: Any) -> "RegistrationBuilder":
        if not key:
            raise RegistrationError("Trial key must be a non-empty string")
        if key in self._trials:
            raise RegistrationError(f"Duplicate trial key '{key}' for {service_name(self._service_type)}")
        self._trials[key] = implementation
        if self._default_key is None:
            self._default_key = key
        return self

    def add_default_trial(self, key: str, implementation: Any) -> "RegistrationBuilder":
        self.add_trial(key, implementation)
        self._default_key = key
        return self

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    def using_feature_flag(self, flag_name: Optional[str] = None) -> "RegistrationBuilder":
        return self._select(SelectionMode.BOOLEAN_FEATURE_FLAG, flag_name)

    def using_configuration_key(self, key: Optional[str] = None) -> "RegistrationBuilder":
        return self._select(SelectionMode.CONFIGURATION_VALUE, key)

    def using_sticky_routing(self, selector_name: Optional[str] = None) -> "RegistrationBuilder":
        return self._select(SelectionMode.STICKY_ROUTING, selector_name)

    def using_custom_mode(self, mode_identifier: str, selector_name: Optional[str] = None) -> "RegistrationBuilder":
        if not mode_identifier:
            raise RegistrationError("Custom selection needs a mode identifier")
        self._select(SelectionMode.CUSTOM, selector_name)
        self._mode_identifier = mode_identifier
        return self

    def _select(self, mode: SelectionMode, selector_name: Optional[str]) -> "RegistrationBuilder":
        self._selection_mode = mode
        self._mode_identifier = None
        self._selector_name = selector_name or None
        return self

    # -------------------------------------------------------------------------
    # Error policy
    # -------------------------------------------------------------------------

    def on_error_throw(self) -> "RegistrationBuilder":
        self._error_policy = ErrorPolicy.throw()
        return self

    def on_error_redirect_default(self) -> "RegistrationBuilder":
        self._error_policy = ErrorPolicy.redirect_default()
        return self

    def on_error_redirect_any(self) -> "RegistrationBuilder":
        self._error_policy = ErrorPolicy.redirect_any()
        return self

    def on_error_redirect_to(self, fallback_key: str) -> "RegistrationBuilder":
        try:
            self._error_policy = ErrorPolicy.redirect_specific(fallback_key)
        except ValueError as e:
            raise RegistrationError(str(e)) from e
        return self

    def on_error_redirect_ordered(self, *keys: str) -> "RegistrationBuilder":
        try:
            self._error_policy = ErrorPolicy.redirect_ordered(*keys)
        except ValueError as e:
            raise RegistrationError(str(e)) from e
        return self

    # -------------------------------------------------------------------------
    # Activation
    # -------------------------------------------------------------------------

    def active_from(self, start: datetime) -> "RegistrationBuilder":
        self._start_time = _require_aware(start, "start")
        return self

    def active_until(self, end: datetime) -> "RegistrationBuilder":
        self._end_time = _require_aware(end, "end")
        return self

    def active_during(self, start: datetime, end: datetime) -> "RegistrationBuilder":
        return self.active_from(start).active_until(end)

    def active_when(self, predicate: Callable[[Mapping[str, Any]], bool]) -> "RegistrationBuilder":
        self._predicate = predicate
        return self

    # -------------------------------------------------------------------------
    # Resilience and extras
    # -------------------------------------------------------------------------

    def with_timeout(
        self,
        timeout_ms: int,
        action: TimeoutAction = TimeoutAction.THROW_EXCEPTION,
        fallback_key: Optional[str] = None,
    ) -> "RegistrationBuilder":
        try:
            self._timeout = TimeoutPolicy(timeout_ms, TimeoutAction(action), fallback_key)
        except ValueError as e:
            raise RegistrationError(str(e)) from e
        return self

    def with_circuit_breaker(
        self,
        options: Optional[CircuitBreakerOptions] = None,
        transition_emitter=None,
        **overrides: Any,
    ) -> "RegistrationBuilder":
        base = options or CircuitBreakerOptions()
        if overrides:
            try:
                base = CircuitBreakerOptions(**{**base.model_dump(), **overrides})
            except ValueError as e:
                raise RegistrationError(f"Invalid circuit breaker options: {e}") from e
        self._breaker_options = base
        self._breaker_emitter = transition_emitter
        return self

    def with_kill_switch(self, kill_switch: KillSwitch) -> "RegistrationBuilder":
        self._kill_switch = kill_switch
        return self

    def with_metrics(self, metrics: Any) -> "RegistrationBuilder":
        self._metrics = metrics
        return self

    def add_decorator(self, factory: Any) -> "RegistrationBuilder":
        self._decorators.append(factory)
        return self

    def named(self, experiment_name: str) -> "RegistrationBuilder":
        self._experiment_name = experiment_name or None
        return self

    # -------------------------------------------------------------------------
    # Build
    # -------------------------------------------------------------------------

    def build(self, naming: Optional[NamingConvention] = None) -> Registration:
        naming = naming or DEFAULT_NAMING
        name = service_name(self._service_type)

        if not self._trials:
            raise RegistrationError(f"No trials registered for {name}")
        if self._default_key not in self._trials:
            raise RegistrationError(f"Default trial '{self._default_key}' is not registered for {name}")
        if self._start_time and self._end_time and self._start_time > self._end_time:
            raise RegistrationError(
                f"Activation window for {name} starts after it ends "
                f"({self._start_time.isoformat()} > {self._end_time.isoformat()})"
            )

        experiment_name = self._experiment_name
        breaker = None
        if self._breaker_options is not None:
            breaker = CircuitBreaker(
                f"{experiment_name or name}",
                self._breaker_options,
                transition_emitter=self._breaker_emitter,
            )

        return Registration(
            service_type=self._service_type,
            trials=MappingProxyType(dict(self._trials)),
            default_key=self._default_key,
            selection_mode=self._selection_mode,
            mode_identifier=self._mode_identifier or self._selection_mode.value,
            selector_name=self._selector_name or self._derive_selector_name(naming),
            error_policy=self._error_policy,
            experiment_name=experiment_name,
            start_time=self._start_time,
            end_time=self._end_time,
            activation_predicate=self._predicate,
            timeout=self._timeout,
            circuit_breaker=breaker,
            kill_switch=self._kill_switch,
            metrics=self._metrics,
            decorator_factories=tuple(self._decorators),
        )

    def _derive_selector_name(self, naming: NamingConvention) -> str:
        mode = self._selection_mode
        if mode == SelectionMode.BOOLEAN_FEATURE_FLAG:
            return naming.feature_flag_name_for(self._service_type)
        if mode == SelectionMode.CONFIGURATION_VALUE:
            return naming.configuration_key_for(self._service_type)
        if mode == SelectionMode.STICKY_ROUTING:
            return self._experiment_name or naming.kebab_name_for(self._service_type)
        # Custom providers supply their own default at call time.
        return ""


def _require_aware(value: datetime, label: str) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise RegistrationError(f"Activation {label} time must be timezone-aware, got {value!r}")
    return value
