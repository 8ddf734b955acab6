"""
Invocation router: one experiment call from preferred key to outcome.

Flow per call:
    activation -> (inactive: default trial, nothing else)
    selection -> preferred key
    cascade -> candidate keys
    experiment kill switch
    for each candidate:
        trial kill switch -> circuit breaker -> deadline -> decorators -> call

Telemetry observes the loop and can never change its outcome. Per-attempt
failures travel as AttemptOutcome values; only the router raises to the
caller.
"""
import asyncio
import functools
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Tuple

from ..telemetry.metrics import MetricsDecoratorFactory
from ..telemetry.scope import NOOP_TELEMETRY, ExperimentTelemetry, LoggingTelemetry, TelemetryScope
from .activation import ActivationEvaluator, Clock
from .cascade import build_candidates
from .errors import (
    CircuitOpenError,
    ExperimentDisabledError,
    TrialDisabledError,
    TrialTimeoutError,
    UnresolvableTrialError,
)
from .models import (
    CircuitOpenAction,
    ErrorPolicyKind,
    InvocationContext,
    Registration,
    SelectionContext,
    TimeoutAction,
    freeze_mapping,
    service_name,
)
from .naming import DEFAULT_NAMING, NamingConvention
from .pipeline import DecoratorPipeline, maybe_await
from .resilience import NOOP_KILL_SWITCH, call_with_deadline
from .settings import is_telemetry_enabled

logger = logging.getLogger(__name__)


# =============================================================================
# Implementation resolution
# =============================================================================

class DescriptorResolver:
    """Turns trial descriptors into instances.

    A class is instantiated, a function or partial is called as a factory, and
    anything else is returned as-is (already an instance).
    """

    def __init__(self, trials: Mapping[str, Any]):
        self._trials = trials

    def resolve(self, service_type: Any, trial_key: str) -> Any:
        try:
            descriptor = self._trials[trial_key]
        except KeyError:
            raise UnresolvableTrialError(service_name(service_type), trial_key) from None
        if isinstance(descriptor, (type, functools.partial)) or inspect.isroutine(descriptor):
            return descriptor()
        return descriptor


# =============================================================================
# Attempt outcome
# =============================================================================

@dataclass
class AttemptOutcome:
    """Result of one candidate attempt.

    redirect_key is set when a timeout or circuit action asks to abandon the
    cascade and run that trial instead. terminal errors skip the error policy.
    """
    trial_key: str
    succeeded: bool = False
    value: Any = None
    error: Optional[BaseException] = None
    terminal: bool = False
    redirect_key: Optional[str] = None

    @classmethod
    def success(cls, trial_key: str, value: Any) -> "AttemptOutcome":
        return cls(trial_key, succeeded=True, value=value)

    @classmethod
    def failure(cls, trial_key: str, error: BaseException, terminal: bool = False) -> "AttemptOutcome":
        return cls(trial_key, error=error, terminal=terminal)

    @classmethod
    def redirect(cls, trial_key: str, redirect_key: str, error: BaseException) -> "AttemptOutcome":
        return cls(trial_key, error=error, redirect_key=redirect_key)


# =============================================================================
# Router
# =============================================================================

class InvocationRouter:
    def __init__(
        self,
        registration: Registration,
        resolver: Any = None,
        selection_registry: Any = None,
        telemetry: Optional[ExperimentTelemetry] = None,
        naming: Optional[NamingConvention] = None,
        clock: Optional[Clock] = None,
        services_factory: Optional[Callable[[], Any]] = None,
        verbose: bool = False,
    ):
        self._registration = registration
        resolver = resolver if resolver is not None else DescriptorResolver(registration.trials)
        self._resolve = getattr(resolver, "resolve", resolver)
        self._selection_registry = selection_registry
        if telemetry is None:
            telemetry = LoggingTelemetry() if is_telemetry_enabled() else NOOP_TELEMETRY
        self._telemetry = telemetry
        self._naming = naming or DEFAULT_NAMING
        self._activation = ActivationEvaluator(clock)
        self._services_factory = services_factory
        self._kill_switch = registration.kill_switch or NOOP_KILL_SWITCH
        self._verbose = verbose

        factories = list(registration.decorator_factories)
        if registration.metrics is not None:
            factories.insert(0, MetricsDecoratorFactory(registration.metrics))
        self._decorator_factories: Tuple[Any, ...] = tuple(factories)

    @property
    def registration(self) -> Registration:
        return self._registration

    def proxy(self) -> "ExperimentProxy":
        return ExperimentProxy(self)

    async def invoke(self, method_name: str, *args: Any, **kwargs: Any) -> Any:
        reg = self._registration
        trace: Optional[List[str]] = [] if self._verbose else None
        services = await self._services()

        if not self._activation.is_active(reg, services=services):
            self._trace(trace, f"[TRACE] {reg.name}: inactive, using default '{reg.default_key}'")
            self._flush_trace(trace)
            return await self._call_direct(reg.default_key, method_name, args, kwargs)

        preferred_key, source = await self._select_preferred_key(services)
        candidates = build_candidates(preferred_key, reg)
        self._trace(trace, f"[TRACE] {reg.name}: preferred='{preferred_key}' ({source}) candidates={list(candidates)}")

        if self._kill_switch.is_experiment_disabled(reg.service_type):
            self._trace(trace, f"[TRACE] {reg.name}: experiment disabled by kill switch")
            self._flush_trace(trace)
            raise ExperimentDisabledError(service_name(reg.service_type))

        scope = self._start_scope(method_name, preferred_key, candidates)
        try:
            self._safe(scope.record_variant, preferred_key, source)
            return await self._run_candidates(
                scope, candidates, preferred_key, method_name, args, kwargs, services, trace,
            )
        finally:
            self._flush_trace(trace)
            await self._close_scope(scope)

    # -------------------------------------------------------------------------
    # Candidate loop
    # -------------------------------------------------------------------------

    async def _run_candidates(self, scope: TelemetryScope, candidates: Tuple[str, ...],
                              preferred_key: str, method_name: str, args: Tuple[Any, ...],
                              kwargs: Mapping[str, Any], services: Mapping[str, Any],
                              trace: Optional[List[str]]) -> Any:
        reg = self._registration
        attempted: List[str] = []
        last_error: Optional[BaseException] = None

        for key in candidates:
            attempted.append(key)
            outcome = await self._attempt(key, method_name, args, kwargs, services)

            if outcome.succeeded:
                self._trace(trace, f"[TRACE] {reg.name}: '{key}' succeeded")
                self._safe(scope.record_success)
                if key != preferred_key:
                    self._safe(scope.record_fallback, key)
                return outcome.value

            last_error = outcome.error
            self._trace(trace, f"[TRACE] {reg.name}: '{key}' failed with {type(last_error).__name__}")
            self._safe(scope.record_failure, last_error)

            if outcome.redirect_key is not None:
                self._trace(trace, f"[TRACE] {reg.name}: short-circuit to '{outcome.redirect_key}'")
                return await self._run_redirect(scope, outcome, preferred_key, method_name, args, kwargs, services)

            if outcome.terminal or reg.error_policy.kind == ErrorPolicyKind.THROW:
                raise last_error

        last_error.add_note(
            f"All candidates failed for {service_name(reg.service_type)}.{method_name}; "
            f"attempted: {', '.join(attempted)}"
        )
        raise last_error

    async def _attempt(self, key: str, method_name: str, args: Tuple[Any, ...],
                       kwargs: Mapping[str, Any], services: Mapping[str, Any]) -> AttemptOutcome:
        """Run one candidate behind the trial kill switch, the breaker and the deadline.

        A refused attempt under CircuitOpenAction.THROW is terminal and skips
        the error policy. The breaker belongs to the registration, not to the
        trial, so every later candidate would be refused by the same open
        breaker; the policy could only end in the same CircuitOpenError.
        FailAttempt is the action that hands the refusal to the policy.
        """
        reg = self._registration
        name = service_name(reg.service_type)

        if self._kill_switch.is_trial_disabled(reg.service_type, key):
            return AttemptOutcome.failure(key, TrialDisabledError(name, key))

        effective_key = reg.effective_trial_key(key)
        ctx = InvocationContext(reg.service_type, method_name, effective_key, tuple(args), freeze_mapping(kwargs))

        breaker = reg.circuit_breaker
        if breaker is not None and not breaker.allow_request():
            error = CircuitOpenError(name, method_name, key)
            action = breaker.options.on_circuit_open
            if action == CircuitOpenAction.THROW:
                return AttemptOutcome.failure(key, error, terminal=True)
            if action == CircuitOpenAction.FAIL_ATTEMPT:
                return AttemptOutcome.failure(key, error)
            target = reg.default_key if action == CircuitOpenAction.FALLBACK_TO_DEFAULT else breaker.options.fallback_key
            return AttemptOutcome.redirect(key, target, error)

        try:
            value = await call_with_deadline(
                lambda: self._call_pipeline(ctx, services), reg.timeout, ctx,
            )
        except TrialTimeoutError as e:
            if breaker is not None:
                breaker.record_failure()
            return self._timeout_outcome(key, effective_key, e)
        except Exception as e:
            if breaker is not None:
                breaker.record_failure()
            return AttemptOutcome.failure(key, e)
        except BaseException:
            # Cancellation: the probe slot must not stay taken.
            if breaker is not None:
                breaker.release_probe()
            raise

        if breaker is not None:
            breaker.record_success()
        return AttemptOutcome.success(key, value)

    def _timeout_outcome(self, key: str, effective_key: str, error: TrialTimeoutError) -> AttemptOutcome:
        policy = self._registration.timeout
        if policy is None or policy.action == TimeoutAction.THROW_EXCEPTION:
            return AttemptOutcome.failure(key, error)
        if policy.action == TimeoutAction.FALLBACK_TO_DEFAULT:
            target = self._registration.default_key
        else:
            target = policy.fallback_key
        # Falling back onto the trial that just timed out would only repeat it.
        if self._registration.effective_trial_key(target) == effective_key:
            return AttemptOutcome.failure(key, error)
        return AttemptOutcome.redirect(key, target, error)

    async def _run_redirect(self, scope: TelemetryScope, outcome: AttemptOutcome, preferred_key: str,
                            method_name: str, args: Tuple[Any, ...], kwargs: Mapping[str, Any],
                            services: Mapping[str, Any]) -> Any:
        """Run the redirect target outside the breaker and deadline."""
        reg = self._registration
        target = outcome.redirect_key
        if self._kill_switch.is_trial_disabled(reg.service_type, target):
            error = TrialDisabledError(service_name(reg.service_type), target)
            self._safe(scope.record_failure, error)
            raise error from outcome.error

        ctx = InvocationContext(
            reg.service_type, method_name, reg.effective_trial_key(target), tuple(args), freeze_mapping(kwargs),
        )
        try:
            value = await self._call_pipeline(ctx, services)
        except Exception as e:
            self._safe(scope.record_failure, e)
            raise

        self._safe(scope.record_success)
        if target != preferred_key:
            self._safe(scope.record_fallback, target)
        return value

    # -------------------------------------------------------------------------
    # Calls
    # -------------------------------------------------------------------------

    async def _call_pipeline(self, ctx: InvocationContext, services: Mapping[str, Any]) -> Any:
        instance = await maybe_await(self._resolve(ctx.service_type, ctx.trial_key))
        method = getattr(instance, ctx.method_name)
        pipeline = DecoratorPipeline(self._decorator_factories, services)

        async def terminal() -> Any:
            return await maybe_await(method(*ctx.args, **ctx.kwargs))

        return await pipeline.invoke(ctx, terminal)

    async def _call_direct(self, key: str, method_name: str, args: Tuple[Any, ...],
                           kwargs: Mapping[str, Any]) -> Any:
        instance = await maybe_await(self._resolve(self._registration.service_type, key))
        return await maybe_await(getattr(instance, method_name)(*args, **kwargs))

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    async def _select_preferred_key(self, services: Mapping[str, Any]) -> Tuple[str, str]:
        """Returns (preferred_key, source). Any miss falls back to the default key."""
        reg = self._registration
        provider = None
        if self._selection_registry is not None:
            provider = self._selection_registry.get(reg.mode_identifier)
        if provider is None:
            logger.debug("No selection provider for mode '%s' (%s); using default", reg.mode_identifier, reg.name)
            return reg.default_key, "default"

        selector_name = reg.selector_name or provider.default_selector_name(reg.service_type, self._naming)
        context = SelectionContext(
            service_type=reg.service_type,
            selector_name=selector_name,
            default_key=reg.default_key,
            trial_keys=reg.trial_keys,
            services=services,
        )
        try:
            key = await provider.select_trial_key(context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Selection provider '%s' failed for %s (%s: %s); using default",
                provider.mode_identifier, reg.name, type(e).__name__, e,
            )
            return reg.default_key, "default"

        if not key:
            return reg.default_key, "default"
        return key, provider.mode_identifier

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _services(self) -> Mapping[str, Any]:
        if self._services_factory is None:
            return freeze_mapping(None)
        return freeze_mapping(await maybe_await(self._services_factory()))

    def _start_scope(self, method_name: str, preferred_key: str, candidates: Tuple[str, ...]) -> TelemetryScope:
        reg = self._registration
        try:
            return self._telemetry.start_invocation(
                reg.service_type, method_name, reg.selector_name, preferred_key, candidates,
                experiment_name=reg.name,
            )
        except Exception:
            logger.warning("Telemetry start_invocation failed for %s", reg.name, exc_info=True)
            return TelemetryScope()

    async def _close_scope(self, scope: TelemetryScope) -> None:
        try:
            await scope.flush()
        except Exception:
            logger.warning("Telemetry flush failed for %s", self._registration.name, exc_info=True)
        finally:
            self._safe(scope.dispose)

    def _safe(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            logger.warning(
                "Telemetry hook %s failed for %s", getattr(fn, "__name__", fn),
                self._registration.name, exc_info=True,
            )

    @staticmethod
    def _trace(trace: Optional[List[str]], line: str) -> None:
        if trace is not None:
            trace.append(line)

    @staticmethod
    def _flush_trace(trace: Optional[List[str]]) -> None:
        if trace:
            logger.debug("\n".join(trace))
            trace.clear()


class ExperimentProxy:
    """Stands in for the service: every public method becomes an async call
    routed through the experiment."""

    def __init__(self, router: InvocationRouter):
        self._router = router

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        service_type = self._router.registration.service_type
        if isinstance(service_type, type) and not hasattr(service_type, name):
            raise AttributeError(f"{service_name(service_type)} has no method '{name}'")

        async def call(*args: Any, **kwargs: Any) -> Any:
            return await self._router.invoke(name, *args, **kwargs)

        call.__name__ = name
        return call

    def __repr__(self) -> str:
        return f"ExperimentProxy({self._router.registration})"
