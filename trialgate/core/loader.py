"""
Experiment definitions from YAML.

    experiments:
      - name: checkout-payments
        service: examples.checkout.services:PaymentProcessor
        default: stripe
        trials:
          stripe: examples.checkout.services:StripeProcessor
          adyen: examples.checkout.services:AdyenProcessor
        selection: {mode: ConfigurationValue, selector: "Experiments:Payments"}
        error_policy: {kind: RedirectOrdered, keys: [stripe]}
        active: {from: "2026-01-01T00:00:00Z", until: "2026-03-01T00:00:00Z"}
        timeout: {ms: "500ms", action: FallbackToDefault}
        circuit_breaker: {minimum_throughput: 20}

Services and trials are "module:attr" import strings. The full file is
validated (including cross-experiment conflicts) before anything is
returned, so a bad file never yields a partial set of experiments.
"""
import importlib
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .builder import RegistrationBuilder
from .config import get_config_path
from .conflicts import ConflictDetector
from .errors import RegistrationError, SettingsError
from .models import ErrorPolicyKind, Registration, SelectionMode, TimeoutAction
from .naming import NamingConvention
from .resilience import KillSwitch
from .settings import EngineSettings, parse_circuit_breaker, parse_duration_ms


# =============================================================================
# Schema
# =============================================================================

class SelectionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: SelectionMode = SelectionMode.BOOLEAN_FEATURE_FLAG
    selector: Optional[str] = None
    mode_identifier: Optional[str] = None


class ErrorPolicyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: ErrorPolicyKind = ErrorPolicyKind.THROW
    fallback: Optional[str] = None
    keys: List[str] = Field(default_factory=list)


class ActiveWindowConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    start: Optional[datetime] = Field(None, alias="from")
    end: Optional[datetime] = Field(None, alias="until")


class TimeoutConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ms: Union[int, str]
    action: TimeoutAction = TimeoutAction.THROW_EXCEPTION
    fallback: Optional[str] = None


class ExperimentConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    service: str
    default: Optional[str] = None
    trials: Dict[str, str]
    selection: SelectionConfig = Field(default_factory=SelectionConfig)
    error_policy: ErrorPolicyConfig = Field(default_factory=ErrorPolicyConfig)
    active: Optional[ActiveWindowConfig] = None
    timeout: Optional[TimeoutConfig] = None
    circuit_breaker: Union[bool, Dict[str, Any], None] = None

    @field_validator("trials")
    @classmethod
    def trials_not_empty(cls, v: Dict[str, str]) -> Dict[str, str]:
        if not v:
            raise ValueError("at least one trial is required")
        return v


class ExperimentsFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    experiments: List[ExperimentConfig] = Field(default_factory=list)


# =============================================================================
# Loading
# =============================================================================

def import_string(target: str) -> Any:
    """Resolve "package.module:Attr.inner" to the object it names."""
    module_name, sep, attr_path = target.partition(":")
    if not sep or not module_name or not attr_path:
        raise SettingsError(f"Import string must look like 'module:attr', got: {target!r}")
    try:
        obj = importlib.import_module(module_name)
    except ImportError as e:
        raise SettingsError(f"Cannot import module '{module_name}' for {target!r}: {e}") from e
    for part in attr_path.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError as e:
            raise SettingsError(f"'{module_name}' has no attribute '{attr_path}' ({target!r})") from e
    return obj


def _build(experiment: ExperimentConfig, settings: Optional[EngineSettings],
           kill_switch: Optional[KillSwitch], naming: Optional[NamingConvention]) -> Registration:
    label = experiment.name or experiment.service
    builder = RegistrationBuilder(import_string(experiment.service))

    for key, target in experiment.trials.items():
        if key == experiment.default:
            builder.add_default_trial(key, import_string(target))
        else:
            builder.add_trial(key, import_string(target))
    if experiment.default is not None and experiment.default not in experiment.trials:
        raise SettingsError(f"{label}: default trial '{experiment.default}' is not one of {list(experiment.trials)}")

    if experiment.name:
        builder.named(experiment.name)

    selection = experiment.selection
    if selection.mode == SelectionMode.BOOLEAN_FEATURE_FLAG:
        builder.using_feature_flag(selection.selector)
    elif selection.mode == SelectionMode.CONFIGURATION_VALUE:
        builder.using_configuration_key(selection.selector)
    elif selection.mode == SelectionMode.STICKY_ROUTING:
        builder.using_sticky_routing(selection.selector)
    else:
        if not selection.mode_identifier:
            raise SettingsError(f"{label}: selection.mode_identifier is required for Custom mode")
        builder.using_custom_mode(selection.mode_identifier, selection.selector)

    policy = experiment.error_policy
    if policy.kind == ErrorPolicyKind.THROW:
        builder.on_error_throw()
    elif policy.kind == ErrorPolicyKind.REDIRECT_DEFAULT:
        builder.on_error_redirect_default()
    elif policy.kind == ErrorPolicyKind.REDIRECT_ANY:
        builder.on_error_redirect_any()
    elif policy.kind == ErrorPolicyKind.REDIRECT_SPECIFIC:
        if not policy.fallback:
            raise SettingsError(f"{label}: error_policy.fallback is required for RedirectSpecific")
        builder.on_error_redirect_to(policy.fallback)
    else:
        if not policy.keys:
            raise SettingsError(f"{label}: error_policy.keys is required for RedirectOrdered")
        builder.on_error_redirect_ordered(*policy.keys)

    if experiment.active is not None:
        if experiment.active.start is not None:
            builder.active_from(experiment.active.start)
        if experiment.active.end is not None:
            builder.active_until(experiment.active.end)

    if experiment.timeout is not None:
        timeout_ms = parse_duration_ms(experiment.timeout.ms, f"{label}.timeout.ms", max_val=600_000)
        builder.with_timeout(timeout_ms, experiment.timeout.action, experiment.timeout.fallback)
    elif settings is not None and settings.default_timeout_ms is not None:
        builder.with_timeout(settings.default_timeout_ms, settings.default_timeout_action)

    if experiment.circuit_breaker:
        base = settings.circuit_breaker if settings is not None else None
        raw = experiment.circuit_breaker if isinstance(experiment.circuit_breaker, dict) else {}
        options = parse_circuit_breaker(raw, f"{label}.circuit_breaker", base=base)
        builder.with_circuit_breaker(options)

    if kill_switch is not None:
        builder.with_kill_switch(kill_switch)

    return builder.build(naming)


def load_experiments(
    path: Optional[Union[str, Path]] = None,
    settings: Optional[EngineSettings] = None,
    kill_switch: Optional[KillSwitch] = None,
    naming: Optional[NamingConvention] = None,
) -> List[Registration]:
    """Load, build and conflict-check every experiment in a YAML file.

    Args:
        path: experiments file; defaults to config/experiments.yaml
        settings: engine defaults for timeouts and circuit breakers
        kill_switch: shared kill switch bound to every registration

    Raises:
        FileNotFoundError: If the file doesn't exist
        SettingsError: Invalid YAML, schema or import strings
        TrialConflictError: The experiments conflict with each other
    """
    if path is None:
        path = get_config_path("experiments.yaml")
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Experiments file not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise SettingsError(f"Invalid YAML in experiments file {path}: {e}") from e

    try:
        parsed = ExperimentsFile.model_validate(data)
    except ValidationError as e:
        raise SettingsError(f"Invalid experiments file {path}: {e}") from e

    registrations = []
    for experiment in parsed.experiments:
        try:
            registrations.append(_build(experiment, settings, kill_switch, naming))
        except RegistrationError as e:
            raise SettingsError(f"Invalid experiment '{experiment.name or experiment.service}' in {path}: {e}") from e

    ConflictDetector().validate_or_throw(registrations)
    return registrations
