"""
Engine-wide defaults loaded from config/engine.yaml.

Loaded once and validated fail-fast: an invalid value raises SettingsError
so the process never starts serving with a half-valid configuration.
Durations accept either integers (ms) or "250ms" strings; ratios accept
floats or "0.5x" strings.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .config import get_config_path
from .errors import SettingsError
from .models import CircuitBreakerOptions, CircuitOpenAction, TimeoutAction


def is_telemetry_enabled() -> bool:
    """Whether routers built without explicit telemetry should log calls.

    Environment Variable:
        TRIALGATE_TELEMETRY_ENABLED: "true"/"1"/"yes"/"on" to enable
    """
    env_value = os.getenv("TRIALGATE_TELEMETRY_ENABLED", "").lower()
    return env_value in ("true", "1", "yes", "on")


# =============================================================================
# Engine settings
# =============================================================================

@dataclass(frozen=True)
class EngineSettings:
    """Validated engine defaults. All durations are in milliseconds."""
    default_timeout_ms: Optional[int]
    default_timeout_action: TimeoutAction
    circuit_breaker: CircuitBreakerOptions
    audit_file: Optional[str]
    verbose_trace: bool = False


_engine_settings: Optional[EngineSettings] = None


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise SettingsError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SettingsError(f"{path} must contain a mapping at the top level")
    return data


def parse_duration_ms(value: Any, field_name: str, min_val: int = 1, max_val: int = 3_600_000) -> int:
    """Parse an int or "Xms" string into milliseconds and range-check it."""
    if isinstance(value, str):
        text = value.strip()
        if text.lower().endswith("ms"):
            text = text[:-2].strip()
        try:
            value = int(text)
        except ValueError:
            raise SettingsError(f"{field_name} must be an integer or 'Xms' format, got: {value}")

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SettingsError(f"{field_name} must be a number, got: {type(value).__name__}")

    value_int = int(value)
    if value_int < min_val:
        raise SettingsError(f"{field_name} ({value_int}ms) is below minimum ({min_val}ms)")
    if value_int > max_val:
        raise SettingsError(f"{field_name} ({value_int}ms) exceeds maximum ({max_val}ms)")
    return value_int


def parse_ratio(value: Any, field_name: str) -> float:
    """Parse a float or "0.5x" string into a ratio in (0, 1]."""
    if isinstance(value, str):
        text = value.strip()
        if text.lower().endswith("x"):
            text = text[:-1].strip()
        try:
            value = float(text)
        except ValueError:
            raise SettingsError(f"{field_name} must be a number or 'X.x' format, got: {value}")

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SettingsError(f"{field_name} must be a number, got: {type(value).__name__}")

    ratio = float(value)
    if ratio <= 0 or ratio > 1:
        raise SettingsError(f"{field_name} must be in (0, 1], got: {ratio}")
    return ratio


def parse_circuit_breaker(raw: Any, field_name: str = "circuit_breaker",
                          base: Optional[CircuitBreakerOptions] = None) -> CircuitBreakerOptions:
    """Build CircuitBreakerOptions from a YAML mapping layered over `base`."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise SettingsError(f"{field_name} must be a dictionary")
    base = base or CircuitBreakerOptions()

    values = base.model_dump()
    if "failure_ratio_threshold" in raw:
        values["failure_ratio_threshold"] = parse_ratio(
            raw["failure_ratio_threshold"], f"{field_name}.failure_ratio_threshold")
    if "minimum_throughput" in raw:
        throughput = raw["minimum_throughput"]
        if isinstance(throughput, bool) or not isinstance(throughput, int) or throughput < 1:
            raise SettingsError(f"{field_name}.minimum_throughput must be a positive integer, got: {throughput}")
        values["minimum_throughput"] = throughput
    for key in ("sampling_duration_ms", "break_duration_ms"):
        if key in raw:
            values[key] = parse_duration_ms(raw[key], f"{field_name}.{key}")
    if "on_circuit_open" in raw:
        try:
            values["on_circuit_open"] = CircuitOpenAction(raw["on_circuit_open"])
        except ValueError:
            allowed = ", ".join(a.value for a in CircuitOpenAction)
            raise SettingsError(
                f"{field_name}.on_circuit_open must be one of: {allowed}; got: {raw['on_circuit_open']}"
            )
    if "fallback_key" in raw:
        values["fallback_key"] = raw["fallback_key"]

    try:
        return CircuitBreakerOptions(**values)
    except ValueError as e:
        raise SettingsError(f"Invalid {field_name}: {e}") from e


def parse_timeout_action(value: Any, field_name: str) -> TimeoutAction:
    try:
        return TimeoutAction(value)
    except ValueError:
        allowed = ", ".join(a.value for a in TimeoutAction)
        raise SettingsError(f"{field_name} must be one of: {allowed}; got: {value}")


def load_engine_settings(path: Optional[Path] = None) -> EngineSettings:
    """Load and validate engine settings.

    Args:
        path: Path to engine.yaml. If None, uses config/engine.yaml.

    Returns:
        Cached EngineSettings instance

    Raises:
        FileNotFoundError: If the settings file doesn't exist
        SettingsError: If the file is invalid YAML or a value is out of range
    """
    global _engine_settings

    if _engine_settings is not None:
        return _engine_settings

    if path is None:
        path = get_config_path("engine.yaml")
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Engine settings not found: {path}")

    raw = _load_yaml(path)

    timeout_raw = raw.get("timeout", {}) or {}
    if not isinstance(timeout_raw, dict):
        raise SettingsError("timeout must be a dictionary")
    default_timeout_ms = None
    if timeout_raw.get("default_ms") is not None:
        default_timeout_ms = parse_duration_ms(timeout_raw["default_ms"], "timeout.default_ms", max_val=600_000)
    default_timeout_action = parse_timeout_action(
        timeout_raw.get("action", TimeoutAction.THROW_EXCEPTION.value), "timeout.action")
    if default_timeout_action == TimeoutAction.FALLBACK_TO_SPECIFIC_TRIAL:
        raise SettingsError("timeout.action cannot be FallbackToSpecificTrial at engine level")

    circuit_breaker = parse_circuit_breaker(raw.get("circuit_breaker"))
    if circuit_breaker.on_circuit_open == CircuitOpenAction.FALLBACK_TO_SPECIFIC_TRIAL:
        raise SettingsError("circuit_breaker.on_circuit_open cannot be FallbackToSpecificTrial at engine level")

    audit_raw = raw.get("audit", {}) or {}
    if not isinstance(audit_raw, dict):
        raise SettingsError("audit must be a dictionary")
    audit_file = audit_raw.get("file")
    if audit_file is not None and not isinstance(audit_file, str):
        raise SettingsError(f"audit.file must be a string, got: {type(audit_file).__name__}")

    verbose_trace = raw.get("verbose_trace", False)
    if not isinstance(verbose_trace, bool):
        raise SettingsError("verbose_trace must be a boolean")

    _engine_settings = EngineSettings(
        default_timeout_ms=default_timeout_ms,
        default_timeout_action=default_timeout_action,
        circuit_breaker=circuit_breaker,
        audit_file=audit_file,
        verbose_trace=verbose_trace,
    )
    return _engine_settings


def get_engine_settings() -> Optional[EngineSettings]:
    """Loaded settings, or None if load_engine_settings() has not run."""
    return _engine_settings


def _reset_engine_settings_for_testing() -> None:
    global _engine_settings
    _engine_settings = None
