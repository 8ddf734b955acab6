"""
Error taxonomy for the experiment engine.

Configuration defects are raised while building, loading or validating
registrations. Per-attempt failures never leave the router except as the
terminal error of a call.
"""
from typing import List


class ExperimentError(Exception):
    """Base class for every error raised by trialgate itself."""


# =============================================================================
# Configuration defects
# =============================================================================

class RegistrationError(ExperimentError, ValueError):
    """A registration could not be built (no trials, unknown default key, ...)."""


class SettingsError(ExperimentError, ValueError):
    """Engine settings or experiment definition files are invalid."""


class StickyRoutingError(ExperimentError):
    """Sticky routing was asked to pick from an empty set of trial keys."""


class UnresolvableTrialError(ExperimentError, LookupError):
    """The implementation resolver has no descriptor for a trial key."""

    def __init__(self, service_name: str, trial_key: str):
        super().__init__(f"No implementation registered for {service_name} trial '{trial_key}'")
        self.service_name = service_name
        self.trial_key = trial_key


class TrialConflictError(ExperimentError):
    """Aggregate of every conflict found in a set of registrations."""

    def __init__(self, conflicts: List["TrialConflict"]):  # noqa: F821
        self.conflicts = list(conflicts)
        super().__init__(self._build_message(self.conflicts))

    @staticmethod
    def _build_message(conflicts) -> str:
        if not conflicts:
            return "Trial conflicts were detected."
        if len(conflicts) == 1:
            return f"Trial conflict detected: {conflicts[0].description}"
        lines = "\n  - ".join(c.description for c in conflicts)
        return f"Multiple trial conflicts detected:\n  - {lines}"


# =============================================================================
# Caller-facing failures
# =============================================================================

class ExperimentDisabledError(ExperimentError):
    """The whole experiment is switched off by the kill switch."""

    def __init__(self, service_name: str):
        super().__init__(f"Experiment for {service_name} is disabled by kill switch")
        self.service_name = service_name


class TrialDisabledError(ExperimentError):
    """A single trial key is switched off by the kill switch."""

    def __init__(self, service_name: str, trial_key: str):
        super().__init__(f"Trial '{trial_key}' for {service_name} is disabled by kill switch")
        self.service_name = service_name
        self.trial_key = trial_key


class CircuitOpenError(ExperimentError):
    """The registration's circuit breaker refused the attempt."""

    def __init__(self, service_name: str, method_name: str, trial_key: str):
        super().__init__(
            f"Circuit breaker is open for trial '{trial_key}' of {service_name}.{method_name}"
        )
        self.service_name = service_name
        self.method_name = method_name
        self.trial_key = trial_key


class TrialTimeoutError(ExperimentError, TimeoutError):
    """A trial did not complete before its deadline."""

    def __init__(self, service_name: str, method_name: str, trial_key: str, timeout_s: float):
        super().__init__(
            f"Trial '{trial_key}' for {service_name}.{method_name} "
            f"exceeded timeout of {timeout_s * 1000:.0f}ms"
        )
        self.service_name = service_name
        self.method_name = method_name
        self.trial_key = trial_key
        self.timeout_s = timeout_s
