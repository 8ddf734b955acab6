"""
Process-wide set of experiments, addressed by experiment name.

Registrations that come in without their own kill switch are bound to the
registry's shared one, so the admin API can toggle them.
"""
import dataclasses
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from .activation import ActivationEvaluator
from .conflicts import ConflictDetector
from .errors import RegistrationError
from .models import Registration, service_id, service_name
from .resilience import InMemoryKillSwitch, KillSwitch, NoopKillSwitch
from .router import InvocationRouter

logger = logging.getLogger(__name__)


class ExperimentRegistry:
    def __init__(self, kill_switch: Optional[KillSwitch] = None,
                 activation: Optional[ActivationEvaluator] = None):
        self._kill_switch = kill_switch or InMemoryKillSwitch()
        self._activation = activation or ActivationEvaluator()
        self._registrations: Dict[str, Registration] = {}
        self._lock = threading.Lock()

    @property
    def kill_switch(self) -> KillSwitch:
        return self._kill_switch

    def register(self, registration: Registration) -> Registration:
        if registration.kill_switch is None or isinstance(registration.kill_switch, NoopKillSwitch):
            registration = dataclasses.replace(registration, kill_switch=self._kill_switch)
        with self._lock:
            if registration.name in self._registrations:
                raise RegistrationError(f"Experiment '{registration.name}' is already registered")
            self._registrations[registration.name] = registration
        logger.info("Registered experiment %s: %s", registration.name, registration)
        return registration

    def register_all(self, registrations: Iterable[Registration]) -> List[Registration]:
        return [self.register(r) for r in registrations]

    def get(self, name: str) -> Optional[Registration]:
        with self._lock:
            return self._registrations.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._registrations)

    def registrations(self) -> List[Registration]:
        with self._lock:
            return [self._registrations[n] for n in sorted(self._registrations)]

    def validate(self) -> None:
        ConflictDetector().validate_or_throw(self.registrations())

    def router_for(self, name: str, **kwargs: Any) -> InvocationRouter:
        registration = self.get(name)
        if registration is None:
            raise KeyError(name)
        return InvocationRouter(registration, **kwargs)

    def status(self, name: str) -> Optional[Dict[str, Any]]:
        """Live view of one experiment: activation, kill switch and circuit."""
        registration = self.get(name)
        if registration is None:
            return None
        kill_switch = registration.kill_switch
        status: Dict[str, Any] = {
            "name": registration.name,
            "service": service_id(registration.service_type),
            "active": self._activation.is_active(registration),
            "disabled": kill_switch.is_experiment_disabled(registration.service_type),
            "disabled_trials": sorted(kill_switch.disabled_trials(registration.service_type)),
            "circuit": None,
        }
        breaker = registration.circuit_breaker
        if breaker is not None:
            snapshot = breaker.get_snapshot()
            status["circuit"] = {
                "state": snapshot.state.value,
                "sample_count": snapshot.sample_count,
                "failure_ratio": snapshot.failure_ratio,
                "open_count": snapshot.open_count,
            }
        return status

    def describe(self, registration: Registration) -> Dict[str, Any]:
        return {
            "name": registration.name,
            "service": service_name(registration.service_type),
            "selection_mode": registration.selection_mode.value,
            "mode_identifier": registration.mode_identifier,
            "selector_name": registration.selector_name,
            "default_key": registration.default_key,
            "trial_keys": list(registration.trial_keys),
            "error_policy": registration.error_policy.kind.value,
            "fallback_keys": list(registration.error_policy.referenced_keys()),
            "start_time": registration.start_time.isoformat() if registration.start_time else None,
            "end_time": registration.end_time.isoformat() if registration.end_time else None,
            "timeout_ms": registration.timeout.timeout_ms if registration.timeout else None,
            "circuit_breaker": registration.circuit_breaker is not None,
        }
