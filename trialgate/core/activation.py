"""
Experiment activation: time window plus optional predicate.

Activation is fail-closed. A predicate that raises makes the experiment
inactive for that call; it never propagates into the caller.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from .models import Registration

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ActivationEvaluator:
    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utc_now

    def is_active(
        self,
        registration: Registration,
        now: Optional[datetime] = None,
        services: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Return True iff the registration is live at `now`.

        Args:
            registration: Registration to evaluate
            now: Evaluation instant; defaults to the injected clock
            services: Per-call scoped resources handed to the predicate

        Returns:
            False outside [start_time, end_time] (both inclusive) or when the
            predicate is falsy or raises.
        """
        if registration.start_time is None and registration.end_time is None \
                and registration.activation_predicate is None:
            return True

        if now is None:
            now = self._clock()

        if not self._is_active_for_time(registration.start_time, registration.end_time, now):
            return False

        return self._is_active_for_predicate(registration, services)

    @staticmethod
    def _is_active_for_time(start: Optional[datetime], end: Optional[datetime], now: datetime) -> bool:
        if start is not None and now < start:
            return False
        if end is not None and now > end:
            return False
        return True

    @staticmethod
    def _is_active_for_predicate(registration: Registration, services: Optional[Mapping[str, Any]]) -> bool:
        predicate = registration.activation_predicate
        if predicate is None:
            return True
        try:
            return bool(predicate(services if services is not None else {}))
        except Exception as e:
            logger.warning(
                "Activation predicate for %s raised %s; treating experiment as inactive",
                registration.name, type(e).__name__,
            )
            return False
