"""
Static validation over a set of registrations.

Every conflict is collected; nothing is fail-fast. validate_or_throw raises
one TrialConflictError carrying the whole list.
"""
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from itertools import combinations
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import TrialConflictError
from .models import CircuitOpenAction, Registration, TimeoutAction, service_id, service_name


class TrialConflictType(str, Enum):
    OVERLAPPING_TIME_WINDOWS = "OverlappingTimeWindows"
    DUPLICATE_SERVICE_REGISTRATION = "DuplicateServiceRegistration"
    INVALID_FALLBACK_KEY = "InvalidFallbackKey"


@dataclass(frozen=True)
class TrialConflict:
    type: TrialConflictType
    service_type: Any
    description: str
    experiment_names: Tuple[str, ...] = ()


class ConflictDetector:
    def detect_conflicts(self, registrations: Iterable[Registration]) -> List[TrialConflict]:
        registrations = list(registrations)
        conflicts: List[TrialConflict] = []

        for registration in registrations:
            conflicts.extend(self._invalid_fallback_keys(registration))

        by_service: Dict[str, List[Registration]] = defaultdict(list)
        for registration in registrations:
            by_service[service_id(registration.service_type)].append(registration)

        for group in by_service.values():
            if len(group) < 2:
                continue
            conflicts.extend(self._duplicates(group))
            conflicts.extend(self._overlaps(group))

        return conflicts

    def validate_or_throw(self, registrations: Iterable[Registration]) -> None:
        conflicts = self.detect_conflicts(registrations)
        if conflicts:
            raise TrialConflictError(conflicts)

    # -------------------------------------------------------------------------

    @staticmethod
    def _invalid_fallback_keys(registration: Registration) -> List[TrialConflict]:
        referenced: List[Tuple[str, str]] = [
            (key, f"error policy {registration.error_policy.kind.value}")
            for key in registration.error_policy.referenced_keys()
        ]
        timeout = registration.timeout
        if timeout is not None and timeout.action == TimeoutAction.FALLBACK_TO_SPECIFIC_TRIAL and timeout.fallback_key:
            referenced.append((timeout.fallback_key, "timeout fallback"))
        breaker = registration.circuit_breaker
        if breaker is not None:
            options = breaker.options
            if options.on_circuit_open == CircuitOpenAction.FALLBACK_TO_SPECIFIC_TRIAL and options.fallback_key:
                referenced.append((options.fallback_key, "circuit breaker fallback"))

        conflicts = []
        seen = set()
        for key, source in referenced:
            if key in registration.trials or (key, source) in seen:
                continue
            seen.add((key, source))
            conflicts.append(TrialConflict(
                type=TrialConflictType.INVALID_FALLBACK_KEY,
                service_type=registration.service_type,
                description=(
                    f"{service_name(registration.service_type)}: {source} references "
                    f"trial '{key}' which is not registered "
                    f"(registered: {', '.join(registration.trials)})"
                ),
                experiment_names=(registration.name,),
            ))
        return conflicts

    @staticmethod
    def _duplicates(group: List[Registration]) -> List[TrialConflict]:
        unbounded = [r for r in group if not r.has_time_bounds()]
        if len(unbounded) < 2:
            return []
        return [TrialConflict(
            type=TrialConflictType.DUPLICATE_SERVICE_REGISTRATION,
            service_type=group[0].service_type,
            description=(
                f"{service_name(group[0].service_type)} has {len(unbounded)} registrations "
                f"without a time window"
            ),
            experiment_names=tuple(r.name for r in unbounded),
        )]

    @staticmethod
    def _overlaps(group: List[Registration]) -> List[TrialConflict]:
        # Unbounded registrations are covered by _duplicates and never paired here.
        bounded = [r for r in group if r.has_time_bounds()]
        conflicts = []
        for a, b in combinations(bounded, 2):
            if not _windows_overlap(a.start_time, a.end_time, b.start_time, b.end_time):
                continue
            conflicts.append(TrialConflict(
                type=TrialConflictType.OVERLAPPING_TIME_WINDOWS,
                service_type=a.service_type,
                description=(
                    f"{service_name(a.service_type)}: '{a.name}' {_fmt_window(a)} overlaps "
                    f"'{b.name}' {_fmt_window(b)}"
                ),
                experiment_names=(a.name, b.name),
            ))
        return conflicts


def _windows_overlap(start_a: Optional[datetime], end_a: Optional[datetime],
                     start_b: Optional[datetime], end_b: Optional[datetime]) -> bool:
    # Missing bounds are open-ended. Windows that only touch do not overlap.
    a_before_b_ends = start_a is None or end_b is None or start_a < end_b
    b_before_a_ends = start_b is None or end_a is None or start_b < end_a
    return a_before_b_ends and b_before_a_ends


def _fmt_window(registration: Registration) -> str:
    start = registration.start_time.isoformat() if registration.start_time else "-inf"
    end = registration.end_time.isoformat() if registration.end_time else "+inf"
    return f"[{start}, {end}]"
