"""
Conflict detection over a set of registrations.

- Two unbounded registrations of one service: DuplicateServiceRegistration.
- Bounded windows that intersect: OverlappingTimeWindows; touching windows do not.
- Only bounded registrations are paired for window overlap; an unbounded one never conflicts with them.
- Fallback keys (error policy, timeout, circuit breaker) must name registered trials.
- All conflicts are collected and raised together.
"""
from datetime import datetime, timezone

import pytest

from trialgate.core.builder import RegistrationBuilder
from trialgate.core.conflicts import ConflictDetector, TrialConflictType
from trialgate.core.errors import TrialConflictError
from trialgate.core.models import CircuitOpenAction, TimeoutAction


class Shipping:
    pass


class Billing:
    pass


def _utc(month, day=1):
    return datetime(2026, month, day, tzinfo=timezone.utc)


def _reg(service=Shipping, name=None, start=None, end=None):
    builder = RegistrationBuilder(service).add_default_trial("a", object()).add_trial("b", object())
    if name:
        builder.named(name)
    if start:
        builder.active_from(start)
    if end:
        builder.active_until(end)
    return builder


def _types(conflicts):
    return [c.type for c in conflicts]


def test_distinct_services_do_not_conflict():
    detector = ConflictDetector()
    assert detector.detect_conflicts([_reg(Shipping).build(), _reg(Billing).build()]) == []


def test_duplicate_unbounded_registrations():
    conflicts = ConflictDetector().detect_conflicts([
        _reg(name="one").build(),
        _reg(name="two").build(),
    ])
    assert _types(conflicts) == [TrialConflictType.DUPLICATE_SERVICE_REGISTRATION]
    assert conflicts[0].experiment_names == ("one", "two")


def test_overlapping_windows():
    conflicts = ConflictDetector().detect_conflicts([
        _reg(name="spring", start=_utc(3), end=_utc(6)).build(),
        _reg(name="summer", start=_utc(5), end=_utc(9)).build(),
    ])
    assert _types(conflicts) == [TrialConflictType.OVERLAPPING_TIME_WINDOWS]
    assert "'spring'" in conflicts[0].description and "'summer'" in conflicts[0].description


def test_touching_windows_do_not_overlap():
    detector = ConflictDetector()
    assert detector.detect_conflicts([
        _reg(name="h1", start=_utc(1), end=_utc(7)).build(),
        _reg(name="h2", start=_utc(7), end=_utc(12)).build(),
    ]) == []


def test_open_ended_window_overlaps_later_window():
    conflicts = ConflictDetector().detect_conflicts([
        _reg(name="from-march", start=_utc(3)).build(),
        _reg(name="summer", start=_utc(6), end=_utc(8)).build(),
    ])
    assert _types(conflicts) == [TrialConflictType.OVERLAPPING_TIME_WINDOWS]


def test_unbounded_registration_is_not_paired_with_bounded():
    assert ConflictDetector().detect_conflicts([
        _reg(name="always").build(),
        _reg(name="promo", start=_utc(11), end=_utc(12)).build(),
    ]) == []


def test_unbounded_pair_plus_bounded_reports_only_duplicate():
    conflicts = ConflictDetector().detect_conflicts([
        _reg(name="always").build(),
        _reg(name="forever").build(),
        _reg(name="promo", start=_utc(11), end=_utc(12)).build(),
    ])
    assert _types(conflicts) == [TrialConflictType.DUPLICATE_SERVICE_REGISTRATION]
    assert conflicts[0].experiment_names == ("always", "forever")


def test_invalid_fallback_keys():
    registration = (
        _reg(name="bad-fallbacks")
        .on_error_redirect_ordered("b", "ghost")
        .with_timeout(100, TimeoutAction.FALLBACK_TO_SPECIFIC_TRIAL, "phantom")
        .with_circuit_breaker(on_circuit_open=CircuitOpenAction.FALLBACK_TO_SPECIFIC_TRIAL, fallback_key="spectre")
        .build()
    )
    conflicts = ConflictDetector().detect_conflicts([registration])
    assert _types(conflicts) == [TrialConflictType.INVALID_FALLBACK_KEY] * 3
    descriptions = " ".join(c.description for c in conflicts)
    for key in ("ghost", "phantom", "spectre"):
        assert f"'{key}'" in descriptions


def test_redirect_specific_to_unknown_key():
    registration = _reg().on_error_redirect_to("nowhere").build()
    conflicts = ConflictDetector().detect_conflicts([registration])
    assert _types(conflicts) == [TrialConflictType.INVALID_FALLBACK_KEY]
    assert "registered: a, b" in conflicts[0].description


def test_validate_or_throw_collects_everything():
    registrations = [
        _reg(name="one").on_error_redirect_to("nowhere").build(),
        _reg(name="two").build(),
    ]
    with pytest.raises(TrialConflictError) as excinfo:
        ConflictDetector().validate_or_throw(registrations)
    assert len(excinfo.value.conflicts) == 2
    assert str(excinfo.value).startswith("Multiple trial conflicts detected:")


def test_validate_or_throw_passes_clean_set():
    ConflictDetector().validate_or_throw([_reg(Shipping).build(), _reg(Billing).build()])
