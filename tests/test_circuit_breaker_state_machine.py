"""
Circuit breaker state machine (fake clock).

- Stays CLOSED below minimum throughput.
- Opens when the failure ratio over the window reaches the threshold.
- Samples older than the sampling window are dropped.
- OPEN refuses until the break elapses, then admits exactly one probe.
- Probe success closes; probe failure re-opens and bumps open_count.
- release_probe frees the half-open slot.
- Transition emitter sees every transition; emitter errors are swallowed.
- Concurrent failures from many threads open the breaker exactly once.
"""
import threading

from trialgate.core.models import CircuitBreakerOptions
from trialgate.core.resilience import CircuitBreaker, CircuitBreakerState


class FakeClock:
    def __init__(self):
        self.now_ms = 0

    def __call__(self):
        return self.now_ms


def _breaker(clock, emitter=None, **overrides):
    options = CircuitBreakerOptions(**{
        "failure_ratio_threshold": 0.5,
        "minimum_throughput": 3,
        "sampling_duration_ms": 1000,
        "break_duration_ms": 500,
        **overrides,
    })
    return CircuitBreaker("pricing", options, clock_ms=clock, transition_emitter=emitter)


def test_closed_below_minimum_throughput():
    cb = _breaker(FakeClock())
    cb.record_failure()
    cb.record_failure()
    assert cb.state == CircuitBreakerState.CLOSED
    assert cb.allow_request()


def test_opens_at_failure_ratio():
    cb = _breaker(FakeClock())
    cb.record_success()
    cb.record_success()
    cb.record_failure()
    assert cb.state == CircuitBreakerState.CLOSED  # 1/3 < 0.5
    cb.record_failure()
    assert cb.state == CircuitBreakerState.OPEN  # 2/4
    assert not cb.allow_request()


def test_old_samples_leave_the_window():
    clock = FakeClock()
    cb = _breaker(clock)
    cb.record_failure()
    cb.record_failure()
    clock.now_ms = 1500
    cb.record_failure()
    assert cb.state == CircuitBreakerState.CLOSED
    assert cb.get_snapshot().sample_count == 1


def test_half_open_admits_one_probe_and_success_closes():
    clock = FakeClock()
    cb = _breaker(clock)
    for _ in range(3):
        cb.record_failure()
    assert cb.state == CircuitBreakerState.OPEN

    clock.now_ms = 499
    assert not cb.allow_request()
    clock.now_ms = 500
    assert cb.allow_request()
    assert cb.state == CircuitBreakerState.HALF_OPEN
    assert not cb.allow_request()

    cb.record_success()
    assert cb.state == CircuitBreakerState.CLOSED
    assert cb.allow_request()
    assert cb.get_snapshot().sample_count == 0


def test_probe_failure_reopens():
    clock = FakeClock()
    cb = _breaker(clock)
    for _ in range(3):
        cb.record_failure()
    clock.now_ms = 600
    assert cb.allow_request()
    cb.record_failure()
    assert cb.state == CircuitBreakerState.OPEN
    snapshot = cb.get_snapshot()
    assert snapshot.open_count == 2
    assert snapshot.break_expires_at_ms == 1100


def test_release_probe_frees_slot():
    clock = FakeClock()
    cb = _breaker(clock)
    for _ in range(3):
        cb.record_failure()
    clock.now_ms = 500
    assert cb.allow_request()
    assert not cb.allow_request()
    cb.release_probe()
    assert cb.allow_request()


def test_transitions_emitted_in_order():
    clock = FakeClock()
    seen = []
    cb = _breaker(clock, emitter=seen.append)
    for _ in range(3):
        cb.record_failure()
    clock.now_ms = 500
    cb.allow_request()
    cb.record_success()
    assert [(t.from_state, t.to_state) for t in seen] == [
        (CircuitBreakerState.CLOSED, CircuitBreakerState.OPEN),
        (CircuitBreakerState.OPEN, CircuitBreakerState.HALF_OPEN),
        (CircuitBreakerState.HALF_OPEN, CircuitBreakerState.CLOSED),
    ]
    assert seen[0].failure_ratio == 1.0
    assert seen[0].name == "pricing"


def test_emitter_errors_are_swallowed():
    def emitter(transition):
        raise RuntimeError("metrics down")

    cb = _breaker(FakeClock(), emitter=emitter)
    for _ in range(3):
        cb.record_failure()
    assert cb.state == CircuitBreakerState.OPEN


def test_concurrent_failures_open_once():
    seen = []
    cb = _breaker(FakeClock(), emitter=seen.append, minimum_throughput=20)
    workers = 16
    barrier = threading.Barrier(workers)

    def hammer():
        barrier.wait()
        for _ in range(50):
            cb.allow_request()
            cb.record_failure()

    threads = [threading.Thread(target=hammer) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert [(t.from_state, t.to_state) for t in seen] == [
        (CircuitBreakerState.CLOSED, CircuitBreakerState.OPEN),
    ]
    snapshot = cb.get_snapshot()
    assert snapshot.state == CircuitBreakerState.OPEN
    assert snapshot.open_count == 1
    assert snapshot.sample_count == 0
