"""
Resilience wrappers applied around every candidate attempt.

Order per attempt: kill switch -> circuit breaker -> deadline -> decorator
pipeline -> implementation call.
"""
import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, FrozenSet, Optional, Set, Tuple

from .errors import TrialTimeoutError
from .models import CircuitBreakerOptions, InvocationContext, TimeoutPolicy, service_id, service_name

logger = logging.getLogger(__name__)


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


# =============================================================================
# Kill Switch
# =============================================================================

class KillSwitch(ABC):
    """Out-of-band override that disables an experiment or one of its trials."""

    @abstractmethod
    def is_experiment_disabled(self, service_type: Any) -> bool: ...

    @abstractmethod
    def is_trial_disabled(self, service_type: Any, trial_key: str) -> bool: ...

    @abstractmethod
    def disable_experiment(self, service_type: Any) -> None: ...

    @abstractmethod
    def enable_experiment(self, service_type: Any) -> None: ...

    @abstractmethod
    def disable_trial(self, service_type: Any, trial_key: str) -> None: ...

    @abstractmethod
    def enable_trial(self, service_type: Any, trial_key: str) -> None: ...

    def disabled_trials(self, service_type: Any) -> FrozenSet[str]:
        return frozenset()


class InMemoryKillSwitch(KillSwitch):
    """Process-local kill switch. Writes are last-write-wins."""

    def __init__(self):
        self._disabled_experiments: Set[str] = set()
        self._disabled_trials: Set[Tuple[str, str]] = set()
        self._lock = threading.Lock()

    def is_experiment_disabled(self, service_type: Any) -> bool:
        with self._lock:
            return service_id(service_type) in self._disabled_experiments

    def is_trial_disabled(self, service_type: Any, trial_key: str) -> bool:
        with self._lock:
            return (service_id(service_type), trial_key) in self._disabled_trials

    def disable_experiment(self, service_type: Any) -> None:
        with self._lock:
            self._disabled_experiments.add(service_id(service_type))
        logger.warning("Kill switch: experiment %s disabled", service_name(service_type))

    def enable_experiment(self, service_type: Any) -> None:
        with self._lock:
            self._disabled_experiments.discard(service_id(service_type))
        logger.info("Kill switch: experiment %s enabled", service_name(service_type))

    def disable_trial(self, service_type: Any, trial_key: str) -> None:
        with self._lock:
            self._disabled_trials.add((service_id(service_type), trial_key))
        logger.warning("Kill switch: trial %s of %s disabled", trial_key, service_name(service_type))

    def enable_trial(self, service_type: Any, trial_key: str) -> None:
        with self._lock:
            self._disabled_trials.discard((service_id(service_type), trial_key))
        logger.info("Kill switch: trial %s of %s enabled", trial_key, service_name(service_type))

    def disabled_trials(self, service_type: Any) -> FrozenSet[str]:
        sid = service_id(service_type)
        with self._lock:
            return frozenset(key for owner, key in self._disabled_trials if owner == sid)


class NoopKillSwitch(KillSwitch):
    def is_experiment_disabled(self, service_type: Any) -> bool:
        return False

    def is_trial_disabled(self, service_type: Any, trial_key: str) -> bool:
        return False

    def disable_experiment(self, service_type: Any) -> None:
        pass

    def enable_experiment(self, service_type: Any) -> None:
        pass

    def disable_trial(self, service_type: Any, trial_key: str) -> None:
        pass

    def enable_trial(self, service_type: Any, trial_key: str) -> None:
        pass


NOOP_KILL_SWITCH = NoopKillSwitch()


# =============================================================================
# Circuit Breaker
# =============================================================================

class CircuitBreakerState(Enum):
    """Circuit breaker states.

    State transitions:
        CLOSED -> OPEN: failure ratio over the sampling window reaches the
                        threshold with at least minimum_throughput samples
        OPEN -> HALF_OPEN: break duration elapsed, one probe admitted
        HALF_OPEN -> CLOSED: probe succeeded
        HALF_OPEN -> OPEN: probe failed
    """
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitBreakerTransition:
    """Emitted on every state transition."""
    name: str
    from_state: CircuitBreakerState
    to_state: CircuitBreakerState
    timestamp_ms: int
    open_count: int
    failure_ratio: float = 0.0


@dataclass(frozen=True)
class CircuitBreakerSnapshot:
    name: str
    state: CircuitBreakerState
    sample_count: int
    failure_count: int
    open_count: int
    last_state_change_ms: int
    break_expires_at_ms: int

    @property
    def failure_ratio(self) -> float:
        return self.failure_count / self.sample_count if self.sample_count else 0.0


class CircuitBreaker:
    """Sliding-window circuit breaker shared by every call of one registration.

    All state lives behind a single lock; concurrent callers race to record
    outcomes into the same window. Transition callbacks run outside the lock.
    """

    def __init__(
        self,
        name: str,
        options: Optional[CircuitBreakerOptions] = None,
        clock_ms: Callable[[], int] = monotonic_ms,
        transition_emitter: Optional[Callable[[CircuitBreakerTransition], None]] = None,
    ):
        self._name = name
        self._options = options or CircuitBreakerOptions()
        self._clock_ms = clock_ms
        self._transition_emitter = transition_emitter
        self._lock = threading.Lock()

        self._state = CircuitBreakerState.CLOSED
        self._samples: Deque[Tuple[int, bool]] = deque()  # (timestamp_ms, failed)
        self._open_count = 0
        self._last_state_change_ms = 0
        self._break_expires_at_ms = 0
        self._probe_in_flight = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def options(self) -> CircuitBreakerOptions:
        return self._options

    @property
    def state(self) -> CircuitBreakerState:
        with self._lock:
            return self._state

    def get_snapshot(self) -> CircuitBreakerSnapshot:
        with self._lock:
            self._prune(self._clock_ms())
            return CircuitBreakerSnapshot(
                name=self._name,
                state=self._state,
                sample_count=len(self._samples),
                failure_count=sum(1 for _, failed in self._samples if failed),
                open_count=self._open_count,
                last_state_change_ms=self._last_state_change_ms,
                break_expires_at_ms=self._break_expires_at_ms,
            )

    def allow_request(self) -> bool:
        """Return True if an attempt may proceed.

        OPEN moves to HALF_OPEN once the break has elapsed and admits exactly
        one probe; further attempts are refused until the probe reports back.
        """
        transition = None
        with self._lock:
            now_ms = self._clock_ms()
            if self._state == CircuitBreakerState.CLOSED:
                allowed = True
            elif self._state == CircuitBreakerState.OPEN:
                if now_ms >= self._break_expires_at_ms:
                    transition = self._transition(CircuitBreakerState.HALF_OPEN, now_ms)
                    self._probe_in_flight = True
                    allowed = True
                else:
                    allowed = False
            else:
                if self._probe_in_flight:
                    allowed = False
                else:
                    self._probe_in_flight = True
                    allowed = True
        self._emit(transition)
        return allowed

    def record_success(self) -> None:
        transition = None
        with self._lock:
            now_ms = self._clock_ms()
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._probe_in_flight = False
                self._samples.clear()
                transition = self._transition(CircuitBreakerState.CLOSED, now_ms)
            elif self._state == CircuitBreakerState.CLOSED:
                self._samples.append((now_ms, False))
                self._prune(now_ms)
        self._emit(transition)

    def record_failure(self) -> None:
        transition = None
        with self._lock:
            now_ms = self._clock_ms()
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._probe_in_flight = False
                transition = self._open(now_ms, ratio=1.0)
            elif self._state == CircuitBreakerState.CLOSED:
                self._samples.append((now_ms, True))
                self._prune(now_ms)
                total = len(self._samples)
                if total >= self._options.minimum_throughput:
                    failures = sum(1 for _, failed in self._samples if failed)
                    ratio = failures / total
                    if ratio >= self._options.failure_ratio_threshold:
                        transition = self._open(now_ms, ratio=ratio)
        self._emit(transition)

    def release_probe(self) -> None:
        """Give back a HALF_OPEN probe slot whose attempt never reported."""
        with self._lock:
            self._probe_in_flight = False

    def _prune(self, now_ms: int) -> None:
        horizon = now_ms - self._options.sampling_duration_ms
        while self._samples and self._samples[0][0] <= horizon:
            self._samples.popleft()

    def _open(self, now_ms: int, ratio: float) -> CircuitBreakerTransition:
        self._open_count += 1
        self._samples.clear()
        self._break_expires_at_ms = now_ms + self._options.break_duration_ms
        return self._transition(CircuitBreakerState.OPEN, now_ms, ratio)

    def _transition(self, to_state: CircuitBreakerState, now_ms: int,
                    ratio: float = 0.0) -> CircuitBreakerTransition:
        from_state = self._state
        self._state = to_state
        self._last_state_change_ms = now_ms
        if to_state == CircuitBreakerState.CLOSED:
            self._break_expires_at_ms = 0
        return CircuitBreakerTransition(
            name=self._name,
            from_state=from_state,
            to_state=to_state,
            timestamp_ms=now_ms,
            open_count=self._open_count,
            failure_ratio=ratio,
        )

    def _emit(self, transition: Optional[CircuitBreakerTransition]) -> None:
        if transition is None:
            return
        if transition.to_state == CircuitBreakerState.OPEN:
            logger.warning(
                "Circuit breaker %s opened (failure ratio %.0f%%, open #%d)",
                self._name, transition.failure_ratio * 100, transition.open_count,
            )
        elif transition.to_state == CircuitBreakerState.HALF_OPEN:
            logger.info("Circuit breaker %s half-open - testing recovery", self._name)
        else:
            logger.info("Circuit breaker %s closed - normal operation resumed", self._name)

        if self._transition_emitter is not None:
            try:
                self._transition_emitter(transition)
            except Exception:
                logger.exception("Circuit breaker transition emitter failed for %s", self._name)

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker("
            f"name={self._name}, "
            f"state={self._state.value}, "
            f"open_count={self._open_count}, "
            f"break_expires_at={self._break_expires_at_ms}"
            f")"
        )


# =============================================================================
# Deadline
# =============================================================================

async def call_with_deadline(
    call: Callable[[], Awaitable[Any]],
    policy: Optional[TimeoutPolicy],
    ctx: InvocationContext,
) -> Any:
    """Race `call()` against the policy's deadline.

    On expiry the pending invocation is cancelled and its eventual result is
    discarded. Only an expiry of this deadline becomes TrialTimeoutError; a
    TimeoutError raised by the implementation itself passes through.
    """
    if policy is None:
        return await call()

    deadline = asyncio.timeout(policy.timeout_s)
    try:
        async with deadline:
            return await call()
    except TimeoutError as e:
        if not deadline.expired():
            raise
        logger.warning(
            "Trial timeout: %s.%s trial=%s timeout=%dms",
            service_name(ctx.service_type), ctx.method_name, ctx.trial_key, policy.timeout_ms,
        )
        raise TrialTimeoutError(
            service_name(ctx.service_type), ctx.method_name, ctx.trial_key, policy.timeout_s,
        ) from e
