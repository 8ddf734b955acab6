"""
Per-invocation telemetry scopes.

A scope is opened by the router once per experiment call and closed when
the call finishes. Scopes only observe: the router swallows anything they
raise, so a broken sink can never change the outcome of a call.

Audit sinks are async while the record_* hooks are plain methods. Scopes
therefore buffer their audit events and hand them over in flush(), which
the router awaits on the way out.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence

from ..core.models import service_name
from .audit import AuditEvent, AuditEventType, AuditSink
from .metrics import NOOP_METRICS, ExperimentMetrics

logger = logging.getLogger(__name__)


class TelemetryScope:
    """Base scope; every hook is a no-op. dispose() may be called repeatedly."""

    def __init__(self):
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def record_success(self) -> None:
        pass

    def record_failure(self, error: BaseException) -> None:
        pass

    def record_fallback(self, fallback_key: str) -> None:
        pass

    def record_variant(self, variant: str, source: str) -> None:
        pass

    async def flush(self) -> None:
        pass

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._on_dispose()

    def _on_dispose(self) -> None:
        pass

    def __enter__(self) -> "TelemetryScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    async def __aenter__(self) -> "TelemetryScope":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await self.flush()
        finally:
            self.dispose()


class ExperimentTelemetry(ABC):
    @abstractmethod
    def start_invocation(
        self,
        service_type: Any,
        method_name: str,
        selector_name: str,
        preferred_key: str,
        candidate_keys: Sequence[str],
        experiment_name: Optional[str] = None,
    ) -> TelemetryScope:
        """Open a scope for one call. experiment_name defaults to the service name."""


# =============================================================================
# No-op
# =============================================================================

class NoopTelemetry(ExperimentTelemetry):
    def start_invocation(self, service_type, method_name, selector_name, preferred_key, candidate_keys,
                         experiment_name=None):
        return TelemetryScope()


NOOP_TELEMETRY = NoopTelemetry()


# =============================================================================
# Logging
# =============================================================================

class _LoggingScope(TelemetryScope):
    def __init__(self, log: logging.Logger, label: str, preferred_key: str, candidate_keys: Sequence[str]):
        super().__init__()
        self._log = log
        self._label = label
        self._log.debug(
            "Experiment start: %s preferred=%s candidates=%s",
            label, preferred_key, list(candidate_keys),
        )

    def record_success(self) -> None:
        self._log.debug("Experiment success: %s", self._label)

    def record_failure(self, error: BaseException) -> None:
        self._log.info("Experiment attempt failed: %s %s: %s", self._label, type(error).__name__, error)

    def record_fallback(self, fallback_key: str) -> None:
        self._log.info("Experiment fallback: %s used trial=%s", self._label, fallback_key)

    def record_variant(self, variant: str, source: str) -> None:
        self._log.debug("Experiment variant: %s variant=%s source=%s", self._label, variant, source)


class LoggingTelemetry(ExperimentTelemetry):
    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    def start_invocation(self, service_type, method_name, selector_name, preferred_key, candidate_keys,
                         experiment_name=None):
        label = f"{experiment_name or service_name(service_type)}.{method_name} [{selector_name}]"
        return _LoggingScope(self._log, label, preferred_key, candidate_keys)


# =============================================================================
# Auditing (audit events + metrics)
# =============================================================================

class _AuditingScope(TelemetryScope):
    def __init__(self, sink: AuditSink, metrics: ExperimentMetrics, service_type: Any,
                 method_name: str, selector_name: str, preferred_key: str,
                 candidate_keys: Sequence[str], correlation_id: Optional[str],
                 experiment_name: Optional[str] = None):
        super().__init__()
        self._sink = sink
        self._metrics = metrics
        self._service = service_name(service_type)
        self._experiment = experiment_name or self._service
        self._method_name = method_name
        self._selector_name = selector_name
        self._preferred_key = preferred_key
        self._candidate_keys = list(candidate_keys)
        self._correlation_id = correlation_id
        self._pending: List[AuditEvent] = []
        self._succeeded = False
        self._last_error: Optional[BaseException] = None
        self._tags = {"service": self._service, "method": method_name}

        self._metrics.increment_counter("experiment_calls_total", 1, self._tags)

    def _event(self, event_type: AuditEventType, trial_key: Optional[str], **details: Any) -> None:
        self._pending.append(AuditEvent(
            event_type=event_type,
            experiment_name=self._experiment,
            service_type=self._service,
            selected_trial_key=trial_key,
            correlation_id=self._correlation_id,
            details={"method": self._method_name, "selector": self._selector_name, **details},
        ))

    def record_variant(self, variant: str, source: str) -> None:
        self._event(AuditEventType.VARIANT_SELECTED, variant, source=source,
                    candidates=self._candidate_keys)
        self._metrics.increment_counter("experiment_variant_selected_total", 1,
                                        {**self._tags, "trial_key": variant})

    def record_success(self) -> None:
        self._succeeded = True
        self._metrics.increment_counter("experiment_calls_succeeded_total", 1, self._tags)

    def record_failure(self, error: BaseException) -> None:
        self._last_error = error
        self._metrics.increment_counter("experiment_attempt_failures_total", 1,
                                        {**self._tags, "error": type(error).__name__})

    def record_fallback(self, fallback_key: str) -> None:
        self._event(AuditEventType.FALLBACK_TRIGGERED, fallback_key,
                    preferred=self._preferred_key)
        self._metrics.increment_counter("experiment_fallbacks_total", 1,
                                        {**self._tags, "trial_key": fallback_key})

    async def flush(self) -> None:
        if not self._succeeded and self._last_error is not None:
            error = self._last_error
            self._last_error = None
            self._event(AuditEventType.ERROR, None,
                        error_type=type(error).__name__, error=str(error))
        pending, self._pending = self._pending, []
        for event in pending:
            await self._sink.record(event)

    def _on_dispose(self) -> None:
        if self._pending:
            logger.debug("Dropping %d unflushed audit events for %s", len(self._pending), self._experiment)
            self._pending = []


class AuditingTelemetry(ExperimentTelemetry):
    """Feeds audit events to a sink and call counters to a metrics sink."""

    def __init__(self, sink: AuditSink, metrics: Optional[ExperimentMetrics] = None,
                 correlation_id: Optional[str] = None):
        self._sink = sink
        self._metrics = metrics or NOOP_METRICS
        self._correlation_id = correlation_id

    def start_invocation(self, service_type, method_name, selector_name, preferred_key, candidate_keys,
                         experiment_name=None):
        return _AuditingScope(
            self._sink, self._metrics, service_type, method_name, selector_name,
            preferred_key, candidate_keys, self._correlation_id, experiment_name,
        )
