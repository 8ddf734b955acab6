"""
Audit events and sinks.

Sinks are async. CompositeAuditSink fans an event out to its children in
order; cancellation of the recording task propagates to the child in
progress and stops the fan-out.
"""
import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    VARIANT_SELECTED = "VariantSelected"
    EXPERIMENT_STARTED = "ExperimentStarted"
    EXPERIMENT_STOPPED = "ExperimentStopped"
    FALLBACK_TRIGGERED = "FallbackTriggered"
    ERROR = "Error"
    KILL_SWITCH_CHANGED = "KillSwitchChanged"


def _new_event_id() -> str:
    return str(uuid.uuid4())


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AuditEvent(BaseModel):
    event_id: str = Field(default_factory=_new_event_id)
    timestamp: datetime = Field(default_factory=_utc_now)
    event_type: AuditEventType
    experiment_name: Optional[str] = None
    service_type: Optional[str] = None
    selected_trial_key: Optional[str] = None
    actor: Optional[str] = None
    correlation_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class AuditSink(ABC):
    @abstractmethod
    async def record(self, event: AuditEvent) -> None: ...


class CompositeAuditSink(AuditSink):
    def __init__(self, sinks: Iterable[AuditSink] = ()):
        self._sinks: List[AuditSink] = list(sinks)

    @property
    def sinks(self) -> List[AuditSink]:
        return list(self._sinks)

    async def record(self, event: AuditEvent) -> None:
        for sink in self._sinks:
            await sink.record(event)


class InMemoryAuditSink(AuditSink):
    def __init__(self):
        self.events: List[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]


class LoggingAuditSink(AuditSink):
    def __init__(self, log: Optional[logging.Logger] = None, level: int = logging.INFO):
        self._log = log or logger
        self._level = level

    async def record(self, event: AuditEvent) -> None:
        self._log.log(
            self._level,
            "Audit: %s | Experiment: %s | Service: %s | Trial: %s | Actor: %s | Details: %s",
            event.event_type.value,
            event.experiment_name or "(none)",
            event.service_type or "(none)",
            event.selected_trial_key or "(none)",
            event.actor or "(system)",
            json.dumps(event.details or {}, default=str),
        )
