"""
Metrics sink interface and the decorator that feeds it.

Tags are an unordered mapping of string keys to values. NoopMetrics is the
zero-overhead default; InMemoryMetrics keeps everything for inspection.
"""
import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from ..core.models import InvocationContext, service_name
from ..core.pipeline import Decorator, DecoratorFactory, Next

Tags = Optional[Mapping[str, Any]]
TagKey = FrozenSet[Tuple[str, str]]


def _tag_key(tags: Tags) -> TagKey:
    return frozenset((k, str(v)) for k, v in (tags or {}).items())


class ExperimentMetrics(ABC):
    @abstractmethod
    def increment_counter(self, name: str, value: int = 1, tags: Tags = None) -> None: ...

    @abstractmethod
    def record_histogram(self, name: str, value: float, tags: Tags = None) -> None: ...

    @abstractmethod
    def set_gauge(self, name: str, value: float, tags: Tags = None) -> None: ...

    @abstractmethod
    def record_summary(self, name: str, value: float, tags: Tags = None) -> None: ...


class NoopMetrics(ExperimentMetrics):
    def increment_counter(self, name: str, value: int = 1, tags: Tags = None) -> None:
        pass

    def record_histogram(self, name: str, value: float, tags: Tags = None) -> None:
        pass

    def set_gauge(self, name: str, value: float, tags: Tags = None) -> None:
        pass

    def record_summary(self, name: str, value: float, tags: Tags = None) -> None:
        pass


NOOP_METRICS = NoopMetrics()


class InMemoryMetrics(ExperimentMetrics):
    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[Tuple[str, TagKey], int] = defaultdict(int)
        self._gauges: Dict[Tuple[str, TagKey], float] = {}
        self._histograms: Dict[Tuple[str, TagKey], List[float]] = defaultdict(list)
        self._summaries: Dict[Tuple[str, TagKey], List[float]] = defaultdict(list)

    def increment_counter(self, name: str, value: int = 1, tags: Tags = None) -> None:
        with self._lock:
            self._counters[(name, _tag_key(tags))] += value

    def record_histogram(self, name: str, value: float, tags: Tags = None) -> None:
        with self._lock:
            self._histograms[(name, _tag_key(tags))].append(value)

    def set_gauge(self, name: str, value: float, tags: Tags = None) -> None:
        with self._lock:
            self._gauges[(name, _tag_key(tags))] = value

    def record_summary(self, name: str, value: float, tags: Tags = None) -> None:
        with self._lock:
            self._summaries[(name, _tag_key(tags))].append(value)

    def counter(self, name: str, tags: Tags = None) -> int:
        """Counter value; without tags, the sum over every tag set."""
        with self._lock:
            if tags is None:
                return sum(v for (n, _), v in self._counters.items() if n == name)
            return self._counters.get((name, _tag_key(tags)), 0)

    def gauge(self, name: str, tags: Tags = None) -> Optional[float]:
        with self._lock:
            return self._gauges.get((name, _tag_key(tags)))

    def histogram(self, name: str, tags: Tags = None) -> List[float]:
        with self._lock:
            if tags is None:
                return [x for (n, _), xs in self._histograms.items() if n == name for x in xs]
            return list(self._histograms.get((name, _tag_key(tags)), []))

    def summary(self, name: str, tags: Tags = None) -> List[float]:
        with self._lock:
            return list(self._summaries.get((name, _tag_key(tags)), []))


class MetricsDecorator(Decorator):
    def __init__(self, metrics: ExperimentMetrics):
        self._metrics = metrics

    async def invoke(self, ctx: InvocationContext, next_call: Next) -> Any:
        tags = {
            "service": service_name(ctx.service_type),
            "method": ctx.method_name,
            "trial_key": ctx.trial_key,
        }
        self._metrics.increment_counter("experiment_invocations_total", 1, tags)
        start = time.perf_counter()
        try:
            result = await next_call()
        except Exception:
            self._metrics.record_histogram("experiment_duration_seconds", time.perf_counter() - start, tags)
            self._metrics.increment_counter("experiment_errors_total", 1, tags)
            raise
        self._metrics.record_histogram("experiment_duration_seconds", time.perf_counter() - start, tags)
        self._metrics.increment_counter("experiment_success_total", 1, tags)
        return result


class MetricsDecoratorFactory(DecoratorFactory):
    def __init__(self, metrics: ExperimentMetrics):
        self._metrics = metrics

    def create(self, services: Mapping[str, Any]) -> Decorator:
        return MetricsDecorator(self._metrics)
