"""
Decorator pipeline around the terminal implementation call.

Decorators are built fresh per call from the registration's factories and
composed onion-style: the first registered decorator is outermost, so its
"before" logic runs first and its "after" logic runs last.
"""
import inspect
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Optional, Union

from .models import InvocationContext, service_name

logger = logging.getLogger(__name__)

Next = Callable[[], Awaitable[Any]]


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class Decorator(ABC):
    @abstractmethod
    async def invoke(self, ctx: InvocationContext, next_call: Next) -> Any:
        """Run around `next_call()`. Exceptions must propagate unless the
        decorator explicitly documents that it changes the outcome."""


class DecoratorFactory(ABC):
    @abstractmethod
    def create(self, services: Mapping[str, Any]) -> Decorator: ...


FactoryLike = Union[DecoratorFactory, Callable[[Mapping[str, Any]], Decorator]]


def _create(factory: FactoryLike, services: Mapping[str, Any]) -> Decorator:
    if isinstance(factory, DecoratorFactory):
        return factory.create(services)
    return factory(services)


class DecoratorPipeline:
    def __init__(self, factories: Iterable[FactoryLike], services: Optional[Mapping[str, Any]] = None):
        services = services if services is not None else {}
        self._decorators: List[Decorator] = [_create(f, services) for f in factories]

    def __len__(self) -> int:
        return len(self._decorators)

    async def invoke(self, ctx: InvocationContext, terminal: Next) -> Any:
        next_call = terminal
        # Wrap inner-to-outer so registration order is outer-to-inner.
        for decorator in reversed(self._decorators):
            next_call = _bind(decorator, ctx, next_call)
        return await next_call()


def _bind(decorator: Decorator, ctx: InvocationContext, next_call: Next) -> Next:
    async def call() -> Any:
        return await decorator.invoke(ctx, next_call)
    return call


# =============================================================================
# Built-in decorators
# =============================================================================

class LoggingDecorator(Decorator):
    """Logs failures of the wrapped call without suppressing them."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    async def invoke(self, ctx: InvocationContext, next_call: Next) -> Any:
        try:
            return await next_call()
        except Exception as e:
            self._log.warning(
                "Trial failed: %s.%s trial=%s error=%s: %s",
                service_name(ctx.service_type), ctx.method_name, ctx.trial_key, type(e).__name__, e,
            )
            raise


class LoggingDecoratorFactory(DecoratorFactory):
    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log

    def create(self, services: Mapping[str, Any]) -> Decorator:
        return LoggingDecorator(self._log)


class BenchmarkDecorator(Decorator):
    """Times the wrapped call and logs the elapsed milliseconds."""

    def __init__(self, log: Optional[logging.Logger] = None, level: int = logging.DEBUG):
        self._log = log or logger
        self._level = level

    async def invoke(self, ctx: InvocationContext, next_call: Next) -> Any:
        start = time.perf_counter()
        try:
            return await next_call()
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self._log.log(
                self._level, "Trial %s.%s trial=%s took %.1fms",
                service_name(ctx.service_type), ctx.method_name, ctx.trial_key, elapsed_ms,
            )


class BenchmarkDecoratorFactory(DecoratorFactory):
    def __init__(self, log: Optional[logging.Logger] = None, level: int = logging.DEBUG):
        self._log = log
        self._level = level

    def create(self, services: Mapping[str, Any]) -> Decorator:
        return BenchmarkDecorator(self._log, self._level)
