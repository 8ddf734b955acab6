"""
Decorator pipeline.

- First registered decorator is outermost: before-hooks run in order, after-hooks in reverse.
- An empty pipeline calls the terminal directly.
- Factories (objects or plain callables) are invoked once per attempt and see the services mapping.
- LoggingDecorator logs the failure and re-raises it.
- BenchmarkDecorator logs elapsed time without touching the result.
- Router attempts run through the pipeline with the effective trial key in context.
"""
import logging

import pytest

from trialgate.core.builder import RegistrationBuilder
from trialgate.core.models import InvocationContext
from trialgate.core.pipeline import (
    BenchmarkDecoratorFactory,
    Decorator,
    DecoratorFactory,
    DecoratorPipeline,
    LoggingDecoratorFactory,
)
from trialgate.core.router import InvocationRouter


class Tagging(Decorator):
    def __init__(self, tag, log):
        self.tag = tag
        self.log = log

    async def invoke(self, ctx, next_call):
        self.log.append(f"{self.tag}-before")
        result = await next_call()
        self.log.append(f"{self.tag}-after")
        return result


class TaggingFactory(DecoratorFactory):
    def __init__(self, tag, log):
        self.tag = tag
        self.log = log
        self.created = 0
        self.services_seen = []

    def create(self, services):
        self.created += 1
        self.services_seen.append(dict(services))
        return Tagging(self.tag, self.log)


def _ctx(trial_key="a"):
    return InvocationContext(service_type="Pricing", method_name="price", trial_key=trial_key)


@pytest.mark.asyncio
async def test_registration_order_is_outer_to_inner():
    log = []

    async def terminal():
        log.append("call")
        return 42

    pipeline = DecoratorPipeline([TaggingFactory("D1", log), TaggingFactory("D2", log)])
    assert await pipeline.invoke(_ctx(), terminal) == 42
    assert log == ["D1-before", "D2-before", "call", "D2-after", "D1-after"]


@pytest.mark.asyncio
async def test_empty_pipeline_calls_terminal():
    async def terminal():
        return "plain"

    pipeline = DecoratorPipeline([])
    assert len(pipeline) == 0
    assert await pipeline.invoke(_ctx(), terminal) == "plain"


@pytest.mark.asyncio
async def test_callable_factory_receives_services():
    seen = []

    def factory(services):
        seen.append(services.get("tenant"))
        return Tagging("fn", [])

    async def terminal():
        return "ok"

    pipeline = DecoratorPipeline([factory], services={"tenant": "acme"})
    assert await pipeline.invoke(_ctx(), terminal) == "ok"
    assert seen == ["acme"]


@pytest.mark.asyncio
async def test_logging_decorator_logs_and_reraises(caplog):
    async def terminal():
        raise KeyError("sku")

    pipeline = DecoratorPipeline([LoggingDecoratorFactory()])
    with caplog.at_level(logging.WARNING, logger="trialgate.core.pipeline"):
        with pytest.raises(KeyError):
            await pipeline.invoke(_ctx("ml"), terminal)
    assert "trial=ml" in caplog.text
    assert "KeyError" in caplog.text


@pytest.mark.asyncio
async def test_benchmark_decorator_passes_result_through(caplog):
    async def terminal():
        return "fast"

    pipeline = DecoratorPipeline([BenchmarkDecoratorFactory(level=logging.INFO)])
    with caplog.at_level(logging.INFO, logger="trialgate.core.pipeline"):
        assert await pipeline.invoke(_ctx("table"), terminal) == "fast"
    assert "Trial Pricing.price trial=table took" in caplog.text


class Pricing:
    async def price(self, sku):
        raise NotImplementedError


class Table(Pricing):
    async def price(self, sku):
        return f"table:{sku}"


@pytest.mark.asyncio
async def test_router_builds_decorators_per_attempt():
    log = []
    factory = TaggingFactory("D", log)
    contexts = []

    class Capture(Decorator):
        async def invoke(self, ctx, next_call):
            contexts.append(ctx)
            return await next_call()

    reg = (
        RegistrationBuilder(Pricing)
        .add_default_trial("table", Table())
        .add_decorator(factory)
        .add_decorator(lambda services: Capture())
        .build()
    )
    router = InvocationRouter(reg, services_factory=lambda: {"region": "eu"})
    assert await router.invoke("price", "a") == "table:a"
    assert await router.invoke("price", "b") == "table:b"

    assert factory.created == 2
    assert factory.services_seen == [{"region": "eu"}, {"region": "eu"}]
    assert log == ["D-before", "D-after", "D-before", "D-after"]
    assert [c.trial_key for c in contexts] == ["table", "table"]
    assert contexts[1].args == ("b",)
