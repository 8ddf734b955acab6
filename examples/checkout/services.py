"""
Checkout example: a payment service and a fraud screen, each with two trials.

The flaky processor fails on every other call and the model screen sleeps
past any sensible deadline, so the demo can show the fallback paths.
"""
import asyncio
from abc import ABC, abstractmethod


class PaymentProcessor(ABC):
    @abstractmethod
    async def charge(self, customer_id: str, amount_cents: int) -> dict: ...


class StripeProcessor(PaymentProcessor):
    async def charge(self, customer_id: str, amount_cents: int) -> dict:
        return {"provider": "stripe", "customer": customer_id, "amount": amount_cents}


class FlakyProcessor(PaymentProcessor):
    calls = 0

    async def charge(self, customer_id: str, amount_cents: int) -> dict:
        FlakyProcessor.calls += 1
        if FlakyProcessor.calls % 2:
            raise ConnectionError("flaky gateway dropped the connection")
        return {"provider": "flaky", "customer": customer_id, "amount": amount_cents}


class FraudScreen(ABC):
    @abstractmethod
    async def screen(self, customer_id: str, amount_cents: int) -> dict: ...


class RulesScreen(FraudScreen):
    async def screen(self, customer_id: str, amount_cents: int) -> dict:
        return {"screen": "rules", "customer": customer_id, "approved": amount_cents < 100_000}


class ModelScreen(FraudScreen):
    delay_s = 5.0

    async def screen(self, customer_id: str, amount_cents: int) -> dict:
        await asyncio.sleep(self.delay_s)
        return {"screen": "model", "customer": customer_id, "approved": True}
