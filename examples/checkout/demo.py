"""
Checkout demo.

    python -m examples.checkout.demo [--trace]

Loads config/engine.yaml and config/experiments.yaml, then routes a
handful of charges through each experiment. The cascade trace is logged
when verbose_trace is set in engine.yaml or --trace is passed. Audit
events also go to the audit.file named in engine.yaml, if any.
"""
import argparse
import asyncio
import logging

from trialgate.core.config import resolve_project_path
from trialgate.core.loader import load_experiments
from trialgate.core.registry import ExperimentRegistry
from trialgate.core.settings import load_engine_settings
from trialgate.selection.base import SelectionModeRegistry
from trialgate.selection.flag import StaticFlags
from trialgate.telemetry.audit import CompositeAuditSink, InMemoryAuditSink
from trialgate.telemetry.metrics import InMemoryMetrics
from trialgate.telemetry.scope import AuditingTelemetry
from trialgate.telemetry.store import JsonlAuditSink


async def main(trace: bool = False) -> None:
    logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    settings = load_engine_settings()
    registry = ExperimentRegistry()
    registry.register_all(load_experiments(settings=settings, kill_switch=registry.kill_switch))
    verbose = trace or settings.verbose_trace

    selection = SelectionModeRegistry.with_builtin_providers(
        flags=StaticFlags({"PaymentProcessor": True}),
        values={"Experiments:Payments": "flaky"},
        identity_provider=lambda ctx: ctx.services.get("customer_id"),
    )
    audit = InMemoryAuditSink()
    sinks = [audit]
    if settings.audit_file:
        sinks.append(JsonlAuditSink(resolve_project_path(settings.audit_file)))
    metrics = InMemoryMetrics()
    telemetry = AuditingTelemetry(CompositeAuditSink(sinks), metrics)

    methods = {"checkout-payments": "charge", "fraud-screen": "screen"}
    for name in registry.names():
        print(f"\n=== {name} ===")
        for customer in ("c-1", "c-2", "c-3", "c-4"):
            router = registry.router_for(
                name,
                selection_registry=selection,
                telemetry=telemetry,
                services_factory=lambda c=customer: {"customer_id": c},
                verbose=verbose,
            )
            try:
                result = await getattr(router.proxy(), methods[name])(customer, 1999)
                print(f"{customer}: {result}")
            except Exception as e:
                print(f"{customer}: FAILED {type(e).__name__}: {e}")

    print("\n=== audit ===")
    for event in audit.events:
        print(f"{event.event_type.value:18} {event.experiment_name} trial={event.selected_trial_key}")
    print(f"\nfallbacks: {metrics.counter('experiment_fallbacks_total')}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Checkout experiment demo")
    parser.add_argument("--trace", action="store_true", help="Log the cascade trace for every call")
    args = parser.parse_args()
    asyncio.run(main(trace=args.trace))
