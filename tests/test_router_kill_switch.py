"""
Kill switch handling in the router.

- Disabled experiment: ExperimentDisabledError before any trial runs.
- Disabled trial: skipped like a failure; the cascade continues.
- Disabled trial under Throw: TrialDisabledError reaches the caller.
- Re-enabling restores normal routing.
- Kill switch state is keyed per service type.
"""
import pytest

from trialgate.core.builder import RegistrationBuilder
from trialgate.core.errors import ExperimentDisabledError, TrialDisabledError
from trialgate.core.resilience import InMemoryKillSwitch
from trialgate.core.router import InvocationRouter
from trialgate.selection.base import SelectionModeRegistry


class Search:
    async def query(self, q):
        raise NotImplementedError


class Engine(Search):
    def __init__(self, label, log):
        self.label = label
        self.log = log

    async def query(self, q):
        self.log.append(self.label)
        return f"{self.label}:{q}"


def _router(kill_switch, log, policy="redirect_default"):
    builder = (
        RegistrationBuilder(Search)
        .add_default_trial("classic", Engine("classic", log))
        .add_trial("vector", Engine("vector", log))
        .using_configuration_key("search")
        .with_kill_switch(kill_switch)
    )
    getattr(builder, f"on_error_{policy}")()
    selection = SelectionModeRegistry.with_builtin_providers(values={"search": "vector"})
    return InvocationRouter(builder.build(), selection_registry=selection)


@pytest.mark.asyncio
async def test_disabled_experiment_raises_before_any_trial():
    log = []
    kill_switch = InMemoryKillSwitch()
    kill_switch.disable_experiment(Search)
    with pytest.raises(ExperimentDisabledError):
        await _router(kill_switch, log).invoke("query", "shoes")
    assert log == []


@pytest.mark.asyncio
async def test_disabled_trial_is_skipped():
    log = []
    kill_switch = InMemoryKillSwitch()
    kill_switch.disable_trial(Search, "vector")
    assert await _router(kill_switch, log).invoke("query", "shoes") == "classic:shoes"
    assert log == ["classic"]


@pytest.mark.asyncio
async def test_disabled_trial_with_throw_policy():
    log = []
    kill_switch = InMemoryKillSwitch()
    kill_switch.disable_trial(Search, "vector")
    with pytest.raises(TrialDisabledError) as excinfo:
        await _router(kill_switch, log, policy="throw").invoke("query", "shoes")
    assert excinfo.value.trial_key == "vector"
    assert log == []


@pytest.mark.asyncio
async def test_reenable_restores_routing():
    log = []
    kill_switch = InMemoryKillSwitch()
    router = _router(kill_switch, log)

    kill_switch.disable_experiment(Search)
    with pytest.raises(ExperimentDisabledError):
        await router.invoke("query", "a")
    kill_switch.enable_experiment(Search)

    kill_switch.disable_trial(Search, "vector")
    assert await router.invoke("query", "b") == "classic:b"
    kill_switch.enable_trial(Search, "vector")
    assert await router.invoke("query", "c") == "vector:c"


def test_kill_switch_is_keyed_per_service_type():
    class Other:
        pass

    kill_switch = InMemoryKillSwitch()
    kill_switch.disable_experiment(Search)
    kill_switch.disable_trial(Search, "vector")
    assert kill_switch.is_experiment_disabled(Search)
    assert not kill_switch.is_experiment_disabled(Other)
    assert not kill_switch.is_trial_disabled(Other, "vector")
    assert kill_switch.disabled_trials(Search) == frozenset({"vector"})
