"""
Admin API over the experiment registry.

- GET /experiments lists registrations; GET /experiments/{name} describes one.
- GET /experiments/{name}/status reports activation, kill switch and circuit state.
- POST disable/enable toggles the kill switch and records an audit event with the actor.
- Trial-level toggles validate the trial key.
- Unknown experiments return 404.
- set_registry installs the registry the routes read by default.
"""
import pytest
from fastapi.testclient import TestClient

from trialgate.api import app, get_audit_sink, get_registry, set_registry
from trialgate.core.builder import RegistrationBuilder
from trialgate.core.registry import ExperimentRegistry
from trialgate.telemetry.audit import AuditEventType, InMemoryAuditSink


class Recommender:
    async def recommend(self, user):
        raise NotImplementedError


@pytest.fixture
def registry():
    registry = ExperimentRegistry()
    registry.register(
        RegistrationBuilder(Recommender)
        .add_default_trial("popular", object())
        .add_trial("personal", object())
        .using_configuration_key()
        .on_error_redirect_default()
        .with_timeout(300)
        .with_circuit_breaker(minimum_throughput=5)
        .named("recs")
        .build()
    )
    return registry


@pytest.fixture
def sink():
    return InMemoryAuditSink()


@pytest.fixture
def client(registry, sink):
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_audit_sink] = lambda: sink
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_list_and_describe(client):
    response = client.get("/experiments")
    assert response.status_code == 200
    experiments = response.json()["experiments"]
    assert [e["name"] for e in experiments] == ["recs"]

    data = client.get("/experiments/recs").json()
    assert data["service"] == "Recommender"
    assert data["selection_mode"] == "ConfigurationValue"
    assert data["selector_name"] == "Experiments:Recommender"
    assert data["default_key"] == "popular"
    assert data["trial_keys"] == ["popular", "personal"]
    assert data["error_policy"] == "RedirectDefault"
    assert data["timeout_ms"] == 300
    assert data["circuit_breaker"] is True


def test_status(client):
    data = client.get("/experiments/recs/status").json()
    assert data["active"] is True
    assert data["disabled"] is False
    assert data["disabled_trials"] == []
    assert data["circuit"]["state"] == "CLOSED"
    assert data["circuit"]["sample_count"] == 0


def test_disable_and_enable_experiment(client, registry, sink):
    response = client.post("/experiments/recs/disable", headers={"X-Actor": "oncall@example.com"})
    assert response.status_code == 200
    assert response.json() == {"experiment": "recs", "trial_key": None, "disabled": True}
    assert registry.kill_switch.is_experiment_disabled(Recommender)
    assert client.get("/experiments/recs/status").json()["disabled"] is True

    client.post("/experiments/recs/enable")
    assert not registry.kill_switch.is_experiment_disabled(Recommender)

    events = sink.of_type(AuditEventType.KILL_SWITCH_CHANGED)
    assert [e.details["disabled"] for e in events] == [True, False]
    assert events[0].actor == "oncall@example.com"
    assert events[1].actor is None
    assert events[0].experiment_name == "recs"


def test_trial_toggle(client, registry, sink):
    response = client.post("/experiments/recs/trials/personal/disable")
    assert response.status_code == 200
    assert response.json()["trial_key"] == "personal"
    assert client.get("/experiments/recs/status").json()["disabled_trials"] == ["personal"]

    client.post("/experiments/recs/trials/personal/enable")
    assert registry.kill_switch.disabled_trials(Recommender) == frozenset()
    assert [e.selected_trial_key for e in sink.events] == ["personal", "personal"]


def test_unknown_trial_is_404(client, sink):
    response = client.post("/experiments/recs/trials/ghost/disable")
    assert response.status_code == 404
    assert "ghost" in response.json()["detail"]
    assert sink.events == []


@pytest.mark.parametrize("method, path", [
    ("get", "/experiments/nope"),
    ("get", "/experiments/nope/status"),
    ("post", "/experiments/nope/disable"),
    ("post", "/experiments/nope/trials/a/enable"),
])
def test_unknown_experiment_is_404(client, method, path):
    response = getattr(client, method)(path)
    assert response.status_code == 404


def test_set_registry_is_used_without_overrides(registry):
    set_registry(registry)
    try:
        assert get_registry() is registry
        response = TestClient(app).get("/experiments")
        assert [e["name"] for e in response.json()["experiments"]] == ["recs"]
    finally:
        set_registry(ExperimentRegistry())
