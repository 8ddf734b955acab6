from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from .core.models import Registration, service_name
from .core.registry import ExperimentRegistry
from .telemetry.audit import AuditEvent, AuditEventType, AuditSink, LoggingAuditSink

app = FastAPI(title="trialgate admin")

_registry: Optional[ExperimentRegistry] = None
_audit_sink: AuditSink = LoggingAuditSink()


def set_registry(registry: ExperimentRegistry) -> None:
    global _registry
    _registry = registry


def get_registry() -> ExperimentRegistry:
    global _registry
    if _registry is None:
        _registry = ExperimentRegistry()
    return _registry


def get_audit_sink() -> AuditSink:
    return _audit_sink


class KillSwitchResponse(BaseModel):
    experiment: str
    trial_key: Optional[str] = Field(None, description="Trial key, for trial-level toggles")
    disabled: bool


def _require(registry: ExperimentRegistry, name: str) -> Registration:
    registration = registry.get(name)
    if registration is None:
        raise HTTPException(status_code=404, detail=f"Unknown experiment: {name}")
    return registration


async def _audit(sink: AuditSink, registration: Registration, trial_key: Optional[str],
                 disabled: bool, actor: Optional[str]) -> None:
    await sink.record(AuditEvent(
        event_type=AuditEventType.KILL_SWITCH_CHANGED,
        experiment_name=registration.name,
        service_type=service_name(registration.service_type),
        selected_trial_key=trial_key,
        actor=actor,
        details={"disabled": disabled},
    ))


@app.get("/experiments")
async def list_experiments(registry: ExperimentRegistry = Depends(get_registry)):
    """All registered experiments with their static configuration."""
    return {"experiments": [registry.describe(r) for r in registry.registrations()]}


@app.get("/experiments/{name}")
async def get_experiment(name: str, registry: ExperimentRegistry = Depends(get_registry)):
    return registry.describe(_require(registry, name))


@app.get("/experiments/{name}/status")
async def get_experiment_status(name: str, registry: ExperimentRegistry = Depends(get_registry)):
    """
    Live status: activation window, kill switch state and circuit breaker.
    """
    _require(registry, name)
    return registry.status(name)


@app.post("/experiments/{name}/disable", response_model=KillSwitchResponse)
async def disable_experiment(
    name: str,
    registry: ExperimentRegistry = Depends(get_registry),
    sink: AuditSink = Depends(get_audit_sink),
    x_actor: Optional[str] = Header(None),
) -> KillSwitchResponse:
    registration = _require(registry, name)
    registration.kill_switch.disable_experiment(registration.service_type)
    await _audit(sink, registration, None, True, x_actor)
    return KillSwitchResponse(experiment=name, disabled=True)


@app.post("/experiments/{name}/enable", response_model=KillSwitchResponse)
async def enable_experiment(
    name: str,
    registry: ExperimentRegistry = Depends(get_registry),
    sink: AuditSink = Depends(get_audit_sink),
    x_actor: Optional[str] = Header(None),
) -> KillSwitchResponse:
    registration = _require(registry, name)
    registration.kill_switch.enable_experiment(registration.service_type)
    await _audit(sink, registration, None, False, x_actor)
    return KillSwitchResponse(experiment=name, disabled=False)


@app.post("/experiments/{name}/trials/{key}/disable", response_model=KillSwitchResponse)
async def disable_trial(
    name: str,
    key: str,
    registry: ExperimentRegistry = Depends(get_registry),
    sink: AuditSink = Depends(get_audit_sink),
    x_actor: Optional[str] = Header(None),
) -> KillSwitchResponse:
    registration = _require(registry, name)
    if key not in registration.trials:
        raise HTTPException(status_code=404, detail=f"Unknown trial '{key}' for experiment {name}")
    registration.kill_switch.disable_trial(registration.service_type, key)
    await _audit(sink, registration, key, True, x_actor)
    return KillSwitchResponse(experiment=name, trial_key=key, disabled=True)


@app.post("/experiments/{name}/trials/{key}/enable", response_model=KillSwitchResponse)
async def enable_trial(
    name: str,
    key: str,
    registry: ExperimentRegistry = Depends(get_registry),
    sink: AuditSink = Depends(get_audit_sink),
    x_actor: Optional[str] = Header(None),
) -> KillSwitchResponse:
    registration = _require(registry, name)
    if key not in registration.trials:
        raise HTTPException(status_code=404, detail=f"Unknown trial '{key}' for experiment {name}")
    registration.kill_switch.enable_trial(registration.service_type, key)
    await _audit(sink, registration, key, False, x_actor)
    return KillSwitchResponse(experiment=name, trial_key=key, disabled=False)
