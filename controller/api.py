import math
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST
from dotenv import load_dotenv

from metrics.store import Aggregation
from scaling_spec import AlertRuleSpec, PolicyFile, PolicySpec
from scaling_spec.models import ALERT_RULE_FIELDS, POLICY_FIELDS
from .instances import ResourceUsage, ServiceInstance
from .policies import PolicyValidationError, UnknownPolicyError
from controller.utils.models import (
    RecordMetricRequest,
    ScaleRequest,
    ScaleStepRequest,
    PolicyUpdateRequest,
    AlertRuleUpdateRequest,
    InstanceRequest,
    HealthUpdateRequest,
    UsageUpdateRequest,
    AggregateResponse,
    ScaleResponse,
    ApplyResponse,
)
from controller.utils import lifecycle
from controller.utils.lifecycle import ControlPlane

load_dotenv()

logger = logging.getLogger(__name__)

router = APIRouter()

def get_control_plane(request: Request) -> ControlPlane:
    plane = getattr(request.app.state, "control_plane", None) or lifecycle.get_control_plane()
    if plane is None:
        raise HTTPException(status_code=503, detail="Controller is not initialized")
    return plane

def _policy_body(policy) -> dict:
    return PolicySpec.from_policy(policy).model_dump(mode="json", exclude_none=True)

def _parse_tags(tag: List[str]) -> dict:
    tags = {}
    for item in tag:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise HTTPException(status_code=400, detail=f"Invalid tag filter {item!r}, expected key=value")
        tags[key] = value
    return tags

def _time_range(start: Optional[float], end: Optional[float]):
    if start is None and end is None:
        return None
    return (start if start is not None else -math.inf, end if end is not None else math.inf)

def _scale_response(service: str, action, plane: ControlPlane) -> ScaleResponse:
    if action is None:
        return ScaleResponse(
            status="no_change",
            service=service,
            instances=plane.service.get_service_instance_count(service),
        )
    return ScaleResponse(
        status="scaling",
        service=service,
        instances=action.target_instances,
        action=action.to_dict(),
    )

# API Endpoints

@router.get("/health")
async def health_check(plane: ControlPlane = Depends(get_control_plane)):
    """Health check endpoint."""
    return plane.service.health_check()

@router.get("/info")
async def controller_info(plane: ControlPlane = Depends(get_control_plane)):
    return plane.info()

# Metrics

@router.post("/metrics")
async def record_metric(body: RecordMetricRequest, plane: ControlPlane = Depends(get_control_plane)):
    """Record a metric point."""
    point = plane.metric_store.record(body.name, body.value, body.unit, body.tags)
    if point is None:
        raise HTTPException(status_code=400, detail=f"Metric {body.name} could not be recorded")
    return {"status": "recorded", "name": point.name, "value": point.value, "timestamp": point.timestamp}

@router.get("/metrics")
async def list_metrics(plane: ControlPlane = Depends(get_control_plane)):
    return {"metrics": plane.metric_store.get_metric_names()}

@router.get("/metrics/prometheus")
async def prometheus_metrics(plane: ControlPlane = Depends(get_control_plane)):
    """Metrics in Prometheus text format."""
    return PlainTextResponse(plane.exporter.get_prometheus_metrics(), media_type=CONTENT_TYPE_LATEST)

@router.get("/metrics/{name}")
async def get_metric(
    name: str,
    start: Optional[float] = None,
    end: Optional[float] = None,
    tag: List[str] = Query(default=[]),
    limit: int = Query(default=100, ge=1, le=10000),
    plane: ControlPlane = Depends(get_control_plane),
):
    points = plane.metric_store.get_metrics(name, _time_range(start, end), _parse_tags(tag))
    return {
        "name": name,
        "count": len(points),
        "points": [
            {"value": p.value, "unit": p.unit, "timestamp": p.timestamp, "tags": p.tags}
            for p in points[-limit:]
        ],
    }

@router.get("/metrics/{name}/aggregate", response_model=AggregateResponse)
async def aggregate_metric(
    name: str,
    aggregation: Aggregation = Aggregation.AVG,
    start: Optional[float] = None,
    end: Optional[float] = None,
    tag: List[str] = Query(default=[]),
    plane: ControlPlane = Depends(get_control_plane),
):
    value = plane.metric_store.get_aggregated_metrics(name, aggregation, _time_range(start, end), _parse_tags(tag))
    return AggregateResponse(name=name, aggregation=aggregation, value=value, start=start, end=end)

# Alert rules

@router.get("/alerts/rules")
async def list_alert_rules(plane: ControlPlane = Depends(get_control_plane)):
    return {"rules": [rule.to_dict() for rule in plane.alert_engine.get_alert_rules()]}

@router.post("/alerts/rules")
async def add_alert_rule(body: AlertRuleSpec, plane: ControlPlane = Depends(get_control_plane)):
    try:
        rule = plane.alert_engine.add_alert_rule(body.to_rule())
        return rule.to_dict()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.patch("/alerts/rules/{rule_id}")
async def update_alert_rule(rule_id: str, body: AlertRuleUpdateRequest,
                            plane: ControlPlane = Depends(get_control_plane)):
    changes = {ALERT_RULE_FIELDS[k]: v for k, v in body.model_dump(exclude_unset=True).items()}
    try:
        rule = plane.alert_engine.update_alert_rule(rule_id, **changes)
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    if rule is None:
        raise HTTPException(status_code=404, detail=f"Alert rule {rule_id} not found")
    return rule.to_dict()

@router.delete("/alerts/rules/{rule_id}")
async def remove_alert_rule(rule_id: str, plane: ControlPlane = Depends(get_control_plane)):
    if not plane.alert_engine.remove_alert_rule(rule_id):
        raise HTTPException(status_code=404, detail=f"Alert rule {rule_id} not found")
    return {"status": "removed", "id": rule_id}

# Scaling policies

@router.get("/policies")
async def list_policies(plane: ControlPlane = Depends(get_control_plane)):
    return {"policies": [_policy_body(p) for p in plane.service.get_all_policies()]}

@router.post("/policies")
async def add_policy(body: PolicySpec, plane: ControlPlane = Depends(get_control_plane)):
    """Add or replace a scaling policy."""
    try:
        policy = plane.service.add_scaling_policy(body.to_policy())
        return _policy_body(policy)
    except PolicyValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.post("/policies/apply", response_model=ApplyResponse)
async def apply_policy_file(body: PolicyFile, plane: ControlPlane = Depends(get_control_plane)):
    """Apply a whole policy file (alert rules first, then policies)."""
    try:
        plane.apply_policy_file(body)
    except (PolicyValidationError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ApplyResponse(
        status="applied",
        policies=[p.id for p in body.policies],
        alertRules=[r.id for r in body.alertRules],
    )

@router.get("/policies/{policy_id}")
async def get_policy(policy_id: str, plane: ControlPlane = Depends(get_control_plane)):
    policy = plane.service.get_scaling_policy(policy_id)
    if policy is None:
        raise HTTPException(status_code=404, detail=f"Policy {policy_id} not found")
    return _policy_body(policy)

@router.patch("/policies/{policy_id}")
async def update_policy(policy_id: str, body: PolicyUpdateRequest,
                        plane: ControlPlane = Depends(get_control_plane)):
    changes = {POLICY_FIELDS[k]: v for k, v in body.model_dump(exclude_unset=True).items()}
    try:
        policy = plane.service.update_scaling_policy(policy_id, **changes)
        return _policy_body(policy)
    except UnknownPolicyError:
        raise HTTPException(status_code=404, detail=f"Policy {policy_id} not found")
    except PolicyValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.delete("/policies/{policy_id}")
async def remove_policy(policy_id: str, plane: ControlPlane = Depends(get_control_plane)):
    if not plane.service.remove_scaling_policy(policy_id):
        raise HTTPException(status_code=404, detail=f"Policy {policy_id} not found")
    return {"status": "removed", "id": policy_id}

@router.get("/policies/{policy_id}/decisions")
async def policy_decisions(policy_id: str, limit: int = Query(default=10, ge=1, le=100),
                           plane: ControlPlane = Depends(get_control_plane)):
    if plane.service.get_scaling_policy(policy_id) is None:
        raise HTTPException(status_code=404, detail=f"Policy {policy_id} not found")
    history = plane.service.get_scaling_history(policy_id, limit)
    return {"policy_id": policy_id, "decisions": [d.to_dict() for d in history]}

# Manual scaling

@router.post("/services/{service}/scale", response_model=ScaleResponse)
async def scale_service(service: str, body: ScaleRequest, plane: ControlPlane = Depends(get_control_plane)):
    """Manually set the instance count of a service (clamped to its policy bounds)."""
    try:
        action = plane.service.set_desired_instances(service, body.instances)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _scale_response(service, action, plane)

@router.post("/services/{service}/scale-up", response_model=ScaleResponse)
async def scale_up_service(service: str, body: Optional[ScaleStepRequest] = None,
                           plane: ControlPlane = Depends(get_control_plane)):
    count = body.count if body else 1
    return _scale_response(service, plane.service.scale_up(service, count), plane)

@router.post("/services/{service}/scale-down", response_model=ScaleResponse)
async def scale_down_service(service: str, body: Optional[ScaleStepRequest] = None,
                             plane: ControlPlane = Depends(get_control_plane)):
    count = body.count if body else 1
    return _scale_response(service, plane.service.scale_down(service, count), plane)

# Instances

@router.get("/services/{service}/instances")
async def list_instances(service: str, plane: ControlPlane = Depends(get_control_plane)):
    instances = plane.service.get_service_instances(service)
    return {
        "service": service,
        "instances": [i.to_dict() for i in instances],
        "active": plane.service.get_service_instance_count(service),
        "healthy": plane.service.get_healthy_instance_count(service),
    }

@router.post("/services/{service}/instances")
async def register_instance(service: str, body: InstanceRequest, plane: ControlPlane = Depends(get_control_plane)):
    instance = ServiceInstance(
        id=body.id,
        service=service,
        status=body.status,
        start_time=plane.instances.clock(),
        health_status=body.healthStatus,
        metadata=body.metadata,
    )
    return plane.service.register_service_instance(instance).to_dict()

@router.delete("/services/{service}/instances/{instance_id}")
async def unregister_instance(service: str, instance_id: str, plane: ControlPlane = Depends(get_control_plane)):
    if not plane.service.unregister_service_instance(instance_id, service):
        raise HTTPException(status_code=404, detail=f"Instance {instance_id} of {service} not found")
    return {"status": "unregistered", "service": service, "id": instance_id}

@router.put("/services/{service}/instances/{instance_id}/health")
async def update_instance_health(service: str, instance_id: str, body: HealthUpdateRequest,
                                 plane: ControlPlane = Depends(get_control_plane)):
    if not plane.service.update_instance_health(instance_id, service, body.healthStatus):
        raise HTTPException(status_code=404, detail=f"Instance {instance_id} of {service} not found")
    return {"status": "updated", "id": instance_id, "healthStatus": body.healthStatus.value}

@router.put("/services/{service}/instances/{instance_id}/usage")
async def update_instance_usage(service: str, instance_id: str, body: UsageUpdateRequest,
                                plane: ControlPlane = Depends(get_control_plane)):
    usage = ResourceUsage(cpu=body.cpu, memory=body.memory, connections=body.connections)
    if not plane.service.update_instance_resource_usage(instance_id, service, usage):
        raise HTTPException(status_code=404, detail=f"Instance {instance_id} of {service} not found")
    return {"status": "updated", "id": instance_id}

# Actions & evaluation

@router.get("/actions")
async def list_actions(plane: ControlPlane = Depends(get_control_plane)):
    return {"actions": [a.to_dict() for a in plane.service.get_active_scaling_actions()]}

@router.post("/evaluate")
async def evaluate_now(plane: ControlPlane = Depends(get_control_plane)):
    """Run one evaluation tick immediately."""
    decisions = plane.service.evaluate_now()
    return {"decisions": [d.to_dict() for d in decisions]}

@router.post("/autoscaling/enable")
def enable_autoscaling(plane: ControlPlane = Depends(get_control_plane)):
    plane.service.enable_auto_scaling()
    return {"auto_scaling_enabled": plane.service.auto_scaling_enabled}

@router.post("/autoscaling/disable")
def disable_autoscaling(plane: ControlPlane = Depends(get_control_plane)):
    plane.service.disable_auto_scaling()
    return {"auto_scaling_enabled": plane.service.auto_scaling_enabled}

def create_app(control_plane: Optional[ControlPlane] = None) -> FastAPI:
    """
    Build the admin API. With a control plane the caller owns its lifecycle;
    without one, the global control plane is built on startup and shut down on exit.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.control_plane is None
        if owned:
            app.state.control_plane = await lifecycle.startup_event()
        try:
            yield
        finally:
            if owned:
                await lifecycle.shutdown_event()

    app = FastAPI(
        title="Telescaler Controller API",
        description="Telemetry-driven autoscaling controller API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.control_plane = control_plane

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app

# FastAPI app
app = create_app()
