from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional

from controller.instances import HealthStatus, InstanceStatus
from controller.policies import ScalingStrategy
from metrics.alerts import AlertCondition, AlertSeverity
from metrics.store import Aggregation

class RecordMetricRequest(BaseModel):
    name: str = Field(..., min_length=1)
    value: float
    unit: str = "count"
    tags: Dict[str, str] = Field(default_factory=dict)

class ScaleRequest(BaseModel):
    instances: int = Field(..., ge=0, le=1000)

class ScaleStepRequest(BaseModel):
    count: int = Field(1, ge=1, le=100)

class PolicyUpdateRequest(BaseModel):
    """Partial policy update; only the fields that are set are applied."""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    targetService: Optional[str] = None
    enabled: Optional[bool] = None
    scaleUpMetric: Optional[str] = None
    scaleUpThreshold: Optional[float] = None
    scaleUpCooldownSeconds: Optional[float] = None
    scaleUpBy: Optional[int] = None
    scaleDownMetric: Optional[str] = None
    scaleDownThreshold: Optional[float] = None
    scaleDownCooldownSeconds: Optional[float] = None
    scaleDownBy: Optional[int] = None
    minInstances: Optional[int] = None
    maxInstances: Optional[int] = None
    evaluationPeriods: Optional[int] = None
    periodDurationSeconds: Optional[float] = None
    scalingStrategy: Optional[ScalingStrategy] = None
    targetValue: Optional[float] = None
    metricTags: Optional[Dict[str, str]] = None

class AlertRuleUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    metric: Optional[str] = None
    condition: Optional[AlertCondition] = None
    threshold: Optional[float] = None
    severity: Optional[AlertSeverity] = None
    enabled: Optional[bool] = None
    cooldownSeconds: Optional[float] = Field(None, ge=0)

class InstanceRequest(BaseModel):
    id: str = Field(..., min_length=1)
    status: InstanceStatus = InstanceStatus.RUNNING
    healthStatus: HealthStatus = HealthStatus.UNKNOWN
    metadata: Dict[str, Any] = Field(default_factory=dict)

class HealthUpdateRequest(BaseModel):
    healthStatus: HealthStatus

class UsageUpdateRequest(BaseModel):
    cpu: float = Field(0.0, ge=0)
    memory: float = Field(0.0, ge=0)
    connections: int = Field(0, ge=0)

class AggregateResponse(BaseModel):
    name: str
    aggregation: Aggregation
    value: float
    start: Optional[float] = None
    end: Optional[float] = None

class ScaleResponse(BaseModel):
    status: str
    service: str
    instances: int
    action: Optional[Dict[str, Any]] = None

class ApplyResponse(BaseModel):
    status: str
    policies: List[str] = Field(default_factory=list)
    alertRules: List[str] = Field(default_factory=list)
