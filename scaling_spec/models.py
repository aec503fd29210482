"""
Pydantic models for Telescaler policy files.
Defines the schema for the YAML/JSON format used to declare scaling policies and alert rules.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from controller.policies import ScalingPolicy, ScalingStrategy
from metrics.alerts import AlertCondition, AlertRule, AlertSeverity

ID_PATTERN = r'^[a-zA-Z0-9]([a-zA-Z0-9\-_.])*$'

class PolicyFileKind(str, Enum):
    """Supported document kinds."""
    SCALING_POLICIES = "ScalingPolicies"

# camelCase file fields -> ScalingPolicy attributes
POLICY_FIELDS = {
    "id": "id",
    "name": "name",
    "targetService": "target_service",
    "enabled": "enabled",
    "scaleUpMetric": "scale_up_metric",
    "scaleUpThreshold": "scale_up_threshold",
    "scaleUpCooldownSeconds": "scale_up_cooldown_seconds",
    "scaleUpBy": "scale_up_by",
    "scaleDownMetric": "scale_down_metric",
    "scaleDownThreshold": "scale_down_threshold",
    "scaleDownCooldownSeconds": "scale_down_cooldown_seconds",
    "scaleDownBy": "scale_down_by",
    "minInstances": "min_instances",
    "maxInstances": "max_instances",
    "evaluationPeriods": "evaluation_periods",
    "periodDurationSeconds": "period_duration_seconds",
    "scalingStrategy": "scaling_strategy",
    "targetValue": "target_value",
    "metricTags": "metric_tags",
}

ALERT_RULE_FIELDS = {
    "id": "id",
    "name": "name",
    "metric": "metric",
    "condition": "condition",
    "threshold": "threshold",
    "severity": "severity",
    "enabled": "enabled",
    "cooldownSeconds": "cooldown_seconds",
}

class PolicySpec(BaseModel):
    """Scaling policy as declared in a policy file."""
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., pattern=ID_PATTERN, description="Unique policy id")
    name: Optional[str] = Field(None, description="Human readable name (defaults to id)")
    targetService: str = Field(..., min_length=1, description="Service whose instance count this policy controls")
    enabled: bool = True

    scaleUpMetric: str = Field(..., min_length=1)
    scaleUpThreshold: float
    scaleUpCooldownSeconds: float = Field(300, ge=0)
    scaleUpBy: int = Field(1, ge=1)

    scaleDownMetric: Optional[str] = Field(None, description="Defaults to scaleUpMetric")
    scaleDownThreshold: float
    scaleDownCooldownSeconds: float = Field(600, ge=0)
    scaleDownBy: int = Field(1, ge=1)

    minInstances: int = Field(1, ge=1, le=1000)
    maxInstances: int = Field(5, ge=1, le=1000)
    evaluationPeriods: int = Field(2, ge=1, description="Consecutive samples that must breach")
    periodDurationSeconds: float = Field(60, gt=0)
    scalingStrategy: ScalingStrategy = ScalingStrategy.LINEAR
    targetValue: Optional[float] = Field(None, gt=0, description="Per-instance target for target_tracking")
    metricTags: Optional[Dict[str, str]] = Field(None, description="Only points carrying these tags are evaluated")

    @model_validator(mode="after")
    def check_consistency(self):
        if self.maxInstances < self.minInstances:
            raise ValueError('maxInstances must be >= minInstances')
        down_metric = self.scaleDownMetric or self.scaleUpMetric
        if down_metric == self.scaleUpMetric and self.scaleDownThreshold >= self.scaleUpThreshold:
            raise ValueError('scaleDownThreshold must be < scaleUpThreshold on the same metric')
        if self.scalingStrategy is ScalingStrategy.TARGET_TRACKING and self.targetValue is None:
            raise ValueError('targetValue is required for target_tracking')
        return self

    def to_policy(self) -> ScalingPolicy:
        data = self.model_dump(exclude_none=True)
        return ScalingPolicy(**{POLICY_FIELDS[k]: v for k, v in data.items()})

    @classmethod
    def from_policy(cls, policy: ScalingPolicy) -> "PolicySpec":
        data = policy.to_dict()
        return cls(**{camel: data[snake] for camel, snake in POLICY_FIELDS.items() if data.get(snake) is not None})

class AlertRuleSpec(BaseModel):
    """Alert rule as declared in a policy file."""
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., pattern=ID_PATTERN)
    name: Optional[str] = None
    metric: str = Field(..., min_length=1)
    condition: AlertCondition = AlertCondition.GT
    threshold: float
    severity: AlertSeverity = AlertSeverity.WARNING
    enabled: bool = True
    cooldownSeconds: float = Field(300, ge=0)

    def to_rule(self) -> AlertRule:
        data = self.model_dump()
        if not data.get("name"):
            data["name"] = self.id
        return AlertRule(**{ALERT_RULE_FIELDS[k]: v for k, v in data.items()})

class ResourceRequirements(BaseModel):
    """Container resource limits."""
    cpu: Optional[str] = Field("100m", description="CPU limit (e.g., '100m', '0.5')")
    memory: Optional[str] = Field("128Mi", description="Memory limit (e.g., '128Mi', '1Gi')")

class ServiceSpec(BaseModel):
    """Container template used by the docker orchestrator to start instances of a service."""
    image: str = Field(..., description="Docker image (with tag)")
    env: Dict[str, str] = Field(default_factory=dict, description="Environment variables")
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)

    @field_validator('image')
    @classmethod
    def validate_image(cls, v):
        if ':' not in v:
            raise ValueError('Image must include a tag (e.g., myapp:latest)')
        return v

class PolicyFile(BaseModel):
    """A YAML/JSON document holding scaling policies and alert rules."""
    apiVersion: str = Field("v1", description="Policy file API version")
    kind: PolicyFileKind = PolicyFileKind.SCALING_POLICIES
    services: Dict[str, ServiceSpec] = Field(default_factory=dict, description="Container templates by service name")
    policies: List[PolicySpec] = Field(default_factory=list)
    alertRules: List[AlertRuleSpec] = Field(default_factory=list)
    replaceDefaultAlertRules: bool = Field(False, description="Drop the built-in alert rules before adding these")

    @field_validator('apiVersion')
    @classmethod
    def validate_api_version(cls, v):
        if v not in ['v1']:
            raise ValueError('Unsupported API version')
        return v

    @model_validator(mode="after")
    def unique_ids(self):
        for label, items in (("policy", self.policies), ("alert rule", self.alertRules)):
            seen = set()
            for item in items:
                if item.id in seen:
                    raise ValueError(f'duplicate {label} id {item.id!r}')
                seen.add(item.id)
        return self

    def container_specs(self) -> Dict[str, Dict[str, Any]]:
        """Service templates in the shape DockerOrchestrator expects."""
        return {name: spec.model_dump(exclude_none=True) for name, spec in self.services.items()}

# Configuration validation helpers

def validate_policy_spec(spec_dict: Dict[str, Any]) -> PolicySpec:
    """
    Validate and parse a single policy declaration.

    Raises:
        ValueError: If the declaration is invalid
    """
    try:
        return PolicySpec(**spec_dict)
    except ValidationError as e:
        raise ValueError(f"Invalid scaling policy: {e}")

def validate_policy_file(document: Dict[str, Any]) -> PolicyFile:
    try:
        return PolicyFile(**(document or {}))
    except ValidationError as e:
        raise ValueError(f"Invalid policy file: {e}")

def load_policy_file(path: Union[str, Path]) -> PolicyFile:
    """
    Load and validate a policy file.

    .json files are parsed as JSON, anything else as YAML.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file cannot be parsed or fails validation
    """
    path = Path(path)
    text = path.read_text()
    try:
        if path.suffix.lower() == ".json":
            document = json.loads(text)
        else:
            document = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValueError(f"Could not parse {path}: {e}")
    if document is not None and not isinstance(document, dict):
        raise ValueError(f"{path} must contain a mapping at the top level")
    return validate_policy_file(document)

def get_example_policies() -> Dict[str, Any]:
    """Example policy file covering each scaling strategy."""
    return {
        "apiVersion": "v1",
        "kind": "ScalingPolicies",
        "policies": [
            {
                "id": "lead-scoring-cpu-scaling",
                "name": "Lead Scoring Agent CPU-based Scaling",
                "targetService": "lead-scoring-agent",
                "scaleUpMetric": "autoscaler.instances.cpu_usage",
                "metricTags": {"service": "lead-scoring-agent"},
                "scaleUpThreshold": 70,
                "scaleUpCooldownSeconds": 300,
                "scaleDownThreshold": 30,
                "scaleDownCooldownSeconds": 600,
                "minInstances": 2,
                "maxInstances": 10,
                "evaluationPeriods": 2,
                "periodDurationSeconds": 60,
                "scalingStrategy": "linear",
            },
            {
                "id": "conversation-connection-scaling",
                "name": "Conversation Agent Connection-based Scaling",
                "targetService": "conversation-agent",
                "scaleUpMetric": "autoscaler.instances.connections",
                "metricTags": {"service": "conversation-agent"},
                "scaleUpThreshold": 40,
                "scaleUpCooldownSeconds": 180,
                "scaleUpBy": 2,
                "scaleDownThreshold": 10,
                "scaleDownCooldownSeconds": 600,
                "minInstances": 3,
                "maxInstances": 20,
                "evaluationPeriods": 1,
                "periodDurationSeconds": 30,
                "scalingStrategy": "exponential",
            },
            {
                "id": "email-queue-scaling",
                "name": "Email Agent Queue-based Scaling",
                "targetService": "email-agent",
                "scaleUpMetric": "email.queue_depth",
                "scaleUpThreshold": 100,
                "scaleDownThreshold": 10,
                "minInstances": 2,
                "maxInstances": 8,
                "scalingStrategy": "target_tracking",
                "targetValue": 50,
            },
            {
                "id": "forecasting-schedule-scaling",
                "name": "Forecasting Agent Schedule-based Scaling",
                "targetService": "forecasting-agent",
                "scaleUpMetric": "forecasting.requests_pending",
                "scaleUpThreshold": 10,
                "scaleUpCooldownSeconds": 600,
                "scaleDownThreshold": 2,
                "scaleDownCooldownSeconds": 1200,
                "minInstances": 1,
                "maxInstances": 5,
                "evaluationPeriods": 3,
                "periodDurationSeconds": 120,
            },
        ],
        "alertRules": [
            {
                "id": "email-queue-backlog",
                "name": "Email Queue Backlog",
                "metric": "email.queue_depth",
                "condition": "gt",
                "threshold": 500,
                "severity": "critical",
                "cooldownSeconds": 600,
            },
        ],
    }
