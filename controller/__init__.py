"""
Telescaler Controller Package

This package contains the core components of the Telescaler autoscaling
control loop.

Components:
- PolicyRegistry: Scaling policy storage and validation
- ScalingEvaluator: Periodic scaling decision engine
- ActionExecutor: Bounded asynchronous execution of scaling actions
- InstanceRegistry: Live service instance bookkeeping
- Orchestrator: Integration point that creates and removes instances
- AutoScalerService: Public scaling API including manual overrides
"""

from .policies import (
    ScalingPolicy, ScalingStrategy, CustomConditions, PolicyRegistry,
    PolicyValidationError, UnknownPolicyError
)
from .instances import (
    InstanceRegistry, ServiceInstance, InstanceStatus, HealthStatus, ResourceUsage
)
from .actions import (
    ActionExecutor, ScalingAction, ScalingDirection, ActionStatus, InvalidActionTransition
)
from .orchestrator import (
    Orchestrator, SimulatedOrchestrator, DockerOrchestrator, OrchestrationError
)
from .scaler import ScalingEvaluator, ScalingDecision, compute_target_instances
from .manager import AutoScalerService
from .config import Settings

__version__ = "1.0.0"

__all__ = [
    "ScalingPolicy",
    "ScalingStrategy",
    "CustomConditions",
    "PolicyRegistry",
    "PolicyValidationError",
    "UnknownPolicyError",
    "InstanceRegistry",
    "ServiceInstance",
    "InstanceStatus",
    "HealthStatus",
    "ResourceUsage",
    "ActionExecutor",
    "ScalingAction",
    "ScalingDirection",
    "ActionStatus",
    "InvalidActionTransition",
    "Orchestrator",
    "SimulatedOrchestrator",
    "DockerOrchestrator",
    "OrchestrationError",
    "ScalingEvaluator",
    "ScalingDecision",
    "compute_target_instances",
    "AutoScalerService",
    "Settings",
]
