"""
Scaling policy definitions and the in-memory policy registry.
Policies are validated on construction so bad bounds never reach the evaluator.
"""

import logging
import threading
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from metrics.store import MetricPoint

logger = logging.getLogger(__name__)

class PolicyValidationError(ValueError):
    """Raised when a scaling policy has invalid configuration."""
    pass

class UnknownPolicyError(KeyError):
    """Raised when a policy id is not registered."""
    pass

class ScalingStrategy(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    TARGET_TRACKING = "target_tracking"

WindowPredicate = Callable[[List[MetricPoint]], bool]

@dataclass
class CustomConditions:
    """Optional predicates replacing the threshold check for a direction."""
    scale_up: Optional[WindowPredicate] = None
    scale_down: Optional[WindowPredicate] = None

@dataclass
class ScalingPolicy:
    """When and how a service's instance count changes."""
    id: str
    target_service: str
    scale_up_metric: str
    scale_up_threshold: float
    scale_down_threshold: float
    scale_down_metric: Optional[str] = None  # defaults to scale_up_metric
    name: str = ""
    enabled: bool = True
    scale_up_cooldown_seconds: float = 300.0
    scale_up_by: int = 1
    scale_down_cooldown_seconds: float = 600.0
    scale_down_by: int = 1
    min_instances: int = 1
    max_instances: int = 5
    evaluation_periods: int = 2
    period_duration_seconds: float = 60.0
    scaling_strategy: ScalingStrategy = ScalingStrategy.LINEAR
    target_value: Optional[float] = None
    metric_tags: Optional[Dict[str, str]] = None
    custom_conditions: Optional[CustomConditions] = field(default=None, compare=False)

    def __post_init__(self):
        """Validate policy parameters."""
        if not self.id:
            raise PolicyValidationError("policy id is required")
        if not self.target_service:
            raise PolicyValidationError(f"policy {self.id}: target_service is required")
        if not self.scale_up_metric:
            raise PolicyValidationError(f"policy {self.id}: scale_up_metric is required")
        if not self.scale_down_metric:
            self.scale_down_metric = self.scale_up_metric
        if not self.name:
            self.name = self.id

        try:
            self.scaling_strategy = ScalingStrategy(self.scaling_strategy)
        except ValueError:
            raise PolicyValidationError(f"policy {self.id}: unknown scaling strategy {self.scaling_strategy!r}")

        if self.min_instances < 1:
            raise PolicyValidationError(f"policy {self.id}: min_instances must be >= 1")
        if self.max_instances < self.min_instances:
            raise PolicyValidationError(
                f"policy {self.id}: max_instances ({self.max_instances}) must be >= min_instances ({self.min_instances})"
            )
        if self.evaluation_periods < 1:
            raise PolicyValidationError(f"policy {self.id}: evaluation_periods must be >= 1")
        if self.period_duration_seconds <= 0:
            raise PolicyValidationError(f"policy {self.id}: period_duration_seconds must be > 0")
        if self.scale_up_cooldown_seconds < 0 or self.scale_down_cooldown_seconds < 0:
            raise PolicyValidationError(f"policy {self.id}: cooldowns must be >= 0")
        if self.scale_up_by < 1 or self.scale_down_by < 1:
            raise PolicyValidationError(f"policy {self.id}: scale_up_by and scale_down_by must be >= 1")
        if self.scale_up_metric == self.scale_down_metric and self.scale_down_threshold >= self.scale_up_threshold:
            raise PolicyValidationError(
                f"policy {self.id}: scale_down_threshold ({self.scale_down_threshold}) must be < "
                f"scale_up_threshold ({self.scale_up_threshold}) on the same metric"
            )
        if self.scaling_strategy is ScalingStrategy.TARGET_TRACKING:
            if self.target_value is None or self.target_value <= 0:
                raise PolicyValidationError(f"policy {self.id}: target_tracking requires target_value > 0")

    @property
    def cooldown_seconds(self) -> float:
        return max(self.scale_up_cooldown_seconds, self.scale_down_cooldown_seconds)

    @property
    def evaluation_window_seconds(self) -> float:
        return self.evaluation_periods * self.period_duration_seconds

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            if f.name == "custom_conditions":
                continue
            value = getattr(self, f.name)
            data[f.name] = value.value if isinstance(value, Enum) else value
        data["has_custom_conditions"] = self.custom_conditions is not None
        return data

class PolicyRegistry:
    """Thread-safe policy table preserving registration order."""

    def __init__(self):
        self._lock = threading.RLock()
        self._policies: Dict[str, ScalingPolicy] = {}

    def add(self, policy: ScalingPolicy) -> ScalingPolicy:
        if not isinstance(policy, ScalingPolicy):
            raise PolicyValidationError(f"expected ScalingPolicy, got {type(policy).__name__}")
        with self._lock:
            replaced = policy.id in self._policies
            self._policies[policy.id] = policy
        logger.info(
            f"{'Replaced' if replaced else 'Added'} scaling policy {policy.id} for {policy.target_service}: "
            f"min={policy.min_instances}, max={policy.max_instances}, strategy={policy.scaling_strategy.value}"
        )
        return policy

    def update(self, policy_id: str, **changes) -> ScalingPolicy:
        """Apply changes to a policy; the result is re-validated before it replaces the old one."""
        if "id" in changes and changes["id"] != policy_id:
            raise PolicyValidationError("policy id cannot be changed")
        with self._lock:
            policy = self._policies.get(policy_id)
            if policy is None:
                raise UnknownPolicyError(policy_id)
            try:
                updated = replace(policy, **changes)
            except TypeError as e:
                raise PolicyValidationError(f"policy {policy_id}: {e}")
            self._policies[policy_id] = updated
        logger.info(f"Updated scaling policy {policy_id}: {sorted(changes)}")
        return updated

    def remove(self, policy_id: str) -> bool:
        with self._lock:
            removed = self._policies.pop(policy_id, None)
        if removed:
            logger.info(f"Removed scaling policy {policy_id}")
        return removed is not None

    def get(self, policy_id: str) -> Optional[ScalingPolicy]:
        with self._lock:
            return self._policies.get(policy_id)

    def all(self) -> List[ScalingPolicy]:
        with self._lock:
            return list(self._policies.values())

    def for_service(self, service: str) -> List[ScalingPolicy]:
        with self._lock:
            return [p for p in self._policies.values() if p.target_service == service]

    def __len__(self) -> int:
        with self._lock:
            return len(self._policies)
