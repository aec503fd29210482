"""
Public scaling API of the controller.
Wraps the policy registry, evaluator, executor and instance registry behind one
facade and implements manual scaling overrides.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from events import EventBus
from metrics.alerts import AlertEngine
from metrics.store import MetricStore
from .actions import ActionExecutor, ScalingAction, ScalingDirection
from .instances import HealthStatus, InstanceRegistry, ResourceUsage, ServiceInstance
from .policies import PolicyRegistry, ScalingPolicy
from .scaler import ScalingDecision, ScalingEvaluator

logger = logging.getLogger(__name__)

MANUAL_POLICY_ID = "manual"

class AutoScalerService:
    def __init__(
        self,
        metric_store: MetricStore,
        alert_engine: AlertEngine,
        event_bus: EventBus,
        policies: PolicyRegistry,
        instances: InstanceRegistry,
        executor: ActionExecutor,
        evaluator: ScalingEvaluator,
        global_max_instances: int = 50,
    ):
        self.metric_store = metric_store
        self.alert_engine = alert_engine
        self.event_bus = event_bus
        self.policies = policies
        self.instances = instances
        self.executor = executor
        self.evaluator = evaluator
        self.global_max_instances = global_max_instances

    # ------------------------- Policies -------------------------

    def add_scaling_policy(self, policy: ScalingPolicy) -> ScalingPolicy:
        return self.policies.add(policy)

    def update_scaling_policy(self, policy_id: str, **changes) -> ScalingPolicy:
        return self.policies.update(policy_id, **changes)

    def remove_scaling_policy(self, policy_id: str) -> bool:
        removed = self.policies.remove(policy_id)
        if removed:
            self.evaluator.forget_policy(policy_id)
        return removed

    def get_scaling_policy(self, policy_id: str) -> Optional[ScalingPolicy]:
        return self.policies.get(policy_id)

    def get_all_policies(self) -> List[ScalingPolicy]:
        return self.policies.all()

    # ------------------------- Manual overrides -------------------------

    def scale_up(self, service: str, count: int = 1) -> Optional[ScalingAction]:
        if count < 1:
            raise ValueError("count must be >= 1")
        current = self.instances.get_service_instance_count(service)
        return self.set_desired_instances(service, current + count)

    def scale_down(self, service: str, count: int = 1) -> Optional[ScalingAction]:
        if count < 1:
            raise ValueError("count must be >= 1")
        current = self.instances.get_service_instance_count(service)
        return self.set_desired_instances(service, current - count)

    def set_desired_instances(self, service: str, desired: int) -> Optional[ScalingAction]:
        """
        Manually scale a service, bypassing policy evaluation.

        The target is clamped to the service's bounds. Returns None when the
        clamped target equals the current instance count.
        """
        current = self.instances.get_service_instance_count(service)
        low, high = self.get_instance_bounds(service)
        target = min(high, max(low, int(desired)))
        if target != desired:
            logger.warning(f"Manual scaling of {service} to {desired} clamped to {target} (bounds {low}-{high})")

        if target == current:
            logger.info(f"Manual scaling of {service}: already at {current} instances")
            return None

        action = ScalingAction(
            policy_id=MANUAL_POLICY_ID,
            service=service,
            action=ScalingDirection.SCALE_UP if target > current else ScalingDirection.SCALE_DOWN,
            current_instances=current,
            target_instances=target,
            reason=f"Manual scaling to {target} instances",
            timestamp=self.executor.clock(),
        )
        self.executor.submit(action)
        return action

    def get_instance_bounds(self, service: str) -> Tuple[int, int]:
        """Intersection of the bounds of all policies targeting service."""
        policies = self.policies.for_service(service)
        if not policies:
            return 1, self.global_max_instances
        low = max(p.min_instances for p in policies)
        high = min(p.max_instances for p in policies)
        if low > high:
            logger.warning(f"Policies for {service} have disjoint bounds, using the lowest maximum {high}")
            low = high
        return low, high

    # ------------------------- Instances -------------------------

    def register_service_instance(self, instance: ServiceInstance) -> ServiceInstance:
        return self.instances.register_service_instance(instance)

    def unregister_service_instance(self, instance_id: str, service: str) -> bool:
        return self.instances.unregister_service_instance(instance_id, service)

    def update_instance_health(self, instance_id: str, service: str, health_status: HealthStatus) -> bool:
        return self.instances.update_instance_health(instance_id, service, health_status)

    def update_instance_resource_usage(self, instance_id: str, service: str, usage: ResourceUsage) -> bool:
        return self.instances.update_instance_resource_usage(instance_id, service, usage)

    def get_service_instance_count(self, service: str) -> int:
        return self.instances.get_service_instance_count(service)

    def get_service_instances(self, service: str) -> List[ServiceInstance]:
        return self.instances.get_service_instances(service)

    def get_healthy_instance_count(self, service: str) -> int:
        return self.instances.get_healthy_instance_count(service)

    # ------------------------- Actions & evaluation -------------------------

    def get_active_scaling_actions(self) -> List[ScalingAction]:
        return self.executor.get_active_actions()

    def get_scaling_history(self, policy_id: str, limit: int = 10) -> List[ScalingDecision]:
        return self.evaluator.get_scaling_history(policy_id, limit)

    def evaluate_now(self) -> List[ScalingDecision]:
        return self.evaluator.evaluate_policies()

    def enable_auto_scaling(self):
        self.evaluator.start()

    def disable_auto_scaling(self):
        self.evaluator.stop()

    @property
    def auto_scaling_enabled(self) -> bool:
        return self.evaluator.running

    def health_check(self) -> Dict[str, Any]:
        store_health = self.metric_store.health_check()
        actions = self.executor.get_active_actions()
        return {
            "status": store_health["status"],
            "details": {
                "auto_scaling_enabled": self.auto_scaling_enabled,
                "policies": len(self.policies),
                "enabled_policies": sum(1 for p in self.policies.all() if p.enabled),
                "services": self.instances.get_services(),
                "total_instances": self.instances.get_total_instance_count(),
                "active_actions": sum(1 for a in actions if not a.is_terminal),
                "evaluation_errors": self.evaluator.evaluation_errors,
                "metric_store": store_health["details"],
            },
        }
