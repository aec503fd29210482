"""Tests for the AutoScalerService facade and manual scaling."""

import pytest

from controller.actions import ScalingDirection
from controller.instances import InstanceStatus, ServiceInstance
from controller.manager import MANUAL_POLICY_ID
from controller.policies import ScalingPolicy


def make_policy(policy_id="api-cpu", service="api", min_instances=2, max_instances=6):
    return ScalingPolicy(
        id=policy_id, target_service=service, scale_up_metric="cpu",
        scale_up_threshold=70, scale_down_threshold=30,
        min_instances=min_instances, max_instances=max_instances,
    )


def seed(service_obj, service, count):
    for n in range(count):
        service_obj.register_service_instance(ServiceInstance(
            id=f"{service}-seed-{n}", service=service, status=InstanceStatus.RUNNING,
        ))


class TestManualScaling:
    def test_set_desired_instances(self, service, executor):
        service.add_scaling_policy(make_policy())
        seed(service, "api", 2)

        action = service.set_desired_instances("api", 4)
        assert action.policy_id == MANUAL_POLICY_ID
        assert action.action is ScalingDirection.SCALE_UP
        assert (action.current_instances, action.target_instances) == (2, 4)
        assert executor.wait_idle(timeout=5)
        assert service.get_service_instance_count("api") == 4

    def test_clamped_to_policy_bounds(self, service, executor):
        service.add_scaling_policy(make_policy())
        seed(service, "api", 3)
        assert service.set_desired_instances("api", 50).target_instances == 6
        assert executor.wait_idle(timeout=5)
        assert service.set_desired_instances("api", 0).target_instances == 2

    def test_no_change_returns_none(self, service):
        service.add_scaling_policy(make_policy())
        seed(service, "api", 2)
        assert service.set_desired_instances("api", 2) is None
        assert service.set_desired_instances("api", 1) is None
        assert service.get_active_scaling_actions() == []

    def test_bounds_without_policy(self, service):
        assert service.get_instance_bounds("unmanaged") == (1, 50)
        seed(service, "unmanaged", 1)
        assert service.set_desired_instances("unmanaged", 0) is None

    def test_bounds_intersect_policies(self, service):
        service.add_scaling_policy(make_policy("a", min_instances=2, max_instances=8))
        service.add_scaling_policy(make_policy("b", min_instances=3, max_instances=6))
        assert service.get_instance_bounds("api") == (3, 6)

    def test_disjoint_bounds_use_lowest_max(self, service):
        service.add_scaling_policy(make_policy("a", min_instances=1, max_instances=2))
        service.add_scaling_policy(make_policy("b", min_instances=4, max_instances=6))
        assert service.get_instance_bounds("api") == (2, 2)

    def test_step_scaling(self, service, executor):
        seed(service, "web", 2)
        assert service.scale_up("web", 2).target_instances == 4
        assert executor.wait_idle(timeout=5)
        assert service.scale_down("web").target_instances == 3
        with pytest.raises(ValueError):
            service.scale_up("web", 0)
        with pytest.raises(ValueError):
            service.scale_down("web", -1)


class TestServiceFacade:
    def test_remove_policy_forgets_history(self, service, evaluator):
        service.add_scaling_policy(make_policy())
        service.evaluate_now()
        assert service.get_scaling_history("api-cpu")
        assert service.remove_scaling_policy("api-cpu") is True
        assert service.get_scaling_history("api-cpu") == []
        assert service.remove_scaling_policy("api-cpu") is False

    def test_update_policy(self, service):
        service.add_scaling_policy(make_policy())
        service.update_scaling_policy("api-cpu", enabled=False)
        assert service.get_scaling_policy("api-cpu").enabled is False
        assert service.evaluate_now() == []

    def test_auto_scaling_toggle(self, service):
        assert service.auto_scaling_enabled is False
        service.enable_auto_scaling()
        assert service.auto_scaling_enabled is True
        service.disable_auto_scaling()
        assert service.auto_scaling_enabled is False

    def test_health_check(self, service, executor):
        service.add_scaling_policy(make_policy())
        service.add_scaling_policy(make_policy("off", service="web"))
        service.update_scaling_policy("off", enabled=False)
        seed(service, "api", 2)

        health = service.health_check()
        assert health["status"] == "healthy"
        details = health["details"]
        assert details["policies"] == 2
        assert details["enabled_policies"] == 1
        assert details["services"] == ["api"]
        assert details["total_instances"] == 2
        assert details["active_actions"] == 0
        assert details["evaluation_errors"] == 0
        assert "buffered_metrics" in details["metric_store"]
