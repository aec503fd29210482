"""Tests for scaling actions and the action executor."""

import pytest

from events import EventType
from controller.actions import (
    ActionExecutor,
    ActionStatus,
    InvalidActionTransition,
    ScalingAction,
    ScalingDirection,
)
from controller.instances import InstanceStatus, ServiceInstance
from conftest import FailingOrchestrator, InlineOrchestrator


def make_action(service="api", current=1, target=2, direction=None, clock=None, **kwargs):
    if direction is None:
        direction = ScalingDirection.SCALE_UP if target >= current else ScalingDirection.SCALE_DOWN
    params = dict(
        policy_id="api-cpu", service=service, action=direction,
        current_instances=current, target_instances=target, reason="test",
    )
    if clock is not None:
        params["timestamp"] = clock()
    params.update(kwargs)
    return ScalingAction(**params)


def collect(event_bus):
    events = []
    event_bus.subscribe_all(events.append)
    return events


class TestScalingAction:
    def test_defaults(self):
        action = make_action()
        assert action.status is ActionStatus.PENDING
        assert action.id.startswith("action-")
        assert action.is_terminal is False

    def test_lifecycle(self):
        action = make_action()
        action.transition(ActionStatus.EXECUTING, 10.0)
        action.transition(ActionStatus.COMPLETED, 12.0)
        assert action.started_at == 10.0
        assert action.completed_at == 12.0
        assert action.is_terminal

    @pytest.mark.parametrize("path", [
        ["completed"],
        ["executing", "pending"],
        ["executing", "completed", "failed"],
        ["failed", "executing"],
    ])
    def test_illegal_transitions(self, path):
        action = make_action()
        *legal, illegal = path
        for status in legal:
            action.transition(status, 1.0)
        with pytest.raises(InvalidActionTransition):
            action.transition(illegal, 2.0)

    def test_to_dict_and_event(self):
        action = make_action(current=2, target=4)
        data = action.to_dict()
        assert data["action"] == "scale_up"
        assert data["status"] == "pending"
        event = action.to_event(EventType.SCALING_ACTION_STARTED)
        assert event.action_id == action.id
        assert event.target_instances == 4


class TestActionExecutor:
    def test_scale_up_registers_instances(self, executor, instances, orchestrator, event_bus, clock):
        events = collect(event_bus)
        action = make_action(current=0, target=2, clock=clock)
        executor.submit(action).result(timeout=5)

        assert action.status is ActionStatus.COMPLETED
        registered = instances.get_service_instances("api")
        assert [i.id for i in registered] == ["api-1", "api-2"]
        assert all(i.status is InstanceStatus.STARTING for i in registered)
        assert registered[0].metadata["action_id"] == action.id
        assert orchestrator.calls == [("add", "api", 2)]
        assert [e.event_type for e in events] == [
            EventType.SCALING_ACTION_STARTED,
            EventType.SCALING_ACTION_COMPLETED,
        ]

    def test_records_action_metrics(self, executor, metric_store, clock):
        executor.submit(make_action(clock=clock)).result(timeout=5)
        metric_store.flush()
        tags = {"service": "api", "action": "scale_up"}
        assert len(metric_store.get_metrics("autoscaler.actions.triggered", tags=tags)) == 1
        assert len(metric_store.get_metrics("autoscaler.actions.completed", tags=tags)) == 1
        assert len(metric_store.get_metrics("autoscaler.actions.duration", tags=tags)) == 1

    def test_delta_uses_live_count(self, executor, instances, orchestrator, clock):
        for n in range(2):
            instances.register_service_instance(ServiceInstance(id=f"seed-{n}", service="api", status="running"))
        # recorded current is stale, registry already holds 2
        action = make_action(current=1, target=2, clock=clock)
        executor.submit(action).result(timeout=5)
        assert action.status is ActionStatus.COMPLETED
        assert orchestrator.calls == []

    def test_failure_publishes_failed_event(self, instances, event_bus, metric_store, clock):
        events = collect(event_bus)
        executor = ActionExecutor(instances, FailingOrchestrator(), event_bus, metric_store, clock=clock)
        action = make_action(clock=clock)
        try:
            executor.submit(action).result(timeout=5)
        finally:
            executor.shutdown(grace_seconds=5)

        assert action.status is ActionStatus.FAILED
        assert "no capacity for api" in action.error
        assert events[-1].event_type is EventType.SCALING_ACTION_FAILED
        assert events[-1].error == action.error
        assert instances.get_service_instance_count("api") == 0

    def test_partial_start_fails(self, instances, event_bus, clock):
        class ShortOrchestrator(InlineOrchestrator):
            def add_instances(self, service, count):
                return super().add_instances(service, count - 1)

        executor = ActionExecutor(instances, ShortOrchestrator(), event_bus, clock=clock)
        action = make_action(current=0, target=3, clock=clock)
        try:
            executor.submit(action).result(timeout=5)
        finally:
            executor.shutdown(grace_seconds=5)
        assert action.status is ActionStatus.FAILED
        assert instances.get_service_instance_count("api") == 2

    def test_scale_down_picks_unhealthy_then_newest(self, executor, instances, orchestrator, clock):
        specs = [("old-sick", 100.0, "unhealthy"), ("mid", 200.0, "healthy"), ("new", 300.0, "healthy")]
        for instance_id, started, health in specs:
            instances.register_service_instance(ServiceInstance(
                id=instance_id, service="api", status="running", start_time=started, health_status=health,
            ))
        action = make_action(current=3, target=1, clock=clock)
        executor.submit(action).result(timeout=5)

        assert action.status is ActionStatus.COMPLETED
        assert orchestrator.removed == ["old-sick", "new"]
        assert [i.id for i in instances.get_service_instances("api")] == ["mid"]

    def test_failed_removal_leaves_victims_stopping(self, instances, event_bus, clock):
        instances.register_service_instance(ServiceInstance(id="a", service="api", status="running", start_time=1.0))
        instances.register_service_instance(ServiceInstance(id="b", service="api", status="running", start_time=2.0))
        executor = ActionExecutor(instances, FailingOrchestrator(), event_bus, clock=clock)
        action = make_action(current=2, target=1, clock=clock)
        try:
            executor.submit(action).result(timeout=5)
        finally:
            executor.shutdown(grace_seconds=5)

        assert action.status is ActionStatus.FAILED
        assert instances.get_instance("b", "api").status is InstanceStatus.STOPPING
        assert instances.get_service_instance_count("api") == 1

    def test_bounded_concurrency(self, instances, event_bus, clock):
        orchestrator = InlineOrchestrator(delay=0.1)
        executor = ActionExecutor(instances, orchestrator, event_bus, max_concurrent_actions=2, clock=clock)
        actions = [make_action(service=f"svc-{n}", current=0, target=1, clock=clock) for n in range(6)]
        try:
            futures = [executor.submit(a) for a in actions]
            for future in futures:
                future.result(timeout=10)
        finally:
            executor.shutdown(grace_seconds=5)

        assert all(a.status is ActionStatus.COMPLETED for a in actions)
        assert orchestrator.peak_active <= 2
        assert executor.peak_in_flight <= 2

    def test_finished_actions_expire_after_ttl(self, executor, clock):
        action = make_action(clock=clock)
        executor.submit(action).result(timeout=5)
        assert executor.get_active_actions() == [action]
        assert executor.get_action(action.id) is action

        clock.advance(59)
        assert executor.get_active_actions() == [action]
        clock.advance(1)
        assert executor.get_active_actions() == []
        assert executor.get_action(action.id) is None

    def test_submit_after_shutdown_fails_action(self, instances, event_bus, clock):
        events = collect(event_bus)
        executor = ActionExecutor(instances, InlineOrchestrator(), event_bus, clock=clock)
        assert executor.shutdown(grace_seconds=1) is True

        action = make_action(clock=clock)
        assert executor.submit(action) is None
        assert action.status is ActionStatus.FAILED
        assert events[-1].event_type is EventType.SCALING_ACTION_FAILED

    def test_shutdown_fails_queued_actions(self, instances, event_bus, clock):
        executor = ActionExecutor(instances, InlineOrchestrator(delay=0.3), event_bus,
                                  max_concurrent_actions=1, clock=clock)
        first = make_action(service="a", current=0, target=1, clock=clock)
        second = make_action(service="b", current=0, target=1, clock=clock)
        executor.submit(first)
        executor.submit(second)

        executor.shutdown(grace_seconds=0)
        assert second.status is ActionStatus.FAILED
        assert "shut down" in second.error

    def test_wait_idle(self, executor, clock):
        executor.submit(make_action(clock=clock))
        assert executor.wait_idle(timeout=5) is True
        assert executor.in_flight_count() == 0

    def test_rejects_zero_concurrency(self, instances):
        with pytest.raises(ValueError):
            ActionExecutor(instances, InlineOrchestrator(), max_concurrent_actions=0)
