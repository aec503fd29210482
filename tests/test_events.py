"""Tests for the in-process event bus."""

from events import AlertEvent, EventBus, EventType, ScalingActionEvent


def _alert():
    return AlertEvent(
        rule_id="r", rule_name="r", metric="m", value=1.0, threshold=0.5,
        condition="gt", severity="warning", timestamp=0.0,
    )


def _action_event(event_type):
    return ScalingActionEvent(
        event_type=event_type, action_id="a", policy_id="p", service="s", action="scale_up",
        current_instances=1, target_instances=2, status="executing", reason="test", timestamp=0.0,
    )


class TestEventBus:
    def test_routes_by_type(self):
        bus = EventBus()
        alerts, started = [], []
        bus.subscribe(EventType.ALERT, alerts.append)
        bus.subscribe(EventType.SCALING_ACTION_STARTED, started.append)

        bus.publish(_alert())
        bus.publish(_action_event(EventType.SCALING_ACTION_STARTED))
        bus.publish(_action_event(EventType.SCALING_ACTION_COMPLETED))

        assert len(alerts) == 1
        assert len(started) == 1

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        remove = bus.subscribe("alert", received.append)
        remove()
        assert bus.publish(_alert()) == 0
        assert received == []

    def test_subscribe_all(self):
        bus = EventBus()
        received = []
        remove = bus.subscribe_all(received.append)
        assert bus.handler_count() == len(EventType)
        bus.publish(_alert())
        bus.publish(_action_event(EventType.SCALING_ACTION_FAILED))
        assert len(received) == 2
        remove()
        assert bus.handler_count() == 0

    def test_failing_handler_is_isolated(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise ValueError("nope")

        bus.subscribe(EventType.ALERT, broken)
        bus.subscribe(EventType.ALERT, received.append)
        assert bus.publish(_alert()) == 1
        assert len(received) == 1
