"""
Scaling actions and their asynchronous execution.

Actions move pending -> executing -> completed|failed on a bounded worker
pool, update the instance registry and publish lifecycle events. Finished
actions stay queryable for a short TTL and are then dropped.
"""

import time
import uuid
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from events import EventBus, EventType, ScalingActionEvent
from .instances import HealthStatus, InstanceRegistry, InstanceStatus, ServiceInstance
from .orchestrator import OrchestrationError, Orchestrator

logger = logging.getLogger(__name__)

class ScalingDirection(str, Enum):
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"

class ActionStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

TERMINAL_STATUSES = (ActionStatus.COMPLETED, ActionStatus.FAILED)

# pending -> failed only happens when the executor refuses or drops the action before it starts
_ALLOWED_TRANSITIONS = {
    ActionStatus.PENDING: (ActionStatus.EXECUTING, ActionStatus.FAILED),
    ActionStatus.EXECUTING: (ActionStatus.COMPLETED, ActionStatus.FAILED),
}

class InvalidActionTransition(RuntimeError):
    pass

def new_action_id() -> str:
    return f"action-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"

@dataclass
class ScalingAction:
    policy_id: str
    service: str
    action: ScalingDirection
    current_instances: int
    target_instances: int
    reason: str
    id: str = field(default_factory=new_action_id)
    timestamp: float = field(default_factory=time.time)
    status: ActionStatus = ActionStatus.PENDING
    error: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def __post_init__(self):
        self.action = ScalingDirection(self.action)
        self.status = ActionStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: ActionStatus, at: float, error: Optional[str] = None):
        status = ActionStatus(status)
        if status not in _ALLOWED_TRANSITIONS.get(self.status, ()):
            raise InvalidActionTransition(f"{self.id}: {self.status.value} -> {status.value}")
        self.status = status
        if status is ActionStatus.EXECUTING:
            self.started_at = at
        elif status in TERMINAL_STATUSES:
            self.completed_at = at
            self.error = error

    def to_event(self, event_type: EventType) -> ScalingActionEvent:
        return ScalingActionEvent(
            event_type=event_type,
            action_id=self.id,
            policy_id=self.policy_id,
            service=self.service,
            action=self.action.value,
            current_instances=self.current_instances,
            target_instances=self.target_instances,
            status=self.status.value,
            reason=self.reason,
            timestamp=self.timestamp,
            error=self.error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "policy_id": self.policy_id,
            "service": self.service,
            "action": self.action.value,
            "current_instances": self.current_instances,
            "target_instances": self.target_instances,
            "reason": self.reason,
            "timestamp": self.timestamp,
            "status": self.status.value,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

class ActionExecutor:
    def __init__(
        self,
        instances: InstanceRegistry,
        orchestrator: Orchestrator,
        event_bus: Optional[EventBus] = None,
        metric_store=None,
        max_concurrent_actions: int = 3,
        action_ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        if max_concurrent_actions < 1:
            raise ValueError("max_concurrent_actions must be >= 1")
        self.instances = instances
        self.orchestrator = orchestrator
        self.event_bus = event_bus or EventBus()
        self.metric_store = metric_store
        self.max_concurrent_actions = max_concurrent_actions
        self.action_ttl_seconds = action_ttl_seconds
        self.clock = clock

        self._lock = threading.RLock()
        self._service_locks: Dict[str, threading.Lock] = {}
        self._pool = ThreadPoolExecutor(max_workers=max_concurrent_actions, thread_name_prefix="scaling-action")
        self._actions: Dict[str, ScalingAction] = {}
        self._futures: Dict[str, Future] = {}
        self._accepting = True
        self._in_flight = 0
        self.peak_in_flight = 0

    def submit(self, action: ScalingAction) -> Optional[Future]:
        """Queue an action and return immediately. Returns None if the executor is shut down."""
        with self._lock:
            self._prune()
            self._actions[action.id] = action
            if not self._accepting:
                self._fail_unstarted(action, "executor is shut down")
                return None
            future = self._pool.submit(self.execute_action, action)
            self._futures[action.id] = future

        self._record("autoscaler.actions.triggered", {"service": action.service, "action": action.action.value})
        logger.info(
            f"Queued scaling action {action.id}: {action.service} {action.action.value} "
            f"{action.current_instances} -> {action.target_instances}"
        )
        return future

    def execute_action(self, action: ScalingAction) -> ScalingAction:
        """Run one action to a terminal state. Never raises."""
        # under the lock so shutdown never fails an action that is starting
        with self._lock:
            try:
                action.transition(ActionStatus.EXECUTING, self.clock())
            except InvalidActionTransition as e:
                logger.error(f"Refusing to execute action: {e}")
                return action
            self._in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self._in_flight)

        tags = {"service": action.service, "action": action.action.value}
        stop_timer = self.metric_store.start_timer("autoscaler.actions.duration", tags) if self.metric_store else None
        self.event_bus.publish(action.to_event(EventType.SCALING_ACTION_STARTED))
        logger.info(
            f"Executing scaling action {action.id}: {action.service} {action.action.value} "
            f"to {action.target_instances} instances"
        )

        try:
            self._apply(action)
            action.transition(ActionStatus.COMPLETED, self.clock())
            self._record("autoscaler.actions.completed", tags)
            self.event_bus.publish(action.to_event(EventType.SCALING_ACTION_COMPLETED))
            logger.info(
                f"Scaling action {action.id} completed for {action.service} "
                f"in {action.completed_at - action.timestamp:.2f}s"
            )
        except Exception as e:
            action.transition(ActionStatus.FAILED, self.clock(), error=str(e) or e.__class__.__name__)
            self._record("autoscaler.actions.failed", tags)
            self.event_bus.publish(action.to_event(EventType.SCALING_ACTION_FAILED))
            logger.error(f"Scaling action {action.id} failed for {action.service}: {action.error}")
        finally:
            if stop_timer:
                stop_timer()
            with self._lock:
                self._in_flight -= 1
                self._futures.pop(action.id, None)
        return action

    def _apply(self, action: ScalingAction):
        service = action.service
        with self._service_lock(service):
            current = self.instances.get_service_instance_count(service)
            delta = action.target_instances - current
            if delta > 0:
                self._start_instances(action, delta)
            elif delta < 0:
                self._stop_instances(action, -delta)
            else:
                logger.info(f"{service} already at {current} instances, nothing to do for {action.id}")

    def _start_instances(self, action: ScalingAction, count: int):
        started = self.orchestrator.add_instances(action.service, count) or []
        for instance_id in started:
            self.instances.register_service_instance(ServiceInstance(
                id=instance_id,
                service=action.service,
                status=InstanceStatus.STARTING,
                start_time=self.clock(),
                metadata={"action_id": action.id},
            ))
        if len(started) < count:
            raise OrchestrationError(f"started {len(started)} of {count} requested instances of {action.service}")

    def _stop_instances(self, action: ScalingAction, count: int):
        victims = self._pick_victims(action.service, count)
        for instance in victims:
            self.instances.update_instance_status(instance.id, action.service, InstanceStatus.STOPPING)

        # no rollback: a failed removal leaves the victims in stopping
        self.orchestrator.remove_instances(action.service, [i.id for i in victims])
        for instance in victims:
            self.instances.unregister_service_instance(instance.id, action.service)

    def _pick_victims(self, service: str, count: int) -> List[ServiceInstance]:
        """Unhealthy instances first, then the most recently started."""
        active = [i for i in self.instances.get_service_instances(service) if i.is_active]
        active.sort(key=lambda i: (i.health_status is not HealthStatus.UNHEALTHY, -i.start_time))
        return active[:count]

    def get_active_actions(self) -> List[ScalingAction]:
        """Actions that are in progress or finished less than the TTL ago."""
        with self._lock:
            self._prune()
            return list(self._actions.values())

    def get_action(self, action_id: str) -> Optional[ScalingAction]:
        with self._lock:
            return self._actions.get(action_id)

    def in_flight_count(self) -> int:
        with self._lock:
            return sum(1 for a in self._actions.values() if not a.is_terminal)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted action is terminal. Returns False on timeout."""
        with self._lock:
            futures = list(self._futures.values())
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def shutdown(self, grace_seconds: float = 30.0) -> bool:
        """
        Stop accepting actions and wait up to grace_seconds for in-flight ones.
        Returns True if everything reached a terminal state in time.
        """
        with self._lock:
            self._accepting = False
            futures = list(self._futures.values())

        if futures:
            logger.info(f"Waiting for {len(futures)} scaling action(s) to finish (grace {grace_seconds}s)")
        done, not_done = wait(futures, timeout=grace_seconds)
        self._pool.shutdown(wait=False, cancel_futures=True)

        with self._lock:
            for action in self._actions.values():
                if action.status is ActionStatus.PENDING:
                    self._fail_unstarted(action, "executor shut down before the action started")

        if not_done:
            logger.warning(f"{len(not_done)} scaling action(s) still running after {grace_seconds}s grace period")
        logger.info("Action executor shut down")
        return not not_done

    def _fail_unstarted(self, action: ScalingAction, reason: str):
        """Must be called with lock held."""
        action.transition(ActionStatus.FAILED, self.clock(), error=reason)
        self._record("autoscaler.actions.failed", {"service": action.service, "action": action.action.value})
        self.event_bus.publish(action.to_event(EventType.SCALING_ACTION_FAILED))
        logger.warning(f"Scaling action {action.id} dropped: {reason}")

    def _prune(self):
        """Drop terminal actions older than the TTL (must be called with lock held)."""
        now = self.clock()
        expired = [
            action_id for action_id, action in self._actions.items()
            if action.is_terminal and action.completed_at is not None
            and now - action.completed_at >= self.action_ttl_seconds
        ]
        for action_id in expired:
            del self._actions[action_id]

    def _service_lock(self, service: str) -> threading.Lock:
        with self._lock:
            return self._service_locks.setdefault(service, threading.Lock())

    def _record(self, name: str, tags: Dict[str, str]):
        if self.metric_store is not None:
            self.metric_store.increment(name, 1, tags)
