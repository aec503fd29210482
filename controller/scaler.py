"""
Autoscaling logic for managed services.
Evaluates every enabled scaling policy against windows of recorded metrics
and dispatches scale up/down actions to the action executor.
"""

import math
import time
import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from metrics.store import MetricPoint, MetricStore
from .actions import ActionExecutor, ScalingAction, ScalingDirection
from .instances import InstanceRegistry
from .policies import PolicyRegistry, ScalingPolicy, ScalingStrategy

logger = logging.getLogger(__name__)

DECISION_HISTORY_SIZE = 100
EXPONENTIAL_UP_FACTOR = 1.5
EXPONENTIAL_DOWN_FACTOR = 0.7

@dataclass
class ScalingDecision:
    """Result of evaluating one policy."""
    policy_id: str
    service: str
    should_scale: bool
    current_instances: int
    target_instances: int
    reason: str
    action: Optional[ScalingDirection] = None
    action_id: Optional[str] = None
    triggered_by: List[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "service": self.service,
            "should_scale": self.should_scale,
            "action": self.action.value if self.action else None,
            "action_id": self.action_id,
            "current_instances": self.current_instances,
            "target_instances": self.target_instances,
            "reason": self.reason,
            "triggered_by": list(self.triggered_by),
            "timestamp": self.timestamp,
        }

def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))

def compute_target_instances(policy: ScalingPolicy, direction: ScalingDirection, current: int,
                             observed: Optional[float] = None) -> int:
    """
    Desired instance count for a triggered direction, clamped to the policy bounds.
    A scale up never lowers the count and a scale down never raises it.
    """
    direction = ScalingDirection(direction)
    up = direction is ScalingDirection.SCALE_UP
    strategy = policy.scaling_strategy

    if strategy is ScalingStrategy.EXPONENTIAL:
        target = _round_half_up(current * (EXPONENTIAL_UP_FACTOR if up else EXPONENTIAL_DOWN_FACTOR))
    elif strategy is ScalingStrategy.TARGET_TRACKING and observed is not None:
        target = math.ceil(current * observed / policy.target_value)
    else:
        # linear, or target tracking without an observed value
        target = current + policy.scale_up_by if up else current - policy.scale_down_by

    target = max(target, current) if up else min(target, current)
    return max(policy.min_instances, min(policy.max_instances, target))

class ScalingEvaluator:
    def __init__(
        self,
        policies: PolicyRegistry,
        metric_store: MetricStore,
        instances: InstanceRegistry,
        executor: ActionExecutor,
        evaluation_interval_seconds: float = 30.0,
        global_max_instances: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        if evaluation_interval_seconds <= 0:
            raise ValueError("evaluation_interval_seconds must be > 0")
        self.policies = policies
        self.metric_store = metric_store
        self.instances = instances
        self.executor = executor
        self.evaluation_interval_seconds = evaluation_interval_seconds
        self.global_max_instances = global_max_instances
        self.clock = clock

        self._lock = threading.RLock()
        self.last_action_time: Dict[str, float] = {}
        self.decisions: Dict[str, Deque[ScalingDecision]] = defaultdict(
            lambda: deque(maxlen=DECISION_HISTORY_SIZE)
        )
        self.evaluation_errors = 0

        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------- Loop -------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Start the periodic evaluation thread."""
        if self._running:
            logger.warning("Scaling evaluation loop is already running")
            return
        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._evaluation_loop, name="scaling-evaluator", daemon=True)
        self._thread.start()
        logger.info(f"Scaling evaluation loop started ({self.evaluation_interval_seconds}s interval)")

    def stop(self):
        """Stop evaluation ticks. In-flight actions are left to the executor."""
        self._running = False
        self._stop_event.set()
        if self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None
        logger.info("Scaling evaluation loop stopped")

    def _evaluation_loop(self):
        while not self._stop_event.wait(self.evaluation_interval_seconds):
            try:
                self.evaluate_policies()
            except Exception as e:
                logger.error(f"Error in scaling evaluation loop: {e}")

    # ------------------------- Evaluation -------------------------

    def evaluate_policies(self) -> List[ScalingDecision]:
        """Run one evaluation tick over all enabled policies in registration order."""
        decisions = []
        for policy in self.policies.all():
            if not policy.enabled:
                continue
            try:
                decisions.append(self.evaluate_policy(policy))
            except Exception as e:
                with self._lock:
                    self.evaluation_errors += 1
                logger.error(f"Failed to evaluate scaling policy {policy.id}: {e}")
        return decisions

    def evaluate_policy(self, policy: ScalingPolicy) -> ScalingDecision:
        with self._lock:
            now = self.clock()
            current = self.instances.get_service_instance_count(policy.target_service)

            last_action = self.last_action_time.get(policy.id)
            if last_action is not None and now - last_action < policy.cooldown_seconds:
                remaining = policy.cooldown_seconds - (now - last_action)
                return self._no_change(policy, current, now, f"In cooldown period ({remaining:.0f}s remaining)")

            window = (now - policy.evaluation_window_seconds, now)
            up_points = self.metric_store.get_metrics(policy.scale_up_metric, window, policy.metric_tags)
            if policy.scale_down_metric == policy.scale_up_metric:
                down_points = up_points
            else:
                down_points = self.metric_store.get_metrics(policy.scale_down_metric, window, policy.metric_tags)

            direction = None
            trigger_points: List[MetricPoint] = []
            triggered_by: List[str] = []

            if current < policy.max_instances and self._should_scale_up(policy, up_points):
                direction = ScalingDirection.SCALE_UP
                trigger_points = up_points
                triggered_by = [f"{policy.scale_up_metric}>{policy.scale_up_threshold}"]
            elif current > policy.min_instances and self._should_scale_down(policy, down_points):
                direction = ScalingDirection.SCALE_DOWN
                trigger_points = down_points
                triggered_by = [f"{policy.scale_down_metric}<{policy.scale_down_threshold}"]

            if direction is None:
                logger.debug(
                    f"[{policy.id}] No scaling: {len(up_points)} up / {len(down_points)} down samples, "
                    f"{current} instances of {policy.target_service}"
                )
                return self._no_change(policy, current, now, "Metrics within thresholds")

            observed = None
            if trigger_points:
                observed = sum(p.value for p in trigger_points) / len(trigger_points)
            target = compute_target_instances(policy, direction, current, observed)
            if direction is ScalingDirection.SCALE_UP:
                target = self._apply_global_limit(current, target)

            if target == current:
                return self._no_change(
                    policy, current, now, f"{direction.value} triggered but target equals current",
                    triggered_by=triggered_by,
                )

            reason = self._describe(policy, direction, observed)
            action = ScalingAction(
                policy_id=policy.id,
                service=policy.target_service,
                action=direction,
                current_instances=current,
                target_instances=target,
                reason=reason,
                timestamp=now,
            )
            # cooldown starts at trigger time whatever the outcome
            self.last_action_time[policy.id] = now
            decision = ScalingDecision(
                policy_id=policy.id,
                service=policy.target_service,
                should_scale=True,
                current_instances=current,
                target_instances=target,
                reason=reason,
                action=direction,
                action_id=action.id,
                triggered_by=triggered_by,
                timestamp=now,
            )
            self.decisions[policy.id].append(decision)

        logger.info(
            f"[{policy.id}] SCALING {policy.target_service}: {reason}, {current} -> {target}"
        )
        self.executor.submit(action)
        return decision

    def _should_scale_up(self, policy: ScalingPolicy, points: List[MetricPoint]) -> bool:
        if len(points) < policy.evaluation_periods:
            return False
        if policy.custom_conditions and policy.custom_conditions.scale_up:
            return bool(policy.custom_conditions.scale_up(points))
        return self._consecutive_breach(points, policy.evaluation_periods, lambda v: v > policy.scale_up_threshold)

    def _should_scale_down(self, policy: ScalingPolicy, points: List[MetricPoint]) -> bool:
        if len(points) < policy.evaluation_periods:
            return False
        if policy.custom_conditions and policy.custom_conditions.scale_down:
            return bool(policy.custom_conditions.scale_down(points))
        return self._consecutive_breach(points, policy.evaluation_periods, lambda v: v < policy.scale_down_threshold)

    @staticmethod
    def _consecutive_breach(points: List[MetricPoint], periods: int, breached: Callable[[float], bool]) -> bool:
        """True if the last `periods` samples all breach."""
        if len(points) < periods:
            return False
        recent = sorted(points, key=lambda p: p.timestamp)[-periods:]
        return all(breached(p.value) for p in recent)

    def _apply_global_limit(self, current: int, target: int) -> int:
        if self.global_max_instances is None:
            return target
        headroom = self.global_max_instances - self.instances.get_total_instance_count()
        return max(current, min(target, current + max(0, headroom)))

    @staticmethod
    def _describe(policy: ScalingPolicy, direction: ScalingDirection, observed: Optional[float]) -> str:
        if direction is ScalingDirection.SCALE_UP:
            metric, op, threshold = policy.scale_up_metric, ">", policy.scale_up_threshold
        else:
            metric, op, threshold = policy.scale_down_metric, "<", policy.scale_down_threshold
        if observed is None:
            return f"Custom {direction.value} condition met for {metric}"
        return (
            f"{metric} {op} {threshold} for {policy.evaluation_periods} periods "
            f"(mean {observed:.2f}, strategy {policy.scaling_strategy.value})"
        )

    def _no_change(self, policy: ScalingPolicy, current: int, now: float, reason: str,
                   triggered_by: Optional[List[str]] = None) -> ScalingDecision:
        """Must be called with lock held."""
        decision = ScalingDecision(
            policy_id=policy.id,
            service=policy.target_service,
            should_scale=False,
            current_instances=current,
            target_instances=current,
            reason=reason,
            triggered_by=triggered_by or [],
            timestamp=now,
        )
        self.decisions[policy.id].append(decision)
        return decision

    # ------------------------- Inspection -------------------------

    def forget_policy(self, policy_id: str):
        with self._lock:
            self.last_action_time.pop(policy_id, None)
            self.decisions.pop(policy_id, None)

    def get_scaling_history(self, policy_id: str, limit: int = 10) -> List[ScalingDecision]:
        """Most recent decisions for a policy, oldest first."""
        with self._lock:
            decisions = list(self.decisions.get(policy_id, ()))
        return decisions[-limit:] if limit else decisions
