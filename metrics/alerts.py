"""
Threshold alerting over recorded metric points.
Rules are evaluated inline on every record() call, so checking must stay cheap.
"""

import time
import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional

from events import AlertEvent, EventBus

logger = logging.getLogger(__name__)

class AlertCondition(str, Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"

class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

@dataclass
class AlertRule:
    """A threshold condition over a single metric."""
    id: str
    name: str
    metric: str
    condition: AlertCondition
    threshold: float
    severity: AlertSeverity = AlertSeverity.WARNING
    enabled: bool = True
    cooldown_seconds: float = 300.0

    def __post_init__(self):
        if not self.id:
            raise ValueError("Alert rule id is required")
        if not self.metric:
            raise ValueError(f"Alert rule {self.id} must name a metric")
        self.condition = AlertCondition(self.condition)
        self.severity = AlertSeverity(self.severity)
        self.threshold = float(self.threshold)
        if self.cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must be >= 0")

    def matches(self, value: float) -> bool:
        """Return True if value satisfies the rule's condition."""
        if self.condition is AlertCondition.GT:
            return value > self.threshold
        if self.condition is AlertCondition.GTE:
            return value >= self.threshold
        if self.condition is AlertCondition.LT:
            return value < self.threshold
        if self.condition is AlertCondition.LTE:
            return value <= self.threshold
        return value == self.threshold

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "metric": self.metric,
            "condition": self.condition.value,
            "threshold": self.threshold,
            "severity": self.severity.value,
            "enabled": self.enabled,
            "cooldown_seconds": self.cooldown_seconds,
        }

def get_default_alert_rules() -> List[AlertRule]:
    """Business default rules shipped with the engine."""
    return [
        AlertRule(
            id="high-response-time",
            name="High Service Response Time",
            metric="service.response_time",
            condition=AlertCondition.GT,
            threshold=5000,  # ms
            severity=AlertSeverity.WARNING,
            cooldown_seconds=300,
        ),
        AlertRule(
            id="high-error-rate",
            name="High Error Rate",
            metric="errors.rate",
            condition=AlertCondition.GT,
            threshold=0.05,
            severity=AlertSeverity.CRITICAL,
            cooldown_seconds=600,
        ),
        AlertRule(
            id="high-memory-usage",
            name="High Memory Usage",
            metric="system.memory_usage",
            condition=AlertCondition.GT,
            threshold=0.85,
            severity=AlertSeverity.WARNING,
            cooldown_seconds=300,
        ),
        AlertRule(
            id="high-cpu-usage",
            name="High CPU Usage",
            metric="system.cpu_usage",
            condition=AlertCondition.GT,
            threshold=0.80,
            severity=AlertSeverity.WARNING,
            cooldown_seconds=300,
        ),
        AlertRule(
            id="external-api-latency",
            name="External API High Latency",
            metric="external_api.latency",
            condition=AlertCondition.GT,
            threshold=10000,  # ms
            severity=AlertSeverity.CRITICAL,
            cooldown_seconds=300,
        ),
    ]

class AlertEngine:
    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        rules: Optional[List[AlertRule]] = None,
        load_defaults: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self._lock = threading.RLock()
        self.event_bus = event_bus or EventBus()
        self.clock = clock

        self._rules: Dict[str, AlertRule] = {}
        # metric name -> rule id -> rule, so check() is a single lookup
        self._rules_by_metric: Dict[str, Dict[str, AlertRule]] = {}
        self._last_fired: Dict[str, float] = {}
        self.alerts_fired = 0

        initial = rules if rules is not None else (get_default_alert_rules() if load_defaults else [])
        for rule in initial:
            self.add_alert_rule(rule)

    def add_alert_rule(self, rule: AlertRule) -> AlertRule:
        """Add or replace a rule keyed by its id."""
        with self._lock:
            self._unindex(rule.id)
            self._rules[rule.id] = rule
            self._rules_by_metric.setdefault(rule.metric, {})[rule.id] = rule
        logger.info(f"Alert rule added: {rule.id} on {rule.metric} ({rule.condition.value} {rule.threshold})")
        return rule

    def update_alert_rule(self, rule_id: str, **changes) -> Optional[AlertRule]:
        """Apply field changes to an existing rule. Returns None if the rule is unknown."""
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                logger.warning(f"Cannot update unknown alert rule {rule_id}")
                return None
            changes.pop("id", None)
            updated = replace(rule, **changes)
            self._unindex(rule_id)
            self._rules[rule_id] = updated
            self._rules_by_metric.setdefault(updated.metric, {})[rule_id] = updated
        logger.info(f"Alert rule updated: {rule_id} {changes}")
        return updated

    def remove_alert_rule(self, rule_id: str) -> bool:
        with self._lock:
            if rule_id not in self._rules:
                return False
            self._unindex(rule_id)
            del self._rules[rule_id]
            self._last_fired.pop(rule_id, None)
        logger.info(f"Alert rule removed: {rule_id}")
        return True

    def get_alert_rule(self, rule_id: str) -> Optional[AlertRule]:
        with self._lock:
            return self._rules.get(rule_id)

    def get_alert_rules(self) -> List[AlertRule]:
        with self._lock:
            return list(self._rules.values())

    def last_fired(self, rule_id: str) -> Optional[float]:
        with self._lock:
            return self._last_fired.get(rule_id)

    def check(self, point) -> int:
        """
        Evaluate every enabled rule for point.name against point.value.
        Returns the number of alerts fired. Never raises.
        """
        try:
            fired = []
            with self._lock:
                rules = self._rules_by_metric.get(point.name)
                if not rules:
                    return 0
                now = self.clock()
                for rule_id, rule in rules.items():
                    if not rule.enabled or not rule.matches(point.value):
                        continue
                    last = self._last_fired.get(rule_id)
                    if last is not None and now - last <= rule.cooldown_seconds:
                        continue
                    self._last_fired[rule_id] = now
                    fired.append(rule)
                self.alerts_fired += len(fired)

            # published outside the lock
            for rule in fired:
                self._trigger(rule, point)
            return len(fired)
        except Exception as e:
            logger.error(f"Alert evaluation failed for {getattr(point, 'name', point)}: {e}")
            return 0

    def _trigger(self, rule: AlertRule, point):
        alert = AlertEvent(
            rule_id=rule.id,
            rule_name=rule.name,
            metric=point.name,
            value=point.value,
            threshold=rule.threshold,
            condition=rule.condition.value,
            severity=rule.severity.value,
            timestamp=point.timestamp,
            tags=dict(point.tags),
        )
        logger.warning(
            f"Alert triggered: {rule.name} [{rule.severity.value}] "
            f"{point.name}={point.value} {rule.condition.value} {rule.threshold}"
        )
        self.event_bus.publish(alert)

    def _unindex(self, rule_id: str):
        """Drop a rule from the metric index (must be called with lock held)."""
        existing = self._rules.get(rule_id)
        if existing is None:
            return
        by_metric = self._rules_by_metric.get(existing.metric)
        if by_metric is not None:
            by_metric.pop(rule_id, None)
            if not by_metric:
                del self._rules_by_metric[existing.metric]
