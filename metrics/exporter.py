"""
Prometheus exporter for Telescaler.
Mirrors event-bus traffic and registry state into prometheus_client metrics.
"""

import time
import logging
from typing import Callable, List, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from events import AlertEvent, EventBus, EventType, ScalingActionEvent

logger = logging.getLogger(__name__)

class MetricsExporter:
    """
    Collects scaling and alert activity and exports it in Prometheus format.
    Each exporter owns its CollectorRegistry so several can coexist in one process.
    """

    def __init__(self, event_bus: Optional[EventBus] = None, instances=None, metric_store=None,
                 registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.instances = instances
        self.metric_store = metric_store
        self._unsubscribers: List[Callable[[], None]] = []
        self._setup_prometheus_metrics()
        if event_bus is not None:
            self.attach(event_bus)

    def _setup_prometheus_metrics(self):
        """Initialize Prometheus metric objects."""
        r = self.registry
        # Scaling metrics
        self.scaling_actions = Counter(
            'telescaler_scaling_actions_total', 'Scaling actions by final status',
            ['service', 'action', 'status'], registry=r
        )
        self.scaling_actions_started = Counter(
            'telescaler_scaling_actions_started_total', 'Scaling actions that began executing',
            ['service', 'action'], registry=r
        )
        self.scaling_duration = Histogram(
            'telescaler_scaling_action_duration_seconds', 'Time from trigger to terminal state',
            ['service', 'action'], registry=r
        )
        self.target_instances = Gauge(
            'telescaler_target_instances', 'Target instance count of the last completed action',
            ['service'], registry=r
        )

        # Alert metrics
        self.alerts = Counter(
            'telescaler_alerts_total', 'Alerts fired', ['rule', 'severity'], registry=r
        )

        # State metrics, refreshed on export
        self.service_instances = Gauge(
            'telescaler_service_instances', 'Active instances per service', ['service'], registry=r
        )
        self.healthy_instances = Gauge(
            'telescaler_service_healthy_instances', 'Healthy active instances per service', ['service'], registry=r
        )
        self.retained_points = Gauge(
            'telescaler_metric_store_points', 'Points retained in the metric store', registry=r
        )
        self.dropped_points = Gauge(
            'telescaler_metric_store_dropped_points', 'Points dropped at ingestion', registry=r
        )

    def attach(self, event_bus: EventBus):
        """Subscribe to alert and scaling action events."""
        self._unsubscribers.append(event_bus.subscribe(EventType.ALERT, self.on_alert))
        for event_type in (EventType.SCALING_ACTION_STARTED,
                           EventType.SCALING_ACTION_COMPLETED,
                           EventType.SCALING_ACTION_FAILED):
            self._unsubscribers.append(event_bus.subscribe(event_type, self.on_scaling_action))

    def detach(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def on_alert(self, event: AlertEvent):
        self.alerts.labels(rule=event.rule_id, severity=event.severity).inc()

    def on_scaling_action(self, event: ScalingActionEvent):
        if event.event_type is EventType.SCALING_ACTION_STARTED:
            self.scaling_actions_started.labels(service=event.service, action=event.action).inc()
            return

        self.scaling_actions.labels(service=event.service, action=event.action, status=event.status).inc()
        self.scaling_duration.labels(service=event.service, action=event.action).observe(
            max(0.0, time.time() - event.timestamp)
        )
        if event.event_type is EventType.SCALING_ACTION_COMPLETED:
            self.target_instances.labels(service=event.service).set(event.target_instances)
        logger.info(
            f"Scaling event: {event.service} {event.action} from {event.current_instances} "
            f"to {event.target_instances} ({event.status})"
        )

    def refresh(self):
        """Copy current registry and store state into the gauges."""
        if self.instances is not None:
            for service in self.instances.get_services():
                self.service_instances.labels(service=service).set(
                    self.instances.get_service_instance_count(service)
                )
                self.healthy_instances.labels(service=service).set(
                    self.instances.get_healthy_instance_count(service)
                )
        if self.metric_store is not None:
            details = self.metric_store.health_check()["details"]
            self.retained_points.set(details["total_metrics"])
            self.dropped_points.set(details["dropped_points"])

    def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus format."""
        try:
            self.refresh()
            return generate_latest(self.registry).decode('utf-8')
        except Exception as e:
            logger.error(f"Failed to generate Prometheus metrics: {e}")
            return ""
