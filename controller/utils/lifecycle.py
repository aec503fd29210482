"""
Lifecycle management for the Telescaler controller.
Builds every component in dependency order, starts the background loops and
shuts them down again.
"""
import time
import logging
from typing import Any, Callable, Dict, Optional

from events import EventBus
from metrics.alerts import AlertEngine
from metrics.exporter import MetricsExporter
from metrics.store import MetricStore, MetricStoreConfig
from metrics.system import SystemMetricsCollector
from scaling_spec import PolicyFile, load_policy_file
from controller.actions import ActionExecutor
from controller.config import Settings
from controller.instances import InstanceRegistry
from controller.manager import AutoScalerService
from controller.orchestrator import Orchestrator, build_orchestrator
from controller.policies import PolicyRegistry
from controller.scaler import ScalingEvaluator

logger = logging.getLogger(__name__)

class ControlPlane:
    """Owns one instance of every component and their start/stop order."""

    def __init__(
        self,
        settings: Settings,
        event_bus: EventBus,
        alert_engine: AlertEngine,
        metric_store: MetricStore,
        policies: PolicyRegistry,
        instances: InstanceRegistry,
        orchestrator: Orchestrator,
        executor: ActionExecutor,
        evaluator: ScalingEvaluator,
        service: AutoScalerService,
        exporter: MetricsExporter,
        system_collector: Optional[SystemMetricsCollector] = None,
    ):
        self.settings = settings
        self.event_bus = event_bus
        self.alert_engine = alert_engine
        self.metric_store = metric_store
        self.policies = policies
        self.instances = instances
        self.orchestrator = orchestrator
        self.executor = executor
        self.evaluator = evaluator
        self.service = service
        self.exporter = exporter
        self.system_collector = system_collector
        self.started = False

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        orchestrator: Optional[Orchestrator] = None,
        policy_file: Optional[PolicyFile] = None,
        clock: Callable[[], float] = time.time,
    ) -> "ControlPlane":
        """
        Wire all components together. Nothing is started.

        The policy file named by settings is loaded unless one is passed in;
        its alert rules and policies are applied to the new control plane.
        """
        settings = settings or Settings()
        if policy_file is None and settings.policy_file:
            policy_file = load_policy_file(settings.policy_file)
            logger.info(f"Loaded policy file {settings.policy_file}")

        event_bus = EventBus()
        alert_engine = AlertEngine(event_bus=event_bus, clock=clock)
        metric_store = MetricStore(
            config=MetricStoreConfig(
                buffer_size=settings.buffer_size,
                flush_interval_seconds=settings.flush_interval_seconds,
                retention_seconds=settings.retention_seconds,
                max_points_per_metric=settings.max_points_per_metric,
            ),
            alert_engine=alert_engine,
            clock=clock,
        )
        policies = PolicyRegistry()
        instances = InstanceRegistry(metric_store=metric_store, clock=clock)

        if orchestrator is None:
            services = policy_file.container_specs() if policy_file else {}
            orchestrator = build_orchestrator(settings.orchestrator, services, settings.simulated_delay)

        executor = ActionExecutor(
            instances=instances,
            orchestrator=orchestrator,
            event_bus=event_bus,
            metric_store=metric_store,
            max_concurrent_actions=settings.max_concurrent_actions,
            action_ttl_seconds=settings.action_ttl_seconds,
            clock=clock,
        )
        evaluator = ScalingEvaluator(
            policies=policies,
            metric_store=metric_store,
            instances=instances,
            executor=executor,
            evaluation_interval_seconds=settings.evaluation_interval_seconds,
            global_max_instances=settings.global_max_instances,
            clock=clock,
        )
        service = AutoScalerService(
            metric_store=metric_store,
            alert_engine=alert_engine,
            event_bus=event_bus,
            policies=policies,
            instances=instances,
            executor=executor,
            evaluator=evaluator,
            global_max_instances=settings.global_max_instances,
        )
        exporter = MetricsExporter(event_bus=event_bus, instances=instances, metric_store=metric_store)

        system_collector = None
        if settings.collect_system_metrics:
            system_collector = SystemMetricsCollector(metric_store, settings.system_metrics_interval_seconds)

        plane = cls(
            settings=settings,
            event_bus=event_bus,
            alert_engine=alert_engine,
            metric_store=metric_store,
            policies=policies,
            instances=instances,
            orchestrator=orchestrator,
            executor=executor,
            evaluator=evaluator,
            service=service,
            exporter=exporter,
            system_collector=system_collector,
        )
        if policy_file is not None:
            plane.apply_policy_file(policy_file)
        return plane

    def apply_policy_file(self, policy_file: PolicyFile) -> Dict[str, int]:
        """Register the alert rules and scaling policies declared in a policy file."""
        if policy_file.replaceDefaultAlertRules:
            for rule in self.alert_engine.get_alert_rules():
                self.alert_engine.remove_alert_rule(rule.id)
        for rule_spec in policy_file.alertRules:
            self.alert_engine.add_alert_rule(rule_spec.to_rule())
        for policy_spec in policy_file.policies:
            self.service.add_scaling_policy(policy_spec.to_policy())

        summary = {"policies": len(policy_file.policies), "alert_rules": len(policy_file.alertRules)}
        logger.info(f"Applied policy file: {summary}")
        return summary

    def start(self):
        """Start the flush, collection and evaluation loops."""
        if self.started:
            logger.warning("Control plane already started")
            return
        self.metric_store.start()
        if self.system_collector:
            self.system_collector.start()
        self.service.enable_auto_scaling()
        self.started = True
        logger.info(
            f"Control plane started: {len(self.policies)} policies, "
            f"orchestrator={type(self.orchestrator).__name__}"
        )

    def shutdown(self) -> bool:
        """
        Stop evaluation immediately, give in-flight actions the configured grace
        period, then stop collection and flush the metric store.
        Returns True if every in-flight action finished in time.
        """
        self.service.disable_auto_scaling()
        drained = self.executor.shutdown(self.settings.shutdown_grace_seconds)
        if self.system_collector:
            self.system_collector.stop()
        self.metric_store.stop()
        self.exporter.detach()
        self.started = False
        logger.info("Control plane shut down")
        return drained

    def info(self) -> Dict[str, Any]:
        return {
            "orchestrator": type(self.orchestrator).__name__,
            "evaluation_interval_seconds": self.settings.evaluation_interval_seconds,
            "max_concurrent_actions": self.settings.max_concurrent_actions,
            "global_max_instances": self.settings.global_max_instances,
            "auto_scaling_enabled": self.service.auto_scaling_enabled,
            "policy_file": self.settings.policy_file,
        }

# Global control plane - initialized when starting the API
control_plane: Optional[ControlPlane] = None

def get_control_plane() -> Optional[ControlPlane]:
    """Get the global control plane instance."""
    return control_plane

def set_control_plane(plane: Optional[ControlPlane]):
    global control_plane
    control_plane = plane

async def startup_event(settings: Optional[Settings] = None) -> ControlPlane:
    """Build and start the global control plane."""
    global control_plane
    try:
        if control_plane is None:
            control_plane = ControlPlane.build(settings or Settings.from_env())
        control_plane.start()
        logger.info("Telescaler controller started successfully")
        return control_plane
    except Exception as e:
        logger.error(f"Failed to start controller: {e}")
        raise

async def shutdown_event():
    """Clean up resources when shutting down."""
    if control_plane:
        control_plane.shutdown()
    logger.info("Telescaler controller shut down")
