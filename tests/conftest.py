"""Pytest configuration and shared fixtures."""

import sys
import threading
import time
from pathlib import Path
from typing import List

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from events import EventBus
from metrics.alerts import AlertEngine
from metrics.store import MetricStore, MetricStoreConfig
from controller.actions import ActionExecutor
from controller.instances import InstanceRegistry
from controller.manager import AutoScalerService
from controller.orchestrator import OrchestrationError, Orchestrator
from controller.policies import PolicyRegistry
from controller.scaler import ScalingEvaluator


class FakeClock:
    """Manually advanced clock, callable like time.time."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class InlineOrchestrator(Orchestrator):
    """Returns immediately with sequential ids and records every call."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls = []
        self.removed: List[str] = []
        self._counter = 0
        self._lock = threading.Lock()
        self._active = 0
        self.peak_active = 0

    def add_instances(self, service, count):
        self._enter()
        try:
            with self._lock:
                ids = []
                for _ in range(count):
                    self._counter += 1
                    ids.append(f"{service}-{self._counter}")
                self.calls.append(("add", service, count))
            return ids
        finally:
            self._exit()

    def remove_instances(self, service, instance_ids):
        self._enter()
        try:
            with self._lock:
                self.calls.append(("remove", service, len(instance_ids)))
                self.removed.extend(instance_ids)
        finally:
            self._exit()

    def _enter(self):
        with self._lock:
            self._active += 1
            self.peak_active = max(self.peak_active, self._active)
        if self.delay:
            time.sleep(self.delay)

    def _exit(self):
        with self._lock:
            self._active -= 1


class FailingOrchestrator(Orchestrator):
    def add_instances(self, service, count):
        raise OrchestrationError(f"no capacity for {service}")

    def remove_instances(self, service, instance_ids):
        raise OrchestrationError(f"cannot remove from {service}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def alert_engine(event_bus, clock):
    return AlertEngine(event_bus=event_bus, load_defaults=False, clock=clock)


@pytest.fixture
def metric_store(alert_engine, clock):
    return MetricStore(config=MetricStoreConfig(buffer_size=1000), alert_engine=alert_engine, clock=clock)


@pytest.fixture
def policies():
    return PolicyRegistry()


@pytest.fixture
def instances(metric_store, clock):
    return InstanceRegistry(metric_store=metric_store, clock=clock)


@pytest.fixture
def orchestrator():
    return InlineOrchestrator()


@pytest.fixture
def executor(instances, orchestrator, event_bus, metric_store, clock):
    executor = ActionExecutor(
        instances=instances,
        orchestrator=orchestrator,
        event_bus=event_bus,
        metric_store=metric_store,
        max_concurrent_actions=3,
        action_ttl_seconds=60,
        clock=clock,
    )
    yield executor
    executor.shutdown(grace_seconds=5)


@pytest.fixture
def evaluator(policies, metric_store, instances, executor, clock):
    return ScalingEvaluator(
        policies=policies,
        metric_store=metric_store,
        instances=instances,
        executor=executor,
        evaluation_interval_seconds=30,
        global_max_instances=50,
        clock=clock,
    )


@pytest.fixture
def service(metric_store, alert_engine, event_bus, policies, instances, executor, evaluator):
    return AutoScalerService(
        metric_store=metric_store,
        alert_engine=alert_engine,
        event_bus=event_bus,
        policies=policies,
        instances=instances,
        executor=executor,
        evaluator=evaluator,
        global_max_instances=50,
    )
