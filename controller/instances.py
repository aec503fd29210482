"""
Live bookkeeping of service instances.
Health and resource updates are forwarded into the metric store so they
feed later scaling evaluations.
"""

import time
import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

class InstanceStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"

class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"

# instances still starting count toward capacity
ACTIVE_STATUSES = (InstanceStatus.STARTING, InstanceStatus.RUNNING)

@dataclass
class ResourceUsage:
    cpu: float = 0.0
    memory: float = 0.0
    connections: int = 0

@dataclass
class ServiceInstance:
    id: str
    service: str
    status: InstanceStatus = InstanceStatus.STARTING
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    health_status: HealthStatus = HealthStatus.UNKNOWN
    resource_usage: ResourceUsage = field(default_factory=ResourceUsage)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.status = InstanceStatus(self.status)
        self.health_status = HealthStatus(self.health_status)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "service": self.service,
            "status": self.status.value,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "health_status": self.health_status.value,
            "resource_usage": {
                "cpu": self.resource_usage.cpu,
                "memory": self.resource_usage.memory,
                "connections": self.resource_usage.connections,
            },
            "metadata": dict(self.metadata),
        }

class InstanceRegistry:
    def __init__(self, metric_store=None, clock: Callable[[], float] = time.time):
        self._lock = threading.RLock()
        self.metric_store = metric_store
        self.clock = clock
        self._instances: Dict[str, List[ServiceInstance]] = {}

    def register_service_instance(self, instance: ServiceInstance) -> ServiceInstance:
        with self._lock:
            instances = self._instances.setdefault(instance.service, [])
            existing = self._find(instance.id, instance.service)
            if existing is not None:
                instances.remove(existing)
            instances.append(instance)

        self._record("autoscaler.instances.registered", 1, "count", {"service": instance.service})
        logger.debug(f"Registered instance {instance.id} for {instance.service} ({instance.status.value})")
        return instance

    def unregister_service_instance(self, instance_id: str, service: str) -> bool:
        with self._lock:
            instance = self._find(instance_id, service)
            if instance is None:
                return False
            self._instances[service].remove(instance)
            instance.status = InstanceStatus.STOPPED
            instance.end_time = self.clock()

        self._record("autoscaler.instances.unregistered", 1, "count", {"service": service})
        logger.debug(f"Unregistered instance {instance_id} from {service}")
        return True

    def update_instance_status(self, instance_id: str, service: str, status: InstanceStatus) -> bool:
        status = InstanceStatus(status)
        with self._lock:
            instance = self._find(instance_id, service)
            if instance is None:
                return False
            instance.status = status
            if status is InstanceStatus.STOPPED and instance.end_time is None:
                instance.end_time = self.clock()
        logger.debug(f"Instance {instance_id} of {service} is now {status.value}")
        return True

    def update_instance_health(self, instance_id: str, service: str, health_status: HealthStatus) -> bool:
        health_status = HealthStatus(health_status)
        with self._lock:
            instance = self._find(instance_id, service)
            if instance is None:
                return False
            instance.health_status = health_status

        self._record(
            "autoscaler.instances.health_update",
            1 if health_status is HealthStatus.HEALTHY else 0,
            "boolean",
            {"service": service, "instance_id": instance_id, "health_status": health_status.value},
        )
        return True

    def update_instance_resource_usage(self, instance_id: str, service: str, usage: ResourceUsage) -> bool:
        with self._lock:
            instance = self._find(instance_id, service)
            if instance is None:
                return False
            instance.resource_usage = replace(usage)

        tags = {"service": service, "instance_id": instance_id}
        self._record("autoscaler.instances.cpu_usage", usage.cpu, "percentage", tags)
        self._record("autoscaler.instances.memory_usage", usage.memory, "percentage", tags)
        self._record("autoscaler.instances.connections", usage.connections, "count", tags)
        return True

    def get_service_instance_count(self, service: str) -> int:
        with self._lock:
            return sum(1 for i in self._instances.get(service, []) if i.is_active)

    def get_healthy_instance_count(self, service: str) -> int:
        with self._lock:
            return sum(
                1 for i in self._instances.get(service, [])
                if i.is_active and i.health_status is HealthStatus.HEALTHY
            )

    def get_service_instances(self, service: str) -> List[ServiceInstance]:
        with self._lock:
            return list(self._instances.get(service, []))

    def get_total_instance_count(self) -> int:
        with self._lock:
            return sum(1 for instances in self._instances.values() for i in instances if i.is_active)

    def get_services(self) -> List[str]:
        with self._lock:
            return sorted(self._instances.keys())

    def get_instance(self, instance_id: str, service: str) -> Optional[ServiceInstance]:
        with self._lock:
            return self._find(instance_id, service)

    def _find(self, instance_id: str, service: str) -> Optional[ServiceInstance]:
        """Must be called with lock held."""
        for instance in self._instances.get(service, []):
            if instance.id == instance_id:
                return instance
        return None

    def _record(self, name: str, value: float, unit: str, tags: Dict[str, str]):
        if self.metric_store is not None:
            self.metric_store.record(name, value, unit, tags)
