"""
Orchestration adapters: the single point where instances are really created
or destroyed. The control loop only decides counts; these classes act on them.
"""

import abc
import time
import uuid
import random
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

import docker

logger = logging.getLogger(__name__)

class OrchestrationError(RuntimeError):
    """Raised when the orchestrator cannot fulfil a scaling request."""
    pass

class Orchestrator(abc.ABC):
    """Creates and destroys instances of a service."""

    @abc.abstractmethod
    def add_instances(self, service: str, count: int) -> List[str]:
        """Start count new instances and return their ids."""

    @abc.abstractmethod
    def remove_instances(self, service: str, instance_ids: List[str]) -> None:
        """Stop and remove the given instances."""

class SimulatedOrchestrator(Orchestrator):
    """
    Stand-in orchestrator that only waits and fabricates instance ids.
    Used when no real orchestration backend is configured.
    """

    def __init__(self, delay_seconds: Tuple[float, float] = (2.0, 5.0)):
        low, high = delay_seconds
        if low < 0 or high < low:
            raise ValueError(f"invalid delay range {delay_seconds}")
        self.delay_seconds = (low, high)
        self.calls: Deque[Tuple[str, str, int]] = deque(maxlen=100)
        self._lock = threading.Lock()

    def add_instances(self, service: str, count: int) -> List[str]:
        self._wait()
        ids = [f"{service}-{uuid.uuid4().hex[:8]}" for _ in range(count)]
        with self._lock:
            self.calls.append(("add", service, count))
        logger.info(f"[simulated] started {count} instance(s) of {service}")
        return ids

    def remove_instances(self, service: str, instance_ids: List[str]) -> None:
        self._wait()
        with self._lock:
            self.calls.append(("remove", service, len(instance_ids)))
        logger.info(f"[simulated] stopped {len(instance_ids)} instance(s) of {service}")

    def _wait(self):
        low, high = self.delay_seconds
        if high > 0:
            time.sleep(random.uniform(low, high))

class DockerOrchestrator(Orchestrator):
    """
    Scales services as labelled Docker containers.

    services maps a service name to its container spec:
        {"image": "repo/app:tag", "env": {...}, "resources": {"cpu": "100m", "memory": "128Mi"}}
    """

    def __init__(self, services: Dict[str, Dict[str, Any]], network: str = "telescaler",
                 client=None, label_prefix: str = "telescaler"):
        self.services = services
        self.network = network
        self.label_prefix = label_prefix
        self.client = client or docker.from_env()
        self._network_ready = False
        self._lock = threading.RLock()

    def add_instances(self, service: str, count: int) -> List[str]:
        spec = self.services.get(service)
        if not spec or "image" not in spec:
            raise OrchestrationError(f"No container spec configured for service {service}")

        with self._lock:
            self._ensure_network()
            used = self._replica_indices(service)
            started = []
            next_index = 0
            for _ in range(count):
                while next_index in used:
                    next_index += 1
                try:
                    container_id = self._start_container(service, spec, next_index)
                except Exception as e:
                    if not started:
                        raise
                    # running containers must be reported so they get registered
                    logger.error(f"Started {len(started)} of {count} containers of {service}: {e}")
                    return started
                used.add(next_index)
                started.append(container_id)
            return started

    def remove_instances(self, service: str, instance_ids: List[str]) -> None:
        failures = []
        for container_id in instance_ids:
            try:
                container = self.client.containers.get(container_id)
                container.stop(timeout=30)
                container.remove()
                logger.info(f"Stopped container {container_id[:12]} of {service}")
            except docker.errors.NotFound:
                logger.warning(f"Container {container_id[:12]} of {service} already gone")
            except Exception as e:
                logger.error(f"Failed to stop container {container_id[:12]} of {service}: {e}")
                failures.append(container_id)
        if failures:
            raise OrchestrationError(f"Failed to stop {len(failures)} container(s) of {service}")

    def _ensure_network(self):
        """Ensure the shared bridge network exists (must be called with lock held)."""
        if self._network_ready:
            return
        try:
            self.client.networks.get(self.network)
        except docker.errors.NotFound:
            self.client.networks.create(
                self.network,
                driver="bridge",
                labels={"managed_by": self.label_prefix}
            )
        self._network_ready = True

    def _replica_indices(self, service: str) -> set:
        containers = self.client.containers.list(
            all=True, filters={"label": f"{self.label_prefix}.service={service}"}
        )
        indices = set()
        for c in containers:
            label = c.labels.get(f"{self.label_prefix}.replica")
            if label is not None and label.isdigit():
                indices.add(int(label))
        return indices

    def _start_container(self, service: str, spec: Dict[str, Any], replica_index: int) -> str:
        container_config = {
            "image": spec["image"],
            "name": f"{service}-{replica_index}",
            "labels": {
                f"{self.label_prefix}.service": service,
                f"{self.label_prefix}.replica": str(replica_index),
                "managed_by": self.label_prefix,
            },
            "network": self.network,
        }
        if spec.get("env"):
            container_config["environment"] = {k: str(v) for k, v in spec["env"].items()}

        resources = spec.get("resources") or {}
        if "cpu" in resources:
            container_config["nano_cpus"] = parse_cpu(resources["cpu"])
        if "memory" in resources:
            container_config["mem_limit"] = parse_memory(resources["memory"])

        container = self.client.containers.create(**container_config)
        container.start()
        container.reload()
        if container.status != "running":
            raise OrchestrationError(f"Container {container_config['name']} failed to start: {container.status}")

        logger.info(f"Started container {container_config['name']} ({container.id[:12]}) for {service}")
        return container.id

def parse_cpu(value: Any) -> int:
    """Kubernetes-style CPU quantity ("100m", "0.5", 1) to Docker nano CPUs."""
    text = str(value).strip()
    if text.endswith("m"):
        cpus = float(text[:-1]) / 1000
    else:
        cpus = float(text)
    return int(cpus * 1_000_000_000)

def parse_memory(value: Any) -> int:
    """Memory quantity ("128Mi", "1Gi", "512Ki" or bytes) to bytes."""
    text = str(value).strip()
    units = {"Ki": 1024, "Mi": 1024 ** 2, "Gi": 1024 ** 3}
    for suffix, factor in units.items():
        if text.endswith(suffix):
            return int(float(text[:-2]) * factor)
    return int(text)

def build_orchestrator(kind: str, services: Optional[Dict[str, Dict[str, Any]]] = None,
                       simulated_delay: Tuple[float, float] = (2.0, 5.0)) -> Orchestrator:
    """Build the orchestrator named by configuration."""
    if kind == "docker":
        return DockerOrchestrator(services or {})
    if kind == "simulated":
        return SimulatedOrchestrator(delay_seconds=simulated_delay)
    raise ValueError(f"Unknown orchestrator {kind!r}")
