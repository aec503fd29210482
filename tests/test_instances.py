"""Tests for the service instance registry."""

from controller.instances import (
    HealthStatus,
    InstanceStatus,
    ResourceUsage,
    ServiceInstance,
)


def _instance(instance_id, service="api", status=InstanceStatus.RUNNING, **kwargs):
    return ServiceInstance(id=instance_id, service=service, status=status, **kwargs)


class TestInstanceRegistry:
    def test_counts_only_active_instances(self, instances):
        instances.register_service_instance(_instance("a", status="starting"))
        instances.register_service_instance(_instance("b"))
        instances.register_service_instance(_instance("c", status="stopping"))
        assert instances.get_service_instance_count("api") == 2
        assert instances.get_service_instance_count("unknown") == 0
        assert instances.get_total_instance_count() == 2

    def test_register_replaces_same_id(self, instances):
        instances.register_service_instance(_instance("a"))
        instances.register_service_instance(_instance("a", health_status="healthy"))
        assert len(instances.get_service_instances("api")) == 1
        assert instances.get_healthy_instance_count("api") == 1

    def test_unregister(self, instances, clock):
        instance = instances.register_service_instance(_instance("a"))
        assert instances.unregister_service_instance("a", "api") is True
        assert instance.status is InstanceStatus.STOPPED
        assert instance.end_time == clock()
        assert instances.unregister_service_instance("a", "api") is False
        assert instances.get_service_instance_count("api") == 0

    def test_health_update_records_metric(self, instances, metric_store):
        instances.register_service_instance(_instance("a"))
        assert instances.update_instance_health("a", "api", HealthStatus.HEALTHY) is True
        assert instances.update_instance_health("missing", "api", HealthStatus.HEALTHY) is False
        metric_store.flush()

        points = metric_store.get_metrics("autoscaler.instances.health_update")
        assert len(points) == 1
        assert points[0].value == 1.0
        assert points[0].tags["health_status"] == "healthy"
        assert instances.get_healthy_instance_count("api") == 1

    def test_resource_usage_records_metrics(self, instances, metric_store):
        instances.register_service_instance(_instance("a"))
        usage = ResourceUsage(cpu=55.0, memory=40.0, connections=12)
        assert instances.update_instance_resource_usage("a", "api", usage) is True
        metric_store.flush()

        cpu = metric_store.get_metrics("autoscaler.instances.cpu_usage", tags={"service": "api"})
        assert [p.value for p in cpu] == [55.0]
        assert metric_store.get_latest_value("autoscaler.instances.connections") == 12.0
        assert instances.get_instance("a", "api").resource_usage.memory == 40.0

    def test_status_update(self, instances):
        instances.register_service_instance(_instance("a"))
        assert instances.update_instance_status("a", "api", "stopping") is True
        assert instances.get_service_instance_count("api") == 0
        assert instances.update_instance_status("x", "api", "running") is False

    def test_services_sorted(self, instances):
        instances.register_service_instance(_instance("w1", service="web"))
        instances.register_service_instance(_instance("a1", service="api"))
        assert instances.get_services() == ["api", "web"]

    def test_to_dict(self):
        data = _instance("a", metadata={"node": "n1"}).to_dict()
        assert data["status"] == "running"
        assert data["health_status"] == "unknown"
        assert data["resource_usage"]["connections"] == 0
        assert data["metadata"] == {"node": "n1"}
