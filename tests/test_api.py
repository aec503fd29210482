"""Tests for the controller admin API."""

import inspect

import pytest
from fastapi.testclient import TestClient

from controller import api
from controller.api import create_app
from controller.config import Settings
from controller.utils import lifecycle
from controller.utils.lifecycle import ControlPlane
from scaling_spec import get_example_policies
from conftest import InlineOrchestrator

POLICY = {
    "id": "api-cpu",
    "targetService": "api",
    "scaleUpMetric": "cpu",
    "scaleUpThreshold": 70,
    "scaleDownThreshold": 30,
    "minInstances": 1,
    "maxInstances": 5,
}


@pytest.fixture
def plane():
    settings = Settings(buffer_size=1, collect_system_metrics=False, shutdown_grace_seconds=5)
    plane = ControlPlane.build(settings, orchestrator=InlineOrchestrator())
    yield plane
    plane.shutdown()


@pytest.fixture
def client(plane):
    return TestClient(create_app(plane))


class TestHealthAndInfo:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["details"]["auto_scaling_enabled"] is False

    def test_info(self, client):
        data = client.get("/info").json()
        assert data["orchestrator"] == "InlineOrchestrator"
        assert data["max_concurrent_actions"] == 3

    def test_uninitialized_controller(self, monkeypatch):
        monkeypatch.setattr(lifecycle, "control_plane", None)
        response = TestClient(create_app()).get("/health")
        assert response.status_code == 503


class TestMetricsEndpoints:
    def test_record_and_query(self, client):
        response = client.post("/metrics", json={"name": "cpu", "value": 80, "tags": {"service": "api"}})
        assert response.status_code == 200
        assert response.json()["status"] == "recorded"
        client.post("/metrics", json={"name": "cpu", "value": 40, "tags": {"service": "web"}})

        assert "cpu" in client.get("/metrics").json()["metrics"]
        data = client.get("/metrics/cpu", params={"tag": "service=api"}).json()
        assert data["count"] == 1
        assert data["points"][0]["value"] == 80.0

        agg = client.get("/metrics/cpu/aggregate", params={"aggregation": "max"}).json()
        assert agg == {"name": "cpu", "aggregation": "max", "value": 80.0, "start": None, "end": None}

    def test_time_range(self, client):
        point = client.post("/metrics", json={"name": "q", "value": 1}).json()
        data = client.get("/metrics/q", params={"start": point["timestamp"] + 1}).json()
        assert data["count"] == 0

    def test_bad_tag_filter(self, client):
        assert client.get("/metrics/cpu", params={"tag": "nonsense"}).status_code == 400

    def test_bad_aggregation(self, client):
        assert client.get("/metrics/cpu/aggregate", params={"aggregation": "median"}).status_code == 422

    def test_prometheus(self, client):
        client.post("/services/api/instances", json={"id": "a", "healthStatus": "healthy"})
        response = client.get("/metrics/prometheus")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'telescaler_service_instances{service="api"} 1.0' in response.text


class TestAlertRuleEndpoints:
    def test_crud(self, client):
        response = client.post("/alerts/rules", json={"id": "lag", "metric": "queue.lag", "threshold": 10})
        assert response.status_code == 200
        assert response.json()["name"] == "lag"

        updated = client.patch("/alerts/rules/lag", json={"threshold": 20, "severity": "critical"}).json()
        assert updated["threshold"] == 20.0
        assert updated["severity"] == "critical"

        ids = [r["id"] for r in client.get("/alerts/rules").json()["rules"]]
        assert "lag" in ids
        assert "high-cpu-usage" in ids

        assert client.delete("/alerts/rules/lag").status_code == 200
        assert client.delete("/alerts/rules/lag").status_code == 404
        assert client.patch("/alerts/rules/lag", json={"threshold": 1}).status_code == 404


class TestPolicyEndpoints:
    def test_crud(self, client):
        response = client.post("/policies", json=POLICY)
        assert response.status_code == 200
        assert response.json()["targetService"] == "api"

        assert [p["id"] for p in client.get("/policies").json()["policies"]] == ["api-cpu"]
        assert client.get("/policies/api-cpu").json()["maxInstances"] == 5

        patched = client.patch("/policies/api-cpu", json={"maxInstances": 8})
        assert patched.status_code == 200
        assert patched.json()["maxInstances"] == 8

        assert client.delete("/policies/api-cpu").status_code == 200
        assert client.get("/policies/api-cpu").status_code == 404
        assert client.delete("/policies/api-cpu").status_code == 404

    def test_invalid_policy(self, client):
        bad = dict(POLICY, scaleDownThreshold=90)
        assert client.post("/policies", json=bad).status_code == 422

    def test_invalid_update(self, client):
        client.post("/policies", json=POLICY)
        assert client.patch("/policies/api-cpu", json={"minInstances": 20}).status_code == 400
        assert client.patch("/policies/api-cpu", json={"bogus": 1}).status_code == 422
        assert client.patch("/policies/missing", json={"maxInstances": 3}).status_code == 404

    def test_apply_policy_file(self, client):
        response = client.post("/policies/apply", json=get_example_policies())
        assert response.status_code == 200
        data = response.json()
        assert len(data["policies"]) == 4
        assert data["alertRules"] == ["email-queue-backlog"]
        assert len(client.get("/policies").json()["policies"]) == 4

    def test_decisions(self, client):
        client.post("/policies", json=POLICY)
        client.post("/evaluate")
        data = client.get("/policies/api-cpu/decisions").json()
        assert len(data["decisions"]) == 1
        assert data["decisions"][0]["should_scale"] is False
        assert client.get("/policies/missing/decisions").status_code == 404


class TestScalingEndpoints:
    def test_manual_scale(self, client, plane):
        response = client.post("/services/api/scale", json={"instances": 3})
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "scaling"
        assert data["action"]["target_instances"] == 3
        assert plane.executor.wait_idle(timeout=5)

        again = client.post("/services/api/scale", json={"instances": 3}).json()
        assert again == {"status": "no_change", "service": "api", "instances": 3, "action": None}

        assert client.post("/services/api/scale", json={"instances": -1}).status_code == 422

    def test_step_scale(self, client, plane):
        assert client.post("/services/api/scale-up").json()["instances"] == 1
        assert plane.executor.wait_idle(timeout=5)
        assert client.post("/services/api/scale-up", json={"count": 2}).json()["instances"] == 3
        assert plane.executor.wait_idle(timeout=5)
        assert client.post("/services/api/scale-down").json()["instances"] == 2

    def test_evaluate_triggers_action(self, client, plane):
        client.post("/policies", json=POLICY)
        client.post("/services/api/instances", json={"id": "a"})
        for _ in range(2):
            client.post("/metrics", json={"name": "cpu", "value": 95})

        decisions = client.post("/evaluate").json()["decisions"]
        assert decisions[0]["should_scale"] is True
        assert decisions[0]["target_instances"] == 2
        assert plane.executor.wait_idle(timeout=5)

        actions = client.get("/actions").json()["actions"]
        assert actions[0]["status"] == "completed"
        assert actions[0]["policy_id"] == "api-cpu"

    def test_autoscaling_toggle(self, client):
        assert client.post("/autoscaling/enable").json() == {"auto_scaling_enabled": True}
        assert client.post("/autoscaling/disable").json() == {"auto_scaling_enabled": False}

    def test_toggles_run_in_threadpool(self):
        # stopping the evaluator joins its thread, which must not block the event loop
        assert not inspect.iscoroutinefunction(api.disable_autoscaling)
        assert not inspect.iscoroutinefunction(api.enable_autoscaling)


class TestInstanceEndpoints:
    def test_lifecycle(self, client, plane):
        created = client.post("/services/api/instances", json={"id": "a", "metadata": {"node": "n1"}})
        assert created.status_code == 200
        assert created.json()["status"] == "running"

        health = client.put("/services/api/instances/a/health", json={"healthStatus": "healthy"})
        assert health.json()["healthStatus"] == "healthy"
        usage = client.put("/services/api/instances/a/usage", json={"cpu": 50, "memory": 20, "connections": 3})
        assert usage.status_code == 200

        listing = client.get("/services/api/instances").json()
        assert listing["active"] == 1
        assert listing["healthy"] == 1
        assert listing["instances"][0]["resource_usage"]["cpu"] == 50.0
        assert plane.metric_store.get_latest_value("autoscaler.instances.cpu_usage") == 50.0

        assert client.delete("/services/api/instances/a").status_code == 200
        assert client.delete("/services/api/instances/a").status_code == 404
        assert client.put("/services/api/instances/a/health", json={"healthStatus": "healthy"}).status_code == 404
        assert client.put("/services/api/instances/a/usage", json={"cpu": 1}).status_code == 404
