"""Test the HTTP API with in-memory services."""

import pytest
import yaml
from fastapi.testclient import TestClient

from deploy_engine.api.container import get_backup_engine, get_engine_settings, get_lifecycle
from deploy_engine.api.main import app
from deploy_engine.config import EngineSettings
from deploy_engine.orchestrator.executor import ServiceState
from tests.conftest import SINGLE_SERVICE_COMPOSE


@pytest.fixture
def client(lifecycle, backup_engine):
    app.dependency_overrides[get_lifecycle] = lambda: lifecycle
    app.dependency_overrides[get_backup_engine] = lambda: backup_engine
    app.dependency_overrides[get_engine_settings] = lambda: EngineSettings(tunnel_log_level="WARN")
    yield TestClient(app)
    app.dependency_overrides.clear()


def create(client, stack_name="demo-1", **extra):
    body = {"template_ref": "single", "stack_name": stack_name, **extra}
    return client.post("/deployments/", json=body)


class TestDeploymentRoutes:
    """Deployment endpoints."""

    def test_health(self, client):
        """Test the health endpoint."""
        assert client.get("/health").json() == {"status": "ok"}

    def test_create_returns_accepted(self, client, lifecycle):
        """Test that creation returns 202 with the pending record."""
        response = create(client)

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "pending"
        assert data["stack_name"] == "demo-1"
        lifecycle.wait(data["deployment_id"], timeout=5)

    def test_get_and_list(self, client, lifecycle):
        """Test reading deployments back."""
        deployment_id = create(client, auto_start=False).json()["deployment_id"]

        assert client.get(f"/deployments/{deployment_id}").json()["deployment_id"] == deployment_id
        listed = client.get("/deployments/", params={"status": "pending"}).json()
        assert listed["count"] == 1

    def test_unknown_status_filter(self, client):
        """Test that an unknown status filter is a 400."""
        assert client.get("/deployments/", params={"status": "sleeping"}).status_code == 400

    def test_not_found(self, client):
        """Test the NotFound mapping."""
        assert client.get("/deployments/missing").status_code == 404

    def test_duplicate_stack_name_conflicts(self, client):
        """Test the StackNameConflict mapping."""
        create(client, auto_start=False)
        assert create(client, auto_start=False).status_code == 409

    @pytest.mark.parametrize("template_ref,stack_name", [
        ("single", "Bad Name"),
        ("broken", "demo-1"),
    ])
    def test_invalid_input_is_bad_request(self, client, template_ref, stack_name):
        """Test that validation failures are 400s."""
        response = client.post("/deployments/", json={
            "template_ref": template_ref, "stack_name": stack_name,
        })
        assert response.status_code == 400

    def test_transition_and_invalid_transition(self, client, lifecycle):
        """Test operations through the transition endpoint."""
        deployment_id = create(client, auto_start=False).json()["deployment_id"]

        response = client.post(f"/deployments/{deployment_id}/transition", json={"operation": "deploy"})
        assert response.status_code == 200
        assert response.json()["status"] == "deploying"
        lifecycle.wait(deployment_id, timeout=5)

        response = client.post(f"/deployments/{deployment_id}/transition", json={"operation": "start"})
        assert response.status_code == 409

    def test_delete_running_conflicts(self, client, running_deployment):
        """Test that deleting a running deployment is a 409."""
        response = client.delete(f"/deployments/{running_deployment.deployment_id}")
        assert response.status_code == 409

    def test_delete_stopped(self, client, lifecycle, running_deployment):
        """Test a successful delete."""
        deployment_id = running_deployment.deployment_id
        lifecycle.transition_deployment(deployment_id, "stop")
        lifecycle.wait(deployment_id, timeout=5)

        assert client.delete(f"/deployments/{deployment_id}").status_code == 204
        lifecycle.wait(deployment_id, timeout=5)
        assert client.get(f"/deployments/{deployment_id}").status_code == 404

    def test_logs_and_services(self, client, executor, running_deployment):
        """Test the log and service status endpoints."""
        executor.states["demo-1"] = {"web": ServiceState(state="running")}
        deployment_id = running_deployment.deployment_id

        logs = client.get(f"/deployments/{deployment_id}/logs").json()
        services = client.get(f"/deployments/{deployment_id}/services").json()

        assert logs[-1]["message"] == "Deployment is running"
        assert services == {"web": {"state": "running", "health": None}}

    def test_templates(self, client):
        """Test the template listing."""
        assert client.get("/templates/").json() == ["broken", "nginx", "single"]


class TestBackupRoutes:
    """Backup endpoints."""

    def test_create_get_and_delete(self, client, backup_engine, running_deployment):
        """Test the backup lifecycle over HTTP."""
        response = client.post("/backups/", json={"all_deployments": True, "name": "manual-1"})
        assert response.status_code == 202
        backup_id = response.json()["backup_id"]
        backup_engine.wait(backup_id, timeout=5)

        data = client.get(f"/backups/{backup_id}").json()
        assert data["status"] == "completed"
        assert data["backup_type"] == "manual"
        assert [b["backup_id"] for b in client.get("/backups/").json()] == [backup_id]

        assert client.delete(f"/backups/{backup_id}").status_code == 204
        assert client.get(f"/backups/{backup_id}").status_code == 404

    def test_nothing_selected_is_bad_request(self, client):
        """Test that an empty selection is a 400."""
        assert client.post("/backups/", json={"all_deployments": True}).status_code == 400

    def test_restore_accepted(self, client, backup_engine, running_deployment):
        """Test that restore returns 202 immediately."""
        backup_id = client.post("/backups/", json={"all_deployments": True}).json()["backup_id"]
        backup_engine.wait(backup_id, timeout=5)

        response = client.post(f"/backups/{backup_id}/restore", json={"test_restore": True})

        assert response.status_code == 202
        assert response.json() == {"backup_id": backup_id, "status": "restoring"}
        backup_engine.wait(backup_id, timeout=5)

    def test_unknown_backup_type_filter(self, client):
        """Test that an unknown type filter is a 400."""
        assert client.get("/backups/", params={"backup_type": "weekly"}).status_code == 400


class TestTunnelRoutes:
    """Compose validation and injection endpoints."""

    TUNNEL = {
        "endpoint": "https://pangolin.example.com",
        "agent_id": "agent-1",
        "secret": "s3cret",
    }

    def test_validate(self, client):
        """Test validation of a document without the agent."""
        response = client.post("/tunnel/validate", json={"compose_source": SINGLE_SERVICE_COMPOSE})

        assert response.status_code == 200
        assert response.json()["valid"] is True
        assert response.json()["has_tunnel"] is False

    def test_preview(self, client):
        """Test the dry run."""
        response = client.post("/tunnel/preview", json={
            "compose_source": SINGLE_SERVICE_COMPOSE, "tunnel": self.TUNNEL,
        })

        assert response.json()["will_add_tunnel"] is True
        assert response.json()["services_needing_network"] == ["web"]

    def test_inject_uses_default_log_level(self, client):
        """Test that injection returns the corrected source."""
        response = client.post("/tunnel/inject", json={
            "compose_source": SINGLE_SERVICE_COMPOSE, "tunnel": self.TUNNEL,
        })
        data = response.json()
        corrected = yaml.safe_load(data["compose_source"])

        assert data["report"]["valid"] is True
        assert "newt" in corrected["services"]
        assert "LOG_LEVEL=WARN" in corrected["services"]["newt"]["environment"]

    def test_incomplete_tunnel_is_bad_request(self, client):
        """Test that missing tunnel fields are a 400."""
        response = client.post("/tunnel/inject", json={
            "compose_source": SINGLE_SERVICE_COMPOSE,
            "tunnel": {**self.TUNNEL, "secret": ""},
        })
        assert response.status_code == 400

    def test_malformed_compose_is_bad_request(self, client):
        """Test that unparseable sources are a 400."""
        response = client.post("/tunnel/validate", json={"compose_source": "services: ["})
        assert response.status_code == 400
