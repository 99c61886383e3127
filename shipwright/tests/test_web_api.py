"""Tests for the HTTP API."""

import json

import pytest
from fastapi.testclient import TestClient

from shipwright.services import Services
from shipwright.tests.mocks import REJECT
from shipwright.web.server import create_app


@pytest.fixture
def controller(make_controller):
    return make_controller()


@pytest.fixture
def client(config, session_pool, memory_service, controller):
    services = Services(config, session_pool, memory_service, controller)
    return TestClient(create_app(services=services, run_prune_job=False))


def start(client, repo_dir, **extra):
    body = {"requirements": "Add a --json flag", "repository_path": str(repo_dir), **extra}
    return client.post("/api/workflows", json=body)


class TestWorkflowRoutes:
    """Test the workflow endpoints."""

    def test_health(self, client):
        assert client.get("/api/health").json() == {"status": "ok"}

    def test_start_and_follow(self, client, controller, repo_dir):
        response = start(client, repo_dir)

        assert response.status_code == 201
        workflow_id = response.json()["id"]
        controller.wait(workflow_id, timeout=10)

        workflow = client.get(f"/api/workflows/{workflow_id}").json()
        assert workflow["status"] == "complete"
        assert workflow["branch"] == f"shipwright/{workflow_id}"

        plan = client.get(f"/api/workflows/{workflow_id}/plan").json()
        assert plan["status"] == "completed"
        assert plan["phases"][0]["tasks"][0]["description"] == "Add a --json flag"

        listed = client.get("/api/workflows").json()
        assert [w["id"] for w in listed] == [workflow_id]
        assert client.get("/api/workflows", params={"active": True}).json() == []

    def test_invalid_body(self, client, repo_dir):
        assert start(client, repo_dir, max_iterations=0).status_code == 422

    def test_blank_requirements(self, client, repo_dir):
        response = client.post(
            "/api/workflows", json={"requirements": " ", "repository_path": str(repo_dir)}
        )

        assert response.status_code == 400

    def test_busy_repository(self, client, controller, assistant, repo_dir):
        assistant.queue("review", REJECT, REJECT, REJECT)
        first = start(client, repo_dir).json()["id"]
        controller.wait(first, timeout=10)

        response = start(client, repo_dir)

        assert response.status_code == 409
        assert first in response.json()["detail"]

    def test_unknown_workflow(self, client):
        assert client.get("/api/workflows/missing").status_code == 404
        assert client.post("/api/workflows/missing/abort").status_code == 404
        assert client.get("/api/workflows/missing/events").status_code == 404

    def test_no_plan_yet(self, client, controller, assistant, repo_dir):
        assistant.queue("plan", RuntimeError("planner crashed"))
        workflow_id = start(client, repo_dir).json()["id"]
        controller.wait(workflow_id, timeout=10)

        assert client.get(f"/api/workflows/{workflow_id}/plan").status_code == 404

    def test_retry_and_abort(self, client, controller, assistant, repo_dir):
        assistant.queue("review", REJECT, REJECT, REJECT)
        workflow_id = start(client, repo_dir).json()["id"]
        assert controller.wait(workflow_id, timeout=10).status.value == "failed"

        client.post(f"/api/workflows/{workflow_id}/retry")
        assert controller.wait(workflow_id, timeout=10).status.value == "complete"

        aborted = client.post(f"/api/workflows/{workflow_id}/abort").json()
        assert aborted["status"] == "complete"

    def test_skip(self, client, controller, assistant, repo_dir):
        assistant.queue("review", REJECT, REJECT, REJECT)
        workflow_id = start(client, repo_dir).json()["id"]
        controller.wait(workflow_id, timeout=10)

        client.post(f"/api/workflows/{workflow_id}/skip")
        workflow = controller.wait(workflow_id, timeout=10)

        assert workflow.status.value == "complete"
        assert controller.get_plan(workflow_id).phases[0].skipped

    def test_event_stream(self, client, controller, repo_dir):
        """Test a finished workflow streams its state and closes."""
        workflow_id = start(client, repo_dir).json()["id"]
        controller.wait(workflow_id, timeout=10)

        with client.stream("GET", f"/api/workflows/{workflow_id}/events") as response:
            assert response.headers["content-type"].startswith("text/event-stream")
            body = "".join(response.iter_text())

        lines = body.strip().splitlines()
        assert lines[0] == "event: completed"
        payload = json.loads(lines[1][len("data: "):])
        assert payload["data"]["final"] is True


class TestMemoryRoutes:
    """Test the memory endpoints."""

    @pytest.fixture
    def repo(self, repo_dir):
        (repo_dir / "pyproject.toml").write_text("[tool.pytest.ini_options]\naddopts = '-q'\n")
        return str(repo_dir)

    def create(self, client, repo, **extra):
        body = {
            "repository_path": repo,
            "subject": "testing",
            "fact": "pytest runs quietly",
            "citations": ["pyproject.toml:2"],
            **extra,
        }
        return client.post("/api/memories", json=body)

    def test_crud(self, client, repo):
        response = self.create(client, repo, created_by_user_id="dev")
        assert response.status_code == 201
        memory = response.json()
        assert memory["created_by_user_id"] == "dev"

        assert client.get(f"/api/memories/{memory['id']}").json()["fact"] == "pytest runs quietly"

        patched = client.patch(f"/api/memories/{memory['id']}", json={"fact": "pytest -q"})
        assert patched.json()["fact"] == "pytest -q"

        assert client.delete(f"/api/memories/{memory['id']}").status_code == 204
        assert client.get(f"/api/memories/{memory['id']}").status_code == 404

    def test_list_and_search(self, client, repo):
        self.create(client, repo)
        self.create(client, repo, subject="layout", fact="code lives in src")

        listed = client.get("/api/memories", params={"repository": repo}).json()
        found = client.get("/api/memories", params={"repository": repo, "query": "src"}).json()
        by_subject = client.get("/api/memories", params={"repository": repo, "subject": "lay"}).json()

        assert len(listed) == 2
        assert [m["subject"] for m in found] == ["layout"]
        assert [m["subject"] for m in by_subject] == ["layout"]

    def test_validate_and_refresh(self, client, repo):
        good = self.create(client, repo).json()
        bad = self.create(client, repo, subject="gone", citations=["missing.py:1"]).json()

        result = client.post(f"/api/memories/{good['id']}/validate").json()
        assert result["confidence"] == 1.0
        assert result["action"] == "refresh"

        report = client.post(
            "/api/memories/validate", params={"repository": repo, "delete_invalid": True}
        ).json()
        assert report["total"] == 2
        assert report["deleted"] == 1
        assert client.get(f"/api/memories/{bad['id']}").status_code == 404

        refreshed = client.post(f"/api/memories/{good['id']}/refresh").json()
        assert refreshed["expires_at"] >= good["expires_at"]

    def test_statistics_and_prune(self, client, repo):
        self.create(client, repo)

        stats = client.get("/api/memories/statistics", params={"repository": repo}).json()
        pruned = client.post("/api/memories/prune", params={"repository": repo}).json()

        assert stats["total_memories"] == 1
        assert stats["most_cited_file"] == "pyproject.toml"
        assert pruned["pruned"] == 0

    def test_unknown_memory(self, client):
        assert client.get("/api/memories/missing").status_code == 404
        assert client.post("/api/memories/missing/refresh").status_code == 404
