"""Tests for API routes."""
import pytest
from fastapi.testclient import TestClient

from deepcite.api.deps import get_orchestrator
from deepcite.main import app
from deepcite.models.jobs import ResearchJob
from fakes import PROMPT, make_orchestrator


@pytest.fixture
def orchestrator(store, indexer, retrieval):
    return make_orchestrator(store, indexer, retrieval)


@pytest.fixture
def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def create_job(client, **payload):
    payload.setdefault("prompt", PROMPT)
    payload.setdefault("target_source_count", 5)
    response = client.post("/api/jobs", json=payload)
    assert response.status_code == 202
    return response.json()["job_id"]


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "deepcite"


class TestJobLifecycle:
    def test_create_runs_job_in_background(self, client):
        response = client.post("/api/jobs", json={"prompt": PROMPT, "target_source_count": 5})

        assert response.status_code == 202
        assert response.json()["state"] == "pending"
        job = client.get(f"/api/jobs/{response.json()['job_id']}").json()
        assert job["state"] == "completed"
        assert len(job["acquired_source_ids"]) == 5
        assert job["grounding_score"] == pytest.approx(2 / 3)

    def test_prompt_too_short(self, client):
        assert client.post("/api/jobs", json={"prompt": "hi"}).status_code == 422

    def test_unknown_job(self, client):
        response = client.get("/api/jobs/missing")
        assert response.status_code == 404
        assert "missing" in response.json()["detail"]

    def test_pause_and_resume_completed_job_conflict(self, client):
        job_id = create_job(client)

        assert client.post(f"/api/jobs/{job_id}/pause").status_code == 409
        assert client.post(f"/api/jobs/{job_id}/resume").status_code == 409

    @pytest.mark.asyncio
    async def test_cancel_pending_job(self, client, store):
        job = ResearchJob(prompt=PROMPT)
        await store.save_job(job)

        response = client.post(f"/api/jobs/{job.id}/cancel")

        assert response.status_code == 200
        assert response.json()["state"] == "cancelled"

    def test_continue_completed_job(self, client):
        job_id = create_job(client)

        response = client.post(f"/api/jobs/{job_id}/continue", json={"additional_sources": 2})

        assert response.status_code == 202
        job = client.get(f"/api/jobs/{job_id}").json()
        assert job["state"] == "completed"
        assert job["target_source_count"] == 7
        assert len(job["acquired_source_ids"]) == 7

    def test_delete_job(self, client):
        job_id = create_job(client)

        assert client.delete(f"/api/jobs/{job_id}").status_code == 204
        assert client.get(f"/api/jobs/{job_id}").status_code == 404
        assert client.delete(f"/api/jobs/{job_id}").status_code == 404


class TestJobViews:
    def test_list_jobs_by_session(self, client):
        create_job(client, session_id="alpha")
        create_job(client, session_id="beta")

        assert len(client.get("/api/jobs").json()) == 2
        jobs = client.get("/api/jobs", params={"session_id": "alpha"}).json()
        assert [j["session_id"] for j in jobs] == ["alpha"]

    def test_steps_reports_and_claims(self, client):
        job_id = create_job(client)

        steps = client.get(f"/api/jobs/{job_id}/steps").json()
        assert steps[0]["step_number"] == 1
        assert steps[-1]["action"] == "Completed"

        reports = client.get(f"/api/jobs/{job_id}/reports").json()
        assert sorted(r["report_type"] for r in reports) == ["activity", "executive", "full"]

        claims = client.get(f"/api/jobs/{job_id}/claims").json()
        assert sorted(c["support"] for c in claims) == ["cited", "cited", "hypothesis"]

    def test_events_for_finished_job(self, client):
        job_id = create_job(client)

        response = client.get(f"/api/jobs/{job_id}/events")

        assert response.status_code == 200
        assert "event: job_completed" in response.text
