"""
Unit tests for the import API.

Tests the job read surface, the approval, recovery and override commands,
their policies and the error mapping.
"""

import pytest
from fastapi.testclient import TestClient

from eventimport.ingestion.stage_transition import JOBS_KIND
from eventimport.main import app, get_context
from eventimport.schemas.import_job import ProcessingStage

S = ProcessingStage

EDITOR = {"X-Actor-Id": "alice", "X-Actor-Role": "editor"}
VIEWER = {"X-Actor-Id": "bob", "X-Actor-Role": "viewer"}
ADMIN = {"X-Actor-Id": "root", "X-Actor-Role": "admin"}

# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def client(ctx):
    """Test client wired to the in-memory pipeline context."""
    app.dependency_overrides[get_context] = lambda: ctx
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def job(engine, create_source):
    source = create_source(data=[{"title": "a"}])
    return engine.create_job(source, 0, total_rows=1)


@pytest.fixture
def at_stage(store, engine):
    def _at_stage(job, stage):
        store.update(JOBS_KIND, job.id, {"stage": stage.value, "batch_number": 0})
        return engine.get_job(job.id)

    return _at_stage


# =============================================================================
# TEST CLASSES
# =============================================================================


class TestReadEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_get_job(self, client, job):
        """The job view should expose stage, progress and results."""
        response = client.get(f"/imports/{job.id}")
        assert response.status_code == 200
        body = response.json()
        assert body["id"] == job.id
        assert body["stage"] == "analyze-duplicates"
        assert body["progress"]["total_rows"] == 1
        assert "schema_builder_state" not in body

    def test_unknown_job(self, client):
        response = client.get("/imports/missing")
        assert response.status_code == 404
        assert "missing" in response.json()["detail"]


class TestApproveEndpoint:
    def test_approve(self, client, job, at_stage):
        """An editor should be able to approve a waiting job."""
        at_stage(job, S.AWAIT_APPROVAL)
        response = client.post(f"/imports/{job.id}/approve", headers=EDITOR)
        assert response.status_code == 200
        body = response.json()
        assert body["stage"] == "create-schema-version"
        assert body["schema_validation"]["approved_by"] == "alice"

    @pytest.mark.parametrize("headers", [{}, VIEWER], ids=["anonymous", "viewer"])
    def test_forbidden(self, client, job, at_stage, headers):
        at_stage(job, S.AWAIT_APPROVAL)
        response = client.post(f"/imports/{job.id}/approve", headers=headers)
        assert response.status_code == 403

    def test_not_awaiting(self, client, job):
        """Approving a job in another stage should be a conflict."""
        response = client.post(f"/imports/{job.id}/approve", headers=EDITOR)
        assert response.status_code == 409
        assert response.json()["error"] == "ApprovalStateError"


class TestRecoverEndpoint:
    def test_recover(self, client, job, engine):
        engine.fail(job.id, "boom")
        response = client.post(f"/imports/{job.id}/recover", json={"to_stage": "geocode-batch", "reason": "retry"}, headers=EDITOR)
        assert response.status_code == 200
        assert response.json()["stage"] == "geocode-batch"
        assert response.json()["audit_log"][-1]["actor"] == "alice"

    def test_requires_user(self, client, job, engine):
        engine.fail(job.id, "boom")
        response = client.post(f"/imports/{job.id}/recover", json={"to_stage": "geocode-batch"})
        assert response.status_code == 403

    def test_invalid_stage(self, client, job, engine):
        """Recovery into a stage that cannot be re-entered should be a conflict."""
        engine.fail(job.id, "boom")
        response = client.post(f"/imports/{job.id}/recover", json={"to_stage": "create-events"}, headers=EDITOR)
        assert response.status_code == 409
        assert response.json()["error"] == "InvalidRecoveryStage"
        assert response.json()["to_stage"] == "create-events"

    def test_completed_job(self, client, job, at_stage):
        at_stage(job, S.COMPLETED)
        response = client.post(f"/imports/{job.id}/recover", json={"to_stage": "geocode-batch"}, headers=EDITOR)
        assert response.status_code == 409
        assert response.json()["error"] == "TerminalStateViolation"


class TestOverrideEndpoint:
    def test_admin_override(self, client, job, at_stage):
        at_stage(job, S.COMPLETED)
        response = client.post(f"/imports/{job.id}/override", json={"to_stage": "create-events", "reason": "rewrite"}, headers=ADMIN)
        assert response.status_code == 200
        assert response.json()["audit_log"][-1]["kind"] == "override"

    def test_editor_forbidden(self, client, job):
        response = client.post(f"/imports/{job.id}/override", json={"to_stage": "completed", "reason": "x"}, headers=EDITOR)
        assert response.status_code == 403

    def test_reason_required(self, client, job):
        response = client.post(f"/imports/{job.id}/override", json={"to_stage": "completed"}, headers=ADMIN)
        assert response.status_code == 422
