"""
HTTP tests for the FastAPI adapter.
"""

import pytest
from fastapi.testclient import TestClient

from ledgerline.dependencies import build_dispatcher, get_dispatcher
from ledgerline.main import create_app


@pytest.fixture
def client(storage, unlimited_quota):
    dispatcher = build_dispatcher(storage, unlimited_quota, concurrency=1)
    app = create_app()
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    with TestClient(app) as client:
        yield client


def invoke(client, op, tenant_id="tenant-a", **parameters):
    response = client.post("/api/v1/tools/invoke", json={
        "operation": op, "tenant_id": tenant_id, "parameters": parameters,
    })
    assert response.status_code == 200
    return response.json()


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["storage"] == "connected"
        assert body["queue"]["workers"] == 1


class TestInvoke:

    def test_extract(self, client, statement_text):
        body = invoke(client, "extract", text=statement_text, learn=False)
        assert body["success"] is True
        assert len(body["data"]["accepted"]) == 4
        assert body["confidence"] == 1.0

    def test_failures_are_result_bodies(self, client):
        body = invoke(client, "teleport")
        assert body["success"] is False
        assert body["error_kind"] == "validation_error"
        assert body["retriable"] is False

    def test_malformed_envelope(self, client):
        response = client.post("/api/v1/tools/invoke", json={"parameters": {}})
        assert response.status_code == 200
        assert response.json()["error_kind"] == "validation_error"


class TestJobs:

    def _submit(self, client):
        body = invoke(client, "submit-heavy-job", operation="multi-period-analytics", payload={"periods": ["week"]})
        assert body["data"]["queued"] is True
        return body["data"]["job_id"]

    def test_status(self, client, tenant_id):
        job_id = self._submit(client)
        response = client.get(f"/api/v1/jobs/{job_id}", params={"tenant_id": tenant_id})
        assert response.status_code == 200
        assert response.json()["job_id"] == job_id
        assert response.json()["state"] in {"queued", "processing", "completed"}

    def test_unknown_job(self, client, tenant_id):
        response = client.get("/api/v1/jobs/missing", params={"tenant_id": tenant_id})
        assert response.status_code == 404

    def test_other_tenant(self, client):
        job_id = self._submit(client)
        response = client.get(f"/api/v1/jobs/{job_id}", params={"tenant_id": "tenant-b"})
        assert response.status_code == 404

    def test_tenant_required(self, client):
        assert client.get("/api/v1/jobs/anything").status_code == 422

    def test_cancel(self, client, tenant_id):
        job_id = self._submit(client)
        response = client.post(
            f"/api/v1/jobs/{job_id}/cancel", params={"tenant_id": tenant_id, "reason": "not needed"},
        )
        assert response.status_code == 200
        # The job may already have finished; a finished job is returned unchanged
        assert response.json()["state"] in {"failed", "processing", "completed"}
