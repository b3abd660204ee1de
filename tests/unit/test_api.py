"""Unit tests for the claim API."""

import pytest
from fastapi.testclient import TestClient

from cert_pipeline.api.app import create_app
from cert_pipeline.infra.status_store import SqlStatusStore
from cert_pipeline.service.submission import ClaimSubmitter


@pytest.fixture
def client(broker, session_factory, mock_metrics_client, mock_logger):
    """API client over an in-memory broker and database."""
    submitter = ClaimSubmitter(
        broker=broker,
        status_store=SqlStatusStore(session_factory, mock_logger),
        metrics_client=mock_metrics_client,
        logger=mock_logger,
    )
    with TestClient(create_app(submitter)) as client:
        yield client


def test_submit_claim(client):
    """Test POST /claims queues a certificate job."""
    response = client.post(
        "/api/v1/certificates/claims",
        json={"claimId": 42, "studentId": 7, "courseId": 3, "customData": {"grade": "A"}},
    )

    assert response.status_code == 202
    assert response.json() == {"jobId": "cert-42", "claimId": 42, "status": "pending"}


def test_submit_claim_validation_error(client):
    """Test malformed claims are rejected."""
    response = client.post("/api/v1/certificates/claims", json={"claimId": "abc", "studentId": 7})

    assert response.status_code == 422


def test_submit_claim_broker_unavailable(client, broker):
    """Test a broker outage answers 503."""
    broker.close()

    response = client.post("/api/v1/certificates/claims", json={"claimId": 42, "studentId": 7, "courseId": 3})

    assert response.status_code == 503


def test_get_claim_status(client):
    """Test GET /claims/{id} returns the status row."""
    client.post("/api/v1/certificates/claims", json={"claimId": 42, "studentId": 7, "courseId": 3})

    response = client.get("/api/v1/certificates/claims/42")

    assert response.status_code == 200
    body = response.json()
    assert body["claimId"] == 42
    assert body["status"] == "pending"
    assert body["jobId"] == "cert-42"


def test_get_unknown_claim_returns_404(client):
    response = client.get("/api/v1/certificates/claims/999")

    assert response.status_code == 404


def test_get_job_and_queue_stats(client, broker):
    """Test job and queue endpoints reflect broker state."""
    client.post("/api/v1/certificates/claims", json={"claimId": 42, "studentId": 7, "courseId": 3})
    broker.lease("w", timeout=0)

    job = client.get("/api/v1/certificates/jobs/cert-42").json()
    stats = client.get("/api/v1/certificates/queue/stats").json()

    assert job["state"] == "active"
    assert job["claimId"] == 42
    assert job["attemptsMade"] == 0
    assert stats["active"] == 1
    assert stats["total"] == 1
    assert client.get("/api/v1/certificates/jobs/missing").status_code == 404


def test_submit_claim_rejects_unsafe_registration_number(client):
    """Test registration numbers are limited to letters, digits, '-' and '_'."""
    response = client.post(
        "/api/v1/certificates/claims",
        json={"claimId": 42, "studentId": 7, "courseId": 3, "customRegNumber": "../../escaped"},
    )

    assert response.status_code == 422


def test_queue_stats_lists_recent_jobs(client):
    """Test queue stats include the newest jobs per state."""
    client.post("/api/v1/certificates/claims", json={"claimId": 42, "studentId": 7, "courseId": 3})

    stats = client.get("/api/v1/certificates/queue/stats").json()

    assert [job["jobId"] for job in stats["recentJobs"]["waiting"]] == ["cert-42"]
    assert stats["recentJobs"]["failed"] == []


def test_retry_failed_job(client, broker):
    """Test POST /queue/retry/{jobId} re-queues a failed job."""
    client.post("/api/v1/certificates/claims", json={"claimId": 42, "studentId": 7, "courseId": 3})
    job = broker.lease("w", timeout=0)
    broker.fail(job.job_id, "boom", job.lease_token, retryable=False)

    response = client.post("/api/v1/certificates/queue/retry/cert-42")

    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "waiting"
    assert body["attemptsMade"] == 0
    assert client.get("/api/v1/certificates/claims/42").json()["status"] == "pending"


def test_retry_rejects_live_and_unknown_jobs(client):
    """Test retry answers 400 for a live job and 404 for an unknown one."""
    client.post("/api/v1/certificates/claims", json={"claimId": 42, "studentId": 7, "courseId": 3})

    assert client.post("/api/v1/certificates/queue/retry/cert-42").status_code == 400
    assert client.post("/api/v1/certificates/queue/retry/missing").status_code == 404
