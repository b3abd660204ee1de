"""Unit tests for DynamoDBJobRepository."""

import pytest
from botocore.exceptions import EndpointConnectionError
from unittest.mock import Mock

from cert_pipeline.domain.errors import TransientBrokerError
from cert_pipeline.domain.job import CertificateRequest, Job, JobOptions, JobState
from cert_pipeline.infra.dynamodb import DynamoDBJobRepository
from cert_pipeline.service.broker import JobBroker


@pytest.fixture
def dynamodb_repo(dynamodb_table_name):
    """DynamoDB repository with its table created."""
    repo = DynamoDBJobRepository(table_name=dynamodb_table_name, region="us-east-1")
    repo.ensure_table()
    return repo


def _job(claim_id=42, ready_at=1000):
    request = CertificateRequest(claim_id=claim_id, student_id=7, course_id=3, custom_data={"score": 9.5})
    return Job.create(request, JobOptions(job_id=f"cert-{claim_id}"), now_ms=ready_at)


def test_put_and_get_job(dynamodb_repo):
    """Test a job round-trips through DynamoDB."""
    assert dynamodb_repo.put_job(_job()) is True

    job = dynamodb_repo.get_job("cert-42")

    assert job.state == JobState.WAITING
    assert job.data.custom_data == {"score": 9.5}
    assert job.ready_at == 1000
    assert dynamodb_repo.get_job("missing") is None


def test_put_existing_job_returns_false(dynamodb_repo):
    """Test job ids are unique."""
    dynamodb_repo.put_job(_job())

    assert dynamodb_repo.put_job(_job()) is False


def test_update_job_is_guarded_by_version(dynamodb_repo):
    """Test a stale version loses the compare-and-swap."""
    dynamodb_repo.put_job(_job())
    job = dynamodb_repo.get_job("cert-42")
    job.state = JobState.ACTIVE
    job.version = 1

    assert dynamodb_repo.update_job(job, expected_version=0) is True
    assert dynamodb_repo.update_job(job, expected_version=0) is False
    assert dynamodb_repo.get_job("cert-42").state == JobState.ACTIVE


def test_list_jobs_by_state_and_ready_time(dynamodb_repo):
    """Test the state index returns jobs ordered by readyAt."""
    dynamodb_repo.put_job(_job(1, ready_at=3000))
    dynamodb_repo.put_job(_job(2, ready_at=1000))
    dynamodb_repo.put_job(_job(3, ready_at=2000))

    assert [j.claim_id for j in dynamodb_repo.list_jobs(JobState.WAITING)] == [2, 3, 1]
    assert [j.claim_id for j in dynamodb_repo.list_jobs(JobState.WAITING, ready_before=2000)] == [2, 3]
    assert len(dynamodb_repo.list_jobs(JobState.WAITING, limit=1)) == 1
    assert dynamodb_repo.count_jobs(JobState.WAITING) == 3
    assert dynamodb_repo.count_jobs(JobState.ACTIVE) == 0


def test_list_jobs_newest_first(dynamodb_repo):
    """Test the state index can be read newest first."""
    dynamodb_repo.put_job(_job(1, ready_at=3000))
    dynamodb_repo.put_job(_job(2, ready_at=1000))
    dynamodb_repo.put_job(_job(3, ready_at=2000))

    newest = dynamodb_repo.list_jobs(JobState.WAITING, limit=2, newest_first=True)

    assert [j.claim_id for j in newest] == [1, 3]


def test_delete_job_is_guarded_by_version(dynamodb_repo):
    """Test deletes require the current version."""
    dynamodb_repo.put_job(_job())

    assert dynamodb_repo.delete_job("cert-42", expected_version=5) is False
    assert dynamodb_repo.delete_job("cert-42", expected_version=0) is True
    assert dynamodb_repo.get_job("cert-42") is None


def test_connectivity_errors_are_transient(dynamodb_repo):
    """Test an unreachable endpoint raises TransientBrokerError."""
    table = Mock()
    table.get_item.side_effect = EndpointConnectionError(endpoint_url="http://localhost:4566")
    dynamodb_repo._local.table = table

    with pytest.raises(TransientBrokerError):
        dynamodb_repo.get_job("cert-42")


def test_broker_lifecycle_on_dynamodb(dynamodb_repo, mock_logger, clock):
    """Test the broker leases and completes a job against DynamoDB."""
    broker = JobBroker(dynamodb_repo, mock_logger, clock=clock)
    broker.init()
    broker.submit(CertificateRequest(claim_id=42, student_id=7, course_id=3), broker.options(job_id="cert-42"))

    job = broker.lease("w", timeout=0)
    assert broker.complete(job.job_id, {"registrationNumber": "ILC50099"}, job.lease_token) is True

    stored = dynamodb_repo.get_job("cert-42")
    assert stored.state == JobState.COMPLETED
    assert stored.result == {"registrationNumber": "ILC50099"}
    assert broker.get_job_counts()["completed"] == 1
