"""Unit tests for the job domain model."""

import pytest

from cert_pipeline.domain.job import (
    BackoffPolicy,
    CertificateRequest,
    Job,
    JobOptions,
    JobState,
)


def test_exponential_backoff_doubles():
    """Test delay * 2^(attempts - 1)."""
    policy = BackoffPolicy(type="exponential", delay_ms=2000)

    assert [policy.delay_for(n) for n in (1, 2, 3)] == [2000, 4000, 8000]


def test_fixed_backoff():
    """Test fixed backoff keeps the same delay."""
    policy = BackoffPolicy(type="fixed", delay_ms=500)

    assert policy.delay_for(3) == 500


def test_unknown_backoff_type_rejected():
    """Test only exponential and fixed are accepted."""
    with pytest.raises(ValueError):
        BackoffPolicy(type="linear")


def test_request_requires_integer_ids():
    """Test claim, student and course ids must be integers."""
    with pytest.raises(ValueError):
        CertificateRequest(claim_id="42", student_id=1, course_id=1)


def test_job_storage_round_trip_keeps_lease_and_retention():
    """Test a leased job survives the storage representation."""
    request = CertificateRequest(claim_id=42, student_id=7, course_id=3, custom_data={"grade": "A"})
    job = Job.create(request, JobOptions(job_id="cert-42", priority=1), now_ms=1000)
    job.state = JobState.ACTIVE
    job.lease_owner = "worker-1"
    job.lease_token = "token"
    job.lease_expires_at = 31000
    job.version = 2

    restored = Job.from_dict(job.to_dict())

    assert restored.job_id == "cert-42"
    assert restored.data == request
    assert restored.state == JobState.ACTIVE
    assert restored.lease_expires_at == 31000
    assert restored.priority == 1
    assert restored.completed_retention.max_count == 1000
    assert restored.failed_retention.max_age_seconds == 86400
    assert restored.version == 2


@pytest.mark.parametrize("number", ["../../escaped", "ILC 1", "a/b", "", "x" * 51])
def test_request_rejects_unsafe_registration_numbers(number):
    """Test custom registration numbers must be safe file names."""
    with pytest.raises(ValueError):
        CertificateRequest(claim_id=1, student_id=7, course_id=3, custom_reg_number=number)
