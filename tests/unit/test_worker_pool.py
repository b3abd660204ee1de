"""Unit tests for WorkerPool."""

import time

import pytest
from unittest.mock import Mock

from cert_pipeline.domain.errors import GenerationError
from cert_pipeline.domain.job import CertificateRequest, JobState
from cert_pipeline.domain.results import GenerationFailure, GenerationSuccess
from cert_pipeline.service.worker_pool import WorkerPool


@pytest.fixture
def mock_generator():
    """Mock certificate generator."""
    generator = Mock()
    generator.generate.return_value = GenerationSuccess("ILC50099", 7, "ok")
    return generator


@pytest.fixture
def mock_status_store():
    """Mock status store."""
    store = Mock()
    store.mark_processing.return_value = None
    store.mark_completed.return_value = None
    store.mark_failed.return_value = None
    return store


@pytest.fixture
def pool(broker, mock_generator, mock_status_store, mock_metrics_client, mock_logger):
    """Worker pool instance."""
    return WorkerPool(
        broker=broker,
        generator=mock_generator,
        status_store=mock_status_store,
        metrics_client=mock_metrics_client,
        logger=mock_logger,
        concurrency=2,
        lease_poll_seconds=0.05,
        promote_interval_seconds=0.05,
        status_retry_delay_seconds=0,
    )


def _leased(broker, claim_id=42, **options):
    broker.submit(
        CertificateRequest(claim_id=claim_id, student_id=7, course_id=3),
        broker.options(job_id=f"cert-{claim_id}", **options),
    )
    return broker.lease("cert-worker-1", timeout=0)


def _metric_names(metrics_client):
    return [c.args[0] for c in metrics_client.put_metric.call_args_list]


def test_process_job_success(pool, broker, mock_status_store, mock_metrics_client):
    """Test a successful generation completes the job and the status row."""
    job = _leased(broker)

    state = pool.process_job(job, "cert-worker-1")

    assert state == JobState.COMPLETED
    stored = broker.get_job("cert-42")
    assert stored.state == JobState.COMPLETED
    assert stored.result["registrationNumber"] == "ILC50099"
    assert stored.result["claimId"] == 42
    mock_status_store.mark_processing.assert_called_once_with(42, "cert-42", 1)
    mock_status_store.mark_completed.assert_called_once_with(42, "ILC50099", 7)
    mock_status_store.mark_failed.assert_not_called()
    assert "JobsCompleted" in _metric_names(mock_metrics_client)


def test_process_job_retryable_failure_schedules_retry(pool, broker, mock_generator, mock_status_store):
    """Test a failure with attempts left does not touch the status row."""
    mock_generator.generate.return_value = GenerationFailure("template missing")
    job = _leased(broker)

    state = pool.process_job(job, "cert-worker-1")

    assert state == JobState.DELAYED
    assert broker.get_job("cert-42").attempts_made == 1
    mock_status_store.mark_failed.assert_not_called()


def test_process_job_last_attempt_marks_status_failed(
    pool, broker, mock_generator, mock_status_store, mock_metrics_client
):
    """Test exhausting attempts writes the failure to the status store."""
    mock_generator.generate.return_value = GenerationFailure("template missing")
    job = _leased(broker, max_attempts=1)

    state = pool.process_job(job, "cert-worker-1")

    assert state == JobState.FAILED
    mock_status_store.mark_failed.assert_called_once_with(42, "template missing")
    assert "JobsFailed" in _metric_names(mock_metrics_client)


def test_generator_exception_becomes_failure(pool, broker, mock_generator):
    """Test an unexpected generator exception is recorded as a failed attempt."""
    mock_generator.generate.side_effect = ConnectionError("db down")
    job = _leased(broker)

    state = pool.process_job(job, "cert-worker-1")

    assert state == JobState.DELAYED
    assert broker.get_job("cert-42").error_message == "db down"


def test_non_retryable_generation_error_fails_immediately(pool, broker, mock_generator, mock_status_store):
    """Test GenerationError(retryable=False) skips retries."""
    mock_generator.generate.side_effect = GenerationError("bad claim", code="invalid_claim", retryable=False)
    job = _leased(broker)

    state = pool.process_job(job, "cert-worker-1")

    assert state == JobState.FAILED
    assert broker.get_job("cert-42").error_code == "invalid_claim"
    mock_status_store.mark_failed.assert_called_once_with(42, "bad claim")


def test_status_write_failure_is_retried_then_reported(
    pool, broker, mock_status_store, mock_metrics_client, mock_logger
):
    """Test a failing status store does not undo the broker outcome."""
    mock_status_store.mark_completed.side_effect = RuntimeError("database is locked")
    job = _leased(broker)

    state = pool.process_job(job, "cert-worker-1")

    assert state == JobState.COMPLETED
    assert broker.get_job("cert-42").state == JobState.COMPLETED
    assert mock_status_store.mark_completed.call_count == 3
    assert "StatusWriteFailed" in _metric_names(mock_metrics_client)


def test_lost_lease_does_not_write_status(pool, broker, clock, mock_generator, mock_status_store):
    """Test a worker whose job was reclaimed leaves the outcome to the new holder."""

    def reclaimed_meanwhile(request):
        clock.advance(30001)
        broker.check_stalled()
        broker.lease("cert-worker-2", timeout=0)
        return GenerationSuccess("ILC50099", 7)

    mock_generator.generate.side_effect = reclaimed_meanwhile
    job = _leased(broker)

    state = pool.process_job(job, "cert-worker-1")

    assert state is None
    assert broker.get_job("cert-42").lease_owner == "cert-worker-2"
    mock_status_store.mark_completed.assert_not_called()


def test_maintenance_fails_exhausted_stalled_jobs(pool, broker, clock, mock_status_store, mock_metrics_client):
    """Test maintenance reclaims stalled jobs and records terminal stalls."""
    _leased(broker)
    clock.advance(30001)
    pool.run_maintenance(force=True)
    assert broker.get_job("cert-42").state == JobState.WAITING

    broker.lease("cert-worker-2", timeout=0)
    clock.advance(30001)
    pool.run_maintenance(force=True)

    assert broker.get_job("cert-42").state == JobState.FAILED
    mock_status_store.mark_failed.assert_called_once_with(42, "job stalled more than allowable limit")
    assert _metric_names(mock_metrics_client).count("JobsStalled") == 2
    assert "QueueDepth" in _metric_names(mock_metrics_client)


def test_stall_checks_run_at_half_the_stall_interval(pool):
    """Test an expired lease is reclaimed within half a stall interval."""
    assert pool.maintenance_interval == pytest.approx(15.0)
    assert pool.heartbeat_interval == pytest.approx(15.0)


def test_maintenance_promotes_delayed_jobs(pool, broker, clock):
    """Test delayed jobs become waiting once their backoff elapses."""
    job = _leased(broker)
    broker.fail(job.job_id, "boom", job.lease_token)

    clock.advance(2000)
    pool.run_maintenance()

    assert broker.get_job("cert-42").state == JobState.WAITING


def test_start_and_stop_processes_jobs(pool, broker, mock_status_store):
    """Test the pool drains submitted jobs and stops cleanly."""
    for claim_id in (1, 2, 3):
        broker.submit(
            CertificateRequest(claim_id=claim_id, student_id=7, course_id=3),
            broker.options(job_id=f"cert-{claim_id}"),
        )

    pool.start()
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline and broker.get_job_counts()["completed"] < 3:
        time.sleep(0.02)

    assert pool.stop(timeout=5) is True
    assert broker.get_job_counts()["completed"] == 3
    assert mock_status_store.mark_completed.call_count == 3
    assert pool.running is False


def test_invalid_concurrency_rejected(broker, mock_generator, mock_status_store, mock_metrics_client, mock_logger):
    """Test a pool needs at least one slot."""
    with pytest.raises(ValueError):
        WorkerPool(broker, mock_generator, mock_status_store, mock_metrics_client, mock_logger, concurrency=0)
