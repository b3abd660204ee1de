"""Certificate claim submission."""

import time
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .broker import JobBroker
from ..domain.errors import SubmissionError, TransientBrokerError
from ..domain.interfaces import Logger, MetricsClient, StatusStore
from ..domain.job import CertificateRequest, Job, JobState


def job_id_for_claim(claim_id: int) -> str:
    return f"cert-{claim_id}"


class ClaimSubmitter:
    """Turns approved claims into certificate jobs."""

    def __init__(
        self,
        broker: JobBroker,
        status_store: StatusStore,
        metrics_client: MetricsClient,
        logger: Logger,
        priority: int = 1,
    ):
        """Initialize claim submitter."""
        self.broker = broker
        self.status_store = status_store
        self.metrics_client = metrics_client
        self.logger = logger
        self.priority = priority

    def submit_claim(
        self,
        claim_id: int,
        student_id: int,
        course_id: int,
        custom_data: Optional[Dict[str, Any]] = None,
        custom_reg_number: Optional[str] = None,
    ) -> str:
        """Record the claim as pending and enqueue its certificate job.

        Resubmitting a claim whose job is still queued or already completed
        returns the existing job id. A claim whose previous job failed
        permanently gets a fresh job.
        """
        start_time = time.time()
        request = CertificateRequest(
            claim_id=claim_id,
            student_id=student_id,
            course_id=course_id,
            custom_data=custom_data,
            custom_reg_number=custom_reg_number,
        )
        job_id = job_id_for_claim(claim_id)

        if not self.broker.ensure_connected():
            self.logger.error("Job broker unavailable, claim not submitted", claim_id=claim_id)
            self.metrics_client.put_metric("JobsSubmittedFailed", 1.0)
            raise SubmissionError(
                f"Job broker is not connected; claim {claim_id} was not submitted",
                claim_id=claim_id,
            )

        try:
            previous = self.status_store.get_status(claim_id)
            reopened = self.status_store.mark_pending(claim_id, job_id)
        except SQLAlchemyError as e:
            self.logger.error("Failed to record pending certificate status", claim_id=claim_id, error=str(e))
            self.metrics_client.put_metric("JobsSubmittedFailed", 1.0)
            raise SubmissionError(f"Failed to record claim {claim_id}: {e}", claim_id=claim_id) from e

        try:
            job_id = self._queue_job(request, job_id)
        except SubmissionError as e:
            # Compensation: if the job could not be queued, mark the claim failed again
            self.logger.error("Failed to submit certificate job", claim_id=claim_id, error=str(e))
            if reopened:
                self._restore_failed_status(claim_id, previous, e)
            self.metrics_client.put_metric("JobsSubmittedFailed", 1.0)
            raise

        latency = (time.time() - start_time) * 1000
        self.metrics_client.put_metric("JobsSubmitted", 1.0)
        self.metrics_client.put_metric("SubmitLatency", latency, "Milliseconds")
        self.logger.info(
            "Certificate job submitted",
            job_id=job_id,
            claim_id=claim_id,
            student_id=student_id,
            course_id=course_id,
        )
        return job_id

    def _queue_job(self, request: CertificateRequest, job_id: str) -> str:
        try:
            existing = self.broker.get_job(job_id)
            if existing is not None and existing.state == JobState.FAILED:
                self.logger.info("Replacing permanently failed job", job_id=job_id, claim_id=request.claim_id)
                self.broker.remove_job(job_id)
        except TransientBrokerError as e:
            raise SubmissionError(
                f"Failed to submit job for claim {request.claim_id}: {e}",
                claim_id=request.claim_id,
            ) from e

        return self.broker.submit(request, self.broker.options(job_id=job_id, priority=self.priority))

    def _restore_failed_status(
        self, claim_id: int, previous: Optional[Dict[str, Any]], error: Exception
    ) -> None:
        """Mark the claim failed again, keeping an earlier failure's message."""
        if previous and previous.get("status") == "failed" and previous.get("errorMessage"):
            message = previous["errorMessage"]
        else:
            message = f"Submission failed: {error}"
        try:
            self.status_store.mark_failed(claim_id, message)
        except SQLAlchemyError as e:
            self.logger.error(
                "Failed to update certificate status after submission failure",
                claim_id=claim_id,
                error=str(e),
            )

    def retry_job(self, job_id: str) -> Job:
        """Re-queue a permanently failed job and reopen its claim as pending."""
        try:
            if not self.broker.retry_job(job_id):
                job = self.broker.get_job(job_id)
                if job is None:
                    raise ValueError(f"Job {job_id} not found")
                raise ValueError(f"Job {job_id} is not in failed state (current: {job.state.value})")
            job = self.broker.get_job(job_id)
        except TransientBrokerError as e:
            raise SubmissionError(f"Failed to retry job {job_id}: {e}") from e

        try:
            self.status_store.mark_pending(job.claim_id, job.job_id)
        except SQLAlchemyError as e:
            self.logger.error("Failed to reopen certificate status", claim_id=job.claim_id, error=str(e))

        self.metrics_client.put_metric("JobsRetried", 1.0)
        self.logger.info("Certificate job retried", job_id=job.job_id, claim_id=job.claim_id)
        return job

    def get_claim_status(self, claim_id: int) -> Optional[Dict[str, Any]]:
        return self.status_store.get_status(claim_id)

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.broker.get_job(job_id)

    def queue_stats(self) -> Dict[str, int]:
        return self.broker.get_job_counts()

    def recent_jobs(self, limit: Optional[int] = None) -> Dict[str, List[Job]]:
        return self.broker.get_recent_jobs(limit)
