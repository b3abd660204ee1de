"""FastAPI routes."""

from fastapi import APIRouter, HTTPException, Request, status

from ..domain.errors import SubmissionError, TransientBrokerError
from ..domain.job import Job
from ..service.submission import ClaimSubmitter
from .schemas import (
    ClaimRequest,
    ClaimStatusResponse,
    ClaimSubmissionResponse,
    ErrorResponse,
    JobResponse,
    QueueStatsResponse,
)

router = APIRouter(prefix="/certificates")


def get_submitter_from_request(request: Request) -> ClaimSubmitter:
    """Get claim submitter from app state."""
    submitter = getattr(request.app.state, "submitter", None)
    if submitter is None:
        raise HTTPException(status_code=500, detail="Claim submitter not initialized")
    return submitter


def _job_response(job: Job) -> JobResponse:
    return JobResponse(
        jobId=job.job_id,
        claimId=job.claim_id,
        state=job.state.value,
        progress=job.progress,
        attemptsMade=job.attempts_made,
        maxAttempts=job.max_attempts,
        stalledCount=job.stalled_count,
        result=job.result,
        errorMessage=job.error_message,
        errorCode=job.error_code,
        createdAt=job.created_at,
        processedAt=job.processed_at,
        finishedAt=job.finished_at,
    )


@router.post(
    "/claims",
    response_model=ClaimSubmissionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
def submit_claim(claim: ClaimRequest, http_request: Request) -> ClaimSubmissionResponse:
    """Queue certificate generation for an approved claim."""
    submitter = get_submitter_from_request(http_request)

    try:
        job_id = submitter.submit_claim(
            claim_id=claim.claim_id,
            student_id=claim.student_id,
            course_id=claim.course_id,
            custom_data=claim.custom_data,
            custom_reg_number=claim.custom_reg_number,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except SubmissionError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e

    row = submitter.get_claim_status(claim.claim_id) or {}
    return ClaimSubmissionResponse(
        jobId=job_id,
        claimId=claim.claim_id,
        status=row.get("status", "pending"),
    )


@router.get(
    "/claims/{claim_id}",
    response_model=ClaimStatusResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_claim_status(claim_id: int, http_request: Request) -> ClaimStatusResponse:
    """Get the certificate status of a claim."""
    submitter = get_submitter_from_request(http_request)

    row = submitter.get_claim_status(claim_id)
    if not row:
        raise HTTPException(status_code=404, detail=f"Claim {claim_id} not found")
    return ClaimStatusResponse(**row)


@router.get(
    "/jobs/{job_id}",
    response_model=JobResponse,
    responses={
        404: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
def get_job(job_id: str, http_request: Request) -> JobResponse:
    """Get a certificate job by ID."""
    submitter = get_submitter_from_request(http_request)

    try:
        job = submitter.get_job(job_id)
    except TransientBrokerError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    if not job:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return _job_response(job)


@router.get(
    "/queue/stats",
    response_model=QueueStatsResponse,
    responses={503: {"model": ErrorResponse}},
)
def get_queue_stats(http_request: Request) -> QueueStatsResponse:
    """Job counts per broker state with the most recent jobs in each."""
    submitter = get_submitter_from_request(http_request)

    try:
        counts = submitter.queue_stats()
        recent = submitter.recent_jobs()
    except TransientBrokerError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e

    return QueueStatsResponse(
        **counts,
        recentJobs={state: [_job_response(job) for job in jobs] for state, jobs in recent.items()},
    )


@router.post(
    "/queue/retry/{job_id}",
    response_model=JobResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
def retry_job(job_id: str, http_request: Request) -> JobResponse:
    """Re-queue a permanently failed certificate job."""
    submitter = get_submitter_from_request(http_request)

    try:
        if submitter.get_job(job_id) is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        job = submitter.retry_job(job_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except (SubmissionError, TransientBrokerError) as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return _job_response(job)
