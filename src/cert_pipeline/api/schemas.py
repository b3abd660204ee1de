"""Pydantic schemas for API requests and responses."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ClaimRequest(BaseModel):
    """Approved claim submission."""

    model_config = ConfigDict(populate_by_name=True)

    claim_id: int = Field(..., alias="claimId", gt=0, description="Approved claim identifier")
    student_id: int = Field(..., alias="studentId", gt=0, description="Student identifier")
    course_id: int = Field(..., alias="courseId", gt=0, description="Course identifier")
    custom_data: Optional[Dict[str, Any]] = Field(None, alias="customData", description="Extra certificate fields")
    custom_reg_number: Optional[str] = Field(
        None,
        alias="customRegNumber",
        max_length=50,
        pattern=r"^[A-Za-z0-9_-]+$",
        description="Registration number override",
    )


class ClaimSubmissionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId", description="Certificate job identifier")
    claim_id: int = Field(..., alias="claimId")
    status: str = Field(..., description="Certificate status after submission")


class ClaimStatusResponse(BaseModel):
    """Certificate status row for a claim."""

    model_config = ConfigDict(populate_by_name=True)

    claim_id: int = Field(..., alias="claimId")
    status: str
    job_id: Optional[str] = Field(None, alias="jobId")
    registration_number: Optional[str] = Field(None, alias="registrationNumber")
    generated_cert_id: Optional[int] = Field(None, alias="generatedCertId")
    error_message: Optional[str] = Field(None, alias="errorMessage")
    attempts: int = 0
    updated_at: Optional[str] = Field(None, alias="updatedAt")


class JobResponse(BaseModel):
    """Broker view of a certificate job."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId")
    claim_id: int = Field(..., alias="claimId")
    state: str
    progress: int
    attempts_made: int = Field(..., alias="attemptsMade")
    max_attempts: int = Field(..., alias="maxAttempts")
    stalled_count: int = Field(..., alias="stalledCount")
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = Field(None, alias="errorMessage")
    error_code: Optional[str] = Field(None, alias="errorCode")
    created_at: int = Field(..., alias="createdAt", description="Epoch milliseconds")
    processed_at: Optional[int] = Field(None, alias="processedAt")
    finished_at: Optional[int] = Field(None, alias="finishedAt")


class QueueStatsResponse(BaseModel):
    """Job counts per state and the most recent jobs in each."""

    model_config = ConfigDict(populate_by_name=True)

    waiting: int
    active: int
    delayed: int
    completed: int
    failed: int
    stalled: int
    total: int
    recent_jobs: Dict[str, List[JobResponse]] = Field(default_factory=dict, alias="recentJobs")


class ErrorResponse(BaseModel):
    """Error response schema."""

    detail: str = Field(..., description="Error details")
