"""Certificate job domain model."""

import copy
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any
from uuid import uuid4


class JobState(str, Enum):
    """Job lifecycle state."""

    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})

STALLED_ERROR_CODE = "job_stalled"
STALLED_ERROR_MESSAGE = "job stalled more than allowable limit"

# registration numbers also name artifact files
REGISTRATION_NUMBER_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,50}")


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay policy applied between failed attempts."""

    type: str = "exponential"
    delay_ms: int = 2000

    def __post_init__(self) -> None:
        if self.type not in ("exponential", "fixed"):
            raise ValueError(f"Unsupported backoff type: {self.type}")
        if self.delay_ms < 0:
            raise ValueError("backoff delay must be >= 0")

    def delay_for(self, attempts_made: int) -> int:
        """Return the delay in ms after the given number of failed attempts."""
        if attempts_made < 1:
            return 0
        if self.type == "fixed":
            return self.delay_ms
        return self.delay_ms * 2 ** (attempts_made - 1)


@dataclass(frozen=True)
class RetentionPolicy:
    """How long terminal jobs are kept before the broker removes them."""

    max_age_seconds: Optional[int] = None
    max_count: Optional[int] = None


@dataclass(frozen=True)
class JobOptions:
    """Per-job submission options (queue defaults live on the broker)."""

    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    completed_retention: RetentionPolicy = field(
        default_factory=lambda: RetentionPolicy(max_age_seconds=3600, max_count=1000)
    )
    failed_retention: RetentionPolicy = field(
        default_factory=lambda: RetentionPolicy(max_age_seconds=86400)
    )
    priority: int = 0
    job_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


@dataclass(frozen=True)
class CertificateRequest:
    """Parameters of one certificate generation, keyed by claim."""

    claim_id: int
    student_id: int
    course_id: int
    custom_data: Optional[Dict[str, Any]] = None
    custom_reg_number: Optional[str] = None

    def __post_init__(self) -> None:
        for name in ("claim_id", "student_id", "course_id"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer")
        if self.custom_reg_number is not None and not (
            isinstance(self.custom_reg_number, str)
            and REGISTRATION_NUMBER_PATTERN.fullmatch(self.custom_reg_number)
        ):
            raise ValueError("custom_reg_number may only contain letters, digits, '-' and '_'")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "claimId": self.claim_id,
            "studentId": self.student_id,
            "courseId": self.course_id,
        }
        if self.custom_data is not None:
            data["customData"] = self.custom_data
        if self.custom_reg_number is not None:
            data["customRegNumber"] = self.custom_reg_number
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CertificateRequest":
        return cls(
            claim_id=int(data["claimId"]),
            student_id=int(data["studentId"]),
            course_id=int(data["courseId"]),
            custom_data=data.get("customData"),
            custom_reg_number=data.get("customRegNumber"),
        )


class Job:
    """Job entity as stored by the broker."""

    def __init__(
        self,
        job_id: str,
        data: CertificateRequest,
        state: JobState = JobState.WAITING,
        attempts_made: int = 0,
        max_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
        completed_retention: Optional[RetentionPolicy] = None,
        failed_retention: Optional[RetentionPolicy] = None,
        priority: int = 0,
        progress: int = 0,
        stalled_count: int = 0,
        result: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        error_code: Optional[str] = None,
        lease_owner: Optional[str] = None,
        lease_token: Optional[str] = None,
        lease_expires_at: Optional[int] = None,
        delay_until: Optional[int] = None,
        ready_at: int = 0,
        retain_until: Optional[int] = None,
        created_at: int = 0,
        processed_at: Optional[int] = None,
        finished_at: Optional[int] = None,
        updated_at: int = 0,
        version: int = 0,
    ):
        self.job_id = job_id
        self.data = data
        self.state = state
        self.attempts_made = attempts_made
        self.max_attempts = max_attempts
        self.backoff = backoff or BackoffPolicy()
        self.completed_retention = completed_retention or RetentionPolicy()
        self.failed_retention = failed_retention or RetentionPolicy()
        self.priority = priority
        self.progress = progress
        self.stalled_count = stalled_count
        self.result = result
        self.error_message = error_message
        self.error_code = error_code
        self.lease_owner = lease_owner
        self.lease_token = lease_token
        self.lease_expires_at = lease_expires_at
        self.delay_until = delay_until
        self.ready_at = ready_at
        self.retain_until = retain_until
        self.created_at = created_at
        self.processed_at = processed_at
        self.finished_at = finished_at
        self.updated_at = updated_at
        self.version = version

    @classmethod
    def create(cls, data: CertificateRequest, options: JobOptions, now_ms: int) -> "Job":
        """Create a new waiting job."""
        return cls(
            job_id=options.job_id or str(uuid4()),
            data=data,
            state=JobState.WAITING,
            max_attempts=options.max_attempts,
            backoff=options.backoff,
            completed_retention=options.completed_retention,
            failed_retention=options.failed_retention,
            priority=options.priority,
            ready_at=now_ms,
            created_at=now_ms,
            updated_at=now_ms,
        )

    @property
    def claim_id(self) -> int:
        return self.data.claim_id

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def copy(self) -> "Job":
        return copy.deepcopy(self)

    def clear_lease(self) -> None:
        self.lease_owner = None
        self.lease_token = None
        self.lease_expires_at = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to a storage dictionary."""
        item: Dict[str, Any] = {
            "jobId": self.job_id,
            "data": self.data.to_dict(),
            "state": self.state.value,
            "attemptsMade": self.attempts_made,
            "maxAttempts": self.max_attempts,
            "backoff": {"type": self.backoff.type, "delay": self.backoff.delay_ms},
            "priority": self.priority,
            "progress": self.progress,
            "stalledCount": self.stalled_count,
            "readyAt": self.ready_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "version": self.version,
        }

        retention = {}
        for key, policy in (
            ("completed", self.completed_retention),
            ("failed", self.failed_retention),
        ):
            entry = {}
            if policy.max_age_seconds is not None:
                entry["age"] = policy.max_age_seconds
            if policy.max_count is not None:
                entry["count"] = policy.max_count
            if entry:
                retention[key] = entry
        if retention:
            item["retention"] = retention

        # Only include optional fields if they are not None
        optional = {
            "result": self.result,
            "errorMessage": self.error_message,
            "errorCode": self.error_code,
            "leaseOwner": self.lease_owner,
            "leaseToken": self.lease_token,
            "leaseExpiresAt": self.lease_expires_at,
            "delayUntil": self.delay_until,
            "retainUntil": self.retain_until,
            "processedAt": self.processed_at,
            "finishedAt": self.finished_at,
        }
        for key, value in optional.items():
            if value is not None:
                item[key] = value

        return item

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Create job from a storage dictionary."""

        def _opt_int(key: str) -> Optional[int]:
            value = data.get(key)
            return int(value) if value is not None else None

        backoff = data.get("backoff") or {}
        retention = data.get("retention") or {}

        def _retention(key: str) -> RetentionPolicy:
            entry = retention.get(key) or {}
            age = entry.get("age")
            count = entry.get("count")
            return RetentionPolicy(
                max_age_seconds=int(age) if age is not None else None,
                max_count=int(count) if count is not None else None,
            )

        return cls(
            job_id=data["jobId"],
            data=CertificateRequest.from_dict(data["data"]),
            state=JobState(data["state"]),
            attempts_made=int(data.get("attemptsMade", 0)),
            max_attempts=int(data.get("maxAttempts", 3)),
            backoff=BackoffPolicy(
                type=backoff.get("type", "exponential"),
                delay_ms=int(backoff.get("delay", 2000)),
            ),
            completed_retention=_retention("completed"),
            failed_retention=_retention("failed"),
            priority=int(data.get("priority", 0)),
            progress=int(data.get("progress", 0)),
            stalled_count=int(data.get("stalledCount", 0)),
            result=data.get("result"),
            error_message=data.get("errorMessage"),
            error_code=data.get("errorCode"),
            lease_owner=data.get("leaseOwner"),
            lease_token=data.get("leaseToken"),
            lease_expires_at=_opt_int("leaseExpiresAt"),
            delay_until=_opt_int("delayUntil"),
            ready_at=int(data.get("readyAt", 0)),
            retain_until=_opt_int("retainUntil"),
            created_at=int(data.get("createdAt", 0)),
            processed_at=_opt_int("processedAt"),
            finished_at=_opt_int("finishedAt"),
            updated_at=int(data.get("updatedAt", 0)),
            version=int(data.get("version", 0)),
        )
