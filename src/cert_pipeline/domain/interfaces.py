"""Domain interfaces (Protocols)."""

from typing import Protocol, Optional, List, Dict, Any

from .job import Job, JobState, CertificateRequest
from .results import GenerationResult


class JobRepository(Protocol):
    """Durable job storage used by the broker.

    Every mutation is a compare-and-swap on ``Job.version``; this is the only
    primitive the broker needs for mutual exclusion.
    """

    def ping(self) -> None:
        """Raise TransientBrokerError if the store is unreachable."""
        ...

    def put_job(self, job: Job) -> bool:
        """Insert a job; return False if the id already exists."""
        ...

    def get_job(self, job_id: str) -> Optional[Job]:
        """Retrieve a job by ID."""
        ...

    def update_job(self, job: Job, expected_version: int) -> bool:
        """Replace a job if its stored version still equals expected_version."""
        ...

    def list_jobs(
        self,
        state: JobState,
        ready_before: Optional[int] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[Job]:
        """List jobs in a state ordered by ready_at (ascending unless newest_first)."""
        ...

    def count_jobs(self, state: JobState) -> int:
        """Count jobs in a state."""
        ...

    def delete_job(self, job_id: str, expected_version: int) -> bool:
        """Delete a job if its stored version still equals expected_version."""
        ...


class StatusStore(Protocol):
    """Per-claim certificate status (relational)."""

    def mark_pending(self, claim_id: int, job_id: Optional[str] = None) -> bool:
        """Open a missing or failed row as pending; False if the row is live."""
        ...

    def mark_processing(self, claim_id: int, job_id: str, attempts: int) -> None:
        ...

    def mark_completed(
        self, claim_id: int, registration_number: str, generated_cert_id: int
    ) -> None:
        ...

    def mark_failed(self, claim_id: int, error_message: str) -> None:
        ...

    def get_status(self, claim_id: int) -> Optional[Dict[str, Any]]:
        ...


class CertificateGenerator(Protocol):
    """Produces the certificate artifact for a claim.

    Must be safe to call more than once for the same claim.
    """

    def generate(self, request: CertificateRequest) -> GenerationResult:
        ...


class CertificateRenderer(Protocol):
    """Renders the certificate document."""

    def render(self, request: CertificateRequest, registration_number: str) -> bytes:
        ...


class ArtifactStorage(Protocol):
    """Stores rendered artifacts and returns their URL."""

    def save(self, key: str, content: bytes, content_type: str) -> str:
        ...


class MetricsClient(Protocol):
    """CloudWatch Metrics client interface."""

    def put_metric(self, metric_name: str, value: float, unit: str = "Count") -> None:
        """Put a custom metric."""
        ...


class Logger(Protocol):
    """Logger interface."""

    def info(self, message: str, **kwargs: Any) -> None:
        """Log info message."""
        ...

    def error(self, message: str, **kwargs: Any) -> None:
        """Log error message."""
        ...

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log warning message."""
        ...
