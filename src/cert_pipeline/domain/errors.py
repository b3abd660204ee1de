"""Error taxonomy for the certificate pipeline."""

from typing import Optional


class CertPipelineError(Exception):
    """Base class for pipeline errors."""


class TransientBrokerError(CertPipelineError):
    """The broker's backing store is unreachable.

    Handled by the broker's reconnect loop; never recorded as a job failure.
    """


class SubmissionError(CertPipelineError):
    """A job could not be submitted; the caller must retry or queue it."""

    def __init__(self, message: str, claim_id: Optional[int] = None):
        super().__init__(message)
        self.claim_id = claim_id


class GenerationError(CertPipelineError):
    """Certificate generation failed for a job."""

    def __init__(self, message: str, code: str = "generation_failed", retryable: bool = True):
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class StalledJobError(CertPipelineError):
    """A job exceeded its allowed number of stall reclamations."""

    code = "job_stalled"


class ConfigError(CertPipelineError):
    """Invalid environment configuration."""
