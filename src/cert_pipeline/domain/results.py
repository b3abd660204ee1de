"""Explicit outcome of one certificate generation."""

from dataclasses import dataclass
from typing import Any, Dict, Union


@dataclass(frozen=True)
class GenerationSuccess:
    """Generator produced (or found) the certificate for a claim."""

    registration_number: str
    generated_cert_id: int
    message: str = ""

    def to_dict(self, claim_id: int) -> Dict[str, Any]:
        return {
            "success": True,
            "claimId": claim_id,
            "registrationNumber": self.registration_number,
            "generatedCertId": self.generated_cert_id,
            "message": self.message,
        }


@dataclass(frozen=True)
class GenerationFailure:
    """Generator could not produce the certificate.

    A non-retryable failure is terminal on the first attempt.
    """

    error: str
    code: str = "generation_failed"
    retryable: bool = True


GenerationResult = Union[GenerationSuccess, GenerationFailure]
