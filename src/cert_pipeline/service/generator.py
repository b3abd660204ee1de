"""Certificate generation backed by the certificate registry."""

import json
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from ..domain.errors import GenerationError
from ..domain.interfaces import ArtifactStorage, CertificateGenerator, CertificateRenderer, Logger
from ..domain.job import CertificateRequest
from ..domain.results import GenerationFailure, GenerationResult, GenerationSuccess
from ..infra.registry import CertificateRegistry
from ..infra.xray import xray_capture


class JsonCertificateRenderer(CertificateRenderer):
    """Renders the certificate as a JSON document."""

    content_type = "application/json"
    extension = "json"

    def render(self, request: CertificateRequest, registration_number: str) -> bytes:
        document = {
            "registrationNumber": registration_number,
            "claimId": request.claim_id,
            "studentId": request.student_id,
            "courseId": request.course_id,
            "issuedAt": datetime.now(timezone.utc).isoformat(),
        }
        if request.custom_data:
            document["customData"] = request.custom_data
        return json.dumps(document, sort_keys=True).encode("utf-8")


class RegistryCertificateGenerator(CertificateGenerator):
    """Generates one certificate per claim.

    Re-running a claim whose certificate is already stored returns the
    existing registration number without rendering again.
    """

    def __init__(
        self,
        registry: CertificateRegistry,
        renderer: CertificateRenderer,
        storage: ArtifactStorage,
        logger: Logger,
    ):
        """Initialize generator."""
        self.registry = registry
        self.renderer = renderer
        self.storage = storage
        self.logger = logger

    @xray_capture("generate_certificate")
    def generate(self, request: CertificateRequest) -> GenerationResult:
        try:
            existing = self.registry.find_by_claim(request.claim_id)
            if existing is not None and existing.is_ready:
                self.logger.info(
                    "Certificate already generated for claim",
                    claim_id=request.claim_id,
                    registration_number=existing.registration_number,
                )
                return self._success(existing.registration_number, existing.id)

            record = self.registry.reserve(request)
            content = self.renderer.render(request, record.registration_number)
            extension = getattr(self.renderer, "extension", "bin")
            content_type = getattr(self.renderer, "content_type", "application/octet-stream")
            url = self.storage.save(
                f"{request.claim_id}/{record.registration_number}.{extension}",
                content,
                content_type,
            )
            record = self.registry.mark_ready(record.id, url)
        except GenerationError as e:
            return GenerationFailure(error=str(e), code=e.code, retryable=e.retryable)
        except SQLAlchemyError as e:
            return GenerationFailure(error=f"Certificate registry error: {e}", code="registry_error")

        self.logger.info(
            "Certificate stored",
            claim_id=request.claim_id,
            registration_number=record.registration_number,
            artifact_url=record.artifact_url,
        )
        return self._success(record.registration_number, record.id)

    @staticmethod
    def _success(registration_number: str, certificate_id: int) -> GenerationSuccess:
        return GenerationSuccess(
            registration_number=registration_number,
            generated_cert_id=certificate_id,
            message=(
                f"Certificates generated successfully with registration number "
                f"{registration_number}. Ready for delivery."
            ),
        )
