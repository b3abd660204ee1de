"""Generated-certificate registry and registration number allocation."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .database import Base
from ..domain.errors import GenerationError
from ..domain.job import CertificateRequest

RESERVED = "reserved"
READY = "ready"


class GeneratedCertificate(Base):
    __tablename__ = "generated_certificates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    claim_id = Column(Integer, nullable=False, unique=True, index=True)
    student_id = Column(Integer, nullable=False, index=True)
    course_id = Column(Integer, nullable=False, index=True)
    registration_number = Column(String(50), nullable=False, unique=True)
    artifact_url = Column(String(1024), nullable=True)

    # Status: reserved → ready
    status = Column(String(20), nullable=False, default=RESERVED)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class RegistrationCounter(Base):
    __tablename__ = "registration_counters"

    prefix = Column(String(20), primary_key=True)
    next_value = Column(Integer, nullable=False)


@dataclass(frozen=True)
class CertificateRecord:
    id: int
    claim_id: int
    registration_number: str
    artifact_url: Optional[str]
    status: str

    @property
    def is_ready(self) -> bool:
        return self.status == READY


def _record(row: GeneratedCertificate) -> CertificateRecord:
    return CertificateRecord(
        id=row.id,
        claim_id=row.claim_id,
        registration_number=row.registration_number,
        artifact_url=row.artifact_url,
        status=row.status,
    )


class CertificateRegistry:
    """One generated certificate per claim, with unique registration numbers.

    Registration numbers are ``<prefix><n>`` with n drawn from a counter
    row starting at ``start``.
    """

    def __init__(self, session_factory: sessionmaker, prefix: str = "ILC", start: int = 50000, max_attempts: int = 5):
        self.session_factory = session_factory
        self.prefix = prefix
        self.start = start
        self.max_attempts = max_attempts

    def find_by_claim(self, claim_id: int) -> Optional[CertificateRecord]:
        with self.session_factory() as db:
            row = db.query(GeneratedCertificate).filter(GeneratedCertificate.claim_id == claim_id).one_or_none()
            return _record(row) if row else None

    def reserve(self, request: CertificateRequest) -> CertificateRecord:
        """Return the claim's certificate record, creating it if needed.

        A new record takes ``request.custom_reg_number`` or the next number
        from the counter. Concurrent reservations for one claim converge on
        the same record.
        """
        for _ in range(self.max_attempts):
            existing = self.find_by_claim(request.claim_id)
            if existing is not None:
                if request.custom_reg_number and not existing.is_ready:
                    return self._renumber(existing, request.custom_reg_number)
                return existing

            now = datetime.now(timezone.utc)
            with self.session_factory() as db:
                number = request.custom_reg_number or self._allocate(db)
                row = GeneratedCertificate(
                    claim_id=request.claim_id,
                    student_id=request.student_id,
                    course_id=request.course_id,
                    registration_number=number,
                    status=RESERVED,
                    created_at=now,
                    updated_at=now,
                )
                db.add(row)
                try:
                    db.commit()
                    return _record(row)
                except IntegrityError:
                    # lost a race on the claim or the number; look again
                    db.rollback()
            if request.custom_reg_number:
                self._check_number_free(request.custom_reg_number, request.claim_id)
        raise GenerationError(
            f"Could not reserve a registration number for claim {request.claim_id}",
            code="registration_failed",
        )

    def mark_ready(self, certificate_id: int, artifact_url: str) -> CertificateRecord:
        with self.session_factory() as db:
            row = db.get(GeneratedCertificate, certificate_id, with_for_update=True)
            if row is None:
                raise LookupError(f"Certificate {certificate_id} not found")
            row.artifact_url = artifact_url
            row.status = READY
            row.updated_at = datetime.now(timezone.utc)
            db.commit()
            return _record(row)

    def _renumber(self, record: CertificateRecord, registration_number: str) -> CertificateRecord:
        if record.registration_number == registration_number:
            return record
        with self.session_factory() as db:
            row = db.get(GeneratedCertificate, record.id, with_for_update=True)
            row.registration_number = registration_number
            row.updated_at = datetime.now(timezone.utc)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                self._check_number_free(registration_number, record.claim_id)
                raise
            return _record(row)

    def _check_number_free(self, registration_number: str, claim_id: int) -> None:
        """Raise a permanent GenerationError if another claim holds the number."""
        with self.session_factory() as db:
            holder = (
                db.query(GeneratedCertificate.claim_id)
                .filter(GeneratedCertificate.registration_number == registration_number)
                .scalar()
            )
        if holder is not None and holder != claim_id:
            raise GenerationError(
                f"Registration number {registration_number} is already assigned to claim {holder}",
                code="registration_number_taken",
                retryable=False,
            )

    def _allocate(self, db: Session) -> str:
        counter = db.get(RegistrationCounter, self.prefix, with_for_update=True)
        if counter is None:
            counter = RegistrationCounter(prefix=self.prefix, next_value=self.start)
            db.add(counter)
        value = counter.next_value
        counter.next_value = value + 1
        return f"{self.prefix}{value}"
