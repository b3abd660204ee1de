"""Relational certificate status store.

One row per claim. Transitions are guarded so that late or duplicate
writes cannot move a claim backwards:

- pending only (re)opens a missing or failed row
- processing only follows pending or processing
- completed always wins and is never overwritten by failed
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .database import Base
from ..domain.interfaces import Logger, StatusStore

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"


class CertificateStatus(Base):
    __tablename__ = "certificate_generation_status"

    claim_id = Column(Integer, primary_key=True, autoincrement=False)

    # Status: pending → processing → completed | failed
    status = Column(String(20), nullable=False, default=PENDING, index=True)
    job_id = Column(String(100), nullable=True)
    registration_number = Column(String(50), nullable=True)
    generated_cert_id = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claimId": self.claim_id,
            "status": self.status,
            "jobId": self.job_id,
            "registrationNumber": self.registration_number,
            "generatedCertId": self.generated_cert_id,
            "errorMessage": self.error_message,
            "attempts": self.attempts,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class SqlStatusStore(StatusStore):
    """StatusStore over the ``certificate_generation_status`` table."""

    def __init__(self, session_factory: sessionmaker, logger: Logger):
        self.session_factory = session_factory
        self.logger = logger

    def mark_pending(self, claim_id: int, job_id: Optional[str] = None) -> bool:
        return self._write(
            claim_id,
            {FAILED},
            status=PENDING,
            job_id=job_id,
            error_message=None,
            attempts=0,
        )

    def mark_processing(self, claim_id: int, job_id: str, attempts: int) -> None:
        self._write(
            claim_id,
            {PENDING, PROCESSING},
            status=PROCESSING,
            job_id=job_id,
            attempts=attempts,
        )

    def mark_completed(self, claim_id: int, registration_number: str, generated_cert_id: int) -> None:
        self._write(
            claim_id,
            None,
            status=COMPLETED,
            registration_number=registration_number,
            generated_cert_id=generated_cert_id,
            error_message=None,
        )

    def mark_failed(self, claim_id: int, error_message: str) -> None:
        self._write(
            claim_id,
            {PENDING, PROCESSING, FAILED},
            status=FAILED,
            error_message=error_message,
        )

    def get_status(self, claim_id: int) -> Optional[Dict[str, Any]]:
        with self.session_factory() as db:
            row = db.get(CertificateStatus, claim_id)
            return row.to_dict() if row else None

    def _write(self, claim_id: int, allowed_from: Optional[Set[str]], **values: Any) -> bool:
        """Insert the row, or update it if its current status is in allowed_from.

        Returns False when the guard rejected the write.
        """
        for _ in range(2):
            now = datetime.now(timezone.utc)
            with self.session_factory() as db:
                row = db.get(CertificateStatus, claim_id, with_for_update=True)
                if row is None:
                    db.add(CertificateStatus(claim_id=claim_id, created_at=now, updated_at=now, **values))
                elif allowed_from is not None and row.status not in allowed_from:
                    self.logger.info(
                        "Certificate status write skipped",
                        claim_id=claim_id,
                        current=row.status,
                        requested=values["status"],
                    )
                    return False
                else:
                    for key, value in values.items():
                        setattr(row, key, value)
                    row.updated_at = now

                try:
                    db.commit()
                    return True
                except IntegrityError:
                    # concurrent insert of the same claim; retry as an update
                    db.rollback()
        raise RuntimeError(f"Could not write certificate status for claim {claim_id}")
