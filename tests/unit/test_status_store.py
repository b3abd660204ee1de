"""Unit tests for SqlStatusStore."""

import pytest

from cert_pipeline.infra.status_store import SqlStatusStore


@pytest.fixture
def store(session_factory, mock_logger):
    return SqlStatusStore(session_factory, mock_logger)


def test_lifecycle_to_completed(store):
    """Test pending → processing → completed."""
    store.mark_pending(42, "cert-42")
    store.mark_processing(42, "cert-42", 1)
    store.mark_completed(42, "ILC50099", 7)

    row = store.get_status(42)
    assert row["status"] == "completed"
    assert row["registrationNumber"] == "ILC50099"
    assert row["generatedCertId"] == 7
    assert row["jobId"] == "cert-42"
    assert row["attempts"] == 1


def test_completed_is_not_overwritten(store):
    """Test late failure or processing writes do not undo completion."""
    store.mark_completed(42, "ILC50099", 7)

    store.mark_failed(42, "late failure")
    store.mark_processing(42, "cert-42", 2)
    store.mark_pending(42, "cert-42")

    row = store.get_status(42)
    assert row["status"] == "completed"
    assert row["errorMessage"] is None


def test_failed_claim_can_be_reopened(store):
    """Test resubmission resets a failed row to pending."""
    store.mark_pending(42, "cert-42")
    store.mark_failed(42, "boom")

    store.mark_pending(42, "cert-42")

    row = store.get_status(42)
    assert row["status"] == "pending"
    assert row["errorMessage"] is None


def test_processing_row_is_not_reset_by_pending(store):
    """Test resubmitting an in-flight claim keeps its progress."""
    store.mark_pending(42, "cert-42")
    store.mark_processing(42, "cert-42", 2)

    store.mark_pending(42, "cert-42")

    assert store.get_status(42)["status"] == "processing"


def test_missing_claim_returns_none(store):
    assert store.get_status(999) is None
