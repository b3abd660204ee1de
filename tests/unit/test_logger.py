"""Unit tests for the structured logger."""

from unittest.mock import patch

from cert_pipeline.infra.logger import StructLogger


def test_struct_logger_binds_component_and_forwards_context():
    """Test log calls reach structlog with the component bound."""
    with patch("cert_pipeline.infra.logger.structlog.get_logger") as get_logger:
        logger = StructLogger("cert-api", env="test")

        logger.info("Job submitted", job_id="cert-42")
        logger.warning("Lease lost", job_id="cert-42")
        logger.error("Job failed", error="boom")

    get_logger.assert_called_once_with(component="cert-api", env="test")
    bound = get_logger.return_value
    bound.info.assert_called_once_with("Job submitted", job_id="cert-42")
    bound.warning.assert_called_once_with("Lease lost", job_id="cert-42")
    bound.error.assert_called_once_with("Job failed", error="boom")
