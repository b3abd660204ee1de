"""Pytest configuration and fixtures."""

import os

import boto3
import pytest
from moto import mock_aws
from unittest.mock import Mock

from cert_pipeline.domain.job import BackoffPolicy, JobOptions
from cert_pipeline.infra.database import create_db_engine, create_session_factory, init_db
from cert_pipeline.infra.memory_store import MemoryJobRepository
from cert_pipeline.service.broker import BrokerSettings, JobBroker

# Set test environment variables
os.environ.pop("AWS_ENDPOINT_URL", None)
os.environ["AWS_ACCESS_KEY_ID"] = "test"
os.environ["AWS_SECRET_ACCESS_KEY"] = "test"
os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
os.environ["ENV"] = "test"
os.environ["XRAY_ENABLED"] = "false"


class FakeClock:
    """Settable wall clock for broker timestamps."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms / 1000.0


@pytest.fixture
def mock_logger():
    """Mock logger."""
    logger = Mock()
    logger.info.return_value = None
    logger.error.return_value = None
    logger.warning.return_value = None
    return logger


@pytest.fixture
def mock_metrics_client():
    """Mock Metrics client."""
    client = Mock()
    client.put_metric.return_value = None
    return client


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    return MemoryJobRepository()


@pytest.fixture
def job_options():
    return JobOptions(max_attempts=3, backoff=BackoffPolicy(type="exponential", delay_ms=2000))


@pytest.fixture
def broker(repository, mock_logger, clock, job_options):
    """Connected broker over the in-memory repository."""
    broker = JobBroker(
        repository=repository,
        logger=mock_logger,
        default_options=job_options,
        settings=BrokerSettings(stall_check_interval_ms=30000, max_stalled_count=1, poll_interval_seconds=0.01),
        clock=clock,
        sleep=lambda seconds: None,
    )
    broker.init()
    yield broker
    broker.close()


@pytest.fixture
def session_factory():
    """SQLite in-memory database with the certificate tables."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def dynamodb_table_name():
    """Mock DynamoDB for the jobs table; the repository creates the table."""
    with mock_aws():
        yield "CertificateJobs"


@pytest.fixture
def s3_bucket():
    """Create a mock S3 bucket."""
    with mock_aws():
        s3 = boto3.client("s3", region_name="us-east-1")
        s3.create_bucket(Bucket="certificates")
        yield "certificates"
