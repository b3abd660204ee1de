"""Builds the pipeline components from Settings."""

from dataclasses import dataclass

from sqlalchemy.orm import sessionmaker

from .config import Settings
from .domain.interfaces import ArtifactStorage, Logger
from .infra.database import create_db_engine, create_session_factory, init_db
from .infra.dynamodb import DynamoDBJobRepository
from .infra.metrics import CloudWatchMetricsClient
from .infra.registry import CertificateRegistry
from .infra.s3 import LocalArtifactStorage, S3ArtifactStorage
from .infra.status_store import SqlStatusStore
from .service.broker import JobBroker
from .service.generator import JsonCertificateRenderer, RegistryCertificateGenerator


@dataclass
class Components:
    broker: JobBroker
    session_factory: sessionmaker
    status_store: SqlStatusStore
    metrics_client: CloudWatchMetricsClient


def build_components(settings: Settings, logger: Logger) -> Components:
    repository = DynamoDBJobRepository(
        table_name=settings.jobs_table,
        region=settings.region,
        endpoint_url=settings.endpoint_url,
        use_ssl=settings.broker_tls,
    )
    if settings.is_local:
        repository.ensure_table()

    broker = JobBroker(
        repository=repository,
        logger=logger,
        default_options=settings.job_options(),
        settings=settings.broker_settings(),
    )

    engine = create_db_engine(settings.database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)

    metrics_client = CloudWatchMetricsClient(
        logger=logger,
        namespace=settings.metrics_namespace,
        region=settings.region,
        enabled=settings.metrics_enabled,
    )

    return Components(
        broker=broker,
        session_factory=session_factory,
        status_store=SqlStatusStore(session_factory, logger),
        metrics_client=metrics_client,
    )


def build_generator(settings: Settings, session_factory: sessionmaker, logger: Logger) -> RegistryCertificateGenerator:
    storage: ArtifactStorage
    if settings.artifact_bucket:
        storage = S3ArtifactStorage(bucket=settings.artifact_bucket, region=settings.region)
    else:
        storage = LocalArtifactStorage(settings.artifact_dir)

    registry = CertificateRegistry(
        session_factory,
        prefix=settings.registration_prefix,
        start=settings.registration_start,
    )
    return RegistryCertificateGenerator(
        registry=registry,
        renderer=JsonCertificateRenderer(),
        storage=storage,
        logger=logger,
    )
