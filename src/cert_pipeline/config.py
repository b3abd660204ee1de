"""Environment configuration."""

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

from .domain.errors import ConfigError
from .domain.interfaces import Logger
from .domain.job import BackoffPolicy, JobOptions, RetentionPolicy
from .infra.parameter_store import ParameterStoreClient
from .service.broker import BrokerSettings


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value < 0:
        raise ConfigError(f"{name} must be >= 0, got {value}")
    return value


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    if raw.lower() in ("true", "1", "yes"):
        return True
    if raw.lower() in ("false", "0", "no"):
        return False
    raise ConfigError(f"{name} must be true or false, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    env: str = "dev"
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    broker_tls: bool = True
    jobs_table: str = "CertificateJobs"
    database_url: str = "sqlite:///./certificates.db"
    concurrency: int = 5
    max_attempts: int = 3
    backoff_delay_ms: int = 2000
    completed_retention_seconds: int = 3600
    completed_retention_count: int = 1000
    failed_retention_seconds: int = 86400
    stall_check_interval_ms: int = 30000
    max_stalled_count: int = 1
    shutdown_timeout_seconds: float = 30.0
    artifact_bucket: Optional[str] = None
    artifact_dir: str = "./artifacts"
    registration_prefix: str = "ILC"
    registration_start: int = 50000
    log_level: str = "INFO"
    xray_enabled: bool = False
    metrics_enabled: bool = False
    metrics_namespace: str = "CertificatePipeline"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            env=env.get("ENV", "dev"),
            region=env.get("AWS_REGION", "us-east-1"),
            endpoint_url=env.get("AWS_ENDPOINT_URL") or None,
            broker_tls=_bool(env, "BROKER_TLS", True),
            jobs_table=env.get("JOBS_TABLE", "CertificateJobs"),
            database_url=env.get("DATABASE_URL", "sqlite:///./certificates.db"),
            concurrency=_int(env, "CERTIFICATE_WORKER_CONCURRENCY", 5, minimum=1),
            max_attempts=_int(env, "JOB_MAX_ATTEMPTS", 3, minimum=1),
            backoff_delay_ms=_int(env, "JOB_BACKOFF_DELAY_MS", 2000),
            completed_retention_seconds=_int(env, "COMPLETED_RETENTION_SECONDS", 3600),
            completed_retention_count=_int(env, "COMPLETED_RETENTION_COUNT", 1000),
            failed_retention_seconds=_int(env, "FAILED_RETENTION_SECONDS", 86400),
            stall_check_interval_ms=_int(env, "STALL_CHECK_INTERVAL_MS", 30000, minimum=1),
            max_stalled_count=_int(env, "MAX_STALLED_COUNT", 1),
            shutdown_timeout_seconds=_float(env, "SHUTDOWN_TIMEOUT_SECONDS", 30.0),
            artifact_bucket=env.get("ARTIFACT_BUCKET") or None,
            artifact_dir=env.get("ARTIFACT_DIR", "./artifacts"),
            registration_prefix=env.get("REGISTRATION_PREFIX", "ILC"),
            registration_start=_int(env, "REGISTRATION_START", 50000),
            log_level=env.get("LOG_LEVEL", "INFO"),
            xray_enabled=_bool(env, "XRAY_ENABLED", False),
            metrics_enabled=_bool(env, "METRICS_ENABLED", False),
            metrics_namespace=env.get("METRICS_NAMESPACE", "CertificatePipeline"),
        )

    @property
    def is_local(self) -> bool:
        """True when pointed at LocalStack."""
        return self.endpoint_url is not None

    def job_options(self) -> JobOptions:
        return JobOptions(
            max_attempts=self.max_attempts,
            backoff=BackoffPolicy(type="exponential", delay_ms=self.backoff_delay_ms),
            completed_retention=RetentionPolicy(
                max_age_seconds=self.completed_retention_seconds,
                max_count=self.completed_retention_count,
            ),
            failed_retention=RetentionPolicy(max_age_seconds=self.failed_retention_seconds),
        )

    def broker_settings(self) -> BrokerSettings:
        return BrokerSettings(
            stall_check_interval_ms=self.stall_check_interval_ms,
            max_stalled_count=self.max_stalled_count,
        )


def load_settings(logger: Logger, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Read settings from the environment, filling the table name and
    database URL from Parameter Store when running in AWS."""
    env = os.environ if environ is None else environ
    settings = Settings.from_env(env)

    if settings.is_local:
        logger.info("Using LocalStack - using environment variables only")
        return settings

    overrides = {}
    try:
        parameter_store = ParameterStoreClient(region=settings.region, env=settings.env)
        if "JOBS_TABLE" not in env:
            overrides["jobs_table"] = parameter_store.get_parameter("dynamodb/jobs-table")
        if "DATABASE_URL" not in env:
            overrides["database_url"] = parameter_store.get_parameter("database/url", decrypt=True)
    except RuntimeError as e:
        logger.warning("Failed to get parameters from Parameter Store, using env vars", error=str(e))
        return settings

    return replace(settings, **overrides)
