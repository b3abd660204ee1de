"""Certificate worker pool with lease heartbeats and stall recovery."""

import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional

from .broker import JobBroker
from ..domain.errors import GenerationError, TransientBrokerError
from ..domain.events import BrokerEvent, BrokerEventType
from ..domain.interfaces import CertificateGenerator, Logger, MetricsClient, StatusStore
from ..domain.job import CertificateRequest, Job, JobState
from ..domain.results import GenerationFailure, GenerationResult, GenerationSuccess
from ..infra.xray import traced_segment


class LeaseHeartbeat:
    """Renews a job's lease in the background while it is being processed."""

    def __init__(self, broker: JobBroker, job: Job, interval: float, logger: Logger):
        self.broker = broker
        self.job = job
        self.interval = interval
        self.logger = logger
        self.lost = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "LeaseHeartbeat":
        self._thread = threading.Thread(
            target=self._run,
            name=f"heartbeat-{self.job.job_id}",
            daemon=True,
        )
        self._thread.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                renewed = self.broker.extend_lease(self.job.job_id, self.job.lease_token)
            except TransientBrokerError as e:
                self.logger.warning("Lease renewal failed", job_id=self.job.job_id, error=str(e))
                continue
            if not renewed:
                self.lost = True
                self.logger.warning(
                    "Lease lost while processing",
                    job_id=self.job.job_id,
                    claim_id=self.job.claim_id,
                )
                return


class WorkerPool:
    """Runs up to ``concurrency`` certificate jobs at once.

    Each slot is a thread that leases one job at a time from the broker. A
    separate maintenance thread promotes delayed jobs, reclaims stalled
    ones and applies retention.
    """

    def __init__(
        self,
        broker: JobBroker,
        generator: CertificateGenerator,
        status_store: StatusStore,
        metrics_client: MetricsClient,
        logger: Logger,
        concurrency: int = 5,
        name: str = "cert-worker",
        lease_poll_seconds: float = 1.0,
        heartbeat_interval_seconds: Optional[float] = None,
        maintenance_interval_seconds: Optional[float] = None,
        promote_interval_seconds: float = 0.5,
        status_write_attempts: int = 3,
        status_retry_delay_seconds: float = 0.2,
    ):
        """Initialize worker pool."""
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        self.broker = broker
        self.generator = generator
        self.status_store = status_store
        self.metrics_client = metrics_client
        self.logger = logger
        self.concurrency = concurrency
        self.name = name
        self.lease_poll_seconds = lease_poll_seconds

        stall_seconds = broker.settings.stall_check_interval_ms / 1000.0
        self.heartbeat_interval = heartbeat_interval_seconds or stall_seconds / 2
        # an expired lease is reclaimed within half a stall interval of expiring
        self.maintenance_interval = maintenance_interval_seconds or stall_seconds / 2
        self.promote_interval = promote_interval_seconds
        self.status_write_attempts = status_write_attempts
        self.status_retry_delay = status_retry_delay_seconds

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._active: Dict[str, str] = {}
        self._active_lock = threading.Lock()
        self._last_maintenance = 0.0

        broker.subscribe(self._on_stalled, BrokerEventType.STALLED)

    @property
    def active_jobs(self) -> Dict[str, str]:
        """Worker id to job id for every job currently in a slot."""
        with self._active_lock:
            return dict(self._active)

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        """Start the worker slots and the maintenance thread."""
        self._stop.clear()
        for index in range(self.concurrency):
            worker_id = f"{self.name}-{index + 1}"
            thread = threading.Thread(target=self._slot_loop, args=(worker_id,), name=worker_id, daemon=True)
            thread.start()
            self._threads.append(thread)

        maintenance = threading.Thread(target=self._maintenance_loop, name=f"{self.name}-maintenance", daemon=True)
        maintenance.start()
        self._threads.append(maintenance)

        self.logger.info("Worker pool started", concurrency=self.concurrency, name=self.name)

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop leasing and wait for in-flight jobs.

        Returns False if jobs were still running when ``timeout`` expired;
        those are abandoned and later reclaimed as stalled.
        """
        self.logger.info("Stopping worker pool", in_flight=len(self.active_jobs))
        self._stop.set()

        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
            thread.join(remaining)

        abandoned = self.active_jobs
        if abandoned:
            self.logger.warning(
                "Shutdown timeout reached, abandoning in-flight jobs",
                jobs=sorted(abandoned.values()),
            )
        self._threads = [thread for thread in self._threads if thread.is_alive()]
        self.logger.info("Worker pool stopped", abandoned=len(abandoned))
        return not abandoned

    def _slot_loop(self, worker_id: str) -> None:
        self.logger.info("Worker slot started", worker_id=worker_id)
        while not self._stop.is_set():
            try:
                job = self.broker.lease(worker_id, timeout=self.lease_poll_seconds)
            except TransientBrokerError as e:
                self.logger.warning("Broker unavailable, waiting to reconnect", worker_id=worker_id, error=str(e))
                self.broker.reconnect(stop=self._stop)
                continue
            except Exception as e:
                self.logger.error("Error in worker loop", worker_id=worker_id, error=str(e))
                self._stop.wait(1.0)
                continue

            if job is None:
                if self.broker.closed:
                    break
                continue

            try:
                self.process_job(job, worker_id)
            except Exception as e:
                # the lease expires and the stall check requeues the job
                self.logger.error(
                    "Unexpected error processing job",
                    job_id=job.job_id,
                    claim_id=job.claim_id,
                    worker_id=worker_id,
                    error=str(e),
                )
        self.logger.info("Worker slot stopped", worker_id=worker_id)

    def process_job(self, job: Job, worker_id: str) -> Optional[JobState]:
        """Run one leased job through the generator and record the outcome.

        Returns the job's resulting broker state, or None if the broker did
        not accept the outcome.
        """
        start_time = time.time()
        with self._track(worker_id, job), traced_segment(
            "process_certificate_job", job_id=job.job_id, claim_id=job.claim_id
        ):
            self.logger.info(
                "Processing certificate job",
                job_id=job.job_id,
                claim_id=job.claim_id,
                student_id=job.data.student_id,
                course_id=job.data.course_id,
                attempt=job.attempts_made + 1,
                max_attempts=job.max_attempts,
                worker_id=worker_id,
            )

            try:
                self.broker.report_progress(job.job_id, 10, job.lease_token)
            except TransientBrokerError as e:
                self.logger.warning("Failed to report progress", job_id=job.job_id, error=str(e))
            self._write_status(
                "processing",
                job.claim_id,
                lambda: self.status_store.mark_processing(job.claim_id, job.job_id, job.attempts_made + 1),
            )

            with LeaseHeartbeat(self.broker, job, self.heartbeat_interval, self.logger):
                result = self._generate(job.data)

            if isinstance(result, GenerationSuccess):
                return self._handle_success(job, result, start_time)
            return self._handle_failure(job, result)

    def _generate(self, request: CertificateRequest) -> GenerationResult:
        try:
            result = self.generator.generate(request)
        except GenerationError as e:
            return GenerationFailure(error=str(e), code=e.code, retryable=e.retryable)
        except Exception as e:
            return GenerationFailure(error=str(e) or type(e).__name__)

        if not isinstance(result, (GenerationSuccess, GenerationFailure)):
            return GenerationFailure(
                error=f"Generator returned an unexpected result: {result!r}",
                code="invalid_result",
                retryable=False,
            )
        return result

    def _handle_success(self, job: Job, result: GenerationSuccess, start_time: float) -> Optional[JobState]:
        completed = self._acknowledge(
            job,
            lambda: self.broker.complete(job.job_id, result.to_dict(job.claim_id), job.lease_token),
        )
        if not completed:
            self.logger.warning(
                "Broker did not accept completion, leaving status to the current lease holder",
                job_id=job.job_id,
                claim_id=job.claim_id,
            )
            return None

        duration = (time.time() - start_time) * 1000
        self.metrics_client.put_metric("JobsCompleted", 1.0)
        self.metrics_client.put_metric("JobProcessingDuration", duration, "Milliseconds")
        self.logger.info(
            "Certificate generated",
            job_id=job.job_id,
            claim_id=job.claim_id,
            registration_number=result.registration_number,
            generated_cert_id=result.generated_cert_id,
            duration_ms=duration,
        )

        self._write_status(
            "completed",
            job.claim_id,
            lambda: self.status_store.mark_completed(
                job.claim_id, result.registration_number, result.generated_cert_id
            ),
        )
        return JobState.COMPLETED

    def _handle_failure(self, job: Job, result: GenerationFailure) -> Optional[JobState]:
        self.logger.warning(
            "Certificate generation failed",
            job_id=job.job_id,
            claim_id=job.claim_id,
            attempt=job.attempts_made + 1,
            code=result.code,
            retryable=result.retryable,
            error=result.error,
        )
        state = self._acknowledge(
            job,
            lambda: self.broker.fail(
                job.job_id,
                result.error,
                job.lease_token,
                retryable=result.retryable,
                error_code=result.code,
            ),
        )
        if state == JobState.FAILED:
            self.metrics_client.put_metric("JobsFailed", 1.0)
            self._write_status(
                "failed",
                job.claim_id,
                lambda: self.status_store.mark_failed(job.claim_id, result.error),
            )
        return state

    def _acknowledge(self, job: Job, call: Callable):
        """Report an outcome to the broker, reconnecting if it is down."""
        for attempt in range(1, 4):
            try:
                return call()
            except TransientBrokerError as e:
                self.logger.warning(
                    "Broker unavailable while recording job outcome",
                    job_id=job.job_id,
                    attempt=attempt,
                    error=str(e),
                )
                if not self.broker.reconnect(max_attempts=20, stop=self._stop):
                    break
        self.logger.error(
            "Could not record job outcome; the lease will expire and the job will rerun",
            job_id=job.job_id,
            claim_id=job.claim_id,
        )
        return None

    def _write_status(self, status: str, claim_id: int, write: Callable[[], None]) -> bool:
        """Write to the status store with bounded retries; never raises."""
        for attempt in range(1, self.status_write_attempts + 1):
            try:
                write()
                return True
            except Exception as e:
                self.logger.warning(
                    "Certificate status write failed",
                    claim_id=claim_id,
                    status=status,
                    attempt=attempt,
                    error=str(e),
                )
                if attempt < self.status_write_attempts:
                    time.sleep(self.status_retry_delay)

        self.logger.error("Giving up on certificate status write", claim_id=claim_id, status=status)
        self.metrics_client.put_metric("StatusWriteFailed", 1.0)
        return False

    def _maintenance_loop(self) -> None:
        while not self._stop.wait(self.promote_interval):
            try:
                self.run_maintenance()
            except Exception as e:
                self.logger.error("Maintenance pass failed", error=str(e))

    def run_maintenance(self, force: bool = False) -> None:
        """Promote due delayed jobs; every maintenance interval also reclaim
        stalled jobs, apply retention and publish queue depth."""
        if not self.broker.connected:
            if self.broker.closed or not self.broker.reconnect(max_attempts=1):
                return

        try:
            self.broker.promote_delayed()

            now = time.monotonic()
            if not force and now - self._last_maintenance < self.maintenance_interval:
                return
            self._last_maintenance = now

            for job in self.broker.check_stalled():
                self.metrics_client.put_metric("JobsFailed", 1.0)
                self._write_status(
                    "failed",
                    job.claim_id,
                    lambda job=job: self.status_store.mark_failed(job.claim_id, job.error_message),
                )
            self.broker.clean()
            counts = self.broker.get_job_counts()
            self.metrics_client.put_metric("QueueDepth", float(counts["waiting"] + counts["delayed"]))
        except TransientBrokerError as e:
            self.logger.warning("Broker unavailable during maintenance", error=str(e))

    def _on_stalled(self, event: BrokerEvent) -> None:
        self.metrics_client.put_metric("JobsStalled", 1.0)

    @contextmanager
    def _track(self, worker_id: str, job: Job):
        with self._active_lock:
            self._active[worker_id] = job.job_id
        try:
            yield
        finally:
            with self._active_lock:
                self._active.pop(worker_id, None)
