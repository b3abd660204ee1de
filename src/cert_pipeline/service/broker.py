"""Durable certificate job broker.

Every state change is a compare-and-swap on the job's ``version`` in the
JobRepository, so any number of broker instances can share one store.
"""

import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from .events import EventBus, EventHandler
from ..domain.errors import StalledJobError, SubmissionError, TransientBrokerError
from ..domain.events import BrokerEvent, BrokerEventType
from ..domain.interfaces import JobRepository, Logger
from ..domain.job import (
    STALLED_ERROR_MESSAGE,
    CertificateRequest,
    Job,
    JobOptions,
    JobState,
    RetentionPolicy,
)


@dataclass(frozen=True)
class BrokerSettings:
    """Queue-wide broker settings."""

    stall_check_interval_ms: int = 30000
    max_stalled_count: int = 1
    lease_batch_size: int = 20
    poll_interval_seconds: float = 1.0
    reconnect_max_delay_ms: int = 2000
    cas_retries: int = 5
    submit_reconnect_attempts: int = 3
    recent_jobs_limit: int = 10


class JobBroker:
    """Certificate job queue on top of a JobRepository."""

    def __init__(
        self,
        repository: JobRepository,
        logger: Logger,
        default_options: Optional[JobOptions] = None,
        settings: Optional[BrokerSettings] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repository = repository
        self.logger = logger
        self.default_options = default_options or JobOptions()
        self.settings = settings or BrokerSettings()
        self.events = events or EventBus(logger)
        self._clock = clock
        self._sleep = sleep
        self._wakeup = threading.Condition()
        self._reconnect_lock = threading.Lock()
        self._connected = False
        self._closed = False
        self._started = False

    @property
    def connected(self) -> bool:
        return self._connected and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def options(self, **overrides) -> JobOptions:
        """Queue defaults with per-job overrides applied."""
        return replace(self.default_options, **overrides)

    def subscribe(self, handler: EventHandler, *event_types: BrokerEventType) -> Callable[[], None]:
        return self.events.subscribe(handler, *event_types)

    # Connection lifecycle

    def init(self) -> None:
        """Connect to the backing store and emit ``ready``."""
        self._closed = False
        self._started = True
        self._call(self.repository.ping)
        self._connected = True
        self.logger.info("Job broker connected")
        self._emit(BrokerEventType.READY)

    def close(self) -> None:
        """Stop the broker; blocked lease calls return None."""
        with self._wakeup:
            self._closed = True
            self._connected = False
            self._wakeup.notify_all()
        self.logger.info("Job broker closed")
        self._emit(BrokerEventType.CLOSE)

    def reconnect(
        self,
        max_attempts: Optional[int] = None,
        stop: Optional[threading.Event] = None,
    ) -> bool:
        """Ping the store until it answers, backing off min(n * 50ms, 2s).

        Returns False if the broker was closed, ``stop`` was set, or
        ``max_attempts`` ran out.
        """
        with self._reconnect_lock:
            if self.connected:
                return True

            attempt = 0
            while not self._closed and (stop is None or not stop.is_set()):
                attempt += 1
                self._emit(BrokerEventType.RECONNECTING, attempt=attempt)
                try:
                    self.repository.ping()
                except TransientBrokerError as e:
                    delay_ms = min(attempt * 50, self.settings.reconnect_max_delay_ms)
                    self.logger.warning(
                        "Broker reconnect attempt failed",
                        attempt=attempt,
                        retry_in_ms=delay_ms,
                        error=str(e),
                    )
                    if max_attempts is not None and attempt >= max_attempts:
                        return False
                    if stop is not None:
                        stop.wait(delay_ms / 1000.0)
                    else:
                        self._sleep(delay_ms / 1000.0)
                    continue

                self._connected = True
                self.logger.info("Job broker reconnected", attempts=attempt)
                self._emit(BrokerEventType.READY, attempt=attempt)
                self._notify()
                return True
            return False

    def ensure_connected(self, max_attempts: Optional[int] = None) -> bool:
        """Return True if connected, reconnecting a dropped connection first.

        A broker that was never initialised or has been closed stays down.
        """
        if self.connected:
            return True
        if self._closed or not self._started:
            return False
        return self.reconnect(max_attempts=max_attempts or self.settings.submit_reconnect_attempts)

    # Producer side

    def submit(self, request: CertificateRequest, options: Optional[JobOptions] = None) -> str:
        """Enqueue a certificate job and return its id.

        Submitting an id that already exists is a no-op returning that id.
        A dropped connection gets a short reconnect attempt first; if the
        store is still unreachable SubmissionError is raised.
        """
        if not self.ensure_connected():
            raise SubmissionError(
                f"Job broker is not connected; job for claim {request.claim_id} was not submitted",
                claim_id=request.claim_id,
            )

        job = Job.create(request, options or self.default_options, self.now_ms())
        try:
            created = self._call(self.repository.put_job, job)
        except TransientBrokerError as e:
            raise SubmissionError(
                f"Failed to submit job for claim {request.claim_id}: {e}",
                claim_id=request.claim_id,
            ) from e

        if not created:
            self.logger.info(
                "Job already exists, submission ignored",
                job_id=job.job_id,
                claim_id=request.claim_id,
            )
            return job.job_id

        self.logger.info(
            "Job submitted",
            job_id=job.job_id,
            claim_id=request.claim_id,
            priority=job.priority,
            max_attempts=job.max_attempts,
        )
        self._emit(BrokerEventType.WAITING, job)
        self._notify()
        return job.job_id

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._call(self.repository.get_job, job_id)

    def get_job_counts(self) -> Dict[str, int]:
        """Number of jobs per state plus ``total``."""
        counts = {state.value: self._call(self.repository.count_jobs, state) for state in JobState}
        counts["total"] = sum(counts.values())
        return counts

    def remove_job(self, job_id: str) -> bool:
        """Delete a terminal job ahead of its retention deadline."""
        job = self.get_job(job_id)
        if job is None or not job.is_terminal:
            return False
        removed = self._call(self.repository.delete_job, job_id, job.version)
        if removed:
            self.logger.info("Job removed", job_id=job_id, state=job.state.value)
        return removed

    def get_recent_jobs(self, limit: Optional[int] = None) -> Dict[str, List[Job]]:
        """Most recently ready jobs per state, newest first."""
        limit = limit or self.settings.recent_jobs_limit
        return {
            state.value: self._call(self.repository.list_jobs, state, None, limit, True)
            for state in JobState
        }

    def retry_job(self, job_id: str) -> bool:
        """Give a permanently failed job a fresh attempt budget.

        The job returns to waiting with its attempt and stall counters reset.
        Returns False if the job is missing or not failed.
        """
        now = self.now_ms()

        def reopen(job: Job) -> bool:
            if job.state != JobState.FAILED:
                return False
            job.state = JobState.WAITING
            job.attempts_made = 0
            job.stalled_count = 0
            job.progress = 0
            job.result = None
            job.error_message = None
            job.error_code = None
            job.delay_until = None
            job.finished_at = None
            job.retain_until = None
            job.ready_at = now
            return True

        job = self._mutate(job_id, reopen)
        if job is None:
            return False

        self.logger.info("Failed job queued for retry", job_id=job.job_id, claim_id=job.claim_id)
        self._emit(BrokerEventType.WAITING, job, attempts_made=0)
        self._notify()
        return True

    # Consumer side

    def lease(self, worker_id: str, timeout: Optional[float] = None) -> Optional[Job]:
        """Take the next waiting job for ``worker_id``.

        Blocks up to ``timeout`` seconds (forever if None) and returns None
        on timeout or when the broker is closed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._closed:
            job = self._try_lease(worker_id)
            if job is not None:
                return job

            wait = self.settings.poll_interval_seconds
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)
            with self._wakeup:
                if self._closed:
                    break
                self._wakeup.wait(wait)
        return None

    def _try_lease(self, worker_id: str) -> Optional[Job]:
        now = self.now_ms()
        candidates = self._call(
            self.repository.list_jobs,
            JobState.WAITING,
            None,
            self.settings.lease_batch_size,
        )
        candidates.sort(key=lambda job: (job.priority, job.ready_at))

        for job in candidates:
            expected = job.version
            job.state = JobState.ACTIVE
            job.lease_owner = worker_id
            job.lease_token = uuid4().hex
            job.lease_expires_at = now + self.settings.stall_check_interval_ms
            job.processed_at = now
            job.progress = 0
            job.updated_at = now
            job.version = expected + 1
            if not self._call(self.repository.update_job, job, expected):
                # another consumer won this one
                continue

            self.logger.info(
                "Job leased",
                job_id=job.job_id,
                claim_id=job.claim_id,
                worker_id=worker_id,
                attempt=job.attempts_made + 1,
                max_attempts=job.max_attempts,
            )
            self._emit(BrokerEventType.ACTIVE, job, worker_id=worker_id)
            return job
        return None

    def extend_lease(self, job_id: str, token: str) -> bool:
        """Push the lease deadline forward; False if the lease is lost."""
        now = self.now_ms()

        def renew(job: Job) -> bool:
            if job.state != JobState.ACTIVE or job.lease_token != token:
                return False
            job.lease_expires_at = now + self.settings.stall_check_interval_ms
            return True

        return self._mutate(job_id, renew) is not None

    def report_progress(self, job_id: str, percent: int, token: Optional[str] = None) -> bool:
        """Record progress (clamped to 0..100, never decreasing) and renew the lease."""
        percent = max(0, min(100, int(percent)))
        now = self.now_ms()

        def record(job: Job) -> bool:
            if job.state != JobState.ACTIVE or (token is not None and job.lease_token != token):
                return False
            job.progress = max(job.progress, percent)
            job.lease_expires_at = now + self.settings.stall_check_interval_ms
            return True

        job = self._mutate(job_id, record)
        if job is None:
            return False
        self._emit(BrokerEventType.PROGRESS, job, progress=job.progress)
        return True

    def complete(self, job_id: str, result: Dict, token: Optional[str] = None) -> bool:
        """Mark an active job completed.

        A second call, or a call from a worker whose lease was lost, is a
        no-op returning False.
        """
        now = self.now_ms()

        def finish(job: Job) -> bool:
            if job.state != JobState.ACTIVE or (token is not None and job.lease_token != token):
                return False
            job.state = JobState.COMPLETED
            job.progress = 100
            job.result = result
            job.error_message = None
            job.error_code = None
            job.finished_at = now
            job.ready_at = now
            job.retain_until = self._retain_until(job.completed_retention, now)
            job.clear_lease()
            return True

        job = self._mutate(job_id, finish)
        if job is None:
            self.logger.warning("Completion ignored, job is not leased by caller", job_id=job_id)
            return False

        self.logger.info(
            "Job completed",
            job_id=job.job_id,
            claim_id=job.claim_id,
            attempts=job.attempts_made + 1,
        )
        self._emit(BrokerEventType.COMPLETED, job, result=result, progress=100)
        return True

    def fail(
        self,
        job_id: str,
        error: str,
        token: Optional[str] = None,
        retryable: bool = True,
        error_code: Optional[str] = None,
    ) -> Optional[JobState]:
        """Record a failed attempt.

        Schedules a delayed retry while attempts remain, otherwise moves the
        job to terminal ``failed``. Returns the resulting state, or None if
        the call was ignored.
        """
        now = self.now_ms()
        scheduled = {}

        def record_failure(job: Job) -> bool:
            if job.state != JobState.ACTIVE or (token is not None and job.lease_token != token):
                return False
            job.attempts_made += 1
            job.error_message = error
            job.error_code = error_code
            job.clear_lease()
            if retryable and job.attempts_made < job.max_attempts:
                delay = job.backoff.delay_for(job.attempts_made)
                scheduled["delay_ms"] = delay
                job.state = JobState.DELAYED if delay > 0 else JobState.WAITING
                job.delay_until = now + delay if delay > 0 else None
                job.ready_at = now + delay
            else:
                scheduled.pop("delay_ms", None)
                job.state = JobState.FAILED
                job.finished_at = now
                job.ready_at = now
                job.retain_until = self._retain_until(job.failed_retention, now)
            return True

        job = self._mutate(job_id, record_failure)
        if job is None:
            self.logger.warning("Failure report ignored, job is not leased by caller", job_id=job_id)
            return None

        if job.state == JobState.FAILED:
            self.logger.error(
                "Job failed permanently",
                job_id=job.job_id,
                claim_id=job.claim_id,
                attempts=job.attempts_made,
                error=error,
            )
            self._emit(
                BrokerEventType.FAILED,
                job,
                error=error,
                error_code=error_code,
                attempts_made=job.attempts_made,
            )
            return job.state

        self.logger.warning(
            "Job attempt failed, retrying with backoff",
            job_id=job.job_id,
            claim_id=job.claim_id,
            attempts=job.attempts_made,
            max_attempts=job.max_attempts,
            delay_ms=scheduled["delay_ms"],
            error=error,
        )
        self._emit(
            BrokerEventType.FAILED,
            job,
            error=error,
            error_code=error_code,
            attempts_made=job.attempts_made,
            will_retry=True,
            delay_ms=scheduled["delay_ms"],
        )
        if job.state == JobState.WAITING:
            self._notify()
        return job.state

    # Maintenance

    def promote_delayed(self) -> int:
        """Move delayed jobs whose backoff has elapsed back to waiting."""
        now = self.now_ms()
        promoted = 0
        for job in self._call(self.repository.list_jobs, JobState.DELAYED, now):
            expected = job.version
            job.state = JobState.WAITING
            job.delay_until = None
            job.updated_at = now
            job.version = expected + 1
            if self._call(self.repository.update_job, job, expected):
                promoted += 1
                self._emit(BrokerEventType.WAITING, job, attempts_made=job.attempts_made)

        if promoted:
            self.logger.info("Delayed jobs promoted", count=promoted)
            self._notify()
        return promoted

    def check_stalled(self) -> List[Job]:
        """Reclaim active jobs whose lease expired.

        A reclaimed job returns to waiting while its stall count is within
        ``max_stalled_count``; past that it fails with ``job_stalled``.
        Returns the jobs that failed this way.
        """
        now = self.now_ms()
        failed: List[Job] = []

        for job in self._call(self.repository.list_jobs, JobState.ACTIVE):
            if job.lease_expires_at is None or job.lease_expires_at > now:
                continue
            owner = job.lease_owner
            expected = job.version
            job.state = JobState.STALLED
            job.stalled_count += 1
            job.clear_lease()
            job.updated_at = now
            job.version = expected + 1
            if not self._call(self.repository.update_job, job, expected):
                continue

            self.logger.warning(
                "Job stalled",
                job_id=job.job_id,
                claim_id=job.claim_id,
                worker_id=owner,
                stalled_count=job.stalled_count,
            )
            self._emit(BrokerEventType.STALLED, job, worker_id=owner)
            if self._resolve_stalled(job, now):
                failed.append(job)

        # stalled records left behind by an interrupted sweep
        for job in self._call(self.repository.list_jobs, JobState.STALLED):
            if self._resolve_stalled(job, now):
                failed.append(job)

        return failed

    def _resolve_stalled(self, job: Job, now: int) -> bool:
        expected = job.version
        exhausted = job.stalled_count > self.settings.max_stalled_count
        if exhausted:
            error = StalledJobError(STALLED_ERROR_MESSAGE)
            job.state = JobState.FAILED
            job.error_message = str(error)
            job.error_code = error.code
            job.finished_at = now
            job.ready_at = now
            job.retain_until = self._retain_until(job.failed_retention, now)
        else:
            job.state = JobState.WAITING
        job.updated_at = now
        job.version = expected + 1
        if not self._call(self.repository.update_job, job, expected):
            return False

        if exhausted:
            self.logger.error(
                "Job failed after stalling too many times",
                job_id=job.job_id,
                claim_id=job.claim_id,
                stalled_count=job.stalled_count,
            )
            self._emit(
                BrokerEventType.FAILED,
                job,
                error=job.error_message,
                error_code=job.error_code,
                attempts_made=job.attempts_made,
            )
            return True

        self._emit(BrokerEventType.WAITING, job, attempts_made=job.attempts_made)
        self._notify()
        return False

    def clean(self) -> int:
        """Delete terminal jobs past their retention age or count."""
        now = self.now_ms()
        removed = 0

        for state in (JobState.COMPLETED, JobState.FAILED):
            for job in self._call(self.repository.list_jobs, state, now):
                if job.retain_until is not None and job.retain_until <= now:
                    if self._call(self.repository.delete_job, job.job_id, job.version):
                        removed += 1

        max_count = self.default_options.completed_retention.max_count
        if max_count is not None and self._call(self.repository.count_jobs, JobState.COMPLETED) > max_count:
            completed = self._call(self.repository.list_jobs, JobState.COMPLETED)
            # oldest first; keep the newest max_count
            for job in completed[: max(len(completed) - max_count, 0)]:
                if self._call(self.repository.delete_job, job.job_id, job.version):
                    removed += 1

        if removed:
            self.logger.info("Expired jobs removed", count=removed)
        return removed

    # Internals

    def _mutate(self, job_id: str, mutator: Callable[[Job], bool]) -> Optional[Job]:
        """Read-modify-write a job under compare-and-swap.

        Returns the stored job, or None if it is missing or ``mutator``
        declined the change.
        """
        for _ in range(self.settings.cas_retries):
            job = self._call(self.repository.get_job, job_id)
            if job is None:
                return None
            expected = job.version
            if not mutator(job):
                return None
            job.updated_at = self.now_ms()
            job.version = expected + 1
            if self._call(self.repository.update_job, job, expected):
                return job
        raise RuntimeError(f"Job {job_id} kept changing concurrently; giving up")

    def _call(self, fn, *args):
        try:
            return fn(*args)
        except TransientBrokerError as e:
            self._mark_disconnected(e)
            raise

    def _mark_disconnected(self, error: Exception) -> None:
        was_connected = self._connected
        self._connected = False
        if was_connected:
            self.logger.error("Job broker lost its connection", error=str(error))
            self._emit(BrokerEventType.ERROR, error=str(error))

    def _notify(self) -> None:
        with self._wakeup:
            self._wakeup.notify_all()

    def _emit(self, event_type: BrokerEventType, job: Optional[Job] = None, **fields) -> None:
        self.events.publish(
            BrokerEvent(
                type=event_type,
                timestamp=self.now_ms(),
                job_id=job.job_id if job else None,
                claim_id=job.claim_id if job else None,
                **fields,
            )
        )

    @staticmethod
    def _retain_until(policy: RetentionPolicy, now: int) -> Optional[int]:
        if policy.max_age_seconds is None:
            return None
        return now + policy.max_age_seconds * 1000
