"""In-process job repository for tests and single-process runs."""

import threading
from typing import Dict, List, Optional

from ..domain.interfaces import JobRepository
from ..domain.job import Job, JobState


class MemoryJobRepository(JobRepository):
    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def ping(self) -> None:
        return None

    def put_job(self, job: Job) -> bool:
        with self._lock:
            if job.job_id in self._jobs:
                return False
            self._jobs[job.job_id] = job.copy()
            return True

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.copy() if job else None

    def update_job(self, job: Job, expected_version: int) -> bool:
        with self._lock:
            current = self._jobs.get(job.job_id)
            if current is None or current.version != expected_version:
                return False
            self._jobs[job.job_id] = job.copy()
            return True

    def list_jobs(
        self,
        state: JobState,
        ready_before: Optional[int] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[Job]:
        with self._lock:
            jobs = [
                job.copy()
                for job in self._jobs.values()
                if job.state == state and (ready_before is None or job.ready_at <= ready_before)
            ]
        jobs.sort(key=lambda job: job.ready_at, reverse=newest_first)
        return jobs[:limit] if limit is not None else jobs

    def count_jobs(self, state: JobState) -> int:
        with self._lock:
            return sum(1 for job in self._jobs.values() if job.state == state)

    def delete_job(self, job_id: str, expected_version: int) -> bool:
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None or current.version != expected_version:
                return False
            del self._jobs[job_id]
            return True
