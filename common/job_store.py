"""In-memory store for batch jobs.

The store is the only shared mutable state of the service. It is created
once per process (see ``api.main``) and handed to whoever needs it. Every
mutation happens under one lock, and readers get deep copies, so a status
poll never sees a half-applied item update.
"""

import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

from common.config import JOB_TTL_HOURS, MAX_JOBS
from common.errors import InvalidTransition, JobNotFound
from common.job_schema import Job, JobItem, JobProgress, JobStatus
from common.region_schema import StorageRedactRequest, StorageRedactResponse

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# target status -> statuses an item may move out of
_ALLOWED_FROM = {
    JobStatus.PROCESSING: {JobStatus.PENDING},
    JobStatus.COMPLETED: {JobStatus.PROCESSING},
    JobStatus.FAILED: {JobStatus.PENDING, JobStatus.PROCESSING},
}


class JobStore:
    def __init__(
        self,
        ttl: timedelta = timedelta(hours=JOB_TTL_HOURS),
        max_jobs: int = MAX_JOBS,
        clock: Callable[[], datetime] = utc_now,
    ):
        if max_jobs < 1:
            raise ValueError("max_jobs must be at least 1")
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._ttl = ttl
        self._max_jobs = max_jobs
        self._clock = clock

    # ---------- jobs ----------

    def create_job(self, requests: Sequence[StorageRedactRequest], webhook_url: Optional[str] = None) -> Job:
        """Register a new job with one pending item per request."""
        if not requests:
            raise ValueError("A job needs at least one item")

        with self._lock:
            self._evict_locked()

            job_id = str(uuid.uuid4())
            job = Job(
                id=job_id,
                items=[
                    JobItem(id=f"{job_id}-{index}", index=index, request=request)
                    for index, request in enumerate(requests)
                ],
                webhook_url=webhook_url,
                created_at=self._clock(),
                progress=JobProgress(total=len(requests)),
            )
            self._jobs[job_id] = job
            logger.info("Job created", extra={"job_id": job_id, "items": len(requests)})
            return job.model_copy(deep=True)

    def get_job(self, job_id: str) -> Optional[Job]:
        """Return a consistent snapshot of a job, or None."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def list_jobs(self) -> List[Job]:
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values()]

    def delete_job(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def job_count(self) -> int:
        with self._lock:
            return len(self._jobs)

    # ---------- item transitions ----------

    def start_item(self, job_id: str, item_id: str) -> None:
        self._transition(job_id, item_id, JobStatus.PROCESSING)

    def complete_item(self, job_id: str, item_id: str, result: StorageRedactResponse) -> None:
        self._transition(job_id, item_id, JobStatus.COMPLETED, result=result)

    def fail_item(self, job_id: str, item_id: str, error: str) -> None:
        self._transition(job_id, item_id, JobStatus.FAILED, error=error)

    def _transition(self, job_id: str, item_id: str, status: JobStatus, result=None, error=None) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")

            item = next((i for i in job.items if i.id == item_id), None)
            if item is None:
                raise JobNotFound(f"Job item {item_id} not found in job {job_id}")

            if item.status not in _ALLOWED_FROM[status]:
                raise InvalidTransition(
                    f"Job item {item_id} cannot move from {item.status.value} to {status.value}"
                )

            now = self._clock()
            item.status = status
            if status == JobStatus.PROCESSING:
                item.started_at = now
            else:
                item.completed_at = now
                item.result = result
                item.error = error

            self._refresh_locked(job, now)

    def _refresh_locked(self, job: Job, now: datetime) -> None:
        completed = sum(1 for i in job.items if i.status == JobStatus.COMPLETED)
        failed = sum(1 for i in job.items if i.status == JobStatus.FAILED)
        job.progress.completed = completed
        job.progress.failed = failed

        if completed + failed == job.progress.total:
            job.status = JobStatus.FAILED if failed else JobStatus.COMPLETED
            if job.started_at is None:
                job.started_at = now
            if job.completed_at is None:
                job.completed_at = now
        elif any(i.status != JobStatus.PENDING for i in job.items):
            job.status = JobStatus.PROCESSING
            if job.started_at is None:
                job.started_at = now

    # ---------- eviction ----------

    def evict(self) -> int:
        """Drop expired jobs, then the oldest ones while over capacity."""
        with self._lock:
            return self._evict_locked(reserve=0)

    def _evict_locked(self, reserve: int = 1) -> int:
        now = self._clock()
        expired = [job_id for job_id, job in self._jobs.items() if now - job.created_at > self._ttl]
        for job_id in expired:
            del self._jobs[job_id]

        # keep room for `reserve` new jobs
        overflow = len(self._jobs) + reserve - self._max_jobs
        oldest = []
        if overflow > 0:
            oldest = sorted(self._jobs, key=lambda job_id: self._jobs[job_id].created_at)[:overflow]
            for job_id in oldest:
                del self._jobs[job_id]

        removed = len(expired) + len(oldest)
        if removed:
            logger.info(
                "Evicted jobs",
                extra={"expired": len(expired), "over_capacity": len(oldest), "remaining": len(self._jobs)},
            )
        return removed
