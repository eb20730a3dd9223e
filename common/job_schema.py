from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from common.region_schema import ObjectRef, OutputTarget, StorageRedactRequest, StorageRedactResponse


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobProgress(BaseModel):
    total: int
    completed: int = 0
    failed: int = 0

    @property
    def pending(self) -> int:
        return self.total - self.completed - self.failed


class JobItem(BaseModel):
    id: str
    index: int
    request: StorageRedactRequest
    status: JobStatus = JobStatus.PENDING
    result: Optional[StorageRedactResponse] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class Job(BaseModel):
    id: str
    status: JobStatus = JobStatus.PENDING
    items: List[JobItem]
    webhook_url: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress: JobProgress


# ---------- status documents returned to callers and webhooks ----------

class ProgressView(BaseModel):
    total: int
    completed: int
    failed: int
    pending: int


class JobItemView(BaseModel):
    index: int
    status: JobStatus
    input: ObjectRef
    output: Optional[OutputTarget] = None
    processing_time_ms: Optional[float] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobStatusView(BaseModel):
    job_id: str
    status: JobStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress: ProgressView
    items: List[JobItemView]
    webhook_url: Optional[str] = None


class WebhookPayload(JobStatusView):
    webhook_delivered: bool = False
    webhook_attempts: int


def job_status_view(job: Job) -> JobStatusView:
    """Render a job as the status document exposed to callers."""
    return JobStatusView(
        job_id=job.id,
        status=job.status,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        progress=ProgressView(
            total=job.progress.total,
            completed=job.progress.completed,
            failed=job.progress.failed,
            pending=job.progress.pending,
        ),
        items=[
            JobItemView(
                index=item.index,
                status=item.status,
                input=item.request.input,
                output=item.result.output if item.result else None,
                processing_time_ms=item.result.processing_time_ms if item.result else None,
                error=item.error,
                started_at=item.started_at,
                completed_at=item.completed_at,
            )
            for item in job.items
        ],
        webhook_url=job.webhook_url,
    )
