"""Storage-to-storage redaction and the batch job orchestrator."""

import asyncio
import json
import logging
from typing import Dict, Optional, Set

from common.config import ESTIMATED_MS_PER_ITEM, WEBHOOK_URL
from common.errors import JobNotFound, normalize_error
from common.job_schema import Job, JobItem
from common.job_store import JobStore
from common.region_schema import BatchRequest, BatchSubmitResponse, StorageRedactRequest, StorageRedactResponse
from common.storage import ObjectStorage
from worker.encoder import sha256_hex
from worker.pipeline import redact_image
from worker.webhook import WebhookNotifier

logger = logging.getLogger(__name__)

IDEMPOTENCY_META_KEY = "idempotency_key"


def derive_idempotency_key(request: StorageRedactRequest) -> str:
    """SHA-256 of the sorted input, output and regions of a request."""
    fields = request.model_dump(mode="json", include={"input", "output", "regions"})
    return sha256_hex(json.dumps(fields, sort_keys=True, separators=(",", ":")).encode("utf-8"))


def _already_done(storage: ObjectStorage, request: StorageRedactRequest, key: str, explicit: bool) -> bool:
    out = request.output
    if explicit:
        return storage.exists(out.bucket, out.key)
    # a derived key only matches an object this exact request wrote earlier
    existing = storage.metadata(out.bucket, out.key)
    return existing is not None and existing.get(IDEMPOTENCY_META_KEY) == key


def redact_object(
    storage: ObjectStorage,
    request: StorageRedactRequest,
    extra_metadata: Optional[Dict[str, str]] = None,
) -> StorageRedactResponse:
    """Fetch, redact and store one object, skipping work already done.

    Blocking: storage I/O and pixel work both run on the calling thread.
    """
    explicit = request.idempotency_key is not None
    idempotency_key = request.idempotency_key or derive_idempotency_key(request)

    if _already_done(storage, request, idempotency_key, explicit):
        logger.info(
            "Output already exists, skipping processing",
            extra={"idempotency_key": idempotency_key, "bucket": request.output.bucket, "key": request.output.key},
        )
        return StorageRedactResponse(ok=True, output=request.output, processing_time_ms=0, skipped=True)

    logger.info("Downloading input", extra={"bucket": request.input.bucket, "key": request.input.key})
    data = storage.get(request.input.bucket, request.input.key)

    processed = redact_image(data, request.regions, fmt=request.output.format, quality=request.output.quality)

    metadata = {
        "content_hash": processed.content_hash,
        "processing_time_ms": f"{processed.processing_duration_ms:.2f}",
        IDEMPOTENCY_META_KEY: idempotency_key,
    }
    metadata.update(extra_metadata or {})

    logger.info("Uploading output", extra={"bucket": request.output.bucket, "key": request.output.key})
    storage.put(
        request.output.bucket,
        request.output.key,
        processed.buffer,
        content_type=processed.content_type,
        metadata=metadata,
    )

    return StorageRedactResponse(
        ok=True,
        output=request.output.model_copy(update={"format": processed.format}),
        processing_time_ms=processed.processing_duration_ms,
        etag=processed.etag,
    )


class BatchOrchestrator:
    """Drives batch jobs to completion in the background.

    Items of one job run strictly one after another in submission order;
    separate jobs run concurrently as separate asyncio tasks. A failing item
    is recorded on the job and the next item starts anyway.
    """

    def __init__(
        self,
        store: JobStore,
        storage: ObjectStorage,
        notifier: Optional[WebhookNotifier] = None,
        default_webhook_url: Optional[str] = WEBHOOK_URL,
    ):
        self.store = store
        self.storage = storage
        self.notifier = notifier or WebhookNotifier()
        self.default_webhook_url = default_webhook_url
        self._tasks: Set[asyncio.Task] = set()

    # ---------- scheduling ----------

    def submit_batch(self, batch: BatchRequest) -> BatchSubmitResponse:
        """Create the job and start it without waiting for it."""
        webhook_url = str(batch.webhook_url) if batch.webhook_url else None
        job = self.store.create_job(batch.items, webhook_url)
        self.submit(job.id)
        return BatchSubmitResponse(
            job_id=job.id,
            items_count=len(job.items),
            estimated_completion_ms=len(job.items) * ESTIMATED_MS_PER_ITEM,
        )

    def submit(self, job_id: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self.run_job(job_id), name=f"batch-job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Batch job processing error", exc_info=exc, extra={"task": task.get_name()})

    @property
    def running(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        """Cancel running jobs, including pending webhook retries, and wait for them."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled running batch jobs", extra={"count": len(tasks)})

    # ---------- processing ----------

    async def run_job(self, job_id: str) -> Optional[Job]:
        job = self.store.get_job(job_id)
        if job is None:
            logger.error("Job not found for processing", extra={"job_id": job_id})
            return None

        logger.info("Starting batch job processing", extra={"job_id": job_id, "item_count": len(job.items)})

        try:
            for item in job.items:
                await self.process_item(job_id, item)
        except JobNotFound:
            logger.warning("Job was evicted while running, stopping", extra={"job_id": job_id})
            return None

        final = self.store.get_job(job_id)
        webhook_url = job.webhook_url or self.default_webhook_url
        if final is not None and webhook_url:
            await self.notifier.deliver(final, webhook_url)

        logger.info("Batch job processing completed", extra={"job_id": job_id})
        return final

    async def process_item(self, job_id: str, item: JobItem) -> None:
        self.store.start_item(job_id, item.id)
        try:
            result = await asyncio.to_thread(
                redact_object,
                self.storage,
                item.request,
                {"job_id": job_id, "item_id": item.id},
            )
        except Exception as e:
            error = normalize_error(e)
            self.store.fail_item(job_id, item.id, error.message)
            logger.error(
                "Batch item failed",
                extra={"job_id": job_id, "item_id": item.id, "error": error.message, "error_code": error.code},
            )
            return

        self.store.complete_item(job_id, item.id, result)
        logger.info("Batch item completed successfully", extra={"job_id": job_id, "item_id": item.id})
