"""Best-effort webhook delivery for finished batch jobs."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence

import httpx

from common.config import (
    SERVICE_VERSION,
    WEBHOOK_MAX_ATTEMPTS,
    WEBHOOK_RETRY_DELAYS,
    WEBHOOK_TIMEOUT_SECONDS,
)
from common.job_schema import Job, WebhookPayload, job_status_view

logger = logging.getLogger(__name__)

USER_AGENT = f"image-redactor/{SERVICE_VERSION}"


def build_payload(job: Job, webhook_url: str, attempt: int) -> WebhookPayload:
    view = job_status_view(job)
    return WebhookPayload(
        **view.model_dump(exclude={"webhook_url"}),
        webhook_url=webhook_url,
        webhook_delivered=False,
        webhook_attempts=attempt,
    )


class WebhookNotifier:
    """POST a job's status document, retrying a bounded number of times.

    Delivery is at most ``max_attempts`` tries with ``delays[n-1]`` seconds
    of back-off after attempt n. Failures are logged, never raised. The
    back-off sleep is a normal await, so cancelling the calling task stops
    delivery.
    """

    def __init__(
        self,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
        delays: Sequence[float] = WEBHOOK_RETRY_DELAYS,
        max_attempts: int = WEBHOOK_MAX_ATTEMPTS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if len(delays) < max_attempts - 1:
            raise ValueError("need one back-off delay between each pair of attempts")
        self.timeout = timeout
        self.delays = tuple(delays)
        self.max_attempts = max_attempts
        self._transport = transport
        self._sleep = sleep

    async def deliver(self, job: Job, webhook_url: str) -> bool:
        """Deliver the job status to ``webhook_url``; True once a 2xx is seen."""
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(1, self.max_attempts + 1):
                payload = build_payload(job, webhook_url, attempt)
                try:
                    response = await client.post(
                        webhook_url,
                        content=payload.model_dump_json(),
                        headers=headers,
                    )
                    if response.is_success:
                        logger.info(
                            "Webhook delivered successfully",
                            extra={"job_id": job.id, "webhook_url": webhook_url, "attempt": attempt},
                        )
                        return True
                    error = f"Webhook returned {response.status_code}: {response.reason_phrase}"
                except httpx.HTTPError as e:
                    error = f"{type(e).__name__}: {e}"

                logger.error(
                    "Webhook delivery failed",
                    extra={"job_id": job.id, "webhook_url": webhook_url, "attempt": attempt, "error": error},
                )

                if attempt < self.max_attempts:
                    delay = self.delays[attempt - 1]
                    logger.info("Retrying webhook delivery", extra={"job_id": job.id, "delay": delay})
                    await self._sleep(delay)

        logger.warning(
            "Giving up on webhook delivery",
            extra={"job_id": job.id, "webhook_url": webhook_url, "attempts": self.max_attempts},
        )
        return False
