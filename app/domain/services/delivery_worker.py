"""
Delivery Worker - signs and POSTs one job attempt, records the outcome

Signature scheme (what subscribers verify):

    signed = f"{timestamp}.{body}"
    X-Webhook-Signature = hex(HMAC-SHA256(secret, signed))

``timestamp`` is milliseconds since the epoch and is sent as
``X-Webhook-Timestamp``; ``body`` is the exact request body.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.logging import get_logger, job_log_context
from app.db.models.webhook_job import JobStatus, WebhookJob
from app.domain.services.delivery_log import DeliveryLogService
from app.domain.services.delivery_queue import Clock, SqlDeliveryQueue, utcnow

logger = get_logger(__name__)

EVENT_HEADER = "X-Webhook-Event"
SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
DELIVERY_HEADER = "X-Webhook-Delivery"
DEFAULT_USER_AGENT = "Tenant-Webhooks/1.0"


def serialize_payload(payload: Any) -> str:
    """Compact JSON; these exact characters are signed and sent"""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def sign_payload(secret: str, timestamp: int | str, body: str) -> str:
    message = f"{timestamp}.{body}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def build_signature_headers(
    *,
    secret: str,
    event: str,
    body: str,
    timestamp: int,
    delivery_id: str | None = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "User-Agent": user_agent,
        EVENT_HEADER: event,
        SIGNATURE_HEADER: sign_payload(secret, timestamp, body),
        TIMESTAMP_HEADER: str(timestamp),
    }
    if delivery_id:
        headers[DELIVERY_HEADER] = delivery_id
    return headers


def verify_signature(
    secret: str,
    timestamp: int | str,
    body: str | bytes,
    signature: str,
    tolerance_seconds: int | None = None,
    now: float | None = None,
) -> bool:
    """
    Subscriber-side check of a delivery.

    Args:
        secret: the subscription secret
        timestamp: X-Webhook-Timestamp value (epoch milliseconds)
        body: raw request body
        signature: X-Webhook-Signature value
        tolerance_seconds: reject timestamps further than this from ``now``
        now: current epoch seconds, defaults to ``time.time()``

    Returns:
        True if the signature matches (and the timestamp is fresh enough)
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8")

    if tolerance_seconds is not None:
        try:
            sent_at = int(timestamp) / 1000
        except (TypeError, ValueError):
            return False
        current = time.time() if now is None else now
        if abs(current - sent_at) > tolerance_seconds:
            return False

    expected = sign_payload(secret, timestamp, body)
    return hmac.compare_digest(expected, signature)


def to_epoch_ms(moment: datetime) -> int:
    """Naive datetimes are treated as UTC"""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


@dataclass(frozen=True)
class AttemptOutcome:
    job_id: str
    attempt: int
    success: bool
    status_code: int | None
    error: str | None
    job_status: JobStatus


class DeliveryWorker:
    """Performs a single attempt for a claimed job"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient,
        queue: SqlDeliveryQueue,
        settings: Settings,
        *,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._http_client = http_client
        self._queue = queue
        self._settings = settings
        self._clock = clock

    async def deliver(self, job: WebhookJob) -> AttemptOutcome:
        """
        POST the job payload once.

        Writes exactly one delivery log row, then marks the job succeeded or
        hands it back to the queue's retry policy. Delivery failures are
        returned, never raised.
        """
        with job_log_context(job.id, subscription_id=job.subscription_id, event=job.event):
            return await self._attempt(job)

    async def _attempt(self, job: WebhookJob) -> AttemptOutcome:
        attempt = job.attempts_made
        status_code: int | None = None
        response_body: str | None = None
        error: str | None = None

        try:
            body = serialize_payload(job.payload)
            headers = build_signature_headers(
                secret=job.secret,
                event=job.event,
                body=body,
                timestamp=to_epoch_ms(self._clock()),
                delivery_id=job.id,
                user_agent=self._settings.WEBHOOK_USER_AGENT,
            )
            response = await self._http_client.post(
                job.url,
                content=body.encode("utf-8"),
                headers=headers,
                timeout=self._settings.WEBHOOK_REQUEST_TIMEOUT_SECONDS,
            )
            status_code = response.status_code
            response_body = response.text
            if not response.is_success:
                error = f"HTTP {status_code}"
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            error = str(e) or e.__class__.__name__
        except Exception as e:
            # The request could not be built, e.g. a header value httpx cannot encode.
            # Counted as a failed attempt like any transport error.
            logger.exception(
                "Webhook request could not be sent",
                extra_data={"attempt": attempt, "error": str(e)},
            )
            error = f"{e.__class__.__name__}: {e}"

        success = error is None
        async with self._session_factory() as db:
            log = DeliveryLogService(
                db, response_body_max_chars=self._settings.WEBHOOK_RESPONSE_BODY_MAX_CHARS
            )
            await log.record_attempt(
                webhook_id=job.subscription_id,
                job_id=job.id,
                event=job.event,
                payload=job.payload,
                url=job.url,
                attempt=attempt,
                status_code=status_code,
                response_body=response_body,
                error=error,
                delivered_at=self._clock() if success else None,
            )
            await db.commit()

        if success:
            await self._queue.complete(job)
            logger.info(
                "Webhook delivered",
                extra_data={
                    "attempt": attempt,
                    "status_code": status_code,
                },
            )
            job_status = JobStatus.SUCCEEDED
        else:
            job_status = await self._queue.fail(job, error)
            logger.warning(
                "Webhook delivery attempt failed",
                extra_data={
                    "attempt": attempt,
                    "status_code": status_code,
                    "error": error,
                    "job_status": job_status.value,
                },
            )

        return AttemptOutcome(
            job_id=job.id,
            attempt=attempt,
            success=success,
            status_code=status_code,
            error=error,
            job_status=job_status,
        )


class DrainLock(Protocol):
    """Mutual exclusion between pools, across processes"""

    async def acquire(self) -> bool:
        ...

    async def release(self) -> None:
        ...


class DeliveryWorkerPool:
    """
    Fixed set of ``concurrency`` coroutines pulling from the queue.

    Each coroutine handles one job at a time, so at most ``concurrency``
    HTTP requests are in flight per pool. Pools sharing a ``lock`` never
    drain at the same time, which makes the cap hold across workers.

    With ``max_seconds`` set, no job is claimed once that much time has
    passed; attempts already started run to completion.
    """

    def __init__(
        self,
        queue: SqlDeliveryQueue,
        worker: DeliveryWorker,
        concurrency: int,
        *,
        lock: DrainLock | None = None,
        max_seconds: float | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._queue = queue
        self._worker = worker
        self._lock = lock
        self._monotonic = monotonic
        self.concurrency = concurrency
        self.max_seconds = max_seconds

    async def run_until_idle(self) -> int:
        """Drain every due job; returns the number of attempts made"""
        if self._lock is not None and not await self._lock.acquire():
            logger.debug("Webhook drain already running elsewhere, skipping")
            return 0
        try:
            return await self._drain()
        finally:
            if self._lock is not None:
                await self._lock.release()

    async def _drain(self) -> int:
        processed = 0
        started = self._monotonic()

        def _within_budget() -> bool:
            return self.max_seconds is None or self._monotonic() - started < self.max_seconds

        async def _slot(slot: int) -> None:
            nonlocal processed
            while _within_budget():
                job = await self._queue.claim_next()
                if job is None:
                    return
                try:
                    await self._worker.deliver(job)
                except Exception as e:
                    # Job stays ACTIVE; reclaim_stuck returns it to the queue
                    logger.exception(
                        "Webhook worker crashed on job",
                        extra_data={"job_id": job.id, "slot": slot, "error": str(e)},
                    )
                processed += 1

        await asyncio.gather(*(_slot(i) for i in range(self.concurrency)))
        if not _within_budget():
            logger.info(
                "Webhook drain budget spent, remaining jobs left for the next run",
                extra_data={"attempts": processed, "max_seconds": self.max_seconds},
            )
        elif processed:
            logger.info(
                "Webhook queue drained",
                extra_data={"attempts": processed, "concurrency": self.concurrency},
            )
        return processed
