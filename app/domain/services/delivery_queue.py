"""
Delivery Queue - durable job queue for outbound webhooks

Jobs live in the ``webhook_jobs`` table, so they survive process restarts.
Workers claim one job at a time with a compare-and-set UPDATE; a job can be
ACTIVE in at most one worker. There is no ordering guarantee between jobs.

State machine::

    QUEUED -> ACTIVE -> SUCCEEDED
                     -> RETRY_SCHEDULED -> (due) -> ACTIVE ...
                     -> EXHAUSTED
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Protocol, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.logging import get_logger
from app.db.models.webhook_job import (
    CLAIMABLE_STATUSES,
    FINISHED_STATUSES,
    JobStatus,
    WebhookJob,
)

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Naive UTC, matching how the models store timestamps"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def calculate_backoff_seconds(
    attempt: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Delay before the attempt that follows failed attempt ``attempt`` (1-based).

        backoff = base_seconds * 2 ** (attempt - 1)

    Capped at max_backoff_seconds without computing huge powers when attempt
    is unexpectedly large.
    """
    exponent = max(attempt - 1, 0)

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # Smallest exponent for which base * 2**exponent >= max, without the power
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if exponent >= threshold:
        return max_backoff_seconds

    return min(base_seconds * (1 << exponent), max_backoff_seconds)


@dataclass(frozen=True)
class DeliveryJobSpec:
    """Immutable snapshot of a subscription at dispatch time"""

    subscription_id: str
    tenant_id: str
    event: str
    url: str
    secret: str
    payload: dict[str, Any]


class DeliveryQueue(Protocol):
    """What the dispatcher needs from a queue"""

    async def enqueue(self, specs: Sequence[DeliveryJobSpec]) -> List[WebhookJob]:
        ...


class SqlDeliveryQueue:
    """DeliveryQueue backed by the relational store"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        *,
        clock: Clock = utcnow,
        claim_batch_size: int = 20,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._clock = clock
        self._claim_batch_size = claim_batch_size

    def backoff_seconds(self, attempt: int) -> int:
        return calculate_backoff_seconds(
            attempt,
            base_seconds=self._settings.WEBHOOK_RETRY_BASE_SECONDS,
            max_backoff_seconds=self._settings.WEBHOOK_RETRY_MAX_BACKOFF_SECONDS,
        )

    async def enqueue(self, specs: Sequence[DeliveryJobSpec]) -> List[WebhookJob]:
        """Insert one QUEUED job per DeliveryJobSpec, due immediately"""
        if not specs:
            return []

        now = self._clock()
        jobs = [
            WebhookJob(
                subscription_id=spec.subscription_id,
                tenant_id=spec.tenant_id,
                event=spec.event,
                url=spec.url,
                secret=spec.secret,
                payload=spec.payload,
                status=JobStatus.QUEUED,
                attempts_made=0,
                max_attempts=self._settings.WEBHOOK_MAX_ATTEMPTS,
                next_attempt_at=now,
                created_at=now,
                updated_at=now,
            )
            for spec in specs
        ]
        async with self._session_factory() as db:
            db.add_all(jobs)
            await db.commit()
        return jobs

    async def claim_next(self) -> WebhookJob | None:
        """
        Atomically claim one due job.

        Side-effects on the claimed row:
          - status -> ACTIVE
          - locked_at -> now
          - attempts_made += 1 (so it equals the ordinal of this attempt)
        """
        async with self._session_factory() as db:
            now = self._clock()
            result = await db.execute(
                select(WebhookJob.id)
                .where(
                    WebhookJob.status.in_(CLAIMABLE_STATUSES),
                    WebhookJob.next_attempt_at <= now,
                )
                .order_by(WebhookJob.next_attempt_at, WebhookJob.created_at)
                .limit(self._claim_batch_size)
            )
            candidate_ids = list(result.scalars().all())

            for job_id in candidate_ids:
                claimed = await db.execute(
                    update(WebhookJob)
                    .where(
                        WebhookJob.id == job_id,
                        WebhookJob.status.in_(CLAIMABLE_STATUSES),
                    )
                    .values(
                        status=JobStatus.ACTIVE,
                        locked_at=now,
                        attempts_made=WebhookJob.attempts_made + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 1:
                    await db.commit()
                    return await db.get(WebhookJob, job_id)

            await db.rollback()
            return None

    async def complete(self, job: WebhookJob) -> bool:
        """ACTIVE -> SUCCEEDED"""
        now = self._clock()
        updated = await self._transition(
            job,
            status=JobStatus.SUCCEEDED,
            last_error=None,
            locked_at=None,
            finished_at=now,
            updated_at=now,
        )
        if updated:
            job.status = JobStatus.SUCCEEDED
        return updated

    async def fail(self, job: WebhookJob, error: str) -> JobStatus:
        """
        ACTIVE -> RETRY_SCHEDULED with exponential backoff, or EXHAUSTED when
        the attempt budget is spent. Exhaustion is terminal and only logged.
        """
        now = self._clock()
        error = error[:1000]

        if job.attempts_made >= job.max_attempts:
            status = JobStatus.EXHAUSTED
            values = {"finished_at": now}
        else:
            status = JobStatus.RETRY_SCHEDULED
            delay = self.backoff_seconds(job.attempts_made)
            values = {"next_attempt_at": now + timedelta(seconds=delay)}

        updated = await self._transition(
            job,
            status=status,
            last_error=error,
            locked_at=None,
            updated_at=now,
            **values,
        )
        if not updated:
            return job.status

        job.status = status
        for key, value in values.items():
            setattr(job, key, value)

        if status == JobStatus.EXHAUSTED:
            logger.warning(
                "Webhook job exhausted all retries",
                extra_data={
                    "job_id": job.id,
                    "subscription_id": job.subscription_id,
                    "event": job.event,
                    "attempts": job.attempts_made,
                    "error": error,
                },
            )
        return status

    async def _transition(self, job: WebhookJob, **values: Any) -> bool:
        """Update only if this worker still owns the claim"""
        async with self._session_factory() as db:
            result = await db.execute(
                update(WebhookJob)
                .where(
                    WebhookJob.id == job.id,
                    WebhookJob.status == JobStatus.ACTIVE,
                    WebhookJob.attempts_made == job.attempts_made,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if result.rowcount != 1:
            logger.warning(
                "Webhook job claim lost before completion",
                extra_data={"job_id": job.id, "attempt": job.attempts_made},
            )
            return False
        return True

    async def reclaim_stuck(self, locked_before: datetime) -> int:
        """Release jobs stuck in ACTIVE (e.g. after a worker crash).

        Jobs with attempts left go back to QUEUED, due now; jobs that already
        used their last attempt become EXHAUSTED. Returns the number of rows
        touched.
        """
        now = self._clock()
        stuck = (
            WebhookJob.status == JobStatus.ACTIVE,
            WebhookJob.locked_at < locked_before,
        )
        async with self._session_factory() as db:
            exhausted = await db.execute(
                update(WebhookJob)
                .where(*stuck, WebhookJob.attempts_made >= WebhookJob.max_attempts)
                .values(
                    status=JobStatus.EXHAUSTED,
                    locked_at=None,
                    finished_at=now,
                    updated_at=now,
                    last_error="Worker lost the job before recording an outcome",
                )
                .execution_options(synchronize_session=False)
            )
            requeued = await db.execute(
                update(WebhookJob)
                .where(*stuck)
                .values(
                    status=JobStatus.QUEUED,
                    locked_at=None,
                    next_attempt_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return exhausted.rowcount + requeued.rowcount

    async def purge_finished(self, finished_before: datetime) -> int:
        """Delete SUCCEEDED/EXHAUSTED job rows. The delivery log is untouched."""
        async with self._session_factory() as db:
            result = await db.execute(
                delete(WebhookJob)
                .where(
                    WebhookJob.status.in_(FINISHED_STATUSES),
                    WebhookJob.finished_at < finished_before,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount

    async def stats(self, tenant_id: str | None = None) -> dict[str, int]:
        """Job counts per status, zero-filled, optionally for one tenant"""
        query = select(WebhookJob.status, func.count()).group_by(WebhookJob.status)
        if tenant_id is not None:
            query = query.where(WebhookJob.tenant_id == tenant_id)
        async with self._session_factory() as db:
            result = await db.execute(query)
            counts = {status.value: 0 for status in JobStatus}
            for status, count in result.all():
                counts[JobStatus(status).value] = int(count)
        return counts
