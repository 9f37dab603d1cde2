from datetime import timedelta

import pytest
from hypothesis import given, strategies as st

from app.db.models.webhook_job import JobStatus, WebhookJob
from app.domain.services.delivery_queue import DeliveryJobSpec, calculate_backoff_seconds


def _spec(**overrides) -> DeliveryJobSpec:
    values = dict(
        subscription_id="sub-1",
        tenant_id="tenant-a",
        event="order.created",
        url="https://hooks.example.com/receive",
        secret="s" * 64,
        payload={"id": 1},
    )
    values.update(overrides)
    return DeliveryJobSpec(**values)


@pytest.mark.unit
def test_default_schedule_is_5_10_20_40() -> None:
    delays = [
        calculate_backoff_seconds(attempt, base_seconds=5, max_backoff_seconds=3600)
        for attempt in range(1, 5)
    ]
    assert delays == [5, 10, 20, 40]


@pytest.mark.unit
def test_backoff_is_capped() -> None:
    # 5 * 2**10 = 5120 -> capped to 3600
    assert calculate_backoff_seconds(11, base_seconds=5, max_backoff_seconds=3600) == 3600
    assert calculate_backoff_seconds(10_000, base_seconds=5, max_backoff_seconds=3600) == 3600


@pytest.mark.unit
def test_backoff_degenerate_inputs() -> None:
    assert calculate_backoff_seconds(0, base_seconds=5, max_backoff_seconds=3600) == 5
    assert calculate_backoff_seconds(3, base_seconds=0, max_backoff_seconds=3600) == 0
    assert calculate_backoff_seconds(3, base_seconds=7200, max_backoff_seconds=3600) == 3600


@pytest.mark.unit
@given(
    attempt=st.integers(min_value=1, max_value=200),
    base=st.integers(min_value=1, max_value=600),
    cap=st.integers(min_value=1, max_value=86400),
)
def test_backoff_matches_closed_form(attempt: int, base: int, cap: int) -> None:
    assert calculate_backoff_seconds(
        attempt, base_seconds=base, max_backoff_seconds=cap
    ) == min(base * 2 ** (attempt - 1), cap)


@pytest.mark.unit
@given(attempt=st.integers(min_value=1, max_value=50))
def test_backoff_is_monotonic(attempt: int) -> None:
    current = calculate_backoff_seconds(attempt, base_seconds=5, max_backoff_seconds=3600)
    following = calculate_backoff_seconds(attempt + 1, base_seconds=5, max_backoff_seconds=3600)
    assert following >= current


class TestQueueRetryScheduling:
    """fail() on the SQL queue"""

    @pytest.mark.integration
    async def test_fail_schedules_retry_with_backoff(self, queue, session_factory, clock) -> None:
        [job] = await queue.enqueue([_spec()])
        claimed = await queue.claim_next()
        assert claimed.id == job.id
        assert claimed.attempts_made == 1

        status = await queue.fail(claimed, "HTTP 500")
        assert status == JobStatus.RETRY_SCHEDULED

        async with session_factory() as db:
            stored = await db.get(WebhookJob, job.id)
        assert stored.status == JobStatus.RETRY_SCHEDULED
        assert stored.next_attempt_at == clock.now + timedelta(seconds=5)
        assert stored.last_error == "HTTP 500"
        assert stored.locked_at is None

    @pytest.mark.integration
    async def test_fail_on_last_attempt_exhausts(self, queue, session_factory, clock, caplog) -> None:
        [job] = await queue.enqueue([_spec()])
        for _ in range(4):
            claimed = await queue.claim_next()
            assert await queue.fail(claimed, "HTTP 503") == JobStatus.RETRY_SCHEDULED
            clock.advance(3600)

        claimed = await queue.claim_next()
        assert claimed.attempts_made == 5
        with caplog.at_level("WARNING"):
            assert await queue.fail(claimed, "HTTP 503") == JobStatus.EXHAUSTED

        async with session_factory() as db:
            stored = await db.get(WebhookJob, job.id)
        assert stored.status == JobStatus.EXHAUSTED
        assert stored.finished_at == clock.now
        assert any("exhausted" in r.getMessage() for r in caplog.records)

        clock.advance(86400)
        assert await queue.claim_next() is None

    @pytest.mark.integration
    async def test_retry_not_claimable_before_due(self, queue, clock) -> None:
        await queue.enqueue([_spec()])
        claimed = await queue.claim_next()
        await queue.fail(claimed, "HTTP 500")

        clock.advance(4)
        assert await queue.claim_next() is None
        clock.advance(1)
        again = await queue.claim_next()
        assert again is not None
        assert again.attempts_made == 2
