"""
Tests for Logging Infrastructure
"""
import json
import logging
from datetime import datetime
from io import StringIO

import pytest

from app.core.logging import (
    CorrelationIdFilter,
    JSONFormatter,
    correlation_id_var,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    job_log_context,
    log_async_operation,
    redact,
    set_correlation_id,
)


@pytest.fixture
def captured():
    """A structured logger writing JSON lines into a buffer"""
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())
    logger = get_logger(f"test.{generate_correlation_id()}")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    def _lines() -> list[dict]:
        return [json.loads(line) for line in stream.getvalue().splitlines()]

    yield logger, _lines
    logger.removeHandler(handler)


class TestCorrelationId:

    @pytest.mark.unit
    def test_generated_ids_are_short_and_unique(self):
        ids = {generate_correlation_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(len(cid) == 8 for cid in ids)

    @pytest.mark.unit
    def test_explicit_id_is_kept(self):
        assert set_correlation_id("job-1234") == "job-1234"
        assert get_correlation_id() == "job-1234"

    @pytest.mark.unit
    def test_none_generates(self):
        assert len(set_correlation_id(None)) == 8


class TestJSONFormatter:

    @pytest.mark.unit
    def test_basic_fields(self, captured):
        logger, lines = captured
        logger.info("Webhook job enqueued")

        [entry] = lines()
        assert entry["level"] == "INFO"
        assert entry["message"] == "Webhook job enqueued"
        assert entry["logger"] == logger.name
        assert entry["timestamp"].endswith("Z")
        assert "app" in entry

    @pytest.mark.unit
    def test_correlation_id_is_stamped(self, captured):
        logger, lines = captured
        set_correlation_id("a1b2c3d4")
        logger.info("Delivery attempt")

        assert lines()[0]["correlation_id"] == "a1b2c3d4"

    @pytest.mark.unit
    def test_extra_data_and_exception(self, captured):
        logger, lines = captured
        try:
            raise RuntimeError("endpoint down")
        except RuntimeError:
            logger.exception("Delivery failed", extra_data={"job_id": "j-1", "attempt": 2})

        [entry] = lines()
        assert entry["level"] == "ERROR"
        assert entry["extra"] == {"job_id": "j-1", "attempt": 2}
        assert "RuntimeError" in entry["exception"]

    @pytest.mark.unit
    def test_non_json_values_are_stringified(self, captured):
        logger, lines = captured
        logger.info("Odd value", extra_data={"value": datetime(2026, 1, 1)})

        assert isinstance(lines()[0]["extra"]["value"], str)


class TestCorrelationIdFilter:

    @pytest.mark.unit
    def test_placeholder_when_unset(self):
        token = correlation_id_var.set("")
        try:
            record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", (), None)
            assert CorrelationIdFilter().filter(record)
            assert record.correlation_id == "-"
        finally:
            correlation_id_var.reset(token)


class TestAsyncLoggingDecorator:

    @pytest.mark.unit
    async def test_success_returns_value(self):
        @log_async_operation("drain")
        async def drain(count):
            return count

        assert await drain(3) == 3

    @pytest.mark.unit
    async def test_failure_is_reraised(self):
        @log_async_operation("drain")
        async def drain():
            raise ValueError("database gone")

        with pytest.raises(ValueError):
            await drain()


class TestRedaction:

    @pytest.mark.unit
    def test_nested_secrets_are_masked(self):
        data = {"url": "https://a", "Secret": "abc", "headers": [{"Authorization": "Bearer x"}]}

        assert redact(data) == {
            "url": "https://a",
            "Secret": "***",
            "headers": [{"Authorization": "***"}],
        }

    @pytest.mark.unit
    def test_secret_never_reaches_output(self, captured):
        logger, lines = captured
        logger.info("Subscription created", extra_data={"secret": "f" * 64})

        assert lines()[0]["extra"]["secret"] == "***"


class TestJobLogContext:

    @pytest.mark.unit
    def test_fields_added_and_restored(self, captured):
        logger, lines = captured
        set_correlation_id("request1")

        with job_log_context("job-9", subscription_id="sub-1"):
            logger.info("Attempt", extra_data={"attempt": 2})
        logger.info("After")

        inside, after = lines()
        assert inside["correlation_id"] == "job-9"
        assert inside["extra"] == {"job_id": "job-9", "subscription_id": "sub-1", "attempt": 2}
        assert after["correlation_id"] == "request1"
        assert "extra" not in after
