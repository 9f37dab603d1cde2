"""
Structured Logging

One JSON object per line. Every line carries the correlation ID of the unit
of work it belongs to: the X-Correlation-ID of an HTTP request, or the job ID
while a delivery attempt runs, so all attempts of one job grep together.

Usage:
    logger = get_logger(__name__)
    logger.info("Webhook delivered", extra_data={"job_id": job.id})

Values under keys that look like credentials are masked before they are
written; a subscription secret must never reach the logs.
"""
import logging
import json
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Iterator, Mapping

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
# Fields merged into every line logged inside job_log_context()
log_context_var: ContextVar[Mapping[str, Any]] = ContextVar("log_context", default={})

_app_name = "tenant-webhooks"

SENSITIVE_KEYS = frozenset({"secret", "signature", "authorization", "token", "password"})
REDACTED = "***"


def redact(data: Any) -> Any:
    """Copy of ``data`` with credential-like values masked, recursively"""
    if isinstance(data, Mapping):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_KEYS else redact(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact(item) for item in data]
    return data


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON line"""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "app": _app_name,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        cid = correlation_id_var.get()
        if cid:
            entry["correlation_id"] = cid

        extra = {**log_context_var.get(), **getattr(record, "extra_data", {})}
        if extra:
            entry["extra"] = redact(extra)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """Logger whose level methods accept ``extra_data={...}``"""

    def _log(self, level, msg, args, exc_info=None, extra=None, stack_info=False,
             stacklevel=1, extra_data: Mapping[str, Any] | None = None):
        if extra_data:
            extra = {**(extra or {}), "extra_data": dict(extra_data)}
        super()._log(
            level, msg, args,
            exc_info=exc_info, extra=extra, stack_info=stack_info, stacklevel=stacklevel,
        )

    def debug(self, msg, *args, extra_data=None, **kwargs):
        if self.isEnabledFor(logging.DEBUG):
            self._log(logging.DEBUG, msg, args, extra_data=extra_data, **kwargs)

    def info(self, msg, *args, extra_data=None, **kwargs):
        if self.isEnabledFor(logging.INFO):
            self._log(logging.INFO, msg, args, extra_data=extra_data, **kwargs)

    def warning(self, msg, *args, extra_data=None, **kwargs):
        if self.isEnabledFor(logging.WARNING):
            self._log(logging.WARNING, msg, args, extra_data=extra_data, **kwargs)

    def error(self, msg, *args, extra_data=None, **kwargs):
        if self.isEnabledFor(logging.ERROR):
            self._log(logging.ERROR, msg, args, extra_data=extra_data, **kwargs)

    def exception(self, msg, *args, extra_data=None, exc_info=True, **kwargs):
        self.error(msg, *args, extra_data=extra_data, exc_info=exc_info, **kwargs)


logging.setLoggerClass(StructuredLogger)


class CorrelationIdFilter(logging.Filter):
    """Exposes %(correlation_id)s to plain-text formats"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    app_name: str = "tenant-webhooks"
) -> None:
    """
    Configure the root logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: JSON lines (production) or a readable text format (DEBUG)
        app_name: stamped on every JSON line
    """
    global _app_name
    _app_name = app_name
    numeric_level = getattr(logging, level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | [%(correlation_id)s] | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        handler.addFilter(CorrelationIdFilter())

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers.clear()
    root.addHandler(handler)

    # httpx logs every outbound request at INFO, which would duplicate the delivery log
    for noisy in ("httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind ``correlation_id`` (or a fresh one) to the current context"""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    """Current correlation ID; one is generated and bound if none is set"""
    return correlation_id_var.get() or set_correlation_id()


@contextmanager
def job_log_context(job_id: str, **fields: Any) -> Iterator[None]:
    """
    Correlate everything logged inside the block with one delivery job.

    Sets the correlation ID to ``job_id`` and adds ``fields`` to every line.
    Both are restored on exit, so pool slots sharing a task do not leak into
    each other.
    """
    cid_token = correlation_id_var.set(job_id)
    ctx_token = log_context_var.set({**log_context_var.get(), "job_id": job_id, **fields})
    try:
        yield
    finally:
        log_context_var.reset(ctx_token)
        correlation_id_var.reset(cid_token)


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def log_async_operation(operation_name: str):
    """Log start, completion (with duration) and failure of a coroutine"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            started = datetime.now(timezone.utc)

            def _elapsed() -> float:
                return (datetime.now(timezone.utc) - started).total_seconds()

            logger.debug(
                f"Starting {operation_name}",
                extra_data={"operation": operation_name, "status": "started"},
            )
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"Failed {operation_name}: {e}",
                    extra_data={
                        "operation": operation_name,
                        "status": "failed",
                        "duration_seconds": _elapsed(),
                        "error": str(e),
                    },
                    exc_info=True,
                )
                raise

            logger.info(
                f"Completed {operation_name}",
                extra_data={
                    "operation": operation_name,
                    "status": "completed",
                    "duration_seconds": _elapsed(),
                },
            )
            return result

        return wrapper
    return decorator
