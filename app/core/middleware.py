"""
FastAPI Middleware and Exception Handlers

Middleware, outermost first:
    SecurityHeadersMiddleware   nosniff, HSTS outside DEBUG
    CorrelationIdMiddleware     X-Correlation-ID in and out
    RequestLoggingMiddleware    one line per request, probes at DEBUG

Every error leaves the API in the same envelope:

    {"error": {"code": "ERR_7001", "message": "...", "details": {...}}}
"""
import time
from typing import Any, Callable

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.exceptions import AppException, ErrorCode
from app.core.logging import correlation_id_var, get_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
# Liveness/readiness probes hit every few seconds; they are logged at DEBUG
QUIET_PATH_PREFIXES = ("/health",)

ERROR_CODE_BY_STATUS = {
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.CONFLICT,
    422: ErrorCode.VALIDATION_ERROR,
}


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Adopt the caller's X-Correlation-ID or mint one, and echo it back"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        token = correlation_id_var.set("")
        try:
            correlation_id = set_correlation_id(request.headers.get(CORRELATION_HEADER))
            request.state.correlation_id = correlation_id
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            correlation_id_var.reset(token)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status, duration and, once authenticated, the tenant"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        path = request.url.path
        quiet = path.startswith(QUIET_PATH_PREFIXES)

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {path}",
                extra_data={
                    **self._request_fields(request),
                    "duration_seconds": round(time.perf_counter() - started, 4),
                    "error": str(e),
                },
                exc_info=True,
            )
            raise

        fields = {
            **self._request_fields(request),
            "status_code": response.status_code,
            "duration_seconds": round(time.perf_counter() - started, 4),
        }
        message = f"{request.method} {path} -> {response.status_code}"
        if response.status_code >= 500:
            logger.error(message, extra_data=fields)
        elif response.status_code >= 400:
            logger.warning(message, extra_data=fields)
        elif quiet:
            logger.debug(message, extra_data=fields)
        else:
            logger.info(message, extra_data=fields)
        return response

    @staticmethod
    def _request_fields(request: Request) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "method": request.method,
            "path": request.url.path,
            "client_host": request.client.host if request.client else None,
        }
        principal = getattr(request.state, "principal", None)
        if principal is not None:
            fields["tenant_id"] = principal.tenant_id
            fields["user_id"] = principal.sub
        return fields


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    X-Content-Type-Options on every response; Strict-Transport-Security only
    outside DEBUG so plain-HTTP local runs keep working.
    """

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        if not self._debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


def _error_response(
    status_code: int,
    code: ErrorCode,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code.value, "message": message, "details": details or {}}},
        headers={**(headers or {}), CORRELATION_HEADER: get_correlation_id()},
    )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Service errors mapped by app.api.errors"""
    logger.warning(
        f"Application error {exc.error_code.value}: {exc.message}",
        extra_data={
            "error_code": exc.error_code.value,
            "status_code": exc.status_code,
            "details": exc.details,
            "path": request.url.path,
        },
    )
    return _error_response(exc.status_code, exc.error_code, exc.message, exc.details)


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """401/403 from the auth dependencies, unknown routes, wrong methods"""
    code = ERROR_CODE_BY_STATUS.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    return _error_response(
        exc.status_code,
        code,
        str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed request bodies and query parameters"""
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ())),
            "message": error.get("msg", ""),
            "type": error.get("type", ""),
        }
        for error in exc.errors()
    ]
    logger.info(
        "Request validation failed",
        extra_data={"path": request.url.path, "errors": errors},
    )
    return _error_response(
        422, ErrorCode.VALIDATION_ERROR, "Request validation failed", {"errors": errors}
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected: logged with traceback, answered without internals"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": request.url.path,
        },
        exc_info=True,
    )
    return _error_response(500, ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")


def setup_middleware(app: FastAPI, *, debug: bool = False) -> None:
    # Starlette wraps in reverse order of registration: the last added is outermost
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=debug)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
