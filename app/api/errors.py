"""
HTTP mapping of service errors

The only place an ``ErrorKind`` becomes a status code.
"""
from typing import TypeVar

from app.core.exceptions import AppException, ErrorKind, ServiceError, ServiceResult

T = TypeVar("T")

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
}


def to_app_exception(error: ServiceError) -> AppException:
    return AppException(
        message=error.message,
        error_code=error.code,
        status_code=STATUS_BY_KIND.get(error.kind, 500),
        details=dict(error.details),
    )


def unwrap(result: ServiceResult[T]) -> T:
    """Return the value or raise the mapped AppException"""
    if result.error is not None:
        raise to_app_exception(result.error)
    return result.value
