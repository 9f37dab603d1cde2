"""
Error kinds and service results

Domain services never raise for expected failures. They return a
``ServiceResult`` carrying either a value or a ``ServiceError`` tagged with an
``ErrorKind``. The HTTP layer turns a failed result into ``AppException``
(see ``app.api.errors``), which is the only place a status code is chosen.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """What went wrong, independent of transport"""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    CONFLICT = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"

    # Webhook errors (7xxx)
    WEBHOOK_NOT_FOUND = "ERR_7001"
    WEBHOOK_INVALID_URL = "ERR_7002"
    WEBHOOK_NO_EVENTS = "ERR_7003"
    WEBHOOK_LIMIT_REACHED = "ERR_7004"


@dataclass(frozen=True)
class ServiceError:
    """A tagged, transport-agnostic failure"""

    kind: ErrorKind
    message: str
    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def validation(
        cls,
        message: str,
        field_name: str | None = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ) -> "ServiceError":
        details = {"field": field_name} if field_name else {}
        return cls(ErrorKind.VALIDATION, message, code, details)

    @classmethod
    def not_found(
        cls,
        resource: str,
        identifier: Any,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ) -> "ServiceError":
        return cls(
            ErrorKind.NOT_FOUND,
            f"{resource} not found",
            code,
            {"resource": resource, "identifier": str(identifier)},
        )

    @classmethod
    def conflict(
        cls,
        message: str,
        code: ErrorCode = ErrorCode.CONFLICT,
        details: dict[str, Any] | None = None,
    ) -> "ServiceError":
        return cls(ErrorKind.CONFLICT, message, code, details or {})


@dataclass(frozen=True)
class ServiceResult(Generic[T]):
    """Either ``value`` or ``error`` is set, never both"""

    value: T | None = None
    error: ServiceError | None = None

    @classmethod
    def ok(cls, value: T) -> "ServiceResult[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, error: ServiceError) -> "ServiceResult[T]":
        return cls(error=error)

    @property
    def is_ok(self) -> bool:
        return self.error is None


class AppException(Exception):
    """Raised only at the HTTP boundary, rendered by the global handler"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }
