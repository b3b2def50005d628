from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any, Dict, Optional


class AppError(Exception):
    """Base for errors surfaced at the HTTP boundary."""

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, validation_errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.validation_errors = validation_errors


class NotFoundError(AppError):
    status_code = HTTPStatus.NOT_FOUND


class ValidationError(AppError):
    status_code = HTTPStatus.BAD_REQUEST


class InsufficientStockError(AppError):
    """Reservation lost against current stock (distinct from the advisory check)."""

    status_code = HTTPStatus.CONFLICT


class ConflictError(AppError):
    status_code = HTTPStatus.CONFLICT


class InternalError(AppError):
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR


class ServiceUnavailableError(InternalError):
    """Dependency unreachable or write timed out; the caller may retry."""

    status_code = HTTPStatus.SERVICE_UNAVAILABLE
    retryable = True


def error_body(
    status: int,
    message: str,
    path: Optional[str] = None,
    trace_id: Optional[str] = None,
    validation_errors: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "statusCode": int(status),
        "errorName": HTTPStatus(status).phrase,
        "message": message,
        "path": path,
    }
    if trace_id:
        body["traceId"] = trace_id
    if validation_errors:
        body["validationErrors"] = validation_errors
    return body
