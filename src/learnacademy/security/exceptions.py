"""
Application error taxonomy.

Every failure that crosses an API boundary is expressed as one of these
errors so responses share one envelope shape and one severity-driven
alerting decision point.
"""

import traceback
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from learnacademy.security.request_utils import get_client_ip
from learnacademy.security.settings import get_settings

logger = structlog.get_logger(__name__)


class ErrorSeverity(str, Enum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    ErrorSeverity.LOW: 0,
    ErrorSeverity.MEDIUM: 1,
    ErrorSeverity.HIGH: 2,
    ErrorSeverity.CRITICAL: 3,
}


class ErrorCategory(str, Enum):
    """Error categories."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    RATE_LIMIT = "rate_limit"
    EXTERNAL_SERVICE = "external_service"
    DATABASE = "database"
    BUSINESS_LOGIC = "business_logic"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class ApplicationError(Exception):
    """
    Base application error.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        severity: Severity used for alerting decisions
        category: Taxonomy category
        is_operational: Expected domain error (True) or system fault (False)
        metadata: Additional structured context
        cause: Wrapped underlying exception
    """

    code = "APPLICATION_ERROR"
    status_code = 500
    severity = ErrorSeverity.MEDIUM
    category = ErrorCategory.INTERNAL
    is_operational = True

    def __init__(
        self,
        message: str,
        metadata: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        self.message = message
        self.metadata = metadata or {}
        self.cause = cause
        self.id = str(uuid.uuid4())
        self.timestamp = datetime.now(UTC)
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self, include_internal: bool | None = None) -> dict[str, Any]:
        """Build the error body (the value under the ``error`` key)."""
        if include_internal is None:
            include_internal = get_settings().is_development

        body: dict[str, Any] = {
            "id": self.id,
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "timestamp": self.timestamp.isoformat(),
        }
        body.update(self._public_details())
        if include_internal:
            body["severity"] = self.severity.value
            body["status_code"] = self.status_code
            body["stack"] = "".join(
                traceback.format_exception(type(self), self, self.__traceback__)
            )
            body["metadata"] = self.metadata
        return body

    def to_json(self, include_internal: bool | None = None) -> dict[str, Any]:
        """Uniform error envelope."""
        return {"error": self.to_dict(include_internal)}

    def _public_details(self) -> dict[str, Any]:
        return {}

    def response_headers(self) -> dict[str, str]:
        return {}

    async def log(self, ip_address: str | None = None, user_agent: str | None = None) -> None:
        """Record the error once, escalating critical and unexpected faults."""
        if self.severity == ErrorSeverity.CRITICAL or not self.is_operational:
            from learnacademy.security.audit import get_audit_logger
            from learnacademy.security.audit.models import AuditEventType, AuditResult

            await get_audit_logger().log_event(
                event_type=AuditEventType.SUSPICIOUS_ACTIVITY,
                severity=self.severity.value,
                result=AuditResult.FAILURE,
                description=self.message,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={
                    "error_id": self.id,
                    "code": self.code,
                    "category": self.category.value,
                    "operational": self.is_operational,
                    **self.metadata,
                },
            )
            return

        logger.warning(
            "api.error",
            error_id=self.id,
            code=self.code,
            message=self.message,
            category=self.category.value,
            status_code=self.status_code,
            ip_address=ip_address,
            user_agent=user_agent,
        )


class ValidationError(ApplicationError):
    """Invalid input supplied by the caller."""

    code = "VALIDATION_ERROR"
    status_code = 400
    severity = ErrorSeverity.LOW
    category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str = "Validation failed",
        fields: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message, metadata, cause)
        self.fields = fields or {}

    def _public_details(self) -> dict[str, Any]:
        return {"details": self.fields} if self.fields else {}


class NotFoundError(ApplicationError):
    """Requested resource does not exist."""

    code = "NOT_FOUND"
    status_code = 404
    severity = ErrorSeverity.LOW
    category = ErrorCategory.NOT_FOUND

    def __init__(
        self,
        resource: str = "Resource",
        identifier: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        message = f"{resource} not found" if identifier is None else f"{resource} '{identifier}' not found"
        super().__init__(message, {"resource": resource, "identifier": identifier, **(metadata or {})})


class AuthenticationError(ApplicationError):
    """Missing or invalid credentials."""

    code = "AUTHENTICATION_ERROR"
    status_code = 401
    severity = ErrorSeverity.MEDIUM
    category = ErrorCategory.AUTHENTICATION

    def __init__(self, message: str = "Authentication required", **kwargs: Any):
        super().__init__(message, **kwargs)

    def response_headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class AuthorizationError(ApplicationError):
    """Authenticated caller lacks rights for the operation."""

    code = "AUTHORIZATION_ERROR"
    status_code = 403
    severity = ErrorSeverity.MEDIUM
    category = ErrorCategory.AUTHORIZATION

    def __init__(self, message: str = "Insufficient permissions", **kwargs: Any):
        super().__init__(message, **kwargs)


class RateLimitError(ApplicationError):
    """Caller exceeded a rate limit."""

    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    severity = ErrorSeverity.LOW
    category = ErrorCategory.RATE_LIMIT

    def __init__(
        self,
        message: str = "Too many requests",
        retry_after: int | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        super().__init__(message, metadata)
        self.retry_after = retry_after

    def _public_details(self) -> dict[str, Any]:
        return {"retry_after": self.retry_after} if self.retry_after is not None else {}

    def response_headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)} if self.retry_after is not None else {}


class ExternalServiceError(ApplicationError):
    """A downstream dependency failed or is unavailable."""

    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 503
    severity = ErrorSeverity.HIGH
    category = ErrorCategory.EXTERNAL_SERVICE

    def __init__(
        self,
        service: str,
        message: str | None = None,
        retry_after: int | None = None,
        metadata: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(
            message or f"External service '{service}' is unavailable",
            {"service": service, **(metadata or {})},
            cause,
        )
        self.service = service
        self.retry_after = retry_after

    def response_headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)} if self.retry_after is not None else {}


class DatabaseError(ApplicationError):
    """Persistence layer failure."""

    code = "DATABASE_ERROR"
    status_code = 500
    severity = ErrorSeverity.HIGH
    category = ErrorCategory.DATABASE


class BusinessLogicError(ApplicationError):
    """Request is well-formed but violates a domain rule."""

    code = "BUSINESS_LOGIC_ERROR"
    status_code = 400
    severity = ErrorSeverity.MEDIUM
    category = ErrorCategory.BUSINESS_LOGIC


class ConfigurationError(ApplicationError):
    """The system itself is misconfigured."""

    code = "CONFIGURATION_ERROR"
    status_code = 500
    severity = ErrorSeverity.CRITICAL
    category = ErrorCategory.CONFIGURATION
    is_operational = False


class AggregateApplicationError(ApplicationError):
    """Several errors reported together; severity is the worst of them."""

    code = "MULTIPLE_ERRORS"
    status_code = 400
    category = ErrorCategory.VALIDATION

    def __init__(self, errors: list[ApplicationError], message: str | None = None):
        super().__init__(message or f"{len(errors)} errors occurred")
        self.errors = errors
        if errors:
            self.severity = max((e.severity for e in errors), key=lambda s: s.rank)
        else:
            self.severity = ErrorSeverity.LOW

    def _public_details(self) -> dict[str, Any]:
        return {"errors": [e.to_dict() for e in self.errors]}


class InternalError(ApplicationError):
    """Unexpected fault wrapped for uniform reporting."""

    code = "INTERNAL_ERROR"
    status_code = 500
    severity = ErrorSeverity.HIGH
    category = ErrorCategory.INTERNAL
    is_operational = False


def is_operational_error(error: BaseException) -> bool:
    """True for expected domain errors, False for unexpected system faults."""
    return isinstance(error, ApplicationError) and error.is_operational


def create_application_error(error: BaseException) -> ApplicationError:
    """Map any exception onto the taxonomy."""
    if isinstance(error, ApplicationError):
        return error
    if isinstance(error, TimeoutError):
        return ExternalServiceError("unknown", "Upstream request timed out", cause=error)
    return InternalError("An unexpected error occurred", {"type": type(error).__name__}, error)


def error_response(error: ApplicationError) -> JSONResponse:
    """Render an error as a JSON response with its headers."""
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_json(),
        headers=error.response_headers(),
    )


async def application_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error = create_application_error(exc)
    await error.log(get_client_ip(request), request.headers.get("user-agent"))
    return error_response(error)


def register_exception_handlers(app: FastAPI) -> None:
    """Install taxonomy-aware handlers on a FastAPI application."""
    app.add_exception_handler(ApplicationError, application_error_handler)
    app.add_exception_handler(Exception, application_error_handler)


__all__ = [
    "ErrorSeverity",
    "ErrorCategory",
    "ApplicationError",
    "ValidationError",
    "NotFoundError",
    "AuthenticationError",
    "AuthorizationError",
    "RateLimitError",
    "ExternalServiceError",
    "DatabaseError",
    "BusinessLogicError",
    "ConfigurationError",
    "AggregateApplicationError",
    "InternalError",
    "is_operational_error",
    "create_application_error",
    "error_response",
    "register_exception_handlers",
]
