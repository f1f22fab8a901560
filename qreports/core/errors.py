from __future__ import annotations

from typing import Any


class QReportsError(Exception):
    """Base error for qreports; carries a stable code and an HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, *, hint: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details

    def to_detail(self) -> dict[str, Any]:
        # Shape matches HTTPException detail payloads consumed by the error envelope.
        detail: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.hint:
            detail["hint"] = self.hint
        if self.details:
            detail.update(self.details)
        return detail


class AuthenticationError(QReportsError):
    """Missing, invalid or expired claim."""

    code = "AUTH_UNAUTHORIZED"
    status_code = 401


class UnauthorizedTenantError(AuthenticationError):
    """Tenant deleted or deactivated since the token was issued."""

    code = "TENANT_UNAUTHORIZED"


class AuthorizationError(QReportsError):
    """Valid caller lacking the role for the operation."""

    code = "AUTH_FORBIDDEN"
    status_code = 403


class ValidationError(QReportsError):
    """Malformed request or a limit violation attributable to the caller."""

    code = "VALIDATION_ERROR"
    status_code = 400


class SqlRejectedError(ValidationError):
    """Submission refused by the SQL safety gate."""

    code = "SQL_REJECTED"


class RowLimitExceededError(ValidationError):
    code = "ROW_LIMIT_EXCEEDED"


class QueryExecutionError(ValidationError):
    """Database refused a read statement; only the driver message is surfaced."""

    code = "QUERY_EXECUTION_FAILED"


class QueryTimeoutError(QReportsError):
    code = "QUERY_TIMEOUT"
    status_code = 408


class RenderTimeoutError(QReportsError):
    code = "RENDER_TIMEOUT"
    status_code = 408


class UpstreamError(QReportsError):
    """Registry, pool or renderer failure not caused by caller input."""

    code = "UPSTREAM_ERROR"
    status_code = 502


class RendererCrashedError(UpstreamError):
    code = "RENDERER_CRASHED"


class NotFoundError(QReportsError):
    code = "NOT_FOUND"
    status_code = 404


class ServiceBusyError(QReportsError):
    code = "SERVICE_BUSY"
    status_code = 503
