from __future__ import annotations

from typing import Any

from qreports.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response(
        "Rejected request",
        code="SQL_REJECTED",
        message="Only read statements are allowed (SELECT or WITH ... SELECT); statement 1 is DROP",
        details={"hint": "Submit a single SELECT statement, or a WITH ... SELECT"},
    ),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    404: _response("Not found", code="NOT_FOUND", message="Render job not found"),
    408: _response(
        "Deadline exceeded",
        code="QUERY_TIMEOUT",
        message="Query exceeded the time limit of 30 seconds",
        details={"hint": "Add a LIMIT or WHERE clause to narrow the result"},
    ),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    429: _response(
        "Rate limited",
        code="RATE_LIMITED",
        message="Rate limit exceeded",
        details={"route_class": "query", "retry_after_ms": 6000},
    ),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    502: _response("Upstream failure", code="UPSTREAM_ERROR", message="Failed to open tenant database pool"),
    503: _response("Service unavailable", code="SERVICE_UNAVAILABLE", message="Service unavailable"),
}
