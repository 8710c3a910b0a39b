"""Typed domain exceptions for API error mapping.

These exceptions provide stronger API contract guarantees than
string-based error message matching. Each class carries a stable
``code`` and the HTTP status it maps to; the application registers a
single handler that renders every DomainError in the same envelope.

Usage:
    # In service layer
    raise NotFoundError("Connection", connection_id)

    # In route handler (or via the app-level handler)
    except DomainError as e:
        return JSONResponse(status_code=e.http_status, content=e.to_payload())
"""

from typing import Any


class DomainError(Exception):
    """Base exception for all domain errors."""

    code = "DOMAIN_ERROR"
    http_status = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON error envelope for this error."""
        return {"error": {"code": self.code, "message": self.message}}


class ValidationError(DomainError):
    """Malformed input. Maps to HTTP 400."""

    code = "VALIDATION_ERROR"


class AuthError(DomainError):
    """Missing or invalid session. Maps to HTTP 401."""

    code = "UNAUTHORIZED"
    http_status = 401


class ForbiddenError(AuthError):
    """Session is valid but the resource belongs to another user. Maps to HTTP 403."""

    code = "FORBIDDEN"
    http_status = 403


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class UpstreamConfigError(DomainError):
    """A required credential or engine is missing. Maps to HTTP 400.

    Raised before any call to the external provider is attempted.
    """

    code = "UPSTREAM_CONFIG_ERROR"


class UpstreamCallError(DomainError):
    """An external bridge answered with a non-success status. Maps to HTTP 502."""

    code = "UPSTREAM_CALL_ERROR"
    http_status = 502

    def __init__(self, service: str, status_code: int, body: Any) -> None:
        super().__init__(f"{service} request failed with status {status_code}")
        self.service = service
        self.status_code = status_code
        self.body = body

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["error"]["upstream_status"] = self.status_code
        payload["error"]["upstream_body"] = self.body
        return payload


class ModelError(DomainError):
    """Language-model inference failed. Rendered as a stream error event."""

    code = "MODEL_ERROR"
    http_status = 502


class TransientModelError(ModelError):
    """Inference failure that is worth retrying (rate limit, overload, network)."""

    code = "MODEL_TRANSIENT_ERROR"
