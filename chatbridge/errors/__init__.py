"""Error taxonomy for chatbridge.

Every error raised across a service boundary is a DomainError subclass
carrying a stable code and the HTTP status it maps to.
"""

from chatbridge.errors.domain import (
    AuthError,
    DomainError,
    ForbiddenError,
    ModelError,
    NotFoundError,
    TransientModelError,
    UpstreamCallError,
    UpstreamConfigError,
    ValidationError,
)

__all__ = [
    "DomainError",
    "ValidationError",
    "AuthError",
    "ForbiddenError",
    "NotFoundError",
    "UpstreamConfigError",
    "UpstreamCallError",
    "ModelError",
    "TransientModelError",
]
