"""Optional API-key middleware and per-request user identity.

Session issuance is external: an upstream gateway authenticates the user
and forwards the user id in ``X-User-Id``. When ``CHATBRIDGE_API_KEY`` is
set, every ``/api/*`` request except the bridge webhooks must also carry
the shared key in ``X-API-Key``.
"""

from __future__ import annotations

import hmac
import logging
import os
import threading
import time

from fastapi import Request
from fastapi.responses import JSONResponse, Response

from chatbridge.errors import AuthError

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"

_PUBLIC_PATH_PREFIXES = (
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/api/webhooks/",
)

# --- Rate limiting for auth failures ---
_AUTH_FAIL_MAX = 10
_AUTH_FAIL_WINDOW_SECONDS = 300
_auth_failures: dict[str, list[float]] = {}
_auth_lock = threading.Lock()


def _trust_proxy() -> bool:
    return os.environ.get("CHATBRIDGE_TRUST_PROXY", "").strip().lower() in ("1", "true")


def _get_client_ip(request: Request) -> str:
    """Extract client IP; X-Forwarded-For only behind a trusted proxy."""
    if _trust_proxy():
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _is_rate_limited(client_ip: str) -> bool:
    with _auth_lock:
        now = time.monotonic()
        timestamps = [t for t in _auth_failures.get(client_ip, []) if now - t < _AUTH_FAIL_WINDOW_SECONDS]
        _auth_failures[client_ip] = timestamps
        return len(timestamps) >= _AUTH_FAIL_MAX


def _record_auth_failure(client_ip: str) -> None:
    with _auth_lock:
        _auth_failures.setdefault(client_ip, []).append(time.monotonic())


def reset_rate_limiter() -> None:
    """Reset the rate limiter state. Used by tests."""
    with _auth_lock:
        _auth_failures.clear()


def get_expected_api_key() -> str:
    """Return configured API key; empty string means auth disabled."""
    return os.environ.get("CHATBRIDGE_API_KEY", "").strip()


def should_authenticate(path: str) -> bool:
    """Return True when this path should be protected by API-key auth."""
    if path.startswith(_PUBLIC_PATH_PREFIXES):
        return False
    return path.startswith("/api/")


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})


async def maybe_require_api_key(request: Request, call_next) -> Response:
    """Middleware entrypoint for optional API-key auth with failure rate limiting."""
    if request.method.upper() == "OPTIONS":
        return await call_next(request)

    expected_key = get_expected_api_key()
    if not expected_key or not should_authenticate(request.url.path):
        return await call_next(request)

    client_ip = _get_client_ip(request)
    if _is_rate_limited(client_ip):
        logger.warning("Auth rate limit exceeded for IP %s", client_ip)
        return _error(429, "RATE_LIMITED", "Too many authentication failures. Try again later.")

    provided_key = request.headers.get("X-API-Key", "")
    if not provided_key or not hmac.compare_digest(provided_key, expected_key):
        _record_auth_failure(client_ip)
        return _error(401, AuthError.code, "Invalid or missing API key")
    return await call_next(request)


def get_current_user_id(request: Request) -> str:
    """FastAPI dependency: the user id forwarded by the gateway.

    Raises:
        AuthError: Header missing or blank.
    """
    user_id = request.headers.get(USER_ID_HEADER, "").strip()
    if not user_id:
        raise AuthError("Missing user session")
    return user_id
