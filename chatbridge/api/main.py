"""FastAPI application for the chatbridge API.

Provides the main application instance with routers, middleware,
and exception handlers configured.

Run with:
    uvicorn chatbridge.api.main:app
"""

import logging
import os
import sys
import time
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logging.getLogger("chatbridge").setLevel(logging.INFO)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatbridge.api.middleware.auth import maybe_require_api_key
from chatbridge.api.routes import chat, connections, keys, webhooks
from chatbridge.db.connection import init_db
from chatbridge.errors import DomainError
from chatbridge.services.mcp_client import get_mcp_manager

logger = logging.getLogger(__name__)

_startup_time: float = 0.0


def _parse_allowed_origins() -> list[str]:
    """Parse comma-separated CORS allowlist from ALLOWED_ORIGINS env var."""
    raw = os.environ.get("ALLOWED_ORIGINS", "").strip()
    if not raw:
        return []
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def _app_version() -> str:
    try:
        return _pkg_version("chatbridge")
    except PackageNotFoundError:
        return "0.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup; disconnect MCP clients on shutdown."""
    global _startup_time
    _startup_time = time.monotonic()
    init_db()
    logger.info("chatbridge API started (version %s)", _app_version())
    yield
    try:
        await get_mcp_manager().close()
    except Exception as e:
        logger.warning("MCP shutdown failed: %s", e)


app = FastAPI(
    title="chatbridge API",
    description="Chat turn orchestration, tools, image synthesis and messaging bridges",
    version=_app_version(),
    lifespan=lifespan,
)

# Optional API auth for /api/* when CHATBRIDGE_API_KEY is configured.
app.middleware("http")(maybe_require_api_key)

# CORS allowlist is env-driven. If unset, CORS is disabled (same-origin only).
allowed_origins = _parse_allowed_origins()
if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key", "X-User-Id"],
    )


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Render any DomainError in the shared error envelope."""
    if exc.http_status >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{location}: {first.get('msg')}" if location else str(first.get("msg", "Invalid request"))
    return JSONResponse(
        status_code=400,
        content={"error": {"code": "VALIDATION_ERROR", "message": message}},
    )


app.include_router(chat.router, prefix="/api")
app.include_router(connections.router, prefix="/api")
app.include_router(keys.router, prefix="/api")
app.include_router(webhooks.router, prefix="/api")


@app.get("/health")
def health_check() -> dict:
    """Liveness probe."""
    return {
        "status": "ok",
        "version": _app_version(),
        "uptime_seconds": round(time.monotonic() - _startup_time, 1) if _startup_time else 0.0,
    }
