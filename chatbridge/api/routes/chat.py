"""FastAPI routes for streamed chat turns.

Endpoints:
    POST /chat         - Run one turn, streamed as SSE
    GET  /chat/models  - Selectable model catalog
"""

import json
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from chatbridge.api.middleware.auth import get_current_user_id
from chatbridge.api.schemas import ChatRequest
from chatbridge.db.connection import get_db
from chatbridge.orchestrator.cancellation import CancellationSignal
from chatbridge.orchestrator.engine import ChatEngine, PreparedTurn
from chatbridge.orchestrator.models import list_models

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


def get_chat_engine(db: Session = Depends(get_db)) -> ChatEngine:
    """Dependency to get a ChatEngine bound to the request session."""
    return ChatEngine(db)


async def _event_generator(
    request: Request,
    engine: ChatEngine,
    prepared: PreparedTurn,
    signal: CancellationSignal,
) -> AsyncGenerator[dict, None]:
    """Relay engine events as SSE payloads; client disconnect cancels the turn.

    Args:
        request: FastAPI request for disconnect detection.
        engine: Engine that prepared the turn.
        prepared: Result of prepare_turn.
        signal: Cancellation signal shared with the engine.

    Yields:
        SSE event dictionaries.
    """
    stream = engine.stream_turn(prepared, signal)
    try:
        async for event in stream:
            if await request.is_disconnected():
                logger.info("Client disconnected from thread %s", prepared.thread_id)
                signal.cancel()
                break
            yield {"data": json.dumps(event, default=str)}
    finally:
        await stream.aclose()


@router.post("")
async def post_chat(
    body: ChatRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    engine: ChatEngine = Depends(get_chat_engine),
) -> EventSourceResponse:
    """Run one conversation turn.

    Request errors (ownership, missing credentials, malformed message)
    are raised before the stream opens and map to HTTP errors; failures
    after that arrive as a terminal ``error`` event.
    """
    prepared = engine.prepare_turn(user_id, body.to_turn_request())
    signal = CancellationSignal()
    return EventSourceResponse(
        _event_generator(request, engine, prepared, signal),
        media_type="text/event-stream",
    )


@router.get("/models")
def get_models() -> list[dict]:
    """Return the model catalog grouped by provider."""
    return list_models()
