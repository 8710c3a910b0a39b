"""Inbound webhooks from the messaging bridges.

Both endpoints always answer 200: the bridges retry on anything else and
a malformed or unexpected delivery must not be redelivered forever.
Unparsable bodies are treated as ``{}``.

Endpoints:
    POST /webhooks/evolution/{connection_id}
    POST /webhooks/chatwoot/{connection_id}
"""

import json
import logging
from typing import Any, Callable

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from chatbridge.db.connection import get_db
from chatbridge.services.channel_agent_service import ChannelAgentService
from chatbridge.services.chatwoot_client import ChatwootClient
from chatbridge.services.connection_status import ConnectionStatusMachine
from chatbridge.services.connection_store import ConnectionStore
from chatbridge.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_chatwoot_factory() -> Callable[[], ChatwootClient]:
    """Dependency returning the support-inbox client factory."""
    return ChatwootClient


def get_channel_agent_service(
    db: Session = Depends(get_db),
    chatwoot_factory: Callable[[], ChatwootClient] = Depends(get_chatwoot_factory),
) -> ChannelAgentService:
    """Dependency to get ChannelAgentService instance."""
    return ChannelAgentService(db, chatwoot_factory=chatwoot_factory)


async def _read_body(request: Request) -> dict:
    try:
        body = json.loads(await request.body() or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


def _apply_status(db: Session, connection_id: str, body: dict, bridge: str) -> None:
    try:
        update = ConnectionStatusMachine(ConnectionStore(db)).apply(connection_id, body, bridge=bridge)
        if update.changed:
            logger.info(
                "Connection %s status %s -> %s via %s webhook",
                connection_id, update.previous, update.current, bridge,
            )
    except Exception as e:
        db.rollback()
        logger.warning(
            "%s webhook status update failed for %s: %s",
            bridge, connection_id, sanitize_error_message(str(e)),
        )


def _first(*values: Any) -> Any:
    return next((v for v in values if v not in (None, "")), None)


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def extract_inbound_message(body: dict) -> tuple[str | None, str | None, str | None]:
    """Return (text, phone, sender_name) for a contact message, else Nones.

    Accepts the flat shape and the ``data``-wrapped shape Evolution uses
    for ``messages.upsert``. Messages sent from the instance itself
    (``fromMe``) are skipped.
    """
    data = _dict(body.get("data"))
    key = _dict(data.get("key") or body.get("key"))
    if key.get("fromMe") or body.get("fromMe"):
        return None, None, None

    message = _dict(data.get("message") or body.get("message"))
    text = _first(
        message.get("text"),
        message.get("conversation"),
        _dict(message.get("extendedTextMessage")).get("text"),
        body.get("text"),
        body.get("content"),
    )
    event = str(body.get("event") or body.get("type") or "").lower()
    if not text or not isinstance(text, str) or ("message" not in event and not message):
        return None, None, None

    instance = _dict(body.get("instance"))
    remote_jid = _first(key.get("remoteJid"), body.get("remoteJid"))
    phone = _first(
        instance.get("number"),
        body.get("number"),
        instance.get("phone"),
        body.get("phone"),
        body.get("from"),
        str(remote_jid).split("@")[0] if remote_jid else None,
    )
    name = _first(data.get("pushName"), body.get("pushName"), body.get("profileName"))
    return text, (str(phone) if phone else None), name


async def _relay_to_inbox(
    db: Session, connection_id: str, body: dict, chatwoot_factory: Callable[[], ChatwootClient],
) -> None:
    text, phone, name = extract_inbound_message(body)
    if not text or not phone:
        return
    try:
        connection = ConnectionStore(db).get(connection_id)
        if not connection.chatwoot_inbox_id:
            return
        chatwoot = chatwoot_factory()
        contact_id = await chatwoot.ensure_contact(phone=phone, name=name, source_id=phone)
        conversation_id = await chatwoot.ensure_conversation(contact_id, connection.chatwoot_inbox_id)
        await chatwoot.create_incoming_message(conversation_id, text)
        logger.info("Relayed inbound message for connection %s to conversation %s", connection_id, conversation_id)
    except Exception as e:
        logger.warning("Inbox relay failed for %s: %s", connection_id, sanitize_error_message(str(e)))


@router.post("/evolution/{connection_id}")
async def evolution_webhook(
    connection_id: str,
    request: Request,
    db: Session = Depends(get_db),
    chatwoot_factory: Callable[[], ChatwootClient] = Depends(get_chatwoot_factory),
) -> PlainTextResponse:
    """Status tracking plus best-effort relay of contact messages to the linked inbox."""
    body = await _read_body(request)
    _apply_status(db, connection_id, body, "evolution")
    await _relay_to_inbox(db, connection_id, body, chatwoot_factory)
    return PlainTextResponse("OK")


@router.post("/chatwoot/{connection_id}")
async def chatwoot_webhook(
    connection_id: str,
    request: Request,
    db: Session = Depends(get_db),
    agents: ChannelAgentService = Depends(get_channel_agent_service),
) -> PlainTextResponse:
    """Status tracking plus the bound agent's auto-reply."""
    body = await _read_body(request)
    _apply_status(db, connection_id, body, "chatwoot")
    await agents.handle_event(connection_id, body)
    return PlainTextResponse("OK")
