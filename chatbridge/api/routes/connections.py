"""FastAPI routes for messaging-bridge connections.

Endpoints:
    GET    /connections                           - List the user's connections
    POST   /connections/whatsapp                  - Provision a WhatsApp instance
    POST   /connections/chatwoot                  - Create a support inbox
    POST   /connections/chatwoot/import           - Adopt an existing inbox
    POST   /connections/telegram                  - Create a Telegram inbox
    GET    /connections/chatwoot/{inbox_id}/stats - Inbox counters
    POST   /connections/{id}/connect              - Request a pairing QR
    POST   /connections/{id}/restart              - Restart the instance
    GET    /connections/{id}/status               - Poll instance state
    GET    /connections/{id}/details              - Poll instance details
    DELETE /connections/{id}                      - Remove connection
    GET|PUT|DELETE /connections/{id}/agent        - Inbox auto-reply binding
"""

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from chatbridge.api.middleware.auth import get_current_user_id
from chatbridge.api.schemas import (
    AgentBindingRequest,
    ChatwootInboxCreate,
    ChatwootInboxImport,
    TelegramInboxCreate,
    WhatsAppConnectionCreate,
)
from chatbridge.db.connection import get_db
from chatbridge.db.models import Connection
from chatbridge.errors import NotFoundError, ValidationError
from chatbridge.services.agent_service import AgentService
from chatbridge.services.channel_agent_service import ChannelAgentService
from chatbridge.services.connection_service import ConnectionService, connection_to_dict
from chatbridge.services.connection_status import StatusUpdate

router = APIRouter(prefix="/connections", tags=["connections"])


def get_connection_service(db: Session = Depends(get_db)) -> ConnectionService:
    """Dependency to get ConnectionService instance."""
    return ConnectionService(db)


def get_channel_agent_service(db: Session = Depends(get_db)) -> ChannelAgentService:
    """Dependency to get ChannelAgentService instance."""
    return ChannelAgentService(db)


def _status_body(update: StatusUpdate | None, raw) -> dict:
    if update is None:
        return {"status": None, "previous": None, "changed": False, "raw": raw}
    return {"status": update.current, "previous": update.previous, "changed": update.changed, "raw": raw}


def _require_inbox(row: Connection) -> str:
    if not row.chatwoot_inbox_id:
        raise ValidationError("Connection has no support inbox")
    return row.chatwoot_inbox_id


@router.get("")
def list_connections(
    user_id: str = Depends(get_current_user_id),
    svc: ConnectionService = Depends(get_connection_service),
) -> dict:
    return {"connections": svc.list_connections(user_id)}


@router.post("/whatsapp", status_code=201)
async def create_whatsapp(
    body: WhatsAppConnectionCreate,
    user_id: str = Depends(get_current_user_id),
    svc: ConnectionService = Depends(get_connection_service),
) -> dict:
    """Provision an Evolution instance; the response carries the QR when one was issued."""
    return await svc.provision_whatsapp(
        user_id,
        body.instance_name,
        display_name=body.display_name,
        integration=body.integration,
        qrcode=body.qrcode,
        chatwoot=body.chatwoot,
    )


@router.post("/chatwoot", status_code=201)
async def create_chatwoot(
    body: ChatwootInboxCreate,
    user_id: str = Depends(get_current_user_id),
    svc: ConnectionService = Depends(get_connection_service),
) -> dict:
    return await svc.create_chatwoot_inbox(user_id, body.name, body.channel)


@router.post("/chatwoot/import", status_code=201)
async def import_chatwoot(
    body: ChatwootInboxImport,
    user_id: str = Depends(get_current_user_id),
    svc: ConnectionService = Depends(get_connection_service),
) -> dict:
    return await svc.import_chatwoot_inbox(user_id, body.inbox_id, body.display_name)


@router.post("/telegram", status_code=201)
async def create_telegram(
    body: TelegramInboxCreate,
    user_id: str = Depends(get_current_user_id),
    svc: ConnectionService = Depends(get_connection_service),
) -> dict:
    return await svc.create_telegram_inbox(user_id, body.instance_name, body.bot_token)


@router.get("/chatwoot/{inbox_id}/stats")
async def chatwoot_inbox_stats(
    inbox_id: str,
    user_id: str = Depends(get_current_user_id),
    svc: ConnectionService = Depends(get_connection_service),
) -> dict:
    """Open/resolved/pending counters for an inbox the user owns."""
    if svc.store.find_by_inbox(user_id, inbox_id) is None:
        raise NotFoundError("Chatwoot inbox", inbox_id)
    return await svc.inbox_stats(inbox_id)


@router.post("/{connection_id}/connect")
async def connect(
    connection_id: str,
    user_id: str = Depends(get_current_user_id),
    svc: ConnectionService = Depends(get_connection_service),
) -> dict:
    return await svc.connect(user_id, connection_id)


@router.post("/{connection_id}/restart")
async def restart(
    connection_id: str,
    user_id: str = Depends(get_current_user_id),
    svc: ConnectionService = Depends(get_connection_service),
) -> dict:
    return await svc.restart(user_id, connection_id)


@router.get("/{connection_id}/status")
async def poll_status(
    connection_id: str,
    user_id: str = Depends(get_current_user_id),
    svc: ConnectionService = Depends(get_connection_service),
) -> dict:
    data, update = await svc.poll_status(user_id, connection_id)
    return _status_body(update, data)


@router.get("/{connection_id}/details")
async def poll_details(
    connection_id: str,
    user_id: str = Depends(get_current_user_id),
    svc: ConnectionService = Depends(get_connection_service),
) -> dict:
    instances, update = await svc.poll_details(user_id, connection_id)
    body = _status_body(update, instances)
    body["connection"] = connection_to_dict(svc.get_connection(user_id, connection_id))
    return body


@router.delete("/{connection_id}", status_code=204)
async def delete_connection(
    connection_id: str,
    user_id: str = Depends(get_current_user_id),
    svc: ConnectionService = Depends(get_connection_service),
) -> Response:
    """Delete the remote resource (best-effort) and the connection."""
    await svc.delete(user_id, connection_id)
    return Response(status_code=204)


# Agent binding


@router.get("/{connection_id}/agent")
def get_agent_binding(
    connection_id: str,
    user_id: str = Depends(get_current_user_id),
    svc: ConnectionService = Depends(get_connection_service),
    bindings: ChannelAgentService = Depends(get_channel_agent_service),
) -> dict:
    inbox_id = _require_inbox(svc.get_connection(user_id, connection_id))
    row = bindings.find(user_id, inbox_id)
    return {"inboxId": inbox_id, "agentId": row.agent_id if row else None}


@router.put("/{connection_id}/agent")
def put_agent_binding(
    connection_id: str,
    body: AgentBindingRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    svc: ConnectionService = Depends(get_connection_service),
    bindings: ChannelAgentService = Depends(get_channel_agent_service),
) -> dict:
    """Bind the connection's inbox to one of the user's agents."""
    inbox_id = _require_inbox(svc.get_connection(user_id, connection_id))
    if AgentService(db).get_agent(body.agent_id, user_id) is None:
        raise NotFoundError("Agent", body.agent_id)
    row = bindings.upsert(user_id, inbox_id, body.agent_id)
    return {"inboxId": inbox_id, "agentId": row.agent_id}


@router.delete("/{connection_id}/agent")
def delete_agent_binding(
    connection_id: str,
    user_id: str = Depends(get_current_user_id),
    svc: ConnectionService = Depends(get_connection_service),
    bindings: ChannelAgentService = Depends(get_channel_agent_service),
) -> dict:
    inbox_id = _require_inbox(svc.get_connection(user_id, connection_id))
    return {"inboxId": inbox_id, "deleted": bindings.delete(user_id, inbox_id)}
