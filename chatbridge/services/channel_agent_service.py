"""Inbox-to-agent bindings and the one-shot auto-reply they drive.

When a support-inbox webhook carries a genuine incoming text message for
an inbox bound to an agent, the agent's role and system prompt become the
system prompt of a single non-streaming completion, and a non-empty
answer is posted back to the conversation as an outgoing message.
"""

import logging
from typing import Any, Callable

from sqlalchemy.orm import Session

from chatbridge.db.models import ChannelAgentMap, utc_now_iso
from chatbridge.orchestrator.llm import ModelResolver
from chatbridge.services.agent_service import AgentInstructions, AgentService
from chatbridge.services.chatwoot_client import ChatwootClient
from chatbridge.services.connection_store import ConnectionStore
from chatbridge.services.user_key_service import UserKeyService

logger = logging.getLogger(__name__)

_AGENT_SENDER_TYPES = {"user", "agent_bot", "agentbot"}


def is_genuine_incoming(body: dict) -> bool:
    """True for an incoming, public message written by a contact."""
    event = str(body.get("event") or body.get("name") or "").lower().replace(".", "_")
    if event != "message_created":
        return False
    message = body.get("message") if isinstance(body.get("message"), dict) else {}
    message_type = body.get("message_type", message.get("message_type", "incoming"))
    if str(message_type).lower() not in ("incoming", "0"):
        return False
    if body.get("private") or message.get("private"):
        return False
    sender = body.get("sender") or message.get("sender") or {}
    if isinstance(sender, dict) and str(sender.get("type") or "").lower() in _AGENT_SENDER_TYPES:
        return False
    return True


def extract_conversation_id(body: dict) -> str | None:
    conversation = body.get("conversation") if isinstance(body.get("conversation"), dict) else {}
    value = conversation.get("id") or body.get("conversation_id")
    return str(value) if value not in (None, "") else None


def extract_text(body: dict) -> str:
    message = body.get("message") if isinstance(body.get("message"), dict) else {}
    return str(body.get("content") or message.get("content") or "").strip()


def build_agent_system_prompt(instructions: AgentInstructions) -> str:
    """Role and system prompt joined by a blank line, empty fragments skipped."""
    return "\n\n".join(f for f in (instructions.role, instructions.system_prompt) if f and f.strip())


class ChannelAgentService:
    """ChannelAgentStore plus the auto-reply path.

    Args:
        db: SQLAlchemy session.
        resolver: Model resolver; built from the key store when omitted.
        chatwoot_factory: Builds the support-inbox client (injectable for tests).
    """

    def __init__(
        self,
        db: Session,
        resolver: ModelResolver | None = None,
        chatwoot_factory: Callable[[], ChatwootClient] = ChatwootClient,
        key_dir: str | None = None,
    ) -> None:
        self._db = db
        self._resolver = resolver or ModelResolver(UserKeyService(db, key_dir=key_dir))
        self._chatwoot_factory = chatwoot_factory

    # -- store -------------------------------------------------------------

    def find(self, user_id: str, inbox_id: str | int) -> ChannelAgentMap | None:
        return (
            self._db.query(ChannelAgentMap)
            .filter_by(user_id=user_id, chatwoot_inbox_id=str(inbox_id))
            .first()
        )

    def upsert(self, user_id: str, inbox_id: str | int, agent_id: str) -> ChannelAgentMap:
        """Bind inbox to agent; an existing binding for the pair is overwritten."""
        row = self.find(user_id, inbox_id)
        if row is None:
            row = ChannelAgentMap(user_id=user_id, chatwoot_inbox_id=str(inbox_id), agent_id=agent_id)
            self._db.add(row)
        else:
            row.agent_id = agent_id
            row.updated_at = utc_now_iso()
        self._db.commit()
        logger.info("Bound inbox %s to agent %s for user %s", inbox_id, agent_id, user_id)
        return row

    def delete(self, user_id: str, inbox_id: str | int) -> bool:
        row = self.find(user_id, inbox_id)
        if row is None:
            return False
        self._db.delete(row)
        self._db.commit()
        return True

    # -- auto-reply --------------------------------------------------------

    async def handle_event(self, connection_id: str, body: Any) -> str | None:
        """Auto-reply to one webhook event. Returns the reply sent, if any.

        Never raises; every failure is logged and discarded.
        """
        try:
            return await self._handle(connection_id, body if isinstance(body, dict) else {})
        except Exception as e:
            logger.warning("Auto-reply for connection %s failed: %s", connection_id, e)
            return None

    async def _handle(self, connection_id: str, body: dict) -> str | None:
        connection = ConnectionStore(self._db).get(connection_id)
        if not connection.chatwoot_inbox_id or not is_genuine_incoming(body):
            return None
        conversation_id = extract_conversation_id(body)
        text = extract_text(body)
        if not conversation_id or not text:
            return None

        binding = self.find(connection.user_id, connection.chatwoot_inbox_id)
        if binding is None:
            return None
        agent = AgentService(self._db).get_agent(binding.agent_id, connection.user_id)
        if agent is None:
            logger.info("Inbox %s is bound to missing agent %s", connection.chatwoot_inbox_id, binding.agent_id)
            return None

        system_prompt = build_agent_system_prompt(agent.instructions)
        model = self._resolver.resolve(None, None, connection.user_id)
        completion = await model.complete(system_prompt or None, text)
        reply = (completion.text or "").strip()
        if not reply:
            return None

        await self._chatwoot_factory().create_outgoing_message(conversation_id, reply)
        logger.info("Agent %s replied in conversation %s", agent.id, conversation_id)
        return reply
