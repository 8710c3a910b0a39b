"""SQLAlchemy ORM models for the chatbridge state database.

Threads and messages, agents and workflows, MCP server configuration and
per-user customizations, messaging-bridge connections with their status
audit trail, and inbox-to-agent bindings. Uses SQLAlchemy 2.0 style with
Mapped and mapped_column. JSON payloads are stored in TEXT columns and
parsed in the service layer.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


class ConnectionType(str, Enum):
    """Kinds of messaging-bridge connections."""

    whatsapp_evolution = "whatsapp_evolution"
    chatwoot_channel = "chatwoot_channel"


class ConnectionStatus(str, Enum):
    """Canonical connection lifecycle.

    Lifecycle: connecting -> qr_required -> open
               open -> close | error
               close/error -> connecting (restart)
    """

    connecting = "connecting"
    qr_required = "qr_required"
    open = "open"
    close = "close"
    error = "error"


class Visibility(str, Enum):
    """Sharing level for agents and workflows."""

    private = "private"
    public = "public"


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class User(Base):
    """Account record with chat preferences and encrypted provider keys.

    Attributes:
        preferences_json: displayName, profession, responseStyleExample, botName.
        api_keys_json: provider -> list of credential record dicts, newest first.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_uuid)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    preferences_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    api_keys_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)
    updated_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)

    def __repr__(self) -> str:
        return f"<User(id={self.id!r}, name={self.name!r})>"


class ChatThread(Base):
    """Conversation thread. Created lazily on the first turn."""

    __tablename__ = "chat_threads"
    __table_args__ = (Index("ix_chat_threads_user_updated", "user_id", "updated_at"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)
    updated_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)

    messages: Mapped[list["ChatMessage"]] = relationship(
        "ChatMessage",
        back_populates="thread",
        cascade="all, delete-orphan",
        order_by="ChatMessage.sequence",
    )

    def __repr__(self) -> str:
        return f"<ChatThread(id={self.id!r}, user_id={self.user_id!r})>"


class ChatMessage(Base):
    """Persisted message with typed parts.

    Attributes:
        id: Client-supplied message id; upserts are keyed on it.
        parts_json: JSON list of part dicts (text, reasoning, file,
            step-start, tool-call).
        metadata_json: agentId, toolChoice, toolCount, chatModel, usage.
        sequence: Ordering within the thread, kept on replace.
    """

    __tablename__ = "chat_messages"
    __table_args__ = (Index("ix_chat_messages_thread_seq", "thread_id", "sequence"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    thread_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("chat_threads.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    parts_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)

    thread: Mapped["ChatThread"] = relationship("ChatThread", back_populates="messages")

    def __repr__(self) -> str:
        return f"<ChatMessage(id={self.id!r}, role={self.role!r}, seq={self.sequence})>"


class Agent(Base):
    """Stored agent persona.

    Attributes:
        instructions_json: {"role", "systemPrompt", "mentions": [...]}.
        visibility: 'private' (owner only) or 'public'.
    """

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    instructions_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    visibility: Mapped[str] = mapped_column(String(20), nullable=False, default=Visibility.private.value)
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)
    updated_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)

    def __repr__(self) -> str:
        return f"<Agent(id={self.id!r}, name={self.name!r})>"


class Workflow(Base):
    """User-defined multi-step workflow exposed to the model as one tool.

    Attributes:
        input_schema_json: JSON schema of the tool input.
        steps_json: Ordered list of step dicts ('tool' or 'template').
    """

    __tablename__ = "workflows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    input_schema_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    steps_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    visibility: Mapped[str] = mapped_column(String(20), nullable=False, default=Visibility.private.value)
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)
    updated_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)

    def __repr__(self) -> str:
        return f"<Workflow(id={self.id!r}, name={self.name!r})>"


class McpServer(Base):
    """Plugin server configuration.

    Attributes:
        config_json: {"command", "args", "env"} for stdio servers or
            {"url", "headers"} for streamable HTTP servers.
    """

    __tablename__ = "mcp_servers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_uuid)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    config_json: Mapped[str] = mapped_column(Text, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)

    def __repr__(self) -> str:
        return f"<McpServer(name={self.name!r}, enabled={self.enabled})>"


class McpServerCustomization(Base):
    """Per-user prompt attached to a plugin server."""

    __tablename__ = "mcp_server_customizations"
    __table_args__ = (UniqueConstraint("user_id", "server_id", name="uq_mcp_server_custom"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    server_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("mcp_servers.id", ondelete="CASCADE"), nullable=False,
    )
    prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")


class McpToolCustomization(Base):
    """Per-user prompt attached to a single plugin-server tool."""

    __tablename__ = "mcp_tool_customizations"
    __table_args__ = (
        UniqueConstraint("user_id", "server_id", "tool_name", name="uq_mcp_tool_custom"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    server_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("mcp_servers.id", ondelete="CASCADE"), nullable=False,
    )
    tool_name: Mapped[str] = mapped_column(String(255), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")


class Connection(Base):
    """Messaging-bridge connection.

    Status and provider metadata are mutated only through the connection
    status state machine. Secrets (instance api key) are stored as
    AES-256-GCM envelopes and never returned by the API.

    Attributes:
        type: 'whatsapp_evolution' or 'chatwoot_channel'.
        status: One of ConnectionStatus.
        evolution_apikey_encrypted: JSON envelope of the instance hash.
        chatwoot_inbox_id: Linked support inbox (enables relay and auto-reply).
        provider_metadata_json: Additive map (phone, stats, provider, ...).
    """

    __tablename__ = "connections"
    __table_args__ = (
        Index("ix_connections_user", "user_id"),
        Index("ix_connections_instance", "evolution_instance_name"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConnectionStatus.connecting.value,
    )
    evolution_instance_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    evolution_apikey_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    chatwoot_account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    chatwoot_inbox_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    chatwoot_webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True, default="{}")
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)
    updated_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)

    def __repr__(self) -> str:
        return f"<Connection(id={self.id!r}, type={self.type!r}, status={self.status!r})>"


class ConnectionStatusEvent(Base):
    """One row per actual status transition of a connection.

    Attributes:
        source: 'webhook:evolution', 'webhook:chatwoot', 'poll', 'provision', 'command'.
        raw_token: The upstream token the transition was resolved from.
    """

    __tablename__ = "connection_status_events"
    __table_args__ = (Index("ix_conn_status_events_conn", "connection_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_uuid)
    connection_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False,
    )
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(40), nullable=False)
    raw_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)


class ChannelAgentMap(Base):
    """Binding of a support inbox to the agent that auto-replies on it."""

    __tablename__ = "channel_agent_map"
    __table_args__ = (
        UniqueConstraint("user_id", "chatwoot_inbox_id", name="uq_channel_agent_user_inbox"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    chatwoot_inbox_id: Mapped[str] = mapped_column(String(64), nullable=False)
    agent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)
    updated_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)
