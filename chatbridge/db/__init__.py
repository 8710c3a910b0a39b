"""Database module for chatbridge state and persistence."""

from chatbridge.db.connection import (
    SessionLocal,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from chatbridge.db.models import (
    Agent,
    Base,
    ChannelAgentMap,
    ChatMessage,
    ChatThread,
    Connection,
    ConnectionStatus,
    ConnectionStatusEvent,
    ConnectionType,
    McpServer,
    User,
    Workflow,
)

__all__ = [
    # Models
    "Base",
    "User",
    "ChatThread",
    "ChatMessage",
    "Agent",
    "Workflow",
    "McpServer",
    "Connection",
    "ConnectionStatusEvent",
    "ChannelAgentMap",
    # Enums
    "ConnectionStatus",
    "ConnectionType",
    # Connection
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
]
