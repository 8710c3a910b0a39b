"""Per-user prompt customizations for plugin servers and their tools."""

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from chatbridge.db.models import McpServer, McpServerCustomization, McpToolCustomization

logger = logging.getLogger(__name__)


@dataclass
class ServerCustomization:
    """Prompts a user attached to one server and to individual tools on it."""

    server_id: str
    server_name: str
    prompt: str | None = None
    tools: dict[str, str] = field(default_factory=dict)


class McpCustomizationService:
    def __init__(self, db: Session) -> None:
        self._db = db

    def for_user(self, user_id: str) -> dict[str, ServerCustomization]:
        """Return customizations keyed by server id; empty prompts are skipped."""
        names = {row.id: row.name for row in self._db.query(McpServer).all()}
        result: dict[str, ServerCustomization] = {}

        def _entry(server_id: str) -> ServerCustomization:
            if server_id not in result:
                result[server_id] = ServerCustomization(server_id, names.get(server_id, server_id))
            return result[server_id]

        for row in self._db.query(McpServerCustomization).filter_by(user_id=user_id).all():
            if row.prompt and row.prompt.strip():
                _entry(row.server_id).prompt = row.prompt.strip()

        for row in self._db.query(McpToolCustomization).filter_by(user_id=user_id).all():
            if row.prompt and row.prompt.strip():
                _entry(row.server_id).tools[row.tool_name] = row.prompt.strip()

        return result
