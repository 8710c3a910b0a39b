"""Agent and workflow lookups used by the turn engine and the auto-reply path."""

import json
import logging
from dataclasses import dataclass, field

from sqlalchemy import or_
from sqlalchemy.orm import Session

from chatbridge.db.models import Agent, Visibility, Workflow, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass
class AgentInstructions:
    role: str | None = None
    system_prompt: str | None = None
    mentions: list[dict] = field(default_factory=list)


@dataclass
class AgentRecord:
    id: str
    name: str
    description: str | None
    instructions: AgentInstructions


@dataclass
class WorkflowRecord:
    id: str
    name: str
    description: str | None
    input_schema: dict
    steps: list[dict]


def _parse_json(raw: str | None, default, row_id: str):
    if not raw:
        return default
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Corrupt JSON column on %s", row_id)
        return default
    return value if isinstance(value, type(default)) else default


def _to_record(row: Agent) -> AgentRecord:
    data = _parse_json(row.instructions_json, {}, row.id)
    mentions = data.get("mentions")
    return AgentRecord(
        id=row.id,
        name=row.name,
        description=row.description,
        instructions=AgentInstructions(
            role=data.get("role") or None,
            system_prompt=data.get("systemPrompt") or None,
            mentions=[m for m in mentions if isinstance(m, dict)] if isinstance(mentions, list) else [],
        ),
    )


class AgentService:
    """Visibility-aware reads for agents and workflows.

    An agent or workflow is visible to its owner, and to everyone when public.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def _visible(self, model, user_id: str):
        return or_(model.user_id == user_id, model.visibility == Visibility.public.value)

    def get_agent(self, agent_id: str, user_id: str) -> AgentRecord | None:
        row = (
            self._db.query(Agent)
            .filter(Agent.id == agent_id, self._visible(Agent, user_id))
            .first()
        )
        return _to_record(row) if row is not None else None

    def touch_agent(self, agent_id: str) -> None:
        """Bump the agent's updated_at (recently-used ordering)."""
        row = self._db.get(Agent, agent_id)
        if row is None:
            return
        row.updated_at = utc_now_iso()
        self._db.commit()

    def get_workflows(self, workflow_ids: list[str], user_id: str) -> list[WorkflowRecord]:
        if not workflow_ids:
            return []
        rows = (
            self._db.query(Workflow)
            .filter(Workflow.id.in_(workflow_ids), self._visible(Workflow, user_id))
            .all()
        )
        return [
            WorkflowRecord(
                id=row.id,
                name=row.name,
                description=row.description,
                input_schema=_parse_json(row.input_schema_json, {}, row.id)
                or {"type": "object", "properties": {}},
                steps=[s for s in _parse_json(row.steps_json, [], row.id) if isinstance(s, dict)],
            )
            for row in rows
        ]
