"""ThreadStore: chat threads and id-keyed message upserts.

Messages cross this boundary as plain dicts with the wire shape the chat
route uses: ``{"id", "role", "parts": [...], "metadata": {...}|None}``.
"""

import json
import logging
from typing import Any

from sqlalchemy.orm import Session

from chatbridge.db.models import ChatMessage, ChatThread, User, utc_now_iso

logger = logging.getLogger(__name__)


def _loads(raw: str | None, default: Any, what: str, row_id: str) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Corrupted %s for %s", what, row_id)
        return default


def message_to_dict(row: ChatMessage) -> dict:
    parts = _loads(row.parts_json, [], "parts_json", row.id)
    return {
        "id": row.id,
        "role": row.role,
        "parts": parts if isinstance(parts, list) else [],
        "metadata": _loads(row.metadata_json, None, "metadata_json", row.id),
    }


class ThreadStore:
    """Read and write chat threads.

    Args:
        db: SQLAlchemy session (sync).
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def get_thread(self, thread_id: str) -> ChatThread | None:
        return self._db.get(ChatThread, thread_id)

    def create_thread(self, thread_id: str, owner_id: str, title: str = "") -> ChatThread:
        thread = ChatThread(id=thread_id, user_id=owner_id, title=title[:255])
        self._db.add(thread)
        self._db.commit()
        logger.info("Created thread %s for user %s", thread_id, owner_id)
        return thread

    def list_messages(self, thread_id: str) -> list[dict]:
        rows = (
            self._db.query(ChatMessage)
            .filter_by(thread_id=thread_id)
            .order_by(ChatMessage.sequence)
            .all()
        )
        return [message_to_dict(row) for row in rows]

    def get_message(self, thread_id: str, message_id: str) -> dict | None:
        row = self._db.get(ChatMessage, message_id)
        if row is None or row.thread_id != thread_id:
            return None
        return message_to_dict(row)

    def upsert_message(self, thread_id: str, message: dict) -> ChatMessage:
        """Insert a message, or replace the row with the same id in place.

        A replaced row keeps its original sequence.
        """
        parts_json = json.dumps(message.get("parts") or [])
        metadata = message.get("metadata")
        metadata_json = json.dumps(metadata) if metadata else None

        row = self._db.get(ChatMessage, message["id"])
        if row is not None and row.thread_id == thread_id:
            row.role = message["role"]
            row.parts_json = parts_json
            row.metadata_json = metadata_json
        else:
            max_seq = (
                self._db.query(ChatMessage.sequence)
                .filter_by(thread_id=thread_id)
                .order_by(ChatMessage.sequence.desc())
                .first()
            )
            row = ChatMessage(
                id=message["id"],
                thread_id=thread_id,
                role=message["role"],
                parts_json=parts_json,
                metadata_json=metadata_json,
                sequence=(max_seq[0] + 1) if max_seq else 1,
            )
            self._db.add(row)

        thread = self._db.get(ChatThread, thread_id)
        if thread is not None:
            thread.updated_at = utc_now_iso()
        self._db.commit()
        return row

    def get_user(self, user_id: str) -> User | None:
        return self._db.get(User, user_id)

    def get_user_preferences(self, user_id: str) -> dict:
        user = self._db.get(User, user_id)
        if user is None:
            return {}
        prefs = _loads(user.preferences_json, {}, "preferences_json", user_id)
        return prefs if isinstance(prefs, dict) else {}
