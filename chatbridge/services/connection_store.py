"""ConnectionStore: persistence for messaging-bridge connections.

Thin layer over the ``connections`` and ``connection_status_events``
tables. Status writes are validated against the canonical enum and
metadata writes are additive merges; no caller edits the JSON column
directly.
"""

import json
import logging
from typing import Any

from sqlalchemy.orm import Session

from chatbridge.db.models import (
    Connection,
    ConnectionStatus,
    ConnectionStatusEvent,
    ConnectionType,
    utc_now_iso,
)
from chatbridge.errors import ForbiddenError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def deserialize_metadata(row: Connection) -> dict:
    """Safely deserialize provider_metadata_json; corrupt values yield {}."""
    if not row.provider_metadata_json:
        return {}
    try:
        result = json.loads(row.provider_metadata_json)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Corrupt provider_metadata_json for connection %s, returning empty dict", row.id)
        return {}
    return result if isinstance(result, dict) else {}


def merge_metadata(existing: dict, patch: dict) -> dict:
    """Additively merge patch into existing.

    Keys absent from patch are kept; nested dicts are merged one level
    deep so a partial counter update does not drop the other counters.
    ``None`` values in patch are ignored.
    """
    merged = dict(existing)
    for key, value in patch.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **{k: v for k, v in value.items() if v is not None}}
        else:
            merged[key] = value
    return merged


class ConnectionStore:
    """CRUD plus status/metadata/display-name updates for connections.

    Args:
        db: SQLAlchemy session.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def get(self, connection_id: str) -> Connection:
        row = self._db.get(Connection, connection_id)
        if row is None:
            raise NotFoundError("Connection", connection_id)
        return row

    def get_for_user(self, connection_id: str, user_id: str) -> Connection:
        """Return the connection, enforcing ownership."""
        row = self.get(connection_id)
        if row.user_id != user_id:
            raise ForbiddenError("Connection belongs to another user")
        return row

    def list_for_user(self, user_id: str) -> list[Connection]:
        return (
            self._db.query(Connection)
            .filter(Connection.user_id == user_id)
            .order_by(Connection.created_at.desc())
            .all()
        )

    def find_by_inbox(self, user_id: str, inbox_id: str) -> Connection | None:
        return (
            self._db.query(Connection)
            .filter(Connection.user_id == user_id, Connection.chatwoot_inbox_id == str(inbox_id))
            .first()
        )

    def create(
        self,
        user_id: str,
        type: str,
        display_name: str | None = None,
        status: str = ConnectionStatus.connecting.value,
        metadata: dict[str, Any] | None = None,
        **fields: Any,
    ) -> Connection:
        """Insert a connection row. Extra keyword fields map to columns."""
        if type not in {t.value for t in ConnectionType}:
            raise ValidationError(f"Invalid connection type '{type}'")
        status = ConnectionStatus(status).value
        now = utc_now_iso()
        row = Connection(
            user_id=user_id,
            type=type,
            display_name=display_name,
            status=status,
            provider_metadata_json=json.dumps(metadata or {}, sort_keys=True),
            created_at=now,
            updated_at=now,
            **fields,
        )
        self._db.add(row)
        self._db.flush()
        self._db.add(ConnectionStatusEvent(
            connection_id=row.id, from_status=None, to_status=status, source="provision",
        ))
        self._db.commit()
        return row

    def update_fields(self, connection_id: str, **fields: Any) -> Connection:
        row = self.get(connection_id)
        for name, value in fields.items():
            setattr(row, name, value)
        row.updated_at = utc_now_iso()
        self._db.commit()
        return row

    def update_status(
        self,
        connection_id: str,
        status: ConnectionStatus | str,
        source: str = "command",
        raw_token: str | None = None,
    ) -> bool:
        """Set the canonical status; returns True only when it changed.

        An unchanged status performs no write and records no event.
        """
        target = ConnectionStatus(status)
        row = self.get(connection_id)
        if row.status == target.value:
            return False
        self._db.add(ConnectionStatusEvent(
            connection_id=row.id,
            from_status=row.status,
            to_status=target.value,
            source=source,
            raw_token=(raw_token or "")[:255] or None,
        ))
        logger.info(
            "Connection %s status %s -> %s (source=%s)",
            row.id, row.status, target.value, source,
        )
        row.status = target.value
        row.updated_at = utc_now_iso()
        self._db.commit()
        return True

    def merge_metadata(self, connection_id: str, patch: dict) -> dict:
        """Additively merge patch into provider metadata; returns the result."""
        row = self.get(connection_id)
        existing = deserialize_metadata(row)
        merged = merge_metadata(existing, patch)
        if merged != existing:
            row.provider_metadata_json = json.dumps(merged, sort_keys=True)
            row.updated_at = utc_now_iso()
            self._db.commit()
        return merged

    def update_display_name(self, connection_id: str, name: str) -> None:
        row = self.get(connection_id)
        if name and row.display_name != name:
            row.display_name = name
            row.updated_at = utc_now_iso()
            self._db.commit()

    def status_events(self, connection_id: str) -> list[ConnectionStatusEvent]:
        return (
            self._db.query(ConnectionStatusEvent)
            .filter(ConnectionStatusEvent.connection_id == connection_id)
            .order_by(ConnectionStatusEvent.created_at)
            .all()
        )

    def delete(self, connection_id: str) -> None:
        row = self.get(connection_id)
        self._db.delete(row)
        self._db.commit()
