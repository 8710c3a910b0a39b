"""Connection status state machine.

Two external bridges report connection health in their own vocabulary:
the WhatsApp instance manager (Evolution) through webhooks and poll
responses, and the support inbox platform (Chatwoot) through webhooks.
Each bridge gets one pure normalization function backed by a token
table; the machine applies the resolved canonical state and, on every
processed payload, merges profile fields into the connection metadata.

Unknown tokens never produce a transition, with one exception: any token
containing "qr" resolves to ``qr_required``. This is a deliberate
last-resort heuristic for pairing events whose exact name varies across
Evolution releases; it can misfire on unrelated tokens that happen to
contain the substring.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from chatbridge.db.models import ConnectionStatus
from chatbridge.services.connection_store import ConnectionStore

logger = logging.getLogger(__name__)

EVOLUTION_STATE_TOKENS: dict[str, ConnectionStatus] = {
    "qr": ConnectionStatus.qr_required,
    "qrcode": ConnectionStatus.qr_required,
    "qrcode_required": ConnectionStatus.qr_required,
    "connecting": ConnectionStatus.connecting,
    "created": ConnectionStatus.connecting,
    "open": ConnectionStatus.open,
    "close": ConnectionStatus.close,
    "closed": ConnectionStatus.close,
    "error": ConnectionStatus.error,
}

# Event names are compared after lowercasing and mapping '_' to '.'
EVOLUTION_EVENT_TOKENS: dict[str, ConnectionStatus] = {
    "qrcode.updated": ConnectionStatus.qr_required,
    "remove.instance": ConnectionStatus.close,
    "logout.instance": ConnectionStatus.close,
    "no.connection": ConnectionStatus.close,
}

# Evolution events whose target state is carried in a payload field
_EVOLUTION_STATE_CARRYING_EVENTS = frozenset({"connection.update"})

CHATWOOT_EVENT_TOKENS: dict[str, ConnectionStatus] = {
    "message_created": ConnectionStatus.open,
    "message_updated": ConnectionStatus.open,
    "conversation_created": ConnectionStatus.open,
    "conversation_updated": ConnectionStatus.open,
    "conversation_status_changed": ConnectionStatus.open,
    "webwidget_triggered": ConnectionStatus.open,
    "contact_created": ConnectionStatus.open,
    "contact_updated": ConnectionStatus.open,
    "inbox_deleted": ConnectionStatus.close,
    "reauthorization_required": ConnectionStatus.error,
}

_STATE_FIELD_PATHS = (
    "state",
    "instance.state",
    "data.state",
    "status",
    "connectionStatus",
    "instance.connectionStatus",
    "data.connectionStatus",
)
_CONNECTION_STATUS_PATHS = (
    "connectionStatus",
    "instance.connectionStatus",
    "data.connectionStatus",
)
_QR_ARTIFACT_PATHS = ("qrcode", "data.qrcode", "instance.qrcode")

_PHONE_PATHS: tuple[tuple[str, bool], ...] = (
    # (path, value is a JID to cut at '@')
    ("instance.number", False),
    ("number", False),
    ("instance.ownerJid", True),
    ("ownerJid", True),
    ("instance.phone", False),
    ("phone", False),
    ("instance.wid", True),
    ("wid", True),
    ("instance.wuid", True),
    ("wuid", True),
)
_DISPLAY_NAME_PATHS = ("instance.profileName", "profileName", "pushName")
_COUNTER_PATHS = ("_count", "instance._count")
_COUNTER_KEYS = {"Message": "messages", "Contact": "contacts", "Chat": "chats"}


@dataclass(frozen=True)
class Resolution:
    """Outcome of normalizing one payload: target state and the token it came from."""

    status: ConnectionStatus | None
    token: str | None = None


@dataclass
class ProfileFields:
    phone: str | None = None
    display_name: str | None = None
    stats: dict[str, int] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.phone or self.display_name or self.stats)


@dataclass(frozen=True)
class StatusUpdate:
    previous: str
    current: str
    changed: bool
    token: str | None = None


def _dig(payload: Any, path: str) -> Any:
    """Follow a dotted path through nested dicts; non-dict hops yield None."""
    current = payload
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _first_text(payload: Any, paths: Iterable[str]) -> str | None:
    for path in paths:
        value = _dig(payload, path)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
            return str(value).strip()
    return None


def _normalize(raw: Any) -> str:
    return str(raw).strip().lower()


def _lookup(token: str, table: dict[str, ConnectionStatus]) -> ConnectionStatus | None:
    if token in table:
        return table[token]
    if "qr" in token:
        return ConnectionStatus.qr_required
    return None


def normalize_evolution_token(raw: Any) -> ConnectionStatus | None:
    """Map one Evolution state token or event name to the canonical state."""
    if raw is None:
        return None
    token = _normalize(raw)
    if not token:
        return None
    if token in EVOLUTION_STATE_TOKENS:
        return EVOLUTION_STATE_TOKENS[token]
    return _lookup(token.replace("_", "."), EVOLUTION_EVENT_TOKENS)


def normalize_chatwoot_token(raw: Any) -> ConnectionStatus | None:
    """Map one Chatwoot event name to the canonical state."""
    if raw is None:
        return None
    token = _normalize(raw).replace(".", "_")
    if not token:
        return None
    return _lookup(token, CHATWOOT_EVENT_TOKENS)


def resolve_evolution_status(payload: dict) -> Resolution:
    """Resolve an Evolution webhook or poll payload.

    Sources are consulted in order and a later match overrides an earlier
    one: explicit state fields, then presence of a QR artifact, then the
    event name (``connection.update`` defers to its connectionStatus field).
    """
    resolved = Resolution(None)

    state = _first_text(payload, _STATE_FIELD_PATHS)
    if state is not None:
        target = normalize_evolution_token(state)
        if target is not None:
            resolved = Resolution(target, state)

    if any(_dig(payload, path) for path in _QR_ARTIFACT_PATHS):
        resolved = Resolution(ConnectionStatus.qr_required, "qrcode")

    event = _first_text(payload, ("event", "type"))
    if event is not None:
        event_key = _normalize(event).replace("_", ".")
        if event_key in _EVOLUTION_STATE_CARRYING_EVENTS:
            carried = _first_text(payload, _CONNECTION_STATUS_PATHS)
            target = normalize_evolution_token(carried) if carried else None
            if target is not None:
                resolved = Resolution(target, carried)
        else:
            target = normalize_evolution_token(event)
            if target is not None:
                resolved = Resolution(target, event)

    return resolved


def resolve_chatwoot_status(payload: dict) -> Resolution:
    """Resolve a Chatwoot webhook payload from its event name and inbox flags."""
    resolved = Resolution(None)
    event = _first_text(payload, ("event",))
    if event is not None:
        target = normalize_chatwoot_token(event)
        if target is not None:
            resolved = Resolution(target, event)
    if _dig(payload, "inbox.reauthorization_required") is True:
        resolved = Resolution(ConnectionStatus.error, "reauthorization_required")
    return resolved


def extract_profile_fields(payload: Any) -> ProfileFields:
    """Extract phone, display name and counters with ordered fallbacks."""
    fields = ProfileFields()
    if not isinstance(payload, dict):
        return fields

    for path, is_jid in _PHONE_PATHS:
        value = _first_text(payload, (path,))
        if value is None:
            continue
        phone = value.split("@", 1)[0] if is_jid else value
        if phone:
            fields.phone = phone
            break

    fields.display_name = _first_text(payload, _DISPLAY_NAME_PATHS)

    for path in _COUNTER_PATHS:
        counters = _dig(payload, path)
        if isinstance(counters, dict):
            for upstream_key, stat_key in _COUNTER_KEYS.items():
                value = counters.get(upstream_key)
                if isinstance(value, int) and not isinstance(value, bool):
                    fields.stats[stat_key] = value
            if fields.stats:
                break

    return fields


def build_metadata_patch(fields: ProfileFields) -> dict:
    patch: dict[str, Any] = {}
    if fields.phone:
        patch["phone"] = fields.phone
    if fields.stats:
        patch["stats"] = dict(fields.stats)
    return patch


_RESOLVERS = {
    "evolution": resolve_evolution_status,
    "chatwoot": resolve_chatwoot_status,
}


class ConnectionStatusMachine:
    """Apply bridge payloads to stored connections.

    Args:
        store: ConnectionStore used for every write.
    """

    def __init__(self, store: ConnectionStore) -> None:
        self._store = store

    def apply(
        self,
        connection_id: str,
        payload: dict,
        bridge: str = "evolution",
        source: str | None = None,
    ) -> StatusUpdate:
        """Resolve payload against connection_id and persist the outcome.

        The status is written (with one status event) only on an actual
        change. Profile enrichment runs for every payload.

        Raises:
            NotFoundError: Unknown connection.
            ValueError: Unknown bridge name.
        """
        resolver = _RESOLVERS.get(bridge)
        if resolver is None:
            raise ValueError(f"Unknown bridge '{bridge}'")

        row = self._store.get(connection_id)
        previous = row.status
        resolution = resolver(payload if isinstance(payload, dict) else {})

        changed = False
        if resolution.status is not None:
            changed = self._store.update_status(
                connection_id,
                resolution.status,
                source=source or f"webhook:{bridge}",
                raw_token=resolution.token,
            )

        self.enrich(connection_id, payload)

        current = resolution.status.value if resolution.status is not None else previous
        return StatusUpdate(previous=previous, current=current, changed=changed, token=resolution.token)

    def enrich(self, connection_id: str, payload: Any) -> ProfileFields:
        """Merge profile fields from payload into the connection metadata."""
        fields = extract_profile_fields(payload)
        patch = build_metadata_patch(fields)
        if patch:
            self._store.merge_metadata(connection_id, patch)
        if fields.display_name:
            self._store.update_display_name(connection_id, fields.display_name)
        return fields
