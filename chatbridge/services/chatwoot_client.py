"""Client for the Chatwoot support inbox platform.

Auth headers come from either ``CHATWOOT_TOKEN`` (sent as a bearer token)
or the device triple ``CHATWOOT_ACCESS_TOKEN`` / ``CHATWOOT_CLIENT`` /
``CHATWOOT_UID``. Every path is scoped to one account id.
"""

import logging
import os
from typing import Any
from urllib.parse import quote

import httpx

from chatbridge.errors import UpstreamCallError, UpstreamConfigError
from chatbridge.services.bridge_http import BridgeHttpClient

logger = logging.getLogger(__name__)

# Chatwoot channel_type substrings -> provider label, first match wins
_CHANNEL_PROVIDERS = (
    ("telegram", "telegram"),
    ("whatsapp", "whatsapp_api"),
    ("facebook", "facebook"),
    ("instagram", "instagram"),
    ("line", "line"),
    ("sms", "sms"),
    ("email", "email"),
    ("webwidget", "widget"),
    ("web_widget", "widget"),
    ("api", "api"),
)


def build_chatwoot_auth_headers() -> dict[str, str]:
    """Return auth headers from the environment; {} when unconfigured."""
    bearer = os.environ.get("CHATWOOT_TOKEN", "").strip()
    if bearer:
        return {"Authorization": f"Bearer {bearer}"}
    access = os.environ.get("CHATWOOT_ACCESS_TOKEN", "").strip()
    client = os.environ.get("CHATWOOT_CLIENT", "").strip()
    uid = os.environ.get("CHATWOOT_UID", "").strip()
    if access and client and uid:
        return {"access-token": access, "client": client, "uid": uid}
    return {}


def provider_from_channel_type(channel_type: str | None) -> str:
    """Map a Chatwoot inbox channel_type to a short provider label."""
    lowered = str(channel_type or "").lower()
    for needle, provider in _CHANNEL_PROVIDERS:
        if needle in lowered:
            return provider
    return "unknown"


def _first_id(data: Any, *paths: str) -> Any:
    for path in paths:
        current = data
        for part in path.split("."):
            current = current.get(part) if isinstance(current, dict) else None
        if current:
            return current
    return None


def _payload_list(data: Any, *keys: str) -> list:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in keys:
            value = data.get(key)
            if isinstance(value, list):
                return value
            if isinstance(value, dict) and isinstance(value.get("payload"), list):
                return value["payload"]
    return []


class ChatwootClient(BridgeHttpClient):
    """Async Chatwoot application API client.

    Args:
        base_url: Overrides CHATWOOT_URL.
        account_id: Overrides CHATWOOT_ACCOUNT_ID.
        auth_headers: Overrides the environment-derived auth headers.
        transport: Optional httpx transport override.

    Raises:
        UpstreamConfigError: If URL, account or auth is missing.
    """

    service_name = "chatwoot"

    def __init__(
        self,
        base_url: str | None = None,
        account_id: str | int | None = None,
        auth_headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        url = base_url or os.environ.get("CHATWOOT_URL", "").strip()
        account = account_id or os.environ.get("CHATWOOT_ACCOUNT_ID", "").strip()
        auth = auth_headers if auth_headers is not None else build_chatwoot_auth_headers()
        if not url or not account or not auth:
            raise UpstreamConfigError("Chatwoot env not configured")
        super().__init__(url, transport=transport)
        self._account_id = str(account)
        self._auth = auth

    @property
    def account_id(self) -> str:
        return self._account_id

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        return super()._headers({**self._auth, **(extra or {})})

    def _account_path(self, suffix: str) -> str:
        return f"/api/v1/accounts/{quote(self._account_id, safe='')}{suffix}"

    # -- contacts and conversations ---------------------------------------

    async def ensure_contact(
        self,
        phone: str | None = None,
        name: str | None = None,
        source_id: str | None = None,
    ) -> int:
        """Create a contact and return its id."""
        body = await self._request(
            "POST",
            self._account_path("/contacts"),
            json={
                "name": name or phone or "Unknown",
                "phone_number": f"+{phone.lstrip('+')}" if phone else None,
                "identifier": source_id or phone or None,
            },
        )
        contact_id = _first_id(body, "id", "payload.contact.id", "payload.id")
        if not contact_id:
            raise UpstreamCallError(self.service_name, 200, "contact id not returned")
        return contact_id

    async def find_existing_conversation(self, contact_id: int | str, inbox_id: int | str) -> int | None:
        """Return an unresolved conversation of contact in inbox, or None."""
        try:
            body = await self._request(
                "GET", self._account_path(f"/contacts/{quote(str(contact_id), safe='')}/conversations"),
            )
        except UpstreamCallError:
            return None
        for conversation in _payload_list(body, "payload"):
            if (
                isinstance(conversation, dict)
                and str(conversation.get("inbox_id")) == str(inbox_id)
                and conversation.get("status") != "resolved"
            ):
                return conversation.get("id")
        return None

    async def ensure_conversation(self, contact_id: int | str, inbox_id: int | str) -> int:
        """Reuse an open conversation of contact in inbox or create one."""
        existing = await self.find_existing_conversation(contact_id, inbox_id)
        if existing:
            return existing
        body = await self._request(
            "POST",
            self._account_path("/conversations"),
            json={
                "source_id": str(contact_id),
                "contact_id": contact_id,
                "inbox_id": int(inbox_id),
                "status": "open",
            },
        )
        conversation_id = _first_id(body, "id", "payload.id")
        if not conversation_id:
            raise UpstreamCallError(self.service_name, 200, "conversation id not returned")
        return conversation_id

    async def _create_message(self, conversation_id: int | str, content: str, message_type: str) -> None:
        await self._request(
            "POST",
            self._account_path(f"/conversations/{quote(str(conversation_id), safe='')}/messages"),
            json={"content": content, "message_type": message_type},
        )

    async def create_incoming_message(self, conversation_id: int | str, content: str) -> None:
        await self._create_message(conversation_id, content, "incoming")

    async def create_outgoing_message(self, conversation_id: int | str, content: str) -> None:
        await self._create_message(conversation_id, content, "outgoing")

    # -- inboxes ---------------------------------------------------------

    async def create_inbox(self, name: str, channel: dict[str, Any]) -> dict:
        body = await self._request("POST", self._account_path("/inboxes"), json={"name": name, "channel": channel})
        return body if isinstance(body, dict) else {}

    async def list_inboxes(self) -> list[dict]:
        body = await self._request("GET", self._account_path("/inboxes"))
        return [i for i in _payload_list(body, "payload") if isinstance(i, dict)]

    async def get_inbox(self, inbox_id: int | str) -> dict:
        body = await self._request("GET", self._account_path(f"/inboxes/{quote(str(inbox_id), safe='')}"))
        return body if isinstance(body, dict) else {}

    async def delete_inbox(self, inbox_id: int | str) -> None:
        await self._request("DELETE", self._account_path(f"/inboxes/{quote(str(inbox_id), safe='')}"))

    async def register_webhook(self, url: str, subscriptions: list[str] | None = None) -> dict:
        body = await self._request(
            "POST",
            self._account_path("/webhooks"),
            json={"url": url, "subscriptions": subscriptions or ["message_created"]},
        )
        return body if isinstance(body, dict) else {}

    async def inbox_stats(self, inbox_id: int | str) -> dict:
        """Return inbox details plus first-page conversation and contact counts."""
        inbox = await self.get_inbox(inbox_id)
        params = {"inbox_id": str(inbox_id), "page": 1}

        conversations = await self._request("GET", self._account_path("/conversations"), params=params)
        try:
            contacts = await self._request("GET", self._account_path("/contacts"), params=params)
        except UpstreamCallError:
            contacts = {}

        return {
            "inbox": inbox,
            "summaries": {
                "conversationsCount": _count(conversations, "data"),
                "contactsCount": _count(contacts, "payload", "data"),
            },
        }


def _count(body: Any, *keys: str) -> int:
    items = _payload_list(body, *keys)
    if items:
        return len(items)
    if isinstance(body, dict):
        meta = body.get("meta")
        if not isinstance(meta, dict) and isinstance(body.get("data"), dict):
            meta = body["data"].get("meta")
        if isinstance(meta, dict):
            for key in ("count", "all_count"):
                if isinstance(meta.get(key), int):
                    return meta[key]
    return 0
