"""ConnectionService: provisioning and remote actions for bridge connections.

Orchestrates the Evolution and Chatwoot clients against ConnectionStore.
Status changes coming from poll responses go through the status state
machine; direct commands (connect, restart) set the status explicitly.
Secondary steps (webhook registration, Chatwoot auto-link, remote delete)
are best-effort: failures are logged and the primary operation stands.
"""

import logging
import os
from typing import Any, Callable

from sqlalchemy.orm import Session

from chatbridge.db.models import Connection, ConnectionStatus, ConnectionType
from chatbridge.errors import NotFoundError, UpstreamConfigError, ValidationError
from chatbridge.services.chatwoot_client import ChatwootClient, provider_from_channel_type
from chatbridge.services.connection_status import (
    ConnectionStatusMachine,
    StatusUpdate,
    normalize_evolution_token,
)
from chatbridge.services.connection_store import ConnectionStore, deserialize_metadata
from chatbridge.services.credential_encryption import (
    CredentialDecryptionError,
    get_or_create_key,
    open_from_text,
    seal_to_text,
)
from chatbridge.services.evolution_client import EvolutionClient
from chatbridge.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)


def get_public_base_url() -> str | None:
    raw = os.environ.get("CHATBRIDGE_PUBLIC_BASE_URL", "").strip()
    return raw.rstrip("/") or None


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in {"false", "0", "no"}


def _chatwoot_link_settings_from_env() -> dict | None:
    """Chatwoot integration settings for new instances, when fully configured."""
    url = os.environ.get("CHATWOOT_URL", "").strip()
    account_id = os.environ.get("CHATWOOT_ACCOUNT_ID", "").strip()
    token = os.environ.get("CHATWOOT_TOKEN", "").strip()
    if not (url and account_id and token):
        return None
    return {
        "url": url,
        "accountId": account_id,
        "token": token,
        "signMsg": _env_flag("CHATWOOT_SIGN_MSG", True),
        "reopenConversation": _env_flag("CHATWOOT_REOPEN_CONVERSATION", True),
        "conversationPending": _env_flag("CHATWOOT_CONVERSATION_PENDING", False),
    }


def _instance_aad(instance_name: str) -> str:
    return f"evolution:{instance_name}"


def connection_to_dict(row: Connection) -> dict:
    """Public view of a connection; secrets are omitted."""
    metadata = deserialize_metadata(row)
    return {
        "id": row.id,
        "type": row.type,
        "displayName": row.display_name,
        "status": row.status,
        "evolutionInstanceName": row.evolution_instance_name,
        "chatwootAccountId": row.chatwoot_account_id,
        "chatwootInboxId": row.chatwoot_inbox_id,
        "provider": metadata.get("provider"),
        "phone": metadata.get("phone"),
        "stats": metadata.get("stats"),
        "createdAt": row.created_at,
        "updatedAt": row.updated_at,
    }


class ConnectionService:
    """Provision, poll and remove messaging-bridge connections.

    Args:
        db: SQLAlchemy session.
        evolution_factory: Builds the Evolution client (injectable for tests).
        chatwoot_factory: Builds the Chatwoot client (injectable for tests).
        key_dir: Optional override for the encryption key directory.
    """

    def __init__(
        self,
        db: Session,
        evolution_factory: Callable[[], EvolutionClient] = EvolutionClient,
        chatwoot_factory: Callable[[], ChatwootClient] = ChatwootClient,
        key_dir: str | None = None,
    ) -> None:
        self._store = ConnectionStore(db)
        self._machine = ConnectionStatusMachine(self._store)
        self._evolution_factory = evolution_factory
        self._chatwoot_factory = chatwoot_factory
        self._key = get_or_create_key(key_dir)

    @property
    def store(self) -> ConnectionStore:
        return self._store

    def list_connections(self, user_id: str) -> list[dict]:
        return [connection_to_dict(row) for row in self._store.list_for_user(user_id)]

    def get_connection(self, user_id: str, connection_id: str) -> Connection:
        return self._store.get_for_user(connection_id, user_id)

    # -- WhatsApp (Evolution) --------------------------------------------

    async def provision_whatsapp(
        self,
        user_id: str,
        instance_name: str,
        display_name: str | None = None,
        integration: str | None = None,
        qrcode: bool = True,
        chatwoot: dict | None = None,
    ) -> dict:
        """Create an Evolution instance and its connection row.

        The initial status is qr_required when the create response already
        carries a QR artifact, otherwise the instance's reported state
        (connecting when absent or unknown).
        """
        instance_name = (instance_name or "").strip()
        if not instance_name:
            raise ValidationError("instanceName is required")

        evolution = self._evolution_factory()
        created = await evolution.create_instance(
            instance_name, integration=integration or "WHATSAPP-BAILEYS", qrcode=qrcode,
        )

        instance = created.get("instance") if isinstance(created.get("instance"), dict) else {}
        if created.get("qrcode"):
            initial = ConnectionStatus.qr_required
        else:
            initial = normalize_evolution_token(instance.get("status")) or ConnectionStatus.connecting

        instance_hash = created.get("hash")
        if isinstance(instance_hash, dict):
            instance_hash = instance_hash.get("apikey")
        encrypted = (
            seal_to_text(str(instance_hash), self._key, aad=_instance_aad(instance_name))
            if instance_hash else None
        )

        row = self._store.create(
            user_id,
            ConnectionType.whatsapp_evolution.value,
            display_name=display_name or instance_name,
            status=initial.value,
            evolution_instance_name=instance_name,
            evolution_apikey_encrypted=encrypted,
        )
        logger.info("Provisioned WhatsApp connection %s (instance=%s, status=%s)", row.id, instance_name, initial.value)

        if instance_hash:
            await self._register_evolution_webhook(evolution, row, str(instance_hash))
            settings = chatwoot or _chatwoot_link_settings_from_env()
            if settings and settings.get("url") and settings.get("accountId") and settings.get("token"):
                await self._link_chatwoot(evolution, row, str(instance_hash), settings)

        return {"id": row.id, "instance": created.get("instance"), "qrcode": created.get("qrcode")}

    async def _register_evolution_webhook(self, evolution: EvolutionClient, row: Connection, apikey: str) -> None:
        base_url = get_public_base_url()
        if not base_url:
            return
        try:
            await evolution.set_webhook(
                row.evolution_instance_name, apikey, f"{base_url}/api/webhooks/evolution/{row.id}",
            )
        except Exception as e:
            logger.warning("Webhook registration failed for connection %s: %s", row.id, sanitize_error_message(str(e)))

    async def _link_chatwoot(
        self, evolution: EvolutionClient, row: Connection, apikey: str, settings: dict,
    ) -> None:
        instance_name = row.evolution_instance_name
        payload = {
            "enabled": True,
            "url": settings["url"],
            "accountId": str(settings["accountId"]),
            "token": settings["token"],
            # Inbox name must equal the instance name
            "nameInbox": instance_name,
            "signMsg": settings.get("signMsg") is not False,
            "reopenConversation": settings.get("reopenConversation", True),
            "conversationPending": settings.get("conversationPending", False),
            "importContacts": settings.get("importContacts", False),
            "importMessages": settings.get("importMessages", False),
            "autoCreate": True,
        }
        try:
            await evolution.set_chatwoot(instance_name, apikey, payload)
            found = await evolution.find_chatwoot(instance_name, apikey)
        except Exception as e:
            logger.warning("Chatwoot link failed for connection %s: %s", row.id, sanitize_error_message(str(e)))
            return

        base_url = get_public_base_url()
        inbox_id = found.get("inboxId")
        self._store.update_fields(
            row.id,
            chatwoot_account_id=str(settings["accountId"]),
            chatwoot_inbox_id=str(inbox_id) if inbox_id else None,
            chatwoot_webhook_url=f"{base_url}/api/webhooks/chatwoot/{row.id}" if base_url else None,
        )

    def _evolution_target(self, user_id: str, connection_id: str) -> tuple[Connection, str]:
        row = self._store.get_for_user(connection_id, user_id)
        if (
            row.type != ConnectionType.whatsapp_evolution.value
            or not row.evolution_instance_name
            or not row.evolution_apikey_encrypted
        ):
            raise ValidationError("Invalid connection")
        try:
            apikey = open_from_text(
                row.evolution_apikey_encrypted, self._key, aad=_instance_aad(row.evolution_instance_name),
            )
        except CredentialDecryptionError as e:
            logger.warning("Instance key for connection %s could not be decrypted: %s", row.id, e)
            raise UpstreamConfigError("Stored instance key could not be decrypted") from e
        return row, apikey

    async def connect(self, user_id: str, connection_id: str) -> dict:
        """Request a pairing QR; moves the connection to qr_required when one is returned."""
        row, apikey = self._evolution_target(user_id, connection_id)
        data = await self._evolution_factory().connect(row.evolution_instance_name, apikey)
        if data.get("qrcode") or data.get("base64") or data.get("pairingCode"):
            self._store.update_status(row.id, ConnectionStatus.qr_required, source="command", raw_token="connect")
        return data

    async def restart(self, user_id: str, connection_id: str) -> dict:
        row, apikey = self._evolution_target(user_id, connection_id)
        data = await self._evolution_factory().restart(row.evolution_instance_name, apikey)
        self._store.update_status(row.id, ConnectionStatus.connecting, source="command", raw_token="restart")
        return data

    async def poll_status(self, user_id: str, connection_id: str) -> tuple[dict, StatusUpdate]:
        """Fetch the instance state and apply it through the state machine."""
        row, apikey = self._evolution_target(user_id, connection_id)
        data = await self._evolution_factory().connection_state(row.evolution_instance_name, apikey)
        update = self._machine.apply(row.id, data, bridge="evolution", source="poll")
        return data, update

    async def poll_details(self, user_id: str, connection_id: str) -> tuple[list[dict], StatusUpdate | None]:
        """Fetch instance details; status, phone, name and counters are synced."""
        row, apikey = self._evolution_target(user_id, connection_id)
        instances = await self._evolution_factory().fetch_instances(row.evolution_instance_name, apikey)
        if not instances:
            return instances, None
        info = instances[0]
        update = self._machine.apply(row.id, info, bridge="evolution", source="poll")
        fallback_name = info.get("name")
        if isinstance(fallback_name, str) and fallback_name.strip() and not info.get("profileName"):
            self._store.update_display_name(row.id, fallback_name.strip())
        return instances, update

    # -- Chatwoot inboxes ------------------------------------------------

    async def _create_inbox_connection(
        self, user_id: str, name: str, channel: dict, metadata: dict,
    ) -> tuple[Connection, Any]:
        chatwoot = self._chatwoot_factory()
        created = await chatwoot.create_inbox(name, channel)
        inbox_id = created.get("id") or (created.get("payload") or {}).get("id")
        row = self._store.create(
            user_id,
            ConnectionType.chatwoot_channel.value,
            display_name=name,
            status=ConnectionStatus.open.value,
            metadata=metadata,
            chatwoot_account_id=chatwoot.account_id,
            chatwoot_inbox_id=str(inbox_id) if inbox_id else None,
        )
        base_url = get_public_base_url()
        if base_url and inbox_id:
            webhook_url = f"{base_url}/api/webhooks/chatwoot/{row.id}"
            try:
                await chatwoot.register_webhook(webhook_url)
                self._store.update_fields(row.id, chatwoot_webhook_url=webhook_url)
            except Exception as e:
                logger.warning(
                    "Chatwoot webhook registration failed for connection %s: %s",
                    row.id, sanitize_error_message(str(e)),
                )
        return row, inbox_id

    async def create_chatwoot_inbox(self, user_id: str, name: str, channel: dict) -> dict:
        if not name:
            raise ValidationError("name is required")
        if not isinstance(channel, dict) or not channel.get("type"):
            raise ValidationError("channel.type is required")
        channel_type = str(channel["type"])
        row, inbox_id = await self._create_inbox_connection(
            user_id, name, channel, {"provider": channel_type},
        )
        return {"id": row.id, "inboxId": inbox_id, "channelType": channel_type}

    async def create_telegram_inbox(self, user_id: str, instance_name: str, bot_token: str) -> dict:
        if not instance_name:
            raise ValidationError("instanceName is required")
        if not bot_token:
            raise ValidationError("botToken is required")
        row, inbox_id = await self._create_inbox_connection(
            user_id,
            instance_name,
            {"type": "telegram", "bot_token": bot_token},
            {"provider": "telegram"},
        )
        return {"id": row.id, "inboxId": inbox_id}

    async def import_chatwoot_inbox(self, user_id: str, inbox_id: str | int, display_name: str | None = None) -> dict:
        """Adopt an existing Chatwoot inbox as a connection."""
        if not inbox_id:
            raise ValidationError("inboxId is required")
        inbox_id = str(inbox_id)
        chatwoot = self._chatwoot_factory()
        found = next((i for i in await chatwoot.list_inboxes() if str(i.get("id")) == inbox_id), None)
        if found is None:
            raise NotFoundError("Chatwoot inbox", inbox_id)
        row = self._store.create(
            user_id,
            ConnectionType.chatwoot_channel.value,
            display_name=display_name or found.get("name") or f"Inbox {inbox_id}",
            status=ConnectionStatus.open.value,
            metadata={
                "provider": provider_from_channel_type(found.get("channel_type")),
                "chatwoot": {"id": inbox_id, "name": found.get("name"), "channel_type": found.get("channel_type")},
            },
            chatwoot_account_id=chatwoot.account_id,
            chatwoot_inbox_id=inbox_id,
        )
        return {"id": row.id, "inboxId": inbox_id}

    async def inbox_stats(self, inbox_id: str) -> dict:
        return await self._chatwoot_factory().inbox_stats(inbox_id)

    # -- removal ---------------------------------------------------------

    async def delete(self, user_id: str, connection_id: str) -> None:
        """Delete the remote resource (best-effort), then the row."""
        row = self._store.get_for_user(connection_id, user_id)
        try:
            if row.type == ConnectionType.whatsapp_evolution.value:
                if row.evolution_instance_name and row.evolution_apikey_encrypted:
                    _, apikey = self._evolution_target(user_id, connection_id)
                    await self._evolution_factory().delete_instance(row.evolution_instance_name, apikey)
            elif row.chatwoot_inbox_id:
                await self._chatwoot_factory().delete_inbox(row.chatwoot_inbox_id)
        except Exception as e:
            logger.warning(
                "Remote cleanup failed for connection %s: %s", row.id, sanitize_error_message(str(e)),
            )
        self._store.delete(row.id)
        logger.info("Deleted connection %s", connection_id)
