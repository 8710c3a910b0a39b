"""Tests for ConnectionService and the Evolution/Chatwoot clients."""

import json

import pytest
import pytest_asyncio

from chatbridge.db.models import Connection, ConnectionStatus, ConnectionType
from chatbridge.errors import ForbiddenError, NotFoundError, UpstreamCallError, UpstreamConfigError, ValidationError
from chatbridge.services.chatwoot_client import ChatwootClient, build_chatwoot_auth_headers, provider_from_channel_type
from chatbridge.services.connection_service import ConnectionService, connection_to_dict
from chatbridge.services.connection_store import deserialize_metadata
from chatbridge.services.evolution_client import EvolutionClient
from tests.helpers import FakeUpstream

EVO_URL = "http://evo.test"
CW_URL = "http://cw.test"
CW_ACCOUNT = "/api/v1/accounts/1"


@pytest.fixture
def evo():
    return FakeUpstream()


@pytest.fixture
def cw():
    return FakeUpstream()


@pytest.fixture
def service(db_session, evo, cw):
    """ConnectionService wired to scripted Evolution and Chatwoot upstreams."""
    return ConnectionService(
        db_session,
        evolution_factory=lambda: EvolutionClient(base_url=EVO_URL, global_api_key="global", transport=evo.transport),
        chatwoot_factory=lambda: ChatwootClient(
            base_url=CW_URL, account_id="1", auth_headers={"Authorization": "Bearer cw"}, transport=cw.transport,
        ),
    )


def _provision(service, evo, qrcode=True, status=None):
    created = {"instance": {"instanceName": "shop", "status": status}, "hash": "inst-hash"}
    if qrcode:
        created["qrcode"] = {"base64": "data:image/png;base64,AAA"}
    evo.add("POST", "/instance/create", json=created)


class TestClients:
    """Tests for client configuration and error mapping."""

    def test_evolution_requires_url(self, monkeypatch):
        monkeypatch.delenv("EVO_API_URL", raising=False)
        with pytest.raises(UpstreamConfigError):
            EvolutionClient()

    def test_evolution_url_gets_scheme(self, monkeypatch):
        monkeypatch.setenv("EVO_API_URL", "evo.example.com/")
        assert EvolutionClient().base_url == "https://evo.example.com"

    def test_chatwoot_requires_env(self):
        with pytest.raises(UpstreamConfigError, match="Chatwoot env not configured"):
            ChatwootClient()

    def test_chatwoot_device_auth_headers(self, monkeypatch):
        monkeypatch.setenv("CHATWOOT_ACCESS_TOKEN", "a")
        monkeypatch.setenv("CHATWOOT_CLIENT", "c")
        monkeypatch.setenv("CHATWOOT_UID", "u")
        assert build_chatwoot_auth_headers() == {"access-token": "a", "client": "c", "uid": "u"}

    def test_provider_from_channel_type(self):
        assert provider_from_channel_type("Channel::Telegram") == "telegram"
        assert provider_from_channel_type("Channel::Whatsapp") == "whatsapp_api"
        assert provider_from_channel_type(None) == "unknown"

    @pytest.mark.asyncio
    async def test_non_2xx_raises_with_redacted_body(self, evo):
        evo.add("GET", "/instance/connectionState/shop", status=401, json={"message": "bad", "apikey": "leak"})
        client = EvolutionClient(base_url=EVO_URL, transport=evo.transport)
        with pytest.raises(UpstreamCallError) as exc_info:
            await client.connection_state("shop", "k")
        assert exc_info.value.status_code == 401
        assert exc_info.value.body == {"message": "bad", "apikey": "***REDACTED***"}
        assert "leak" not in json.dumps(exc_info.value.to_payload())

    @pytest.mark.asyncio
    async def test_instance_key_sent_in_apikey_header(self, evo):
        evo.add("POST", "/instance/restart/shop", json={})
        client = EvolutionClient(base_url=EVO_URL, transport=evo.transport)
        await client.restart("shop", "inst-key")
        assert evo.requests[0].headers["apikey"] == "inst-key"

    @pytest.mark.asyncio
    async def test_ensure_conversation_reuses_unresolved(self, cw):
        cw.add("GET", f"{CW_ACCOUNT}/contacts/5/conversations", json={"payload": [
            {"id": 1, "inbox_id": 9, "status": "resolved"},
            {"id": 2, "inbox_id": 9, "status": "open"},
        ]})
        client = ChatwootClient(base_url=CW_URL, account_id=1, auth_headers={"Authorization": "Bearer cw"}, transport=cw.transport)
        assert await client.ensure_conversation(5, 9) == 2
        assert not cw.calls("POST", f"{CW_ACCOUNT}/conversations")

    @pytest.mark.asyncio
    async def test_ensure_conversation_creates_when_none_open(self, cw):
        cw.add("GET", f"{CW_ACCOUNT}/contacts/5/conversations", json={"payload": [
            {"id": 1, "inbox_id": 9, "status": "resolved"},
        ]})
        cw.add("POST", f"{CW_ACCOUNT}/conversations", json={"id": 77})
        client = ChatwootClient(base_url=CW_URL, account_id=1, auth_headers={"Authorization": "Bearer cw"}, transport=cw.transport)
        assert await client.ensure_conversation(5, "9") == 77
        assert cw.calls("POST", f"{CW_ACCOUNT}/conversations")[0].body["inbox_id"] == 9

    @pytest.mark.asyncio
    async def test_inbox_stats_counts(self, cw):
        cw.add("GET", f"{CW_ACCOUNT}/inboxes/9", json={"id": 9, "name": "Support"})
        cw.add("GET", f"{CW_ACCOUNT}/conversations", json={"data": {"meta": {"all_count": 4}, "payload": []}})
        cw.add("GET", f"{CW_ACCOUNT}/contacts", status=500, json={})
        client = ChatwootClient(base_url=CW_URL, account_id=1, auth_headers={"Authorization": "Bearer cw"}, transport=cw.transport)
        stats = await client.inbox_stats(9)
        assert stats["inbox"]["name"] == "Support"
        assert stats["summaries"] == {"conversationsCount": 4, "contactsCount": 0}


class TestProvisionWhatsApp:
    """Tests for WhatsApp instance provisioning."""

    @pytest.mark.asyncio
    async def test_qr_in_response_means_qr_required(self, service, evo, db_session):
        _provision(service, evo, qrcode=True)
        result = await service.provision_whatsapp("u1", "shop")
        row = db_session.get(Connection, result["id"])
        assert row.status == ConnectionStatus.qr_required.value
        assert row.type == ConnectionType.whatsapp_evolution.value
        assert result["qrcode"]["base64"].startswith("data:image/png")
        assert evo.requests[0].headers["apikey"] == "global"

    @pytest.mark.asyncio
    async def test_reported_status_used_without_qr(self, service, evo, db_session):
        _provision(service, evo, qrcode=False, status="open")
        result = await service.provision_whatsapp("u1", "shop")
        assert db_session.get(Connection, result["id"]).status == "open"

    @pytest.mark.asyncio
    async def test_unknown_status_defaults_to_connecting(self, service, evo, db_session):
        _provision(service, evo, qrcode=False, status=None)
        result = await service.provision_whatsapp("u1", "shop")
        assert db_session.get(Connection, result["id"]).status == "connecting"

    @pytest.mark.asyncio
    async def test_instance_hash_is_encrypted(self, service, evo, db_session):
        _provision(service, evo)
        result = await service.provision_whatsapp("u1", "shop")
        row = db_session.get(Connection, result["id"])
        assert "inst-hash" not in row.evolution_apikey_encrypted
        assert "inst-hash" not in json.dumps(connection_to_dict(row))

    @pytest.mark.asyncio
    async def test_blank_instance_name_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.provision_whatsapp("u1", "  ")

    @pytest.mark.asyncio
    async def test_upstream_failure_creates_nothing(self, service, evo, db_session):
        evo.add("POST", "/instance/create", status=403, json={"error": "forbidden"})
        with pytest.raises(UpstreamCallError):
            await service.provision_whatsapp("u1", "shop")
        assert db_session.query(Connection).count() == 0

    @pytest.mark.asyncio
    async def test_webhook_registered_with_public_url(self, service, evo, monkeypatch):
        monkeypatch.setenv("CHATBRIDGE_PUBLIC_BASE_URL", "https://bridge.example.com/")
        _provision(service, evo)
        evo.add("POST", "/webhook/set/shop", json={})
        result = await service.provision_whatsapp("u1", "shop")
        call = evo.calls("POST", "/webhook/set/shop")[0]
        assert call.headers["apikey"] == "inst-hash"
        assert call.body["webhook"]["url"] == f"https://bridge.example.com/api/webhooks/evolution/{result['id']}"

    @pytest.mark.asyncio
    async def test_webhook_failure_is_best_effort(self, service, evo, db_session, monkeypatch):
        monkeypatch.setenv("CHATBRIDGE_PUBLIC_BASE_URL", "https://bridge.example.com")
        _provision(service, evo)
        evo.add("POST", "/webhook/set/shop", status=500, json={})
        result = await service.provision_whatsapp("u1", "shop")
        assert db_session.get(Connection, result["id"]) is not None

    @pytest.mark.asyncio
    async def test_chatwoot_link_records_inbox(self, service, evo, db_session):
        _provision(service, evo)
        evo.add("POST", "/chatbot/chatwoot/set/shop", json={})
        evo.add("GET", "/chatbot/chatwoot/find/shop", json={"inboxId": 12})
        settings = {"url": CW_URL, "accountId": 1, "token": "cw-token"}
        result = await service.provision_whatsapp("u1", "shop", chatwoot=settings)
        link = evo.calls("POST", "/chatbot/chatwoot/set/shop")[0].body
        assert link["nameInbox"] == "shop"
        assert link["signMsg"] is True
        row = db_session.get(Connection, result["id"])
        assert row.chatwoot_inbox_id == "12"
        assert row.chatwoot_account_id == "1"

    @pytest.mark.asyncio
    async def test_chatwoot_link_from_env(self, service, evo, monkeypatch):
        monkeypatch.setenv("CHATWOOT_URL", CW_URL)
        monkeypatch.setenv("CHATWOOT_ACCOUNT_ID", "3")
        monkeypatch.setenv("CHATWOOT_TOKEN", "t")
        monkeypatch.setenv("CHATWOOT_SIGN_MSG", "false")
        _provision(service, evo)
        evo.add("POST", "/chatbot/chatwoot/set/shop", json={})
        evo.add("GET", "/chatbot/chatwoot/find/shop", json={})
        await service.provision_whatsapp("u1", "shop")
        link = evo.calls("POST", "/chatbot/chatwoot/set/shop")[0].body
        assert link["accountId"] == "3"
        assert link["signMsg"] is False


class TestInstanceCommands:
    """Tests for connect/restart/poll/delete."""

    @pytest_asyncio.fixture
    async def connection_id(self, service, evo):
        _provision(service, evo, qrcode=False, status="connecting")
        return (await service.provision_whatsapp("u1", "shop"))["id"]

    @pytest.mark.asyncio
    async def test_connect_with_qr_moves_to_qr_required(self, service, evo, connection_id, db_session):
        evo.add("GET", "/instance/connect/shop", json={"base64": "data:image/png;base64,QQ"})
        data = await service.connect("u1", connection_id)
        assert data["base64"]
        assert db_session.get(Connection, connection_id).status == "qr_required"
        assert evo.calls("GET", "/instance/connect/shop")[0].headers["apikey"] == "inst-hash"

    @pytest.mark.asyncio
    async def test_restart_moves_to_connecting(self, service, evo, connection_id, db_session):
        service.store.update_status(connection_id, "close")
        evo.add("POST", "/instance/restart/shop", json={})
        await service.restart("u1", connection_id)
        assert db_session.get(Connection, connection_id).status == "connecting"

    @pytest.mark.asyncio
    async def test_poll_status_goes_through_state_machine(self, service, evo, connection_id):
        evo.add("GET", "/instance/connectionState/shop", json={"instance": {"state": "open"}})
        data, update = await service.poll_status("u1", connection_id)
        assert update.changed is True
        assert update.current == "open"
        assert service.store.status_events(connection_id)[-1].source == "poll"

    @pytest.mark.asyncio
    async def test_poll_details_syncs_profile(self, service, evo, connection_id, db_session):
        evo.add("GET", "/instance/fetchInstances", json=[{
            "name": "shop",
            "connectionStatus": "open",
            "ownerJid": "5511988887777@s.whatsapp.net",
            "profileName": "Shop Desk",
            "_count": {"Message": 12, "Contact": 4, "Chat": 3},
        }])
        instances, update = await service.poll_details("u1", connection_id)
        assert len(instances) == 1
        row = db_session.get(Connection, connection_id)
        metadata = deserialize_metadata(row)
        assert metadata["phone"] == "5511988887777"
        assert metadata["stats"] == {"messages": 12, "contacts": 4, "chats": 3}
        assert row.display_name == "Shop Desk"
        assert evo.calls("GET", "/instance/fetchInstances")[0].params == {"instanceName": "shop"}

    @pytest.mark.asyncio
    async def test_other_user_is_forbidden(self, service, connection_id):
        with pytest.raises(ForbiddenError):
            await service.connect("u2", connection_id)

    @pytest.mark.asyncio
    async def test_delete_removes_remote_and_row(self, service, evo, connection_id, db_session):
        evo.add("DELETE", "/instance/delete/shop", json={})
        await service.delete("u1", connection_id)
        assert evo.calls("DELETE", "/instance/delete/shop")
        assert db_session.get(Connection, connection_id) is None

    @pytest.mark.asyncio
    async def test_delete_survives_remote_failure(self, service, evo, connection_id, db_session):
        evo.add("DELETE", "/instance/delete/shop", status=500, json={})
        await service.delete("u1", connection_id)
        assert db_session.get(Connection, connection_id) is None

    @pytest.mark.asyncio
    async def test_undecryptable_key_is_config_error(self, service, connection_id, db_session):
        row = db_session.get(Connection, connection_id)
        row.evolution_apikey_encrypted = "{}"
        db_session.commit()
        with pytest.raises(UpstreamConfigError):
            await service.restart("u1", connection_id)


class TestChatwootInboxes:
    """Tests for support-inbox connections."""

    @pytest.mark.asyncio
    async def test_create_inbox(self, service, cw, db_session, monkeypatch):
        monkeypatch.setenv("CHATBRIDGE_PUBLIC_BASE_URL", "https://bridge.example.com")
        cw.add("POST", f"{CW_ACCOUNT}/inboxes", json={"id": 31})
        cw.add("POST", f"{CW_ACCOUNT}/webhooks", json={})
        result = await service.create_chatwoot_inbox("u1", "Site chat", {"type": "api"})
        row = db_session.get(Connection, result["id"])
        assert result["inboxId"] == 31
        assert row.chatwoot_inbox_id == "31"
        assert row.status == "open"
        assert deserialize_metadata(row)["provider"] == "api"
        assert row.chatwoot_webhook_url == f"https://bridge.example.com/api/webhooks/chatwoot/{row.id}"
        assert cw.requests[0].headers["authorization"] == "Bearer cw"

    @pytest.mark.asyncio
    async def test_create_inbox_requires_channel_type(self, service):
        with pytest.raises(ValidationError):
            await service.create_chatwoot_inbox("u1", "Site chat", {})

    @pytest.mark.asyncio
    async def test_create_telegram_inbox(self, service, cw, db_session):
        cw.add("POST", f"{CW_ACCOUNT}/inboxes", json={"payload": {"id": 8}})
        result = await service.create_telegram_inbox("u1", "tg-bot", "123:abc")
        sent = cw.calls("POST", f"{CW_ACCOUNT}/inboxes")[0].body
        assert sent["channel"] == {"type": "telegram", "bot_token": "123:abc"}
        assert deserialize_metadata(db_session.get(Connection, result["id"]))["provider"] == "telegram"

    @pytest.mark.asyncio
    async def test_import_inbox(self, service, cw, db_session):
        cw.add("GET", f"{CW_ACCOUNT}/inboxes", json={"payload": [
            {"id": 4, "name": "Telegram", "channel_type": "Channel::Telegram"},
        ]})
        result = await service.import_chatwoot_inbox("u1", 4)
        row = db_session.get(Connection, result["id"])
        assert row.display_name == "Telegram"
        assert deserialize_metadata(row)["provider"] == "telegram"

    @pytest.mark.asyncio
    async def test_import_missing_inbox(self, service, cw):
        cw.add("GET", f"{CW_ACCOUNT}/inboxes", json={"payload": []})
        with pytest.raises(NotFoundError):
            await service.import_chatwoot_inbox("u1", 4)

    @pytest.mark.asyncio
    async def test_delete_inbox_connection(self, service, cw, db_session):
        cw.add("POST", f"{CW_ACCOUNT}/inboxes", json={"id": 31})
        result = await service.create_chatwoot_inbox("u1", "Site chat", {"type": "api"})
        cw.add("DELETE", f"{CW_ACCOUNT}/inboxes/31", json={})
        await service.delete("u1", result["id"])
        assert cw.calls("DELETE", f"{CW_ACCOUNT}/inboxes/31")
        assert db_session.get(Connection, result["id"]) is None

    def test_list_connections_is_per_user(self, service):
        service.store.create("u1", ConnectionType.chatwoot_channel.value, display_name="a")
        service.store.create("u2", ConnectionType.chatwoot_channel.value, display_name="b")
        listed = service.list_connections("u1")
        assert [c["displayName"] for c in listed] == ["a"]
        assert "evolutionApikeyEncrypted" not in listed[0]
