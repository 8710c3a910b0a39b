"""Client for the Evolution WhatsApp instance manager API.

Instance management calls authenticate with the global ``EVO_API_KEY``
on create and with the per-instance hash afterwards, both sent in the
``apikey`` header.
"""

import logging
import os
from typing import Any
from urllib.parse import quote

import httpx

from chatbridge.errors import UpstreamConfigError
from chatbridge.services.bridge_http import BridgeHttpClient

logger = logging.getLogger(__name__)

DEFAULT_INTEGRATION = "WHATSAPP-BAILEYS"


def get_evolution_base_url() -> str | None:
    """Return EVO_API_URL with a scheme, or None when unset."""
    raw = os.environ.get("EVO_API_URL", "").strip()
    if not raw:
        return None
    if not raw.startswith(("http://", "https://")):
        raw = f"https://{raw}"
    return raw.rstrip("/")


def _q(name: str) -> str:
    return quote(name, safe="")


class EvolutionClient(BridgeHttpClient):
    """Async Evolution API client.

    Args:
        base_url: Overrides EVO_API_URL.
        global_api_key: Overrides EVO_API_KEY (used for instance creation).
        transport: Optional httpx transport override.

    Raises:
        UpstreamConfigError: If no base URL is configured.
    """

    service_name = "evolution"

    def __init__(
        self,
        base_url: str | None = None,
        global_api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        url = base_url or get_evolution_base_url()
        if not url:
            raise UpstreamConfigError("EVO_API_URL is not configured")
        super().__init__(url, transport=transport)
        self._global_api_key = global_api_key or os.environ.get("EVO_API_KEY", "").strip() or None

    @staticmethod
    def _auth(apikey: str | None) -> dict[str, str]:
        return {"apikey": apikey} if apikey else {}

    async def create_instance(
        self,
        instance_name: str,
        integration: str = DEFAULT_INTEGRATION,
        qrcode: bool = True,
    ) -> dict:
        """Create an instance. The response carries ``hash`` and possibly ``qrcode``."""
        body = await self._request(
            "POST",
            "/instance/create",
            headers=self._auth(self._global_api_key),
            json={"instanceName": instance_name, "integration": integration, "qrcode": qrcode},
        )
        return body if isinstance(body, dict) else {}

    async def connect(self, instance_name: str, apikey: str) -> dict:
        """Request a pairing QR / pairing code for the instance."""
        body = await self._request(
            "GET", f"/instance/connect/{_q(instance_name)}", headers=self._auth(apikey),
        )
        return body if isinstance(body, dict) else {}

    async def restart(self, instance_name: str, apikey: str) -> dict:
        body = await self._request(
            "POST", f"/instance/restart/{_q(instance_name)}", headers=self._auth(apikey),
        )
        return body if isinstance(body, dict) else {}

    async def connection_state(self, instance_name: str, apikey: str) -> dict:
        body = await self._request(
            "GET", f"/instance/connectionState/{_q(instance_name)}", headers=self._auth(apikey),
        )
        return body if isinstance(body, dict) else {}

    async def fetch_instances(self, instance_name: str, apikey: str) -> list[dict]:
        """Fetch instance details; always returned as a list."""
        body = await self._request(
            "GET",
            "/instance/fetchInstances",
            headers=self._auth(apikey),
            params={"instanceName": instance_name},
        )
        if isinstance(body, list):
            return [item for item in body if isinstance(item, dict)]
        return [body] if isinstance(body, dict) and body else []

    async def delete_instance(self, instance_name: str, apikey: str) -> None:
        await self._request(
            "DELETE", f"/instance/delete/{_q(instance_name)}", headers=self._auth(apikey),
        )

    async def set_webhook(self, instance_name: str, apikey: str, url: str) -> dict:
        """Point the instance's webhook at url for every event."""
        body = await self._request(
            "POST",
            f"/webhook/set/{_q(instance_name)}",
            headers=self._auth(apikey),
            json={"webhook": {"enabled": True, "url": url, "byEvents": False, "base64": True}},
        )
        return body if isinstance(body, dict) else {}

    async def set_chatwoot(self, instance_name: str, apikey: str, settings: dict[str, Any]) -> dict:
        """Enable the built-in Chatwoot integration for the instance."""
        body = await self._request(
            "POST",
            f"/chatbot/chatwoot/set/{_q(instance_name)}",
            headers=self._auth(apikey),
            json=settings,
        )
        return body if isinstance(body, dict) else {}

    async def find_chatwoot(self, instance_name: str, apikey: str) -> dict:
        body = await self._request(
            "GET", f"/chatbot/chatwoot/find/{_q(instance_name)}", headers=self._auth(apikey),
        )
        return body if isinstance(body, dict) else {}
