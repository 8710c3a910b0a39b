"""Pydantic schemas for API request/response validation.

Request bodies use the camelCase field names the chat client sends;
Python attributes are snake_case.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from chatbridge.orchestrator.engine import TurnRequest


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Chat schemas


class ChatMessageIn(CamelModel):
    """One inbound message; parts are kept as free-form dicts."""

    id: str = Field(..., min_length=1)
    role: Literal["user", "assistant"]
    parts: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None


class ChatModelRef(CamelModel):
    provider: str
    model: str


class ImageSettings(CamelModel):
    """Per-request image synthesis options."""

    enabled: bool = False
    engine: str | None = None
    image_model: str | None = None
    size: str | None = None
    aspect_ratio: str | None = None
    style: str | None = None
    quality: str | None = None
    provider_options: dict[str, Any] = Field(default_factory=dict)


class ChatRequest(CamelModel):
    """Body of POST /api/chat."""

    id: str = Field(..., min_length=1, description="Thread id")
    message: ChatMessageIn
    chat_model: ChatModelRef | None = None
    tool_choice: Literal["auto", "none", "manual"] = "auto"
    allowed_mcp_servers: dict[str, Any] | None = None
    allowed_app_default_toolkit: list[str] | None = None
    mentions: list[dict[str, Any]] = Field(default_factory=list)
    image_settings: ImageSettings | None = None

    def to_turn_request(self) -> TurnRequest:
        return TurnRequest(
            thread_id=self.id,
            message=self.message.model_dump(exclude_none=True),
            chat_model=self.chat_model.model_dump() if self.chat_model else None,
            tool_choice=self.tool_choice,
            allowed_mcp_servers=self.allowed_mcp_servers,
            allowed_app_default_toolkit=self.allowed_app_default_toolkit,
            mentions=self.mentions,
            image_settings=(
                self.image_settings.model_dump(by_alias=True, exclude_none=True) if self.image_settings else None
            ),
        )


# Key schemas


class KeyCreateRequest(CamelModel):
    provider: str = Field(..., min_length=1)
    key: str = Field(..., min_length=1)
    label: str | None = None
    scopes: list[str] | None = None
    expires_at: str | None = None
    base_url: str | None = None


class KeyTargetRequest(CamelModel):
    provider: str = Field(..., min_length=1)
    label: str | None = None


# Connection schemas


class WhatsAppConnectionCreate(CamelModel):
    instance_name: str = Field(..., min_length=1, max_length=100)
    display_name: str | None = None
    integration: str = "WHATSAPP-BAILEYS"
    qrcode: bool = True
    chatwoot: dict[str, Any] | None = Field(None, description="Chatwoot link settings; CHATWOOT_* env when omitted")

    @field_validator("instance_name")
    @classmethod
    def _strip_instance_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("instance_name must not be blank")
        return v


class ChatwootInboxCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    channel: dict[str, Any] = Field(default_factory=lambda: {"type": "api"})


class ChatwootInboxImport(CamelModel):
    inbox_id: str | int
    display_name: str | None = None


class TelegramInboxCreate(CamelModel):
    instance_name: str = Field(..., min_length=1, max_length=100)
    bot_token: str = Field(..., min_length=1)


class AgentBindingRequest(CamelModel):
    agent_id: str = Field(..., min_length=1)

