"""Static model catalog.

Each provider entry declares how it is reached (Anthropic SDK or an
OpenAI-compatible chat-completions endpoint), which credential name it
uses in the per-user key store and which environment variables hold a
process-wide default key. Extra OpenAI-compatible providers can be
declared in ``OPENAI_COMPATIBLE_DATA``:

    [{"provider": "groq", "baseUrl": "https://api.groq.com/openai/v1",
      "apiKey": "...", "models": [{"apiName": "llama-3.3-70b", "uiName": "llama-3.3",
      "supportsTools": true}]}]
"""

import json
import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MODEL_REF = "openai/gpt-4.1"


@dataclass(frozen=True)
class ModelRef:
    provider: str
    model: str

    @classmethod
    def parse(cls, value: Any) -> "ModelRef | None":
        """Accept a ModelRef, a {"provider","model"} dict or "provider/model"."""
        if isinstance(value, ModelRef):
            return value
        if isinstance(value, dict) and value.get("provider") and value.get("model"):
            return cls(str(value["provider"]), str(value["model"]))
        if isinstance(value, str) and "/" in value:
            provider, _, model = value.partition("/")
            if provider and model:
                return cls(provider, model)
        return None

    def __str__(self) -> str:
        return f"{self.provider}/{self.model}"


@dataclass(frozen=True)
class ModelSpec:
    """One selectable model.

    Attributes:
        api_name: Identifier sent upstream (may differ from the display name).
        supports_tools: False for models that cannot take tool definitions.
        image_only: Image synthesis model; never used for chat.
        image_capable: Chat model that answers with images.
    """

    provider: str
    name: str
    api_name: str
    supports_tools: bool = True
    image_only: bool = False
    image_capable: bool = False

    @property
    def ref(self) -> ModelRef:
        return ModelRef(self.provider, self.name)


@dataclass(frozen=True)
class ProviderSpec:
    """How to reach a provider and where its credential comes from.

    Attributes:
        kind: 'anthropic' or 'openai_compatible'.
        credential_name: Provider key in the per-user key store.
        env_vars: Process-wide default key variables, first non-empty wins.
        requires_key: False for local providers (ollama).
        static_key: Key declared in configuration (custom providers).
    """

    name: str
    kind: str
    base_url: str | None
    credential_name: str
    env_vars: tuple[str, ...] = ()
    requires_key: bool = True
    static_key: str | None = None
    models: dict[str, ModelSpec] = field(default_factory=dict)


def _models(provider: str, entries: list[tuple[str, str, bool]]) -> dict[str, ModelSpec]:
    return {
        name: ModelSpec(provider=provider, name=name, api_name=api_name, supports_tools=tools)
        for name, api_name, tools in entries
    }


def _ollama_base_url() -> str:
    return os.environ.get("OLLAMA_BASE_URL", "").strip() or "http://localhost:11434/v1"


def _static_providers() -> dict[str, ProviderSpec]:
    providers = {
        "openai": ProviderSpec(
            "openai", "openai_compatible", "https://api.openai.com/v1", "openai", ("OPENAI_API_KEY",),
            models=_models("openai", [
                ("gpt-4.1", "gpt-4.1", True),
                ("gpt-4.1-mini", "gpt-4.1-mini", True),
                ("o4-mini", "o4-mini", False),
                ("o3", "o3", True),
                ("gpt-5", "gpt-5", True),
                ("gpt-5-mini", "gpt-5-mini", True),
                ("gpt-5-nano", "gpt-5-nano", True),
            ]),
        ),
        "google": ProviderSpec(
            "google", "openai_compatible", "https://generativelanguage.googleapis.com/v1beta/openai",
            "google", ("GOOGLE_API_KEY", "GOOGLE_GENERATIVE_AI_API_KEY"),
            models=_models("google", [
                ("gemini-2.5-flash-lite", "gemini-2.5-flash-lite", True),
                ("gemini-2.5-flash", "gemini-2.5-flash", True),
                ("gemini-2.5-pro", "gemini-2.5-pro", True),
            ]),
        ),
        "anthropic": ProviderSpec(
            "anthropic", "anthropic", None, "anthropic", ("ANTHROPIC_API_KEY",),
            models=_models("anthropic", [
                ("claude-4-sonnet", "claude-sonnet-4-20250514", True),
                ("claude-4-opus", "claude-opus-4-20250514", True),
                ("claude-3-7-sonnet", "claude-3-7-sonnet-20250219", True),
            ]),
        ),
        "xai": ProviderSpec(
            "xai", "openai_compatible", "https://api.x.ai/v1", "xai", ("XAI_API_KEY",),
            models=_models("xai", [
                ("grok-4", "grok-4", True),
                ("grok-3", "grok-3", True),
                ("grok-3-mini", "grok-3-mini", True),
            ]),
        ),
        "ollama": ProviderSpec(
            "ollama", "openai_compatible", _ollama_base_url(), "ollama", (), requires_key=False,
            models=_models("ollama", [
                ("gemma3:1b", "gemma3:1b", False),
                ("gemma3:4b", "gemma3:4b", False),
                ("gemma3:12b", "gemma3:12b", False),
            ]),
        ),
        "openRouter": ProviderSpec(
            "openRouter", "openai_compatible", "https://openrouter.ai/api/v1", "openrouter",
            ("OPENROUTER_API_KEY",),
            models=_models("openRouter", [
                ("gpt-oss-20b:free", "openai/gpt-oss-20b:free", False),
                ("qwen3-8b:free", "qwen/qwen3-8b:free", False),
                ("qwen3-14b:free", "qwen/qwen3-14b:free", False),
                ("qwen3-coder:free", "qwen/qwen3-coder:free", True),
                ("deepseek-r1:free", "deepseek/deepseek-r1-0528:free", False),
                ("deepseek-v3:free", "deepseek/deepseek-chat-v3-0324:free", True),
                ("gemini-2.0-flash-exp:free", "google/gemini-2.0-flash-exp:free", False),
            ]),
        ),
    }

    image_capable = ModelSpec(
        "google", "gemini-2.5-flash-image-preview", "gemini-2.5-flash-image-preview",
        supports_tools=True, image_capable=True,
    )
    providers["google"].models[image_capable.name] = image_capable

    image_only = {
        "openai": ["gpt-image-1", "dall-e-3", "dall-e-2"],
        "google": ["imagen-3.0-generate-002"],
        "xai": ["grok-2-image"],
    }
    for provider, names in image_only.items():
        for name in names:
            providers[provider].models[name] = ModelSpec(
                provider, name, name, supports_tools=False, image_only=True,
            )
    return providers


def _custom_providers(raw: str | None) -> dict[str, ProviderSpec]:
    """Parse OPENAI_COMPATIBLE_DATA; invalid input is logged and ignored."""
    if not raw or not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("OPENAI_COMPATIBLE_DATA is not valid JSON: %s", e)
        return {}
    if not isinstance(data, list):
        logger.warning("OPENAI_COMPATIBLE_DATA must be a list of providers")
        return {}

    providers: dict[str, ProviderSpec] = {}
    for entry in data:
        if not isinstance(entry, dict) or not entry.get("provider") or not entry.get("baseUrl"):
            continue
        name = str(entry["provider"])
        models = {}
        for model in entry.get("models") or []:
            if not isinstance(model, dict) or not model.get("apiName"):
                continue
            ui_name = str(model.get("uiName") or model["apiName"])
            models[ui_name] = ModelSpec(
                name, ui_name, str(model["apiName"]), supports_tools=model.get("supportsTools", True) is not False,
            )
        providers[name] = ProviderSpec(
            name, "openai_compatible", str(entry["baseUrl"]).rstrip("/"), name.lower(),
            static_key=entry.get("apiKey") or None, models=models,
        )
    return providers


@lru_cache(maxsize=1)
def get_providers() -> dict[str, ProviderSpec]:
    """Custom providers first so static entries win on name clashes."""
    return {**_custom_providers(os.environ.get("OPENAI_COMPATIBLE_DATA")), **_static_providers()}


def reload_catalog() -> None:
    """Re-read environment-driven catalog entries. Used by tests."""
    get_providers.cache_clear()


def get_default_ref() -> ModelRef:
    configured = ModelRef.parse(os.environ.get("CHATBRIDGE_DEFAULT_MODEL", "").strip())
    if configured is not None and lookup(configured) is not None:
        return configured
    return ModelRef.parse(DEFAULT_MODEL_REF)


def lookup(ref: Any) -> ModelSpec | None:
    parsed = ModelRef.parse(ref)
    if parsed is None:
        return None
    provider = get_providers().get(parsed.provider)
    if provider is None:
        return None
    return provider.models.get(parsed.model)


def resolve_spec(ref: Any) -> ModelSpec:
    """Return the catalog entry for ref, falling back to the default model."""
    spec = lookup(ref)
    if spec is not None:
        return spec
    return lookup(get_default_ref())


def get_provider(name: str) -> ProviderSpec | None:
    return get_providers().get(name)


def is_tool_call_unsupported(ref: Any) -> bool:
    return not resolve_spec(ref).supports_tools


def is_image_only(ref: Any) -> bool:
    spec = lookup(ref)
    return bool(spec and spec.image_only)


def is_image_capable(ref: Any) -> bool:
    spec = lookup(ref)
    return bool(spec and spec.image_capable)


def list_models() -> list[dict]:
    """Catalog grouped by provider, as served by GET /api/chat/models."""
    return [
        {
            "provider": provider.name,
            "models": [
                {
                    "name": spec.name,
                    "isToolCallUnsupported": not spec.supports_tools,
                    "supportsImage": spec.image_only or spec.image_capable,
                }
                for spec in provider.models.values()
            ],
        }
        for provider in get_providers().values()
    ]
