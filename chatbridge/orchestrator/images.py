"""Image synthesis dispatch.

Each engine is a row in ``STRATEGIES``: which credential it needs, which
abstract parameters it accepts, its default sub-model and an async call
adapter over httpx. ``plan`` resolves everything that can fail locally
(engine name, credential, parameter filtering) before any network call;
``generate`` performs the call and returns one base64 image.

Example:
    image_plan = plan(prompt, {"engine": "openai", "quality": "high"}, chat_spec, user_id, keys)
    image = await generate(image_plan, signal)
    part = to_markdown_part(image)
"""

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from chatbridge.errors import UpstreamCallError, UpstreamConfigError, ValidationError
from chatbridge.orchestrator.cancellation import CancellationSignal
from chatbridge.orchestrator.models import ModelSpec
from chatbridge.services.user_key_service import UserKeyService
from chatbridge.utils.redaction import redact_body

logger = logging.getLogger(__name__)

IMAGE_TIMEOUT_SECONDS = 120.0
POLL_INTERVAL_SECONDS = 2.0
MAX_POLL_ATTEMPTS = 60

_QUALITY_MAP = {"low": "standard", "medium": "standard", "high": "hd", "auto": "hd"}

# fal's flux endpoints take a named image_size instead of a ratio
_FAL_IMAGE_SIZES = {
    "1:1": "square_hd",
    "4:3": "landscape_4_3",
    "16:9": "landscape_16_9",
    "3:4": "portrait_4_3",
    "9:16": "portrait_16_9",
}


@dataclass
class GeneratedImage:
    base64: str
    media_type: str = "image/png"


@dataclass
class ImagePlan:
    """Everything needed to call one engine, resolved before the call."""

    engine: str
    model: str
    prompt: str
    api_key: str
    base_url: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    provider_options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EngineStrategy:
    name: str
    credential_name: str
    env_vars: tuple[str, ...]
    default_model: str
    accepts: frozenset[str]
    call: Callable[..., Awaitable[GeneratedImage]]
    style_models: frozenset[str] = frozenset()
    quality_models: frozenset[str] = frozenset()

    def filter_params(self, model: str, settings: dict) -> dict[str, Any]:
        """Keep only the parameters this engine and sub-model accept."""
        params: dict[str, Any] = {}
        if "size" in self.accepts and settings.get("size"):
            params["size"] = settings["size"]
        if "aspectRatio" in self.accepts and settings.get("aspectRatio"):
            params["aspectRatio"] = settings["aspectRatio"]
        if model in self.style_models and settings.get("style"):
            params["style"] = settings["style"]
        if model in self.quality_models:
            quality = settings.get("quality")
            quality = _QUALITY_MAP.get(quality, quality)
            if quality in ("standard", "hd"):
                params["quality"] = quality
        return params


# -- shared HTTP helpers ----------------------------------------------------


def _check(response: httpx.Response, engine: str) -> Any:
    try:
        body = response.json()
    except ValueError:
        body = response.text
    if not response.is_success:
        logger.warning("Image engine %s returned %d", engine, response.status_code)
        raise UpstreamCallError(engine, response.status_code, redact_body(body))
    return body


async def _guarded(signal: CancellationSignal | None, awaitable: Awaitable[Any]) -> Any:
    if signal is None:
        return await awaitable
    return await signal.guard(awaitable)


def _from_data_url(url: str) -> GeneratedImage | None:
    if not url.startswith("data:") or "," not in url:
        return None
    meta, data = url[5:].split(",", 1)
    return GeneratedImage(base64=data, media_type=meta.split(";", 1)[0] or "image/png")


async def _download(client: httpx.AsyncClient, url: str, engine: str, signal: CancellationSignal | None) -> GeneratedImage:
    inline = _from_data_url(url)
    if inline is not None:
        return inline
    response = await _guarded(signal, client.get(url))
    if not response.is_success:
        raise UpstreamCallError(engine, response.status_code, "image download failed")
    media_type = response.headers.get("content-type", "image/png").split(";", 1)[0]
    return GeneratedImage(base64=base64.b64encode(response.content).decode("ascii"), media_type=media_type)


# -- engine adapters --------------------------------------------------------


async def _call_openai(plan: ImagePlan, client: httpx.AsyncClient, signal: CancellationSignal | None) -> GeneratedImage:
    body: dict[str, Any] = {"model": plan.model, "prompt": plan.prompt, "n": 1}
    if plan.model.startswith("dall-e"):
        body["response_format"] = "b64_json"
    body.update(plan.params)
    body.update(plan.provider_options)
    base = (plan.base_url or "https://api.openai.com/v1").rstrip("/")
    response = await _guarded(signal, client.post(
        f"{base}/images/generations",
        headers={"Authorization": f"Bearer {plan.api_key}"},
        json=body,
    ))
    data = (_check(response, plan.engine).get("data") or [{}])[0]
    if data.get("b64_json"):
        return GeneratedImage(base64=data["b64_json"], media_type="image/png")
    if data.get("url"):
        return await _download(client, data["url"], plan.engine, signal)
    raise UpstreamCallError(plan.engine, response.status_code, "response contained no image")


async def _call_google(plan: ImagePlan, client: httpx.AsyncClient, signal: CancellationSignal | None) -> GeneratedImage:
    base = (plan.base_url or "https://generativelanguage.googleapis.com/v1beta").rstrip("/")
    headers = {"x-goog-api-key": plan.api_key}

    if plan.model.startswith("imagen"):
        parameters: dict[str, Any] = {"sampleCount": 1}
        if plan.params.get("aspectRatio"):
            parameters["aspectRatio"] = plan.params["aspectRatio"]
        parameters.update(plan.provider_options)
        response = await _guarded(signal, client.post(
            f"{base}/models/{plan.model}:predict",
            headers=headers,
            json={"instances": [{"prompt": plan.prompt}], "parameters": parameters},
        ))
        prediction = (_check(response, plan.engine).get("predictions") or [{}])[0]
        if prediction.get("bytesBase64Encoded"):
            return GeneratedImage(prediction["bytesBase64Encoded"], prediction.get("mimeType") or "image/png")
        raise UpstreamCallError(plan.engine, response.status_code, "response contained no image")

    # Gemini image-capable chat models answer with inline image parts
    generation_config: dict[str, Any] = {"responseModalities": ["TEXT", "IMAGE"]}
    if plan.params.get("aspectRatio"):
        generation_config["imageConfig"] = {"aspectRatio": plan.params["aspectRatio"]}
    generation_config.update(plan.provider_options)
    response = await _guarded(signal, client.post(
        f"{base}/models/{plan.model}:generateContent",
        headers=headers,
        json={"contents": [{"parts": [{"text": plan.prompt}]}], "generationConfig": generation_config},
    ))
    for candidate in _check(response, plan.engine).get("candidates") or []:
        for part in (candidate.get("content") or {}).get("parts") or []:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                return GeneratedImage(inline["data"], inline.get("mimeType") or inline.get("mime_type") or "image/png")
    raise UpstreamCallError(plan.engine, response.status_code, "response contained no image")


async def _call_fal(plan: ImagePlan, client: httpx.AsyncClient, signal: CancellationSignal | None) -> GeneratedImage:
    body: dict[str, Any] = {"prompt": plan.prompt, "num_images": 1}
    size = _FAL_IMAGE_SIZES.get(plan.params.get("aspectRatio", ""))
    if size:
        body["image_size"] = size
    body.update(plan.provider_options)
    base = (plan.base_url or "https://fal.run").rstrip("/")
    response = await _guarded(signal, client.post(
        f"{base}/{plan.model}",
        headers={"Authorization": f"Key {plan.api_key}"},
        json=body,
    ))
    images = _check(response, plan.engine).get("images") or []
    if not images or not images[0].get("url"):
        raise UpstreamCallError(plan.engine, response.status_code, "response contained no image")
    return await _download(client, images[0]["url"], plan.engine, signal)


async def _call_luma(plan: ImagePlan, client: httpx.AsyncClient, signal: CancellationSignal | None) -> GeneratedImage:
    base = (plan.base_url or "https://api.lumalabs.ai/dream-machine/v1").rstrip("/")
    headers = {"Authorization": f"Bearer {plan.api_key}"}
    body: dict[str, Any] = {"prompt": plan.prompt, "model": plan.model}
    if plan.params.get("aspectRatio"):
        body["aspect_ratio"] = plan.params["aspectRatio"]
    body.update(plan.provider_options)
    response = await _guarded(signal, client.post(f"{base}/generations/image", headers=headers, json=body))
    generation = _check(response, plan.engine)

    for _ in range(MAX_POLL_ATTEMPTS):
        state = generation.get("state")
        if state == "completed":
            url = (generation.get("assets") or {}).get("image")
            if not url:
                break
            return await _download(client, url, plan.engine, signal)
        if state == "failed":
            raise UpstreamCallError(plan.engine, 200, generation.get("failure_reason") or "generation failed")
        await _guarded(signal, asyncio.sleep(POLL_INTERVAL_SECONDS))
        response = await _guarded(signal, client.get(f"{base}/generations/{generation['id']}", headers=headers))
        generation = _check(response, plan.engine)
    raise UpstreamCallError(plan.engine, 504, "generation did not complete")


async def _call_replicate(plan: ImagePlan, client: httpx.AsyncClient, signal: CancellationSignal | None) -> GeneratedImage:
    base = (plan.base_url or "https://api.replicate.com/v1").rstrip("/")
    headers = {"Authorization": f"Bearer {plan.api_key}", "Prefer": "wait"}
    model_input: dict[str, Any] = {"prompt": plan.prompt}
    if plan.params.get("aspectRatio"):
        model_input["aspect_ratio"] = plan.params["aspectRatio"]
    if plan.params.get("size"):
        width, _, height = str(plan.params["size"]).partition("x")
        if width.isdigit() and height.isdigit():
            model_input["width"], model_input["height"] = int(width), int(height)
    model_input.update(plan.provider_options)

    if ":" in plan.model:
        version = plan.model.split(":", 1)[1]
        request = client.post(f"{base}/predictions", headers=headers, json={"version": version, "input": model_input})
    else:
        request = client.post(f"{base}/models/{plan.model}/predictions", headers=headers, json={"input": model_input})
    prediction = _check(await _guarded(signal, request), plan.engine)

    for _ in range(MAX_POLL_ATTEMPTS):
        status = prediction.get("status")
        if status == "succeeded":
            output = prediction.get("output")
            url = output[0] if isinstance(output, list) and output else output
            if not isinstance(url, str):
                break
            return await _download(client, url, plan.engine, signal)
        if status in ("failed", "canceled"):
            raise UpstreamCallError(plan.engine, 200, prediction.get("error") or status)
        poll_url = (prediction.get("urls") or {}).get("get")
        if not poll_url:
            break
        await _guarded(signal, asyncio.sleep(POLL_INTERVAL_SECONDS))
        prediction = _check(await _guarded(signal, client.get(poll_url, headers=headers)), plan.engine)
    raise UpstreamCallError(plan.engine, 504, "prediction did not complete")


STRATEGIES: dict[str, EngineStrategy] = {
    "openai": EngineStrategy(
        "openai", "openai", ("OPENAI_API_KEY",), "gpt-image-1",
        frozenset({"size"}), _call_openai,
        style_models=frozenset({"dall-e-3"}),
        quality_models=frozenset({"dall-e-3", "dall-e-2"}),
    ),
    "google": EngineStrategy(
        "google", "google", ("GOOGLE_API_KEY", "GOOGLE_GENERATIVE_AI_API_KEY"), "imagen-3.0-generate-002",
        frozenset({"aspectRatio"}), _call_google,
    ),
    "fal": EngineStrategy(
        "fal", "fal", ("FAL_API_KEY", "FAL_KEY"), "fal-ai/flux/dev",
        frozenset({"aspectRatio"}), _call_fal,
    ),
    "luma": EngineStrategy(
        "luma", "luma", ("LUMA_API_KEY",), "photon-1",
        frozenset({"aspectRatio"}), _call_luma,
    ),
    "replicate": EngineStrategy(
        "replicate", "replicate", ("REPLICATE_API_TOKEN",), "black-forest-labs/flux-schnell",
        frozenset({"size", "aspectRatio"}), _call_replicate,
    ),
}


# -- dispatch ---------------------------------------------------------------


def extract_prompt(parts: list[dict]) -> str:
    """Join the literal text parts of a message."""
    return "\n".join(p.get("text") or "" for p in parts if p.get("type") == "text").strip()


def resolve_engine(settings: dict, chat_spec: ModelSpec | None) -> str:
    provider = chat_spec.provider if chat_spec else None
    engine = str(settings.get("engine") or provider or "openai").lower()
    if engine == "auto":
        engine = (provider or "openai").lower()
    return engine


def _provider_overrides(engine: str, raw: Any) -> dict[str, Any]:
    if not isinstance(raw, dict):
        return {}
    scoped = raw.get(engine)
    if isinstance(scoped, dict):
        return dict(scoped)
    return {k: v for k, v in raw.items() if k not in STRATEGIES}


def plan(
    prompt: str,
    settings: dict | None,
    chat_spec: ModelSpec | None,
    user_id: str,
    keys: UserKeyService,
) -> ImagePlan:
    """Resolve engine, sub-model, credential and parameters.

    Raises:
        ValidationError: The engine name is not in the strategy table.
        UpstreamConfigError: No credential for the engine's provider.
    """
    settings = settings or {}
    engine = resolve_engine(settings, chat_spec)
    strategy = STRATEGIES.get(engine)
    if strategy is None:
        raise ValidationError(f"Selected engine '{engine}' is not implemented")

    model = settings.get("imageModel")
    if not model and chat_spec and chat_spec.provider == engine and (chat_spec.image_only or chat_spec.image_capable):
        model = chat_spec.api_name
    model = model or strategy.default_model

    key = keys.resolve_key(user_id, strategy.credential_name, strategy.env_vars)
    if key is None:
        raise UpstreamConfigError(f"No {engine} key is configured for image generation")

    return ImagePlan(
        engine=engine,
        model=model,
        prompt=prompt,
        api_key=key.secret,
        base_url=key.base_url,
        params=strategy.filter_params(model, settings),
        provider_options=_provider_overrides(engine, settings.get("providerOptions")),
    )


async def generate(
    image_plan: ImagePlan,
    signal: CancellationSignal | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GeneratedImage:
    """Call the planned engine and return exactly one image."""
    strategy = STRATEGIES[image_plan.engine]
    logger.info("Generating image with %s/%s", image_plan.engine, image_plan.model)
    async with httpx.AsyncClient(transport=transport, timeout=IMAGE_TIMEOUT_SECONDS) as client:
        try:
            return await strategy.call(image_plan, client, signal)
        except httpx.TransportError as e:
            raise UpstreamCallError(image_plan.engine, 503, str(e)) from e


def to_data_url(image: GeneratedImage) -> str:
    if image.base64.startswith("data:"):
        return image.base64
    return f"data:{image.media_type};base64,{image.base64}"


def to_markdown_part(image: GeneratedImage) -> dict:
    return {"type": "text", "text": f"![image]({to_data_url(image)})"}
