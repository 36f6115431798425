"""Model provider gateway supporting multiple LLM vendors.

Every provider is reached through its OpenAI-compatible chat completions
endpoint, so a single ``AsyncOpenAI`` client type serves Gemini, GPT and
Claude models alike. Routing priority:

1. AI gateway (requires ``ai_gateway_enabled`` and a short-lived OIDC token).
2. Helicone observability proxy (requires ``helicone_enabled`` and a key).
3. Direct connection to the provider.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from openai import AsyncOpenAI

from ..settings import SettingsStore, is_enabled, resolve_setting

logger = logging.getLogger(__name__)

Provider = Literal["google", "openai", "anthropic"]
RoutingMode = Literal["gateway", "proxy", "direct"]

DEFAULT_PROVIDER: Provider = "google"

AI_GATEWAY_BASE_URL = "https://ai-gateway.vercel.sh/v1"
AI_GATEWAY_TOKEN_ENV = "VERCEL_OIDC_TOKEN"

_PROVIDER_API_KEYS: Mapping[str, tuple[str, str]] = {
    "google": ("gemini_api_key", "GEMINI_API_KEY"),
    "openai": ("openai_api_key", "OPENAI_API_KEY"),
    "anthropic": ("anthropic_api_key", "ANTHROPIC_API_KEY"),
}

_DIRECT_BASE_URLS: Mapping[str, str] = {
    "google": "https://generativelanguage.googleapis.com/v1beta/openai/",
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1/",
}

# Google goes through the generic gateway and names its upstream explicitly.
_HELICONE_GATEWAYS: Mapping[str, dict[str, str]] = {
    "google": {
        "base_url": "https://gateway.helicone.ai/v1beta/openai/",
        "target_url": "https://generativelanguage.googleapis.com",
    },
    "openai": {"base_url": "https://oai.helicone.ai/v1"},
    "anthropic": {"base_url": "https://anthropic.helicone.ai/v1/"},
}

_BYOK_HEADERS: Mapping[str, str] = {
    "google": "x-google-api-key",
    "openai": "x-openai-api-key",
    "anthropic": "x-anthropic-api-key",
}


class ProviderConfigurationError(RuntimeError):
    """Raised when a provider cannot be called because of missing configuration."""


def get_provider_from_model(model_id: str) -> Provider:
    """Detect the provider family from a model id prefix.

    ``gemini*`` maps to google, ``gpt*`` to openai and ``claude*`` to
    anthropic. Anything else falls back to :data:`DEFAULT_PROVIDER`.
    """

    normalized = (model_id or "").strip().lower()
    if normalized.startswith("gemini"):
        return "google"
    if normalized.startswith("gpt"):
        return "openai"
    if normalized.startswith("claude"):
        return "anthropic"
    return DEFAULT_PROVIDER


def is_supported_model(model_id: str) -> bool:
    normalized = (model_id or "").strip().lower()
    return normalized.startswith(("gemini", "gpt", "claude"))


@dataclass
class ToolCallRequest:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class ModelTurn:
    """One assistant turn returned by the model."""

    text: str
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    usage: dict[str, int] | None = None

    def as_message(self) -> dict[str, Any]:
        """Return the turn as an assistant message to append to the history."""

        message: dict[str, Any] = {"role": "assistant", "content": self.text or None}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.arguments),
                    },
                }
                for call in self.tool_calls
            ]
        return message


def _parse_arguments(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"_raw": parsed}


@dataclass
class ModelHandle:
    """Callable handle for one model behind a resolved route."""

    model_id: str
    provider: Provider
    api_key: str
    routing: RoutingMode
    base_url: str
    headers: dict[str, str] = field(default_factory=dict)
    request_model: str | None = None
    client: Any = None

    @property
    def bearer(self) -> str:
        """Token sent as ``Authorization``; the gateway route uses the OIDC token."""

        if self.routing == "gateway":
            return os.getenv(AI_GATEWAY_TOKEN_ENV, "")
        return self.api_key

    def _client(self) -> Any:
        if self.client is None:
            self.client = AsyncOpenAI(
                api_key=self.bearer,
                base_url=self.base_url,
                default_headers=self.headers or None,
            )
        return self.client

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelTurn:
        kwargs: dict[str, Any] = {
            "model": self.request_model or self.model_id,
            "messages": messages,
        }
        if tools:
            kwargs["tools"] = tools
        if temperature is not None:
            kwargs["temperature"] = temperature
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        completion = await self._client().chat.completions.create(**kwargs)
        if not completion.choices:
            raise RuntimeError(f"Model {self.model_id} returned no choices")
        message = completion.choices[0].message
        calls = [
            ToolCallRequest(
                id=call.id,
                name=call.function.name,
                arguments=_parse_arguments(call.function.arguments),
            )
            for call in (message.tool_calls or [])
        ]
        usage = None
        if getattr(completion, "usage", None) is not None:
            usage = {
                "prompt_tokens": completion.usage.prompt_tokens,
                "completion_tokens": completion.usage.completion_tokens,
                "total_tokens": completion.usage.total_tokens,
            }
        return ModelTurn(text=message.content or "", tool_calls=calls, usage=usage)


class ModelProviderGateway:
    """Resolve a model id to a :class:`ModelHandle`.

    Resolution re-reads settings on every call, so key or routing changes
    apply to the next run. HTTP clients are shared per route (base URL,
    bearer and headers) and released by :meth:`aclose`. Safe to call from
    several threads.
    """

    def __init__(self, settings: SettingsStore | None = None) -> None:
        self._settings = settings
        self._clients: dict[tuple, AsyncOpenAI] = {}
        self._clients_lock = threading.Lock()

    def get_api_key(self, provider: str) -> str | None:
        """Return the API key for ``provider`` from settings or environment."""

        setting_key, env_var = _PROVIDER_API_KEYS[provider]
        return resolve_setting(self._settings, setting_key, env_var)

    def resolve(self, model_id: str, api_key_override: str | None = None) -> ModelHandle:
        handle = self._route(model_id, api_key_override)
        handle.client = self._client_for(handle)
        return handle

    def _client_for(self, handle: ModelHandle) -> AsyncOpenAI:
        key = (handle.base_url, handle.bearer, tuple(sorted(handle.headers.items())))
        with self._clients_lock:
            client = self._clients.get(key)
            if client is None:
                client = AsyncOpenAI(
                    api_key=handle.bearer,
                    base_url=handle.base_url,
                    default_headers=handle.headers or None,
                )
                self._clients[key] = client
        return client

    async def aclose(self) -> None:
        """Close every cached client (application shutdown)."""

        with self._clients_lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            await client.close()

    def _route(self, model_id: str, api_key_override: str | None) -> ModelHandle:
        provider = get_provider_from_model(model_id)
        api_key = api_key_override or self.get_api_key(provider)
        if not api_key:
            raise ProviderConfigurationError(
                f"API key not configured for provider '{provider}'"
            )

        gateway_enabled = is_enabled(resolve_setting(self._settings, "ai_gateway_enabled"))
        oidc_token = os.getenv(AI_GATEWAY_TOKEN_ENV)
        if gateway_enabled and not oidc_token:
            logger.warning(
                "AI gateway enabled but %s is missing; using a non-gateway route",
                AI_GATEWAY_TOKEN_ENV,
            )
        if gateway_enabled and oidc_token:
            return self._gateway_handle(provider, model_id, api_key)

        helicone_key = None
        if is_enabled(resolve_setting(self._settings, "helicone_enabled")):
            helicone_key = resolve_setting(self._settings, "helicone_api_key")
        if helicone_key:
            return self._proxy_handle(provider, model_id, api_key, helicone_key)

        return ModelHandle(
            model_id=model_id,
            provider=provider,
            api_key=api_key,
            routing="direct",
            base_url=_DIRECT_BASE_URLS[provider],
        )

    def _gateway_handle(self, provider: Provider, model_id: str, api_key: str) -> ModelHandle:
        headers: dict[str, str] = {}
        if is_enabled(resolve_setting(self._settings, "ai_gateway_byok")):
            headers[_BYOK_HEADERS[provider]] = api_key
        gateway_model = f"{provider}/{model_id}"
        logger.info("AI gateway route selected for %s", gateway_model)
        return ModelHandle(
            model_id=model_id,
            provider=provider,
            api_key=api_key,
            routing="gateway",
            base_url=AI_GATEWAY_BASE_URL,
            headers=headers,
            request_model=gateway_model,
        )

    def _proxy_handle(
        self, provider: Provider, model_id: str, api_key: str, helicone_key: str
    ) -> ModelHandle:
        gateway = _HELICONE_GATEWAYS[provider]
        headers = {"Helicone-Auth": f"Bearer {helicone_key}"}
        if "target_url" in gateway:
            headers["Helicone-Target-URL"] = gateway["target_url"]
        logger.info("Helicone proxy route selected for %s", provider)
        return ModelHandle(
            model_id=model_id,
            provider=provider,
            api_key=api_key,
            routing="proxy",
            base_url=gateway["base_url"],
            headers=headers,
        )
