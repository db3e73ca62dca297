"""
Generation backends behind a single provider capability.

Supports:
- Ollama (local inference server over HTTP)
- Anthropic (Claude models)
- OpenAI and OpenAI-compatible endpoints

Every adapter raises the dispatch error taxonomy from `types` so the
selector and queue never see SDK-specific exceptions.
"""

from __future__ import annotations

import logging
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import anthropic
import httpx
import openai
from dotenv import load_dotenv

from .config import DispatchConfig
from .types import (
    AuthError,
    NetworkError,
    NoBackendAvailableError,
    OverloadError,
    ProviderError,
    ProviderResponse,
    ProviderTimeoutError,
    RateLimitError,
)

logger = logging.getLogger(__name__)

# Auto-load .env from the working directory
_env_file = Path.cwd() / ".env"
if _env_file.exists():
    load_dotenv(_env_file)

OLLAMA_URL = "http://127.0.0.1:11434"

OVERLOAD_STATUS_CODES = frozenset({500, 502, 503, 504, 529})


def has_credential(env_name: str | None) -> bool:
    """Whether the named credential is present in the environment."""
    return bool(env_name and os.environ.get(env_name))


def _map_sdk_error(sdk: Any, e: Exception, backend: str) -> ProviderError:
    """Translate an anthropic/openai SDK exception into the dispatch taxonomy."""
    if isinstance(e, (sdk.AuthenticationError, sdk.PermissionDeniedError)):
        return AuthError(f"{backend}: authentication failed: {e}", backend)
    if isinstance(e, sdk.RateLimitError):
        return RateLimitError(f"{backend}: rate limited: {e}", backend)
    # APITimeoutError subclasses APIConnectionError, so it goes first
    if isinstance(e, sdk.APITimeoutError):
        return ProviderTimeoutError(f"{backend}: request timed out", backend)
    if isinstance(e, sdk.APIConnectionError):
        return NetworkError(f"{backend}: connection failed: {e}", backend)
    if isinstance(e, sdk.APIStatusError) and e.status_code in OVERLOAD_STATUS_CODES:
        return OverloadError(f"{backend}: overloaded ({e.status_code})", backend)
    return ProviderError(f"{backend}: {e}", backend)


def _map_http_error(e: httpx.HTTPError, backend: str) -> ProviderError:
    """Translate an httpx exception into the dispatch taxonomy."""
    if isinstance(e, httpx.TimeoutException):
        return ProviderTimeoutError(f"{backend}: request timed out", backend)
    if isinstance(e, httpx.HTTPStatusError):
        status = e.response.status_code
        if status in (401, 403):
            return AuthError(f"{backend}: authentication failed ({status})", backend)
        if status == 429:
            return RateLimitError(f"{backend}: rate limited", backend)
        if status in OVERLOAD_STATUS_CODES:
            return OverloadError(f"{backend}: overloaded ({status})", backend)
        return ProviderError(f"{backend}: HTTP {status}: {e.response.text[:200]}", backend)
    return NetworkError(f"{backend}: connection failed: {e}", backend)


def _split_system(messages: list[dict[str, str]]) -> tuple[str | None, list[dict[str, str]]]:
    """Separate system messages from the conversation."""
    system_parts = [m["content"] for m in messages if m.get("role") == "system"]
    rest = [m for m in messages if m.get("role") != "system"]
    return ("\n\n".join(system_parts) if system_parts else None), rest


class BaseProvider(ABC):
    """Abstract generation backend."""

    name: str = "provider"
    is_local: bool = False

    @abstractmethod
    async def invoke(
        self,
        model: str,
        messages: list[dict[str, str]],
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> ProviderResponse:
        """Run one generation call."""
        pass

    @abstractmethod
    async def is_available(self) -> bool:
        """Connectivity / credential check. Never raises."""
        pass


class OllamaProvider(BaseProvider):
    """Ollama local inference server."""

    is_local = True

    def __init__(
        self,
        name: str = "ollama",
        base_url: str | None = None,
        timeout_s: float = 120.0,
        check_timeout_s: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.name = name
        self.base_url = (base_url or OLLAMA_URL).rstrip("/")
        self.timeout_s = timeout_s
        self.check_timeout_s = check_timeout_s
        self._transport = transport

    async def invoke(
        self,
        model: str,
        messages: list[dict[str, str]],
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> ProviderResponse:
        payload = {
            "model": model,
            "messages": messages,
            "stream": False,
            "options": {
                "num_predict": max_tokens,
                "temperature": temperature,
            },
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/api/chat", json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise _map_http_error(e, self.name) from e
        except ValueError as e:
            raise ProviderError(f"{self.name}: response body is not JSON: {e}", self.name) from e

        try:
            return ProviderResponse(
                content=data["message"].get("content") or "",
                input_tokens=data.get("prompt_eval_count", 0),
                output_tokens=data.get("eval_count", 0),
                model=data.get("model", model),
                stop_reason=data.get("done_reason"),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ProviderError(f"{self.name}: unexpected chat payload: {e!r}", self.name) from e

    async def is_available(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.check_timeout_s, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/api/tags")
                return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def list_models(self) -> list[str]:
        """Names of models pulled into the local server."""
        try:
            async with httpx.AsyncClient(timeout=5.0, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/api/tags")
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise _map_http_error(e, self.name) from e
        except ValueError as e:
            raise ProviderError(f"{self.name}: response body is not JSON: {e}", self.name) from e
        try:
            return [m["name"] for m in data.get("models", [])]
        except (KeyError, TypeError, AttributeError) as e:
            raise ProviderError(f"{self.name}: unexpected tags payload: {e!r}", self.name) from e


class AnthropicProvider(BaseProvider):
    """Anthropic Claude API."""

    def __init__(
        self,
        name: str = "anthropic",
        api_key: str | None = None,
        credential_env: str = "ANTHROPIC_API_KEY",
        timeout_s: float = 120.0,
    ):
        self.name = name
        self.api_key = api_key or os.environ.get(credential_env)
        if not self.api_key:
            raise AuthError(f"Anthropic API key required. Set {credential_env}.", name)
        self.client = anthropic.AsyncAnthropic(api_key=self.api_key, timeout=timeout_s)

    async def invoke(
        self,
        model: str,
        messages: list[dict[str, str]],
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> ProviderResponse:
        system, conversation = _split_system(messages)
        request_params: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": conversation,
        }
        if system:
            request_params["system"] = system

        try:
            response = await self.client.messages.create(**request_params)
        except anthropic.APIError as e:
            raise _map_sdk_error(anthropic, e, self.name) from e

        content = ""
        for block in response.content:
            if block.type == "text":
                content += block.text

        return ProviderResponse(
            content=content,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=response.model,
            stop_reason=response.stop_reason,
        )

    async def is_available(self) -> bool:
        return bool(self.api_key)


class OpenAIProvider(BaseProvider):
    """OpenAI (or OpenAI-compatible) chat completions API."""

    def __init__(
        self,
        name: str = "openai",
        api_key: str | None = None,
        credential_env: str = "OPENAI_API_KEY",
        base_url: str | None = None,
        timeout_s: float = 120.0,
    ):
        self.name = name
        self.api_key = api_key or os.environ.get(credential_env)
        if not self.api_key:
            raise AuthError(f"OpenAI API key required. Set {credential_env}.", name)
        self.client = openai.AsyncOpenAI(api_key=self.api_key, base_url=base_url, timeout=timeout_s)

    async def invoke(
        self,
        model: str,
        messages: list[dict[str, str]],
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> ProviderResponse:
        params: dict[str, Any] = {"model": model, "messages": messages}
        # Reasoning and GPT-5 models take max_completion_tokens and fixed temperature
        if model.startswith(("gpt-5", "o1", "o3")):
            params["max_completion_tokens"] = max_tokens
        else:
            params["max_tokens"] = max_tokens
            params["temperature"] = temperature

        try:
            response = await self.client.chat.completions.create(**params)
        except openai.APIError as e:
            raise _map_sdk_error(openai, e, self.name) from e

        if not response.choices:
            raise ProviderError(f"{self.name}: completion returned no choices", self.name)
        choice = response.choices[0]
        return ProviderResponse(
            content=choice.message.content or "",
            input_tokens=response.usage.prompt_tokens if response.usage else 0,
            output_tokens=response.usage.completion_tokens if response.usage else 0,
            model=response.model,
            stop_reason=choice.finish_reason,
        )

    async def is_available(self) -> bool:
        return bool(self.api_key)


class ProviderRegistry:
    """
    Named backends behind one invoke/availability interface.

    Availability checks are cached so the selector can check on every
    dispatch without hammering local servers.
    """

    def __init__(
        self,
        providers: dict[str, BaseProvider] | None = None,
        availability_ttl_s: float = 30.0,
    ):
        self._providers: dict[str, BaseProvider] = dict(providers or {})
        self.availability_ttl_s = availability_ttl_s
        self._availability: dict[str, tuple[bool, float]] = {}

    @classmethod
    def from_config(cls, config: DispatchConfig) -> ProviderRegistry:
        """Build adapters for every configured backend that can be constructed."""
        registry = cls()
        timeout = config.execution.call_timeout_s
        for name, backend in config.backends.items():
            if backend.local:
                registry.register(
                    name, OllamaProvider(name=name, base_url=backend.base_url, timeout_s=timeout)
                )
                continue
            if not has_credential(backend.credential_env):
                logger.debug(f"Skipping cloud backend {name}: {backend.credential_env} not set")
                continue
            if name == "anthropic":
                provider: BaseProvider = AnthropicProvider(
                    name=name, credential_env=backend.credential_env or "", timeout_s=timeout
                )
            else:
                provider = OpenAIProvider(
                    name=name,
                    credential_env=backend.credential_env or "",
                    base_url=backend.base_url,
                    timeout_s=timeout,
                )
            registry.register(name, provider)
        return registry

    def register(self, name: str, provider: BaseProvider) -> None:
        self._providers[name] = provider
        self._availability.pop(name, None)

    def get(self, name: str) -> BaseProvider | None:
        return self._providers.get(name)

    @property
    def backends(self) -> list[str]:
        return list(self._providers)

    async def invoke(
        self,
        backend: str,
        model: str,
        messages: list[dict[str, str]],
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> ProviderResponse:
        provider = self._providers.get(backend)
        if provider is None:
            raise NoBackendAvailableError(f"No provider registered for backend {backend!r}")

        try:
            return await provider.invoke(model, messages, max_tokens, temperature)
        except (NetworkError, ProviderTimeoutError):
            # Force a fresh check before this backend is chosen again
            self.invalidate(backend)
            raise

    async def is_available(self, backend: str) -> bool:
        provider = self._providers.get(backend)
        if provider is None:
            return False

        cached = self._availability.get(backend)
        now = time.monotonic()
        if cached is not None and now - cached[1] < self.availability_ttl_s:
            return cached[0]

        available = await provider.is_available()
        self._availability[backend] = (available, now)
        if not available:
            logger.debug(f"Backend {backend} is not available")
        return available

    def invalidate(self, backend: str | None = None) -> None:
        """Drop cached availability for one or all backends."""
        if backend is None:
            self._availability.clear()
        else:
            self._availability.pop(backend, None)


__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "OLLAMA_URL",
    "OllamaProvider",
    "OpenAIProvider",
    "ProviderRegistry",
    "has_credential",
]
