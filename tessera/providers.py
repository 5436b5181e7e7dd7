"""AI completion provider abstractions."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from aiolimiter import AsyncLimiter
from openai import AsyncAzureOpenAI, AsyncOpenAI, AuthenticationError

from .batching import parse_batch_response, segment_marker
from .errors import (
    TranslationProviderConfigurationError,
    TranslationProviderError,
)

logger = logging.getLogger(__name__)


@dataclass
class CompletionRequest:
    """A system+user prompt pair sent to a completion endpoint."""

    system_prompt: str
    user_prompt: str
    model: Optional[str] = None
    temperature: float = 0.3
    max_tokens: Optional[int] = None
    json_mode: bool = False


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class CompletionResponse:
    content: str
    usage: Usage = field(default_factory=Usage)
    model: str = ""


class CompletionProvider(ABC):
    """Abstract adapter for AI completion backends."""

    name: str = "provider"
    default_model: str = ""

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Send the prompt pair and return raw text plus usage counters."""


class EchoCompletionProvider(CompletionProvider):
    """Returns the source text as its own translation and finds nothing to review."""

    name = "echo"
    default_model = "echo"

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        if request.json_mode:
            content = json.dumps({"issues": [], "scores": []})
        else:
            mapping = parse_batch_response(request.user_prompt)
            content = "\n\n".join(
                f"{segment_marker(index)}\n{text}" for index, text in mapping.items()
            )
        return CompletionResponse(
            content=content,
            usage=Usage(
                prompt_tokens=len(request.user_prompt) // 4,
                completion_tokens=len(content) // 4,
            ),
            model=request.model or self.default_model,
        )


class OpenAICompletionProvider(CompletionProvider):
    """Completion provider backed by OpenAI chat models."""

    name = "openai"
    DEFAULT_MODEL = "gpt-4o-mini"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        debug: bool = False,
    ) -> None:
        self.debug = debug
        self.timeout = timeout
        self._client = self._build_client(api_key or os.getenv("OPENAI_API_KEY"))
        self.default_model = model or self.DEFAULT_MODEL

    def _build_client(self, api_key: str | None) -> Any:
        if not api_key:
            raise TranslationProviderConfigurationError(
                "OpenAI configuration missing. Set OPENAI_API_KEY or choose a "
                "different provider."
            )
        return AsyncOpenAI(api_key=api_key, timeout=self.timeout)

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        model = request.model or self.default_model
        self._log_debug("provider.request.system_prompt", request.system_prompt)
        self._log_debug("provider.request.user_prompt", request.user_prompt)

        options: Dict[str, Any] = {
            "model": model,
            "temperature": request.temperature,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.user_prompt},
            ],
        }
        if request.max_tokens:
            options["max_tokens"] = request.max_tokens
        if request.json_mode:
            options["response_format"] = {"type": "json_object"}

        try:
            response = await self._client.chat.completions.create(**options)
        except AuthenticationError as exc:  # pragma: no cover - network call
            raise TranslationProviderConfigurationError(
                f"The AI provider rejected the credentials: {exc}"
            ) from exc
        except Exception as exc:  # pragma: no cover - network call
            raise TranslationProviderError(
                f"Translation service temporarily unavailable: {exc}"
            ) from exc

        self._log_debug("provider.response.raw", self._safe_dump_response(response))
        return CompletionResponse(
            content=self._extract_content(response),
            usage=self._extract_usage(response),
            model=getattr(response, "model", None) or model,
        )

    def _extract_content(self, response: Any) -> str:
        choices = getattr(response, "choices", None) or []
        for choice in choices:
            message = getattr(choice, "message", None)
            content = getattr(message, "content", None) if message is not None else None
            if content:
                return str(content)
        raise TranslationProviderError(
            "Translation provider response empty or unrecognised."
        )

    @staticmethod
    def _extract_usage(response: Any) -> Usage:
        usage = getattr(response, "usage", None)
        if usage is None:
            return Usage()
        return Usage(
            prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )

    def _log_debug(self, label: str, payload: Any) -> None:
        """Emit request/response dumps when provider debugging is enabled."""

        if not self.debug:
            return
        if isinstance(payload, (dict, list)):
            message = json.dumps(payload, ensure_ascii=False, indent=2, default=str)
        else:
            message = str(payload)
        logger.debug("[provider-debug] %s:\n%s", label, message)

    def _safe_dump_response(self, response: Any) -> Any:
        """Best-effort conversion of SDK objects into JSON-friendly data."""

        dump = getattr(response, "model_dump", None)
        if callable(dump):
            try:
                return dump()
            except Exception:
                logger.debug("model_dump failed for provider response", exc_info=True)
        return str(response)


class AzureOpenAICompletionProvider(OpenAICompletionProvider):
    """Completion provider for Azure OpenAI deployments."""

    name = "azure_openai"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        endpoint: str | None = None,
        api_version: str | None = None,
        deployment_name: str | None = None,
        timeout: float | None = None,
        debug: bool = False,
    ) -> None:
        self.debug = debug
        self.timeout = timeout
        settings = {
            "AZURE_OPENAI_API_KEY": api_key or os.getenv("AZURE_OPENAI_API_KEY"),
            "AZURE_OPENAI_ENDPOINT": endpoint or os.getenv("AZURE_OPENAI_ENDPOINT"),
            "AZURE_OPENAI_API_VERSION": api_version or os.getenv("AZURE_OPENAI_API_VERSION"),
            "AZURE_OPENAI_DEPLOYMENT_NAME": deployment_name
            or os.getenv("AZURE_OPENAI_DEPLOYMENT_NAME"),
        }
        missing = [name for name, value in settings.items() if not value]
        if missing:
            raise TranslationProviderConfigurationError(
                "Azure OpenAI configuration incomplete. Please set: "
                + ", ".join(missing)
                + "."
            )

        self._client = AsyncAzureOpenAI(
            api_key=settings["AZURE_OPENAI_API_KEY"],
            api_version=settings["AZURE_OPENAI_API_VERSION"],
            azure_endpoint=settings["AZURE_OPENAI_ENDPOINT"],
            timeout=timeout,
        )
        self.default_model = settings["AZURE_OPENAI_DEPLOYMENT_NAME"]  # type: ignore[assignment]


def build_provider(
    name: str | None,
    *,
    debug: bool = False,
    **options: Any,
) -> CompletionProvider:
    """Factory to create providers by name."""

    normalized = (name or "openai").strip().lower().replace("-", "_")
    if normalized in {"openai", "gpt", "default"}:
        return OpenAICompletionProvider(debug=debug, **options)
    if normalized in {"azure_openai", "azure", "azureopenai"}:
        return AzureOpenAICompletionProvider(debug=debug, **options)
    if normalized in {"echo", "noop", "mock"}:
        return EchoCompletionProvider()
    raise TranslationProviderConfigurationError(
        f"Unknown translation provider '{name}'."
    )


class ProviderRegistry:
    """Explicit set of providers handed to the engine at construction time."""

    def __init__(self, default: str | None = None) -> None:
        self._providers: Dict[str, CompletionProvider] = {}
        self._default = default

    @classmethod
    def single(cls, provider: CompletionProvider) -> "ProviderRegistry":
        registry = cls(default=provider.name)
        registry.register(provider)
        return registry

    def register(self, provider: CompletionProvider, *, name: str | None = None) -> None:
        key = (name or provider.name).lower()
        self._providers[key] = provider
        if self._default is None:
            self._default = key

    def get(self, name: str | None = None) -> CompletionProvider:
        key = (name or self._default or "").lower()
        try:
            return self._providers[key]
        except KeyError:
            raise TranslationProviderConfigurationError(
                f"No provider registered under '{key}'."
            ) from None

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._providers


class ProviderGateway:
    """Applies the rate ceiling and per-request timeout to every provider call."""

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        max_calls: int = 60,
        period: float = 60.0,
        timeout: float | None = 120.0,
    ) -> None:
        self.registry = registry
        self.limiter = AsyncLimiter(max_rate=max_calls, time_period=period)
        self.timeout = timeout

    async def complete(
        self,
        request: CompletionRequest,
        *,
        provider: str | None = None,
    ) -> CompletionResponse:
        backend = self.registry.get(provider)
        async with self.limiter:
            try:
                return await asyncio.wait_for(backend.complete(request), self.timeout)
            except asyncio.TimeoutError as exc:
                raise TranslationProviderError(
                    f"Provider '{backend.name}' did not answer within {self.timeout}s."
                ) from exc
