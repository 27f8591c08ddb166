"""
Remote, quota-metered chat providers via LangChain.

One client per vendor. OpenRouter is reached through ChatOpenAI pointed at its
OpenAI-compatible endpoint; OpenAI, Anthropic and Gemini use their LangChain
integrations directly. Retries are disabled at the SDK level: moving on to
another provider is the cascade's job, not the client's.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import Any, Optional

import structlog
from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI

from structgen.errors import (
    EmptyResponseError,
    ProviderError,
    error_code_of,
    status_code_of,
    summarize_error,
)
from structgen.models import GenerationOptions
from structgen.providers.base import JSON_ONLY_SYSTEM_PROMPT

logger = structlog.get_logger()

ModelFactory = Callable[[str, float, GenerationOptions], BaseChatModel]


class RemoteVendor(str, Enum):
    OPENROUTER = "openrouter"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


# Vendors that accept response_format={"type": "json_object"}
_JSON_MODE_VENDORS = frozenset({RemoteVendor.OPENROUTER, RemoteVendor.OPENAI})


def _transport_code(exc: BaseException) -> Optional[str]:
    """Transport code for SDK exceptions that carry no HTTP status."""
    code = error_code_of(exc)
    if code:
        return code
    name = type(exc).__name__.lower()
    if "timeout" in name:
        return "ETIMEDOUT"
    if "connection" in name:
        return "ECONNRESET"
    return None


def _content_text(response: Any) -> str:
    """Flatten an AIMessage content (str or list of parts) into text."""
    content = response.content if hasattr(response, "content") else response
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return str(content or "")


class RemoteChatClient:
    """ProviderClient for one remote vendor."""

    def __init__(
        self,
        vendor: RemoteVendor,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        default_headers: Optional[dict[str, str]] = None,
        temperature: float = 0.2,
        max_tokens: int = 2400,
        model_factory: Optional[ModelFactory] = None,
    ) -> None:
        self.vendor = vendor
        self._api_key = api_key
        self._base_url = base_url
        self._default_headers = {k: v for k, v in (default_headers or {}).items() if v}
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._model_factory = model_factory or self._build_model

    @property
    def supports_json_mode(self) -> bool:
        return self.vendor in _JSON_MODE_VENDORS

    def _build_model(self, model: str, timeout: float, options: GenerationOptions) -> BaseChatModel:
        temperature = options.temperature if options.temperature is not None else self._temperature
        max_tokens = options.max_output_tokens or self._max_tokens
        if self.vendor == RemoteVendor.ANTHROPIC:
            return ChatAnthropic(
                model=model,
                api_key=self._api_key,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=timeout,
                max_retries=0,
            )
        if self.vendor == RemoteVendor.GEMINI:
            return ChatGoogleGenerativeAI(
                model=model,
                google_api_key=self._api_key,
                temperature=temperature,
                max_output_tokens=max_tokens,
                timeout=timeout,
                max_retries=0,
            )
        kwargs: dict[str, Any] = {}
        if self._base_url:
            kwargs["base_url"] = self._base_url.rstrip("/")
        if self._default_headers:
            kwargs["default_headers"] = self._default_headers
        return ChatOpenAI(
            model=model,
            api_key=self._api_key,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            max_retries=0,
            **kwargs,
        )

    def _wrap(self, exc: BaseException, model: str) -> ProviderError:
        return ProviderError(
            summarize_error(exc),
            provider=self.vendor.value,
            model=model,
            status_code=status_code_of(exc),
            error_code=_transport_code(exc),
            body=getattr(exc, "body", None),
        )

    async def generate(
        self,
        model: str,
        prompt: str,
        timeout: float,
        options: GenerationOptions,
        system_prompt: str = JSON_ONLY_SYSTEM_PROMPT,
    ) -> str:
        chat = self._model_factory(model, timeout, options)
        messages = [
            SystemMessage(content=system_prompt),
            HumanMessage(content=prompt),
        ]
        try:
            if self.supports_json_mode:
                try:
                    response = await chat.bind(response_format={"type": "json_object"}).ainvoke(messages)
                except Exception as e:
                    if status_code_of(e) != 400:
                        raise
                    # Some routed models reject response_format; retry once without it
                    logger.info(
                        "json_mode_rejected",
                        provider=self.vendor.value,
                        model=model,
                        error=str(e)[:120],
                    )
                    response = await chat.ainvoke(messages)
            else:
                response = await chat.ainvoke(messages)
        except ProviderError:
            raise
        except Exception as e:
            raise self._wrap(e, model) from e

        content = _content_text(response)
        if not content.strip():
            raise EmptyResponseError(
                f"{self.vendor.value} returned empty content",
                provider=self.vendor.value,
                model=model,
            )
        return content
