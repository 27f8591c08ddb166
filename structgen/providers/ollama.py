"""
Local, unmetered generation through an Ollama daemon.

Ollama has no quota, so it usually sits in the last provider group; it is
slow, so its attempts get the longest timeout ceiling. Models must be pulled
locally, hence the /api/tags preflight before building the group.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from structgen.errors import EmptyResponseError, ProviderError, ProviderTimeoutError, summarize_error
from structgen.models import GenerationOptions

logger = structlog.get_logger()

PROVIDER_NAME = "ollama"


def _transport_error(exc: httpx.TransportError, model: str) -> ProviderError:
    if isinstance(exc, httpx.TimeoutException):
        return ProviderTimeoutError(summarize_error(exc), provider=PROVIDER_NAME, model=model)
    code = "ECONNREFUSED" if isinstance(exc, httpx.ConnectError) else "ECONNRESET"
    return ProviderError(summarize_error(exc), provider=PROVIDER_NAME, model=model, error_code=code)


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]


def pick_model(
    available: list[str],
    fast_mode: bool,
    model: str,
    fast_model: str = "",
    preferred: tuple[str, ...] | list[str] = (),
) -> Optional[str]:
    """Configured model if installed, else the first installed preferred model.

    Falls back to the configured name when nothing matches so the caller still
    has something to try (and a meaningful error to record).
    """
    desired = fast_model if (fast_mode and fast_model) else model
    if desired and desired in available:
        return desired
    candidates = list(preferred) if fast_mode else [desired, *preferred]
    for cand in candidates:
        if cand and cand in available:
            return cand
    return desired or None


class OllamaClient:
    """ProviderClient for a local Ollama daemon."""

    def __init__(
        self,
        endpoint: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.endpoint, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def list_models(self, timeout: float) -> list[str]:
        """Names of locally pulled models; empty when the daemon is unreachable."""
        client = await self._get_client()
        try:
            r = await client.get("/api/tags", timeout=timeout)
            r.raise_for_status()
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("ollama_preflight_failed", endpoint=self.endpoint, error=str(e)[:120])
            return []
        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, list):
            return []
        return [m["name"] for m in models if isinstance(m, dict) and isinstance(m.get("name"), str)]

    async def _post_generate(self, payload: dict[str, Any], timeout: float) -> httpx.Response:
        client = await self._get_client()
        r = await client.post("/api/generate", json=payload, timeout=timeout)
        r.raise_for_status()
        return r

    async def generate(
        self,
        model: str,
        prompt: str,
        timeout: float,
        options: GenerationOptions,
    ) -> str:
        ollama_options: dict[str, Any] = {}
        if options.max_output_tokens:
            ollama_options["num_predict"] = options.max_output_tokens
        if options.temperature is not None:
            ollama_options["temperature"] = options.temperature
        payload: dict[str, Any] = {"model": model, "prompt": prompt, "stream": False, "format": "json"}
        if ollama_options:
            payload["options"] = ollama_options

        try:
            try:
                r = await self._post_generate(payload, timeout)
            except httpx.HTTPStatusError as e:
                # Older daemons / some models reject format=json together with options
                if e.response.status_code != 400 or not ollama_options:
                    raise
                logger.info("ollama_json_format_rejected", model=model)
                payload.pop("format", None)
                r = await self._post_generate(payload, timeout)
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                summarize_error(e),
                provider=PROVIDER_NAME,
                model=model,
                status_code=e.response.status_code,
                body=_response_body(e.response),
            ) from e
        except httpx.TransportError as e:
            raise _transport_error(e, model) from e

        try:
            data = r.json()
        except ValueError as e:
            raise ProviderError(
                f"Ollama returned a non-JSON envelope: {r.text[:120]}",
                provider=PROVIDER_NAME,
                model=model,
                status_code=r.status_code,
            ) from e
        content = data.get("response") if isinstance(data, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise EmptyResponseError("Ollama returned empty content", provider=PROVIDER_NAME, model=model)
        return content
