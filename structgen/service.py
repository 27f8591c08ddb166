"""
Structured generation service: configuration in, validated object out.

Builds provider clients once from settings (they are safe to share between
concurrent requests) and creates a fresh request, budget and trace for every
call to generate().
"""

from __future__ import annotations

import time
from typing import Optional

import structlog

from structgen.budget import Clock
from structgen.config import Settings, get_settings
from structgen.errors import ConfigError
from structgen.models import (
    ExpectedShape,
    FailureKind,
    GenerationFailure,
    GenerationRequest,
    GenerationTrace,
    ParsedResult,
    ProviderGroup,
)
from structgen.orchestrator import CascadeOrchestrator, SecondaryRepairer
from structgen.providers import catalog
from structgen.providers.base import ProviderClient
from structgen.providers.ollama import PROVIDER_NAME as OLLAMA, OllamaClient
from structgen.providers.remote import RemoteChatClient, RemoteVendor

logger = structlog.get_logger()


def build_clients(settings: Settings) -> dict[str, ProviderClient]:
    """One client per configured provider, keyed by descriptor name."""
    p = settings.providers
    g = settings.generation
    clients: dict[str, ProviderClient] = {}
    if p.openrouter_api_key.strip():
        clients[RemoteVendor.OPENROUTER.value] = RemoteChatClient(
            RemoteVendor.OPENROUTER,
            p.openrouter_api_key.strip(),
            base_url=p.openrouter_base_url,
            default_headers={"HTTP-Referer": p.openrouter_referer, "X-Title": p.openrouter_title},
            temperature=g.temperature,
            max_tokens=g.max_tokens,
        )
    for vendor, key in (
        (RemoteVendor.OPENAI, p.openai_api_key),
        (RemoteVendor.ANTHROPIC, p.anthropic_api_key),
        (RemoteVendor.GEMINI, p.google_api_key),
    ):
        if key.strip():
            clients[vendor.value] = RemoteChatClient(
                vendor,
                key.strip(),
                temperature=g.temperature,
                max_tokens=g.max_tokens,
            )
    if p.has_local:
        clients[OLLAMA] = OllamaClient(p.ollama_endpoint.strip())
    return clients


def build_repairer(settings: Settings, clients: dict[str, ProviderClient]) -> Optional[SecondaryRepairer]:
    g = settings.generation
    client = clients.get(RemoteVendor.OPENROUTER.value)
    if not g.repair_enabled or client is None:
        return None
    return SecondaryRepairer(
        client,
        settings.providers.repair_models,
        provider_name=RemoteVendor.OPENROUTER.value,
        max_tokens=g.repair_max_tokens,
        min_budget=g.repair_min_budget,
        max_timeout=g.repair_max_timeout,
    )


class StructuredGenerationService:
    """Entry point for callers that need one validated JSON object from a prompt."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clients: Optional[dict[str, ProviderClient]] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self.clients = clients if clients is not None else build_clients(self.settings)
        self._clock = clock
        repairer = build_repairer(self.settings, self.clients)
        self.orchestrator = CascadeOrchestrator(
            self.clients,
            config=self.settings.generation,
            repairer=repairer,
            clock=clock,
        )
        logger.info(
            "generation_service_initialized",
            providers=sorted(self.clients),
            fast_mode=self.settings.generation.fast_mode,
            repair_enabled=repairer is not None,
        )

    async def _installed_ollama_models(self) -> list[str]:
        client = self.clients.get(OLLAMA)
        if not isinstance(client, OllamaClient):
            return []
        return await client.list_models(self.settings.generation.preflight_timeout)

    async def provider_groups(self, fast_mode: bool, item_count: Optional[int] = None) -> list[ProviderGroup]:
        installed = await self._installed_ollama_models()
        if self.settings.providers.has_local and not installed:
            logger.warning(
                "ollama_unavailable",
                endpoint=self.settings.providers.ollama_endpoint,
                msg="Ollama not reachable or no models pulled; local group skipped",
            )
        return catalog.build_provider_groups(self.settings, fast_mode, installed, item_count)

    async def describe_groups(self, fast_mode: bool) -> list[list[str]]:
        return [[d.label for d in group] for group in await self.provider_groups(fast_mode)]

    def _config_failure(self, started: float, message: str) -> GenerationFailure:
        trace = GenerationTrace(started_at=started)
        trace.mark("aborted", now=self._clock(), kind=FailureKind.CONFIG_ERROR.value)
        return GenerationFailure(kind=FailureKind.CONFIG_ERROR, message=message, trace=trace)

    async def generate(
        self,
        prompt: str,
        expected_shape: ExpectedShape,
        *,
        fast_mode: Optional[bool] = None,
        item_count: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ParsedResult | GenerationFailure:
        """Generate one object matching `expected_shape`; never raises for provider failures."""
        started = self._clock()
        fast = self.settings.generation.fast_mode if fast_mode is None else fast_mode
        budget_seconds = timeout if timeout is not None else self.settings.generation.request_timeout(fast)

        if not (self.settings.providers.has_remote or self.settings.providers.has_local):
            logger.error("generation_not_configured", msg="OPENROUTER_API_KEY or OLLAMA_ENDPOINT required")
            return self._config_failure(
                started, "Server configuration error: OPENROUTER_API_KEY or OLLAMA_ENDPOINT required"
            )

        try:
            groups = await self.provider_groups(fast, item_count)
        except ConfigError as e:
            logger.error("provider_groups_invalid", error=str(e))
            return self._config_failure(started, f"Server configuration error: {e}")

        request = GenerationRequest.create(
            prompt=prompt,
            expected_shape=expected_shape,
            provider_groups=groups,
            timeout=budget_seconds,
            fast_mode=fast,
            now=started,
        )
        return await self.orchestrator.run(request)

    async def aclose(self) -> None:
        for client in self.clients.values():
            if isinstance(client, OllamaClient):
                await client.aclose()
