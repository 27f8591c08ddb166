"""Tests for the service facade: settings in, orchestrated result out."""

import httpx
import pytest
from conftest import QUIZ_JSON, QUIZ_SHAPE, ScriptedClient, http_error

from structgen.config import GenerationConfig, ProviderConfig, Settings
from structgen.models import FailureKind, ParsedResult
from structgen.orchestrator import SecondaryRepairer
from structgen.providers.ollama import OllamaClient
from structgen.providers.remote import RemoteChatClient
from structgen.service import StructuredGenerationService, build_clients, build_repairer


def _settings(generation: GenerationConfig | None = None, **provider_kwargs) -> Settings:
    return Settings(providers=ProviderConfig(**provider_kwargs), generation=generation or GenerationConfig())


class TestBuilders:
    def test_clients_for_configured_providers_only(self) -> None:
        settings = _settings(OPENROUTER_API_KEY="k", ANTHROPIC_API_KEY=" ", OLLAMA_ENDPOINT="http://localhost:11434")
        clients = build_clients(settings)

        assert sorted(clients) == ["ollama", "openrouter"]
        assert isinstance(clients["openrouter"], RemoteChatClient)
        assert isinstance(clients["ollama"], OllamaClient)

    def test_repairer_needs_openrouter(self) -> None:
        settings = _settings(OPENROUTER_API_KEY="k", REPAIR_MODELS=["fixer"])
        repairer = build_repairer(settings, build_clients(settings))
        assert isinstance(repairer, SecondaryRepairer)
        assert repairer.models == ["fixer"]

        assert build_repairer(_settings(OLLAMA_ENDPOINT="http://x"), {}) is None

    def test_repairer_can_be_disabled(self) -> None:
        settings = _settings(GenerationConfig(GENERATION_REPAIR_ENABLED=False), OPENROUTER_API_KEY="k")
        assert build_repairer(settings, build_clients(settings)) is None


class TestGenerate:
    @pytest.mark.asyncio
    async def test_unconfigured(self) -> None:
        service = StructuredGenerationService(settings=_settings())
        result = await service.generate("prompt", QUIZ_SHAPE)

        assert result.kind == FailureKind.CONFIG_ERROR
        assert "OPENROUTER_API_KEY" in result.message
        assert result.trace.attempts == []

    @pytest.mark.asyncio
    async def test_cascade_over_configured_models(self) -> None:
        client = ScriptedClient({"a": http_error(503), "b": QUIZ_JSON})
        settings = _settings(OPENROUTER_API_KEY="k", OPENROUTER_MODELS=["a", "b"])
        service = StructuredGenerationService(settings=settings, clients={"openrouter": client})
        result = await service.generate("quiz please", QUIZ_SHAPE, item_count=5)

        assert isinstance(result, ParsedResult)
        assert result.model == "b"
        assert client.models_called == ["a", "b"]
        assert client.calls[0]["prompt"] == "quiz please"
        assert client.calls[0]["options"].max_output_tokens == 1500
        assert client.calls[0]["timeout"] == 25.0

    @pytest.mark.asyncio
    async def test_fast_mode(self) -> None:
        client = ScriptedClient({"f": QUIZ_JSON})
        settings = _settings(OPENROUTER_API_KEY="k", OPENROUTER_FAST_MODELS=["f"])
        service = StructuredGenerationService(settings=settings, clients={"openrouter": client})
        result = await service.generate("quiz", QUIZ_SHAPE, fast_mode=True)

        assert result.ok
        assert client.calls[0]["timeout"] == 12.0
        assert client.calls[0]["options"].max_output_tokens == 1200
        assert client.calls[0]["options"].temperature == 0.0

    @pytest.mark.asyncio
    async def test_describe_groups(self) -> None:
        settings = _settings(OPENROUTER_API_KEY="k", OPENROUTER_MODELS=["a", "b"])
        service = StructuredGenerationService(settings=settings, clients={"openrouter": ScriptedClient({})})
        assert await service.describe_groups(fast_mode=False) == [["openrouter:a", "openrouter:b"]]

    @pytest.mark.asyncio
    async def test_local_only(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/tags":
                return httpx.Response(200, json={"models": [{"name": "llama3:latest"}]})
            return httpx.Response(200, json={"response": QUIZ_JSON})

        endpoint = "http://ollama.test:11434"
        ollama = OllamaClient(endpoint, transport=httpx.MockTransport(handler))
        service = StructuredGenerationService(settings=_settings(OLLAMA_ENDPOINT=endpoint), clients={"ollama": ollama})
        result = await service.generate("quiz", QUIZ_SHAPE)
        await service.aclose()

        assert result.ok
        assert (result.provider, result.model) == ("ollama", "llama3:latest")
        assert result.trace.attempts[0].started_at >= 0.0

    @pytest.mark.asyncio
    async def test_local_daemon_down(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        endpoint = "http://ollama.test:11434"
        ollama = OllamaClient(endpoint, transport=httpx.MockTransport(handler))
        service = StructuredGenerationService(settings=_settings(OLLAMA_ENDPOINT=endpoint), clients={"ollama": ollama})
        result = await service.generate("quiz", QUIZ_SHAPE)

        assert result.kind == FailureKind.CONFIG_ERROR
        assert result.trace.attempts == []

    @pytest.mark.asyncio
    async def test_malformed_group_override_is_config_error(self) -> None:
        client = ScriptedClient({"m1": QUIZ_JSON})
        settings = _settings(OPENROUTER_API_KEY="k")
        settings.provider_groups = {"groups": [[{"model": "m1"}]]}
        service = StructuredGenerationService(settings=settings, clients={"openrouter": client})
        result = await service.generate("quiz", QUIZ_SHAPE)

        assert result.kind == FailureKind.CONFIG_ERROR
        assert "invalid provider entry" in result.message
        assert result.trace.attempts == []
        assert client.calls == []
