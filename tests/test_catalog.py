"""Tests for building provider groups from settings."""

import pytest

from structgen.config import GenerationConfig, ProviderConfig, Settings
from structgen.errors import ConfigError
from structgen.models import TransportKind
from structgen.providers.catalog import build_provider_groups, generation_options, scaled_max_tokens


def _settings(**provider_kwargs) -> Settings:
    return Settings(providers=ProviderConfig(**provider_kwargs), generation=GenerationConfig())


class TestScaledMaxTokens:
    @pytest.mark.parametrize(
        "items,fast,expected",
        [
            (None, False, 2400),
            (None, True, 1200),
            (1, False, 1000),
            (5, False, 1500),
            (20, False, 2400),
            (1, True, 650),
            (5, True, 1000),
            (10, True, 1200),
        ],
    )
    def test_scaling(self, items, fast, expected) -> None:
        assert scaled_max_tokens(items, fast, GenerationConfig()) == expected

    def test_options_use_mode_temperature(self) -> None:
        settings = _settings()
        assert generation_options(settings, fast_mode=False).temperature == 0.2
        assert generation_options(settings, fast_mode=True).temperature == 0.0


class TestBuildProviderGroups:
    def test_nothing_configured(self) -> None:
        assert build_provider_groups(_settings(), fast_mode=False) == []

    def test_openrouter_group(self) -> None:
        settings = _settings(OPENROUTER_API_KEY="k", OPENROUTER_MODELS=["a", "b"], OPENROUTER_FAST_MODELS=["f"])
        groups = build_provider_groups(settings, fast_mode=False, item_count=5)

        assert len(groups) == 1
        assert [d.label for d in groups[0]] == ["openrouter:a", "openrouter:b"]
        assert all(d.transport == TransportKind.REMOTE_METERED for d in groups[0])
        assert groups[0][0].options.max_output_tokens == 1500

        fast = build_provider_groups(settings, fast_mode=True)
        assert [d.model for d in fast[0]] == ["f"]

    def test_direct_vendors_are_separate_groups(self) -> None:
        settings = _settings(
            OPENROUTER_API_KEY="k",
            OPENROUTER_MODELS=["a"],
            OPENAI_API_KEY="sk",
            ANTHROPIC_API_KEY="ak",
            OPENAI_MODEL="gpt-4.1-mini",
            CLAUDE_MODEL="claude-sonnet-4-6",
        )
        groups = build_provider_groups(settings, fast_mode=False)
        assert [[d.label for d in g] for g in groups] == [
            ["openrouter:a"],
            ["openai:gpt-4.1-mini"],
            ["anthropic:claude-sonnet-4-6"],
        ]

    def test_local_group_comes_last_and_uses_installed_models(self) -> None:
        settings = _settings(
            OPENROUTER_API_KEY="k",
            OPENROUTER_MODELS=["a"],
            OLLAMA_ENDPOINT="http://localhost:11434",
            OLLAMA_MODEL="llama3:latest",
            OLLAMA_PREFERRED_MODELS=["phi3:mini", "mistral", "llama3:latest"],
        )
        groups = build_provider_groups(settings, False, ollama_models=["phi3:mini", "llama3:latest", "other"])

        local_group = groups[-1]
        assert [d.model for d in local_group] == ["llama3:latest", "phi3:mini"]
        assert all(d.is_local for d in local_group)

    def test_local_group_dropped_when_nothing_installed(self) -> None:
        settings = _settings(OLLAMA_ENDPOINT="http://localhost:11434")
        assert build_provider_groups(settings, False, ollama_models=[]) == []

    def test_yaml_groups_override_derived_order(self) -> None:
        settings = _settings(OPENROUTER_API_KEY="k")
        settings.provider_groups = {
            "groups": [
                [{"name": "ollama", "model": "phi3", "transport": "local-unmetered"}],
                [],
                [{"name": "openrouter", "model": "x", "options": {"max_output_tokens": 300}}],
            ]
        }
        groups = build_provider_groups(settings, fast_mode=False)

        assert [[d.label for d in g] for g in groups] == [["ollama:phi3"], ["openrouter:x"]]
        assert groups[0][0].is_local
        assert groups[1][0].options.max_output_tokens == 300
        assert groups[1][0].options.temperature == 0.2

    @pytest.mark.parametrize(
        "raw_groups",
        [
            [[{"model": "m1"}]],
            [[{"name": "openrouter"}]],
            [[{"name": "ollama", "model": "phi3", "transport": "satellite"}]],
            [[{"name": "openrouter", "model": "x", "options": {"temperature": "hot"}}]],
            [[{"name": "openrouter", "model": "x", "options": ["max_output_tokens", 300]}]],
            [["openrouter:x"]],
            [{"name": "openrouter", "model": "x"}],
            {"name": "openrouter", "model": "x"},
        ],
    )
    def test_malformed_yaml_groups_raise_config_error(self, raw_groups) -> None:
        settings = _settings(OPENROUTER_API_KEY="k")
        settings.provider_groups = {"groups": raw_groups}
        with pytest.raises(ConfigError):
            build_provider_groups(settings, fast_mode=False)
