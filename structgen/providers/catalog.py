"""
Builds the ordered provider groups for a request from configuration.

Default order:
  1. OpenRouter models (remote-metered, free tier, quota-limited)
  2. one group per directly keyed vendor (OpenAI, Anthropic, Gemini)
  3. local Ollama models that are actually installed

A `groups:` list in config/providers.yaml replaces the derived order, e.g.

  groups:
    - - {name: openrouter, model: "google/gemini-2.0-flash-exp:free"}
    - - {name: ollama, model: "llama3:latest", transport: local-unmetered}
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from structgen.config import GenerationConfig, Settings
from structgen.errors import ConfigError
from structgen.models import GenerationOptions, ProviderDescriptor, ProviderGroup, TransportKind
from structgen.providers import ollama
from structgen.providers.remote import RemoteVendor


def scaled_max_tokens(item_count: int | None, fast_mode: bool, cfg: GenerationConfig) -> int:
    """Output token allowance scaled by the number of items requested."""
    if not item_count or item_count < 1:
        return cfg.fast_max_tokens if fast_mode else cfg.max_tokens
    if fast_mode:
        base = 450 + item_count * 110
        return max(650, min(cfg.fast_max_tokens, base))
    base = 600 + item_count * 180
    return max(1000, min(cfg.max_tokens, base))


def generation_options(settings: Settings, fast_mode: bool, item_count: int | None = None) -> GenerationOptions:
    cfg = settings.generation
    return GenerationOptions(
        max_output_tokens=scaled_max_tokens(item_count, fast_mode, cfg),
        temperature=cfg.fast_temperature if fast_mode else cfg.temperature,
    )


def _vendor_models(settings: Settings) -> list[tuple[RemoteVendor, str, str]]:
    p = settings.providers
    return [
        (RemoteVendor.OPENAI, p.openai_api_key, p.openai_model),
        (RemoteVendor.ANTHROPIC, p.anthropic_api_key, p.claude_model),
        (RemoteVendor.GEMINI, p.google_api_key, p.gemini_model),
    ]


def ollama_candidates(settings: Settings, available: list[str], fast_mode: bool) -> list[str]:
    """Picked model first, then installed preference-list models, deduplicated."""
    p = settings.providers
    picked = ollama.pick_model(
        available,
        fast_mode,
        model=p.ollama_model,
        fast_model=p.ollama_fast_model,
        preferred=p.ollama_preferred_models,
    )
    ordered: list[str] = []
    for name in [picked, *p.ollama_preferred_models]:
        if name and name in available and name not in ordered:
            ordered.append(name)
    return ordered


def _descriptor_from_yaml(entry: Any, options: GenerationOptions) -> ProviderDescriptor:
    if not isinstance(entry, dict):
        raise ConfigError(f"provider entry must be a mapping, got {type(entry).__name__}")
    entry_options = entry.get("options") or {}
    if not isinstance(entry_options, dict):
        raise ConfigError(f"options for {entry.get('name')}:{entry.get('model')} must be a mapping")
    try:
        return ProviderDescriptor.model_validate({
            **entry,
            "options": GenerationOptions.model_validate({**options.model_dump(), **entry_options}),
        })
    except ValidationError as e:
        raise ConfigError(f"invalid provider entry {entry!r}: {e.errors()[0]['msg']}") from e


def _groups_from_yaml(raw_groups: Any, options: GenerationOptions) -> list[ProviderGroup]:
    """Provider groups from the `groups:` override. Raises ConfigError on malformed entries."""
    if not isinstance(raw_groups, list):
        raise ConfigError("providers.yaml `groups` must be a list of lists")
    groups: list[ProviderGroup] = []
    for raw_group in raw_groups:
        if raw_group is not None and not isinstance(raw_group, list):
            raise ConfigError("each providers.yaml group must be a list of provider entries")
        groups.append(tuple(_descriptor_from_yaml(entry, options) for entry in raw_group or []))
    return groups


def build_provider_groups(
    settings: Settings,
    fast_mode: bool,
    ollama_models: list[str] | None = None,
    item_count: int | None = None,
) -> list[ProviderGroup]:
    """Ordered provider groups for one request. Empty groups are left out."""
    options = generation_options(settings, fast_mode, item_count)
    override = settings.provider_groups.get("groups") if settings.provider_groups else None
    if override:
        return [g for g in _groups_from_yaml(override, options) if g]

    p = settings.providers
    groups: list[ProviderGroup] = []

    if p.openrouter_api_key.strip():
        models = p.openrouter_fast_models if fast_mode else p.openrouter_models
        groups.append(tuple(
            ProviderDescriptor(name=RemoteVendor.OPENROUTER.value, model=m, options=options)
            for m in models
        ))

    for vendor, key, model in _vendor_models(settings):
        if key.strip() and model:
            groups.append((ProviderDescriptor(name=vendor.value, model=model, options=options),))

    if p.has_local and ollama_models:
        groups.append(tuple(
            ProviderDescriptor(
                name=ollama.PROVIDER_NAME,
                model=m,
                transport=TransportKind.LOCAL_UNMETERED,
                options=options,
            )
            for m in ollama_candidates(settings, ollama_models, fast_mode)
        ))

    return [g for g in groups if g]
