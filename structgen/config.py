"""
Centralized configuration for the structured generation pipeline.

All settings are loaded from environment variables with sensible defaults.
Pydantic Settings provides validation and type coercion. Timeouts are seconds.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load .env then .env.local (so .env.local overrides). Use override=True so file wins over shell.
_repo_root = Path(__file__).resolve().parent.parent
load_dotenv(_repo_root / ".env", override=True)
_env_local = _repo_root / ".env.local"
if _env_local.exists():
    load_dotenv(_env_local, override=True)


class ProviderConfig(BaseSettings):
    """Provider credentials, endpoints and model lists."""

    # OpenRouter: OpenAI-compatible gateway, quota-limited free models
    openrouter_api_key: str = Field(default="", alias="OPENROUTER_API_KEY")
    openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1", alias="OPENROUTER_BASE_URL")
    openrouter_referer: str = Field(default="http://localhost:5173", alias="OPENROUTER_HTTP_REFERER")
    openrouter_title: str = Field(default="structgen", alias="OPENROUTER_TITLE")
    openrouter_models: list[str] = Field(
        default=[
            "google/gemini-2.0-flash-exp:free",
            "mistralai/mistral-7b-instruct:free",
            "meta-llama/llama-3.2-3b-instruct:free",
            "meta-llama/llama-3.3-70b-instruct:free",
        ],
        alias="OPENROUTER_MODELS",
    )
    openrouter_fast_models: list[str] = Field(
        default=[
            "google/gemini-2.0-flash-exp:free",
            "meta-llama/llama-3.2-3b-instruct:free",
        ],
        alias="OPENROUTER_FAST_MODELS",
    )
    # Small fast models used only to rewrite malformed output into valid JSON
    repair_models: list[str] = Field(
        default=[
            "mistralai/mistral-7b-instruct:free",
            "meta-llama/llama-3.2-3b-instruct:free",
        ],
        alias="REPAIR_MODELS",
    )

    # Direct vendor keys (optional extra remote groups)
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    google_api_key: str = Field(default="", alias="GOOGLE_API_KEY")
    openai_model: str = Field(default="gpt-4.1-mini", alias="OPENAI_MODEL")
    claude_model: str = Field(default="claude-sonnet-4-6", alias="CLAUDE_MODEL")
    gemini_model: str = Field(default="gemini-2.5-flash", alias="GEMINI_MODEL")

    # Local Ollama daemon (unmetered)
    ollama_endpoint: str = Field(default="", alias="OLLAMA_ENDPOINT")
    ollama_model: str = Field(default="llama3:latest", alias="OLLAMA_MODEL")
    ollama_fast_model: str = Field(default="", alias="OLLAMA_MODEL_FAST")
    ollama_preferred_models: list[str] = Field(
        default=[
            "phi3:mini",
            "phi3",
            "llama3.2:3b",
            "llama3.2",
            "mistral:latest",
            "mistral",
            "llama3",
            "llama3:latest",
        ],
        alias="OLLAMA_PREFERRED_MODELS",
    )

    @property
    def has_remote(self) -> bool:
        return bool(
            self.openrouter_api_key.strip()
            or self.openai_api_key.strip()
            or self.anthropic_api_key.strip()
            or self.google_api_key.strip()
        )

    @property
    def has_local(self) -> bool:
        return bool(self.ollama_endpoint.strip())


class GenerationConfig(BaseSettings):
    """Deadline, per-attempt timeout and output size tuning."""

    fast_mode: bool = Field(default=False, alias="GENERATION_FAST_MODE")
    overall_timeout: float = Field(default=300.0, alias="GENERATION_OVERALL_TIMEOUT")
    # Whole-request deadline in fast mode
    target_latency: float = Field(default=30.0, alias="GENERATION_TARGET_LATENCY")

    # Per-attempt ceilings by transport kind; the budget manager clamps below these
    remote_attempt_timeout: float = Field(default=25.0, alias="GENERATION_REMOTE_TIMEOUT")
    local_attempt_timeout: float = Field(default=180.0, alias="GENERATION_LOCAL_TIMEOUT")
    fast_remote_attempt_timeout: float = Field(default=12.0, alias="GENERATION_FAST_REMOTE_TIMEOUT")
    fast_local_attempt_timeout: float = Field(default=25.0, alias="GENERATION_FAST_LOCAL_TIMEOUT")
    min_attempt_timeout: float = Field(default=2.0, alias="GENERATION_MIN_ATTEMPT_TIMEOUT")
    safety_margin: float = Field(default=0.25, alias="GENERATION_SAFETY_MARGIN")
    preflight_timeout: float = Field(default=2.0, alias="GENERATION_PREFLIGHT_TIMEOUT")

    max_tokens: int = Field(default=2400, alias="GENERATION_MAX_TOKENS")
    fast_max_tokens: int = Field(default=1200, alias="GENERATION_FAST_MAX_TOKENS")
    temperature: float = 0.2
    fast_temperature: float = 0.0

    # Secondary repair call (same request deadline)
    repair_enabled: bool = Field(default=True, alias="GENERATION_REPAIR_ENABLED")
    repair_min_budget: float = Field(default=3.0, alias="GENERATION_REPAIR_MIN_BUDGET")
    repair_max_timeout: float = Field(default=12.0, alias="GENERATION_REPAIR_MAX_TIMEOUT")
    repair_max_tokens: int = 1200

    def attempt_ceiling(self, local: bool, fast_mode: bool) -> float:
        """Upper bound for one provider attempt."""
        if local:
            return self.fast_local_attempt_timeout if fast_mode else self.local_attempt_timeout
        return self.fast_remote_attempt_timeout if fast_mode else self.remote_attempt_timeout

    def request_timeout(self, fast_mode: bool) -> float:
        return self.target_latency if fast_mode else self.overall_timeout


class ObservabilityConfig(BaseSettings):
    """Logging and Prometheus metrics."""

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    metrics_enabled: bool = Field(default=False, alias="PROMETHEUS_METRICS_ENABLED")
    metrics_port: int = Field(default=8000, alias="PROMETHEUS_METRICS_PORT")


class YAMLConfigLoader:
    """Loads YAML config files from a configurable directory."""

    def __init__(self, config_dir: str | Path = "config") -> None:
        self._dir = _repo_root / config_dir

    def load(self, filename: str) -> dict[str, Any]:
        """Load a YAML file; returns empty dict if the file is missing or not a mapping."""
        import yaml

        path = self._dir / filename
        if not path.exists():
            return {}
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}


class Settings(BaseSettings):
    """Root settings container; access all config from one object."""

    providers: ProviderConfig = Field(default_factory=ProviderConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    # YAML-loaded provider group override (populated in get_settings)
    provider_groups: dict[str, Any] = Field(default_factory=dict)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton settings instance. Cached after first call."""
    settings = Settings()
    settings.provider_groups = YAMLConfigLoader().load("providers.yaml")
    return settings
