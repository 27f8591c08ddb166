"""Shared pytest fixtures for structgen tests."""

from __future__ import annotations

from typing import Any, Optional, Union

import pytest

from structgen.config import GenerationConfig
from structgen.errors import ProviderError
from structgen.models import (
    ExpectedShape,
    GenerationOptions,
    GenerationRequest,
    ProviderDescriptor,
    TransportKind,
)

_PROVIDER_ENV = (
    "OPENROUTER_API_KEY",
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GOOGLE_API_KEY",
    "OLLAMA_ENDPOINT",
    "PROMETHEUS_METRICS_ENABLED",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's .env from leaking provider keys into tests."""
    for key in _PROVIDER_ENV:
        monkeypatch.delenv(key, raising=False)


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Outcome = Union[str, BaseException]


class ScriptedClient:
    """Provider client returning canned text or raising canned errors per model."""

    def __init__(
        self,
        script: dict[str, Union[Outcome, list[Outcome]]],
        clock: Optional[FakeClock] = None,
        latency: float = 0.0,
    ) -> None:
        self.script = {k: (list(v) if isinstance(v, list) else v) for k, v in script.items()}
        self.clock = clock
        self.latency = latency
        self.calls: list[dict[str, Any]] = []

    async def generate(self, model: str, prompt: str, timeout: float, options: GenerationOptions) -> str:
        self.calls.append({"model": model, "prompt": prompt, "timeout": timeout, "options": options})
        if self.clock is not None:
            self.clock.advance(self.latency)
        outcome = self.script[model]
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    @property
    def models_called(self) -> list[str]:
        return [c["model"] for c in self.calls]


def http_error(status: int, message: str = "") -> ProviderError:
    return ProviderError(message or f"HTTP {status}", status_code=status)


def remote(model: str, name: str = "remote") -> ProviderDescriptor:
    return ProviderDescriptor(name=name, model=model)


def local(model: str, name: str = "local") -> ProviderDescriptor:
    return ProviderDescriptor(name=name, model=model, transport=TransportKind.LOCAL_UNMETERED)


QUIZ_SHAPE = ExpectedShape(required_keys=("title",), required_array_keys=("questions",))
QUIZ_JSON = '{"title": "Cells", "questions": [{"id": "q1", "question": "What is a cell?"}]}'


def make_request(
    groups: list[list[ProviderDescriptor]],
    clock: FakeClock,
    timeout: float = 60.0,
    shape: ExpectedShape = QUIZ_SHAPE,
    fast_mode: bool = False,
) -> GenerationRequest:
    return GenerationRequest.create(
        prompt="Generate a quiz about cells",
        expected_shape=shape,
        provider_groups=groups,
        timeout=timeout,
        fast_mode=fast_mode,
        now=clock(),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def generation_config() -> GenerationConfig:
    return GenerationConfig(
        GENERATION_REMOTE_TIMEOUT=25.0,
        GENERATION_LOCAL_TIMEOUT=180.0,
        GENERATION_MIN_ATTEMPT_TIMEOUT=2.0,
        GENERATION_SAFETY_MARGIN=0.25,
        GENERATION_FAST_MAX_TOKENS=1200,
    )
