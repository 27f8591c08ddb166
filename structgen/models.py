"""
Core data models for the structured generation pipeline.

These Pydantic models describe one generation request and everything it
produces: the provider cascade it walks, the trace of attempts made, and the
final result or failure handed back to the caller.

Design principles:
  - Requests, descriptors and attempt records are frozen once created
  - The trace is append-only and owned by exactly one request
  - Times are seconds on the monotonic clock; trace offsets are relative to request start
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ═══════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════


class TransportKind(str, Enum):
    """How a provider is reached and billed."""

    REMOTE_METERED = "remote-metered"
    LOCAL_UNMETERED = "local-unmetered"


class FaultCategory(str, Enum):
    """Classification of a failed attempt; drives cascade transitions."""

    FATAL = "fatal"
    QUOTA = "quota"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    PARSE_FAILED = "parse-failed"
    PROVIDER_ERROR = "provider-error"


class FailureKind(str, Enum):
    """Why a request produced no result."""

    CONFIG_ERROR = "ConfigError"
    AUTH_ERROR = "AuthError"
    QUOTA_EXHAUSTED = "QuotaExhausted"
    PARSE_ERROR = "ParseError"
    DEADLINE_EXCEEDED = "DeadlineExceeded"
    ALL_PROVIDERS_FAILED = "AllProvidersFailed"

    @property
    def status_code(self) -> int:
        """HTTP-like status a boundary layer can map this failure to."""
        return 504 if self is FailureKind.DEADLINE_EXCEEDED else 500


# ═══════════════════════════════════════════════════════════
# Request side
# ═══════════════════════════════════════════════════════════


class GenerationOptions(BaseModel):
    """Per-provider generation knobs."""

    model_config = ConfigDict(frozen=True)

    max_output_tokens: Optional[int] = None
    temperature: Optional[float] = None


class ProviderDescriptor(BaseModel):
    """One provider/model pair in the cascade. `name` selects the client."""

    model_config = ConfigDict(frozen=True)

    name: str
    model: str
    transport: TransportKind = TransportKind.REMOTE_METERED
    options: GenerationOptions = Field(default_factory=GenerationOptions)

    @property
    def label(self) -> str:
        return f"{self.name}:{self.model}"

    @property
    def is_local(self) -> bool:
        return self.transport == TransportKind.LOCAL_UNMETERED


class ExpectedShape(BaseModel):
    """Top-level keys the generated object must carry."""

    model_config = ConfigDict(frozen=True)

    required_keys: tuple[str, ...] = ()
    required_array_keys: tuple[str, ...] = ()


ProviderGroup = tuple[ProviderDescriptor, ...]


class GenerationRequest(BaseModel):
    """A single generation request. The deadline never moves after creation."""

    model_config = ConfigDict(frozen=True)

    prompt: str
    expected_shape: ExpectedShape = Field(default_factory=ExpectedShape)
    deadline: float
    fast_mode: bool = False
    provider_groups: tuple[ProviderGroup, ...] = ()

    @classmethod
    def create(
        cls,
        prompt: str,
        expected_shape: ExpectedShape,
        provider_groups: list[list[ProviderDescriptor]] | tuple[ProviderGroup, ...],
        timeout: float,
        fast_mode: bool = False,
        now: Optional[float] = None,
    ) -> GenerationRequest:
        """Build a request whose deadline is `timeout` seconds from now."""
        start = time.monotonic() if now is None else now
        return cls(
            prompt=prompt,
            expected_shape=expected_shape,
            deadline=start + max(0.0, timeout),
            fast_mode=fast_mode,
            provider_groups=tuple(tuple(group) for group in provider_groups),
        )

    @property
    def provider_count(self) -> int:
        return sum(len(group) for group in self.provider_groups)


# ═══════════════════════════════════════════════════════════
# Trace
# ═══════════════════════════════════════════════════════════


class AttemptRecord(BaseModel):
    """Outcome of one provider call. Never mutated after it is appended."""

    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    started_at: float
    duration: float
    outcome: AttemptOutcome
    fault: Optional[FaultCategory] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    error_code: Optional[str] = None


class Milestone(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    at: float
    extra: dict[str, Any] = Field(default_factory=dict)


class GenerationTrace(BaseModel):
    """Append-only record of everything one request did."""

    started_at: float = Field(default_factory=time.monotonic)
    attempts: list[AttemptRecord] = Field(default_factory=list)
    milestones: list[Milestone] = Field(default_factory=list)

    def offset(self, now: Optional[float] = None) -> float:
        """Seconds since the request started."""
        return (time.monotonic() if now is None else now) - self.started_at

    def record_attempt(self, record: AttemptRecord) -> None:
        self.attempts.append(record)

    def mark(self, name: str, now: Optional[float] = None, **extra: Any) -> None:
        self.milestones.append(Milestone(name=name, at=self.offset(now), extra=extra))

    def milestone(self, name: str) -> Optional[Milestone]:
        """Most recent milestone with this name, if any."""
        for m in reversed(self.milestones):
            if m.name == name:
                return m
        return None

    @property
    def failed_attempts(self) -> list[AttemptRecord]:
        return [a for a in self.attempts if a.outcome != AttemptOutcome.SUCCESS]

    def as_list(self) -> list[dict[str, Any]]:
        return [a.model_dump(mode="json") for a in self.attempts]


# ═══════════════════════════════════════════════════════════
# Results
# ═══════════════════════════════════════════════════════════


class ValidationResult(BaseModel):
    ok: bool
    reason: Optional[str] = None


class ParsedResult(BaseModel):
    """The validated object plus the trace that produced it."""

    data: dict[str, Any]
    provider: str
    model: str
    trace: GenerationTrace

    @property
    def ok(self) -> bool:
        return True

    def to_response(self) -> dict[str, Any]:
        return {"ok": True, "data": self.data, "trace": self.trace.as_list()}


class GenerationFailure(BaseModel):
    """Why no result was produced, with the full trace."""

    kind: FailureKind
    message: str
    last_error: Optional[str] = None
    trace: GenerationTrace

    @property
    def ok(self) -> bool:
        return False

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    def to_response(self) -> dict[str, Any]:
        return {
            "ok": False,
            "kind": self.kind.value,
            "message": self.message,
            "trace": self.trace.as_list(),
        }
