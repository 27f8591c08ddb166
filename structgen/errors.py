"""
Error taxonomy and the fault classifier.

Every failure a provider can produce is mapped onto one of four fault
categories; the orchestrator only ever looks at the category:

  fatal      credentials or configuration are wrong; retrying anything is pointless
  quota      rate limit / insufficient quota; the whole provider tier is unusable
  transient  timeouts, resets, DNS, 5xx/408; another provider may well succeed
  unknown    no recognizable signal; handled like transient
"""

from __future__ import annotations

import asyncio
import errno
from typing import Any, Optional

import httpx

from structgen.models import FaultCategory


class GenerationError(Exception):
    """Base for structgen errors."""

    pass


class ConfigError(GenerationError):
    """No usable provider configured, or a descriptor names an unknown client."""

    pass


class ProviderError(GenerationError):
    """A provider call failed. Carries the observable signal used for classification."""

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        model: str = "",
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        body: Any = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.error_code = error_code
        self.body = body


class ProviderTimeoutError(ProviderError):
    """The per-attempt timeout derived from the budget fired."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "ETIMEDOUT")
        super().__init__(message, **kwargs)


class EmptyResponseError(ProviderError):
    """Provider answered but returned no content."""

    pass


class ParseError(GenerationError):
    """Extraction/repair could not produce a valid JSON object."""

    def __init__(self, message: str, *, stage: str = "", preview: str = "") -> None:
        super().__init__(message)
        self.stage = stage
        self.preview = preview


class ShapeError(ParseError):
    """Parsed JSON does not have the expected top-level shape."""

    pass


# ── Signals ──

_AUTH_STATUSES = frozenset({401, 403})
_QUOTA_STATUSES = frozenset({402, 429})

_AUTH_PHRASES = (
    "unauthorized",
    "invalid api key",
    "invalid_api_key",
    "incorrect api key",
    "authentication",
    "forbidden",
    "no auth credentials",
)
_QUOTA_PHRASES = (
    "rate limit",
    "rate-limit",
    "ratelimit",
    "quota",
    "insufficient_quota",
    "insufficient credits",
    "too many requests",
)
_TRANSIENT_CODES = frozenset({
    "ECONNRESET",
    "ETIMEDOUT",
    "ECONNABORTED",
    "ECONNREFUSED",
    "ENOTFOUND",
    "EAI_AGAIN",
})
_TRANSIENT_PHRASES = (
    "timed out",
    "timeout",
    "socket hang up",
    "forcibly closed",
    "unavailable",
    "connection reset",
    "connection error",
    "connection refused",
    "temporarily",
)


def status_code_of(exc: BaseException) -> Optional[int]:
    """Best-effort HTTP status from the exception or its attached response."""
    for attr in ("status_code", "http_status", "status", "code"):
        val = getattr(exc, attr, None)
        if isinstance(val, int) and not isinstance(val, bool):
            return val
    response = getattr(exc, "response", None)
    val = getattr(response, "status_code", None)
    if isinstance(val, int):
        return val
    return None


def error_code_of(exc: BaseException) -> str:
    """Transport error code (ECONNRESET etc.), normalized to upper case."""
    for attr in ("error_code", "code"):
        val = getattr(exc, attr, None)
        if isinstance(val, str) and val:
            return val.upper()
    num = getattr(exc, "errno", None)
    if isinstance(num, int) and num in errno.errorcode:
        return errno.errorcode[num]
    return ""


def _message_of(exc: BaseException) -> str:
    parts = [str(exc)]
    body = getattr(exc, "body", None)
    if body:
        parts.append(str(body))
    return " ".join(parts).lower()


def classify_error(exc: BaseException) -> FaultCategory:
    """Map a raw failure to a fault category. Pure; looks only at the error itself."""
    # Parse and shape messages quote caller key names; never match phrases against them
    if isinstance(exc, ParseError):
        return FaultCategory.UNKNOWN

    status = status_code_of(exc)
    code = error_code_of(exc)
    msg = _message_of(exc)

    if isinstance(exc, ConfigError) or status in _AUTH_STATUSES:
        return FaultCategory.FATAL
    if any(p in msg for p in _AUTH_PHRASES):
        return FaultCategory.FATAL

    if status in _QUOTA_STATUSES or any(p in msg for p in _QUOTA_PHRASES):
        return FaultCategory.QUOTA

    if status is not None and (status == 408 or status >= 500):
        return FaultCategory.TRANSIENT
    if code in _TRANSIENT_CODES:
        return FaultCategory.TRANSIENT
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, httpx.TransportError)):
        return FaultCategory.TRANSIENT
    if any(p in msg for p in _TRANSIENT_PHRASES):
        return FaultCategory.TRANSIENT

    return FaultCategory.UNKNOWN


def summarize_error(exc: BaseException, max_len: int = 200) -> str:
    """Short one-line description for traces and logs."""
    text = " ".join(str(exc).split()) or type(exc).__name__
    if len(text) > max_len:
        text = text[: max_len - 1] + "…"
    return f"{type(exc).__name__}: {text}"
