"""
Provider client protocol.

The pipeline only depends on this capability; how a client reaches its
backend (HTTP gateway, local daemon, SDK) is its own business. Failures must
raise an exception that carries an HTTP-like status code or a transport error
code so the classifier can categorize it. ProviderError is the usual choice.
"""

from __future__ import annotations

from typing import Protocol

from structgen.models import GenerationOptions

JSON_ONLY_SYSTEM_PROMPT = (
    "Return ONLY a valid JSON object. Do not wrap the response in markdown fences (```), "
    "and do not include any extra text."
)


class ProviderClient(Protocol):
    async def generate(
        self,
        model: str,
        prompt: str,
        timeout: float,
        options: GenerationOptions,
    ) -> str:
        """Return the raw text produced by `model` for `prompt` within `timeout` seconds."""
        ...
