#!/usr/bin/env python3
"""
Check that provider keys and endpoints from .env actually work.

Loads .env from the project root (via structgen.config), then sends a minimal
request through each configured provider client (the same clients the
cascade uses) and reports the fault category of any failure. Run this before
serving traffic to avoid discovering a 401 or an empty Ollama mid-request.

Usage:
    python scripts/check_env.py
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from structgen.config import get_settings  # noqa: E402
from structgen.errors import classify_error, summarize_error  # noqa: E402
from structgen.models import GenerationOptions  # noqa: E402
from structgen.providers.ollama import OllamaClient  # noqa: E402
from structgen.service import build_clients  # noqa: E402

_PROBE_PROMPT = 'Return {"ok": true}'
_PROBE_OPTIONS = GenerationOptions(max_output_tokens=16, temperature=0.0)
_PROBE_TIMEOUT = 15.0


def mask(key: str) -> str:
    """Mask key for display."""
    val = os.environ.get(key, "")
    if not val or len(val) < 8:
        return "(not set)" if not val else val
    return f"{val[:6]}...{val[-4:]}"


def _probe_model(name: str) -> str:
    p = get_settings().providers
    return {
        "openrouter": p.openrouter_fast_models[0] if p.openrouter_fast_models else "",
        "openai": p.openai_model,
        "anthropic": p.claude_model,
        "gemini": p.gemini_model,
    }.get(name, "")


async def check_remote(name: str, client: object) -> tuple[bool, str]:
    model = _probe_model(name)
    if not model:
        return False, "no model configured"
    try:
        await client.generate(model, _PROBE_PROMPT, _PROBE_TIMEOUT, _PROBE_OPTIONS)  # type: ignore[attr-defined]
    except Exception as e:
        return False, f"[{classify_error(e).value}] {summarize_error(e)}"
    return True, f"OK ({model})"


async def check_ollama(client: OllamaClient) -> tuple[bool, str]:
    models = await client.list_models(_PROBE_TIMEOUT)
    await client.aclose()
    if not models:
        return False, f"Ollama not reachable at {client.endpoint} or no models pulled (e.g. ollama pull llama3)"
    return True, "OK (" + ", ".join(models[:6]) + ")"


async def main() -> int:
    clients = build_clients(get_settings())
    if not clients:
        print("[FAIL] No providers configured: set OPENROUTER_API_KEY or OLLAMA_ENDPOINT in .env")
        return 1

    failed = 0
    for name, client in clients.items():
        if isinstance(client, OllamaClient):
            ok, msg = await check_ollama(client)
            shown = mask("OLLAMA_ENDPOINT")
        else:
            ok, msg = await check_remote(name, client)
            shown = mask(f"{name.upper()}_API_KEY" if name != "gemini" else "GOOGLE_API_KEY")
        status = "[OK]  " if ok else "[FAIL]"
        if not ok:
            failed += 1
        print(f"  {status} {name}")
        print(f"         Key: {shown}")
        print(f"         → {msg}")
        print()

    if failed:
        print("Fix the failing providers above, then run: python scripts/check_env.py")
        return 1
    print("All configured providers respond.")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
