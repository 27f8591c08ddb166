"""
Structured generation: command line entry point.

Usage:
    python -m structgen.main generate "Create a 5 question quiz on photosynthesis" \
        --require title --require-array questions --items 5
    python -m structgen.main generate "..." --require-array questions --fast --timeout 20
    python -m structgen.main providers --fast
"""

from __future__ import annotations

# Load .env before any other imports so provider SDKs never capture stale env keys
import structgen.config  # noqa: F401, E402

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import structlog
from rich.console import Console
from rich.table import Table
from rich.theme import Theme

from structgen.config import get_settings
from structgen.errors import ConfigError
from structgen.models import ExpectedShape, FailureKind, GenerationFailure, GenerationTrace
from structgen.observability import metrics as obs_metrics
from structgen.service import StructuredGenerationService

_CUSTOM_THEME = Theme({
    "log.info":     "dim white",
    "log.warning":  "bold #f59e0b",
    "log.error":    "bold #dc2626",
    "log.debug":    "dim #64748b",
    "primary":      "#ea580c",
    "outcome.ok":   "bold #16a34a",
    "outcome.fail": "bold #dc2626",
})

console = Console(theme=_CUSTOM_THEME, highlight=False, stderr=True)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


class _RichStructlogRenderer:
    """Structlog processor that renders log lines via Rich."""

    _SKIP_KEYS = frozenset({"event", "level", "_record"})

    def __call__(self, logger_: object, method: str, event_dict: dict) -> str:  # noqa: ARG002
        event = event_dict.get("event", "")
        level = event_dict.get("level", "info").lower()

        # Group fallback highlight
        if event == "provider_group_skipped":
            console.print(
                f"  [bold #f59e0b]╔══ GROUP FALLBACK ══╗[/bold #f59e0b]  "
                f"group [bold #ea580c]{event_dict.get('group', '?')}[/bold #ea580c] "
                f"[#64748b]after {event_dict.get('provider', '?')}[/#64748b]  "
                f"[bold #dc2626][{event_dict.get('reason', 'quota')}][/bold #dc2626]"
            )
            raise structlog.DropEvent()

        kv_parts = []
        for k, v in event_dict.items():
            if k in self._SKIP_KEYS:
                continue
            vs = str(v)
            if len(vs) > 120:
                vs = vs[:117] + "…"
            if k in ("provider", "fault", "outcome"):
                kv_parts.append(f"[#94a3b8]{k}[/#94a3b8]=[#ea580c]{vs}[/#ea580c]")
            else:
                kv_parts.append(f"[#64748b]{k}[/#64748b]=[#94a3b8]{vs}[/#94a3b8]")
        kv_str = "  ".join(kv_parts)

        if level == "warning":
            prefix, ev_fmt = "[bold #f59e0b]⚠[/bold #f59e0b]", f"[log.warning]{event}[/log.warning]"
        elif level in ("error", "critical"):
            prefix, ev_fmt = "[bold #dc2626]✗[/bold #dc2626]", f"[log.error]{event}[/log.error]"
        elif level == "debug":
            prefix, ev_fmt = "[#64748b]·[/#64748b]", f"[log.debug]{event}[/log.debug]"
        else:
            prefix, ev_fmt = "[#ea580c]▪[/#ea580c]", f"[bold #e2e8f0]{event}[/bold #e2e8f0]"

        console.print(f"  {prefix} {ev_fmt}  {kv_str}")
        raise structlog.DropEvent()


def configure_logging(level: str = "INFO") -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            _RichStructlogRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


def _trace_table(trace: GenerationTrace) -> Table:
    table = Table(title="Attempts", title_style="primary", show_lines=False)
    table.add_column("#", justify="right")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Start (s)", justify="right")
    table.add_column("Took (s)", justify="right")
    table.add_column("Outcome")
    table.add_column("Fault")
    table.add_column("Error")
    for i, a in enumerate(trace.attempts, start=1):
        style = "outcome.ok" if a.outcome.value == "success" else "outcome.fail"
        table.add_row(
            str(i),
            a.provider,
            a.model,
            f"{a.started_at:.2f}",
            f"{a.duration:.2f}",
            f"[{style}]{a.outcome.value}[/{style}]",
            a.fault.value if a.fault else "",
            (a.error or "")[:60],
        )
    return table


async def run_generate(args: argparse.Namespace) -> int:
    service = StructuredGenerationService()
    shape = ExpectedShape(
        required_keys=tuple(args.require or ()),
        required_array_keys=tuple(args.require_array or ()),
    )
    try:
        result = await service.generate(
            args.prompt,
            shape,
            fast_mode=True if args.fast else None,
            item_count=args.items,
            timeout=args.timeout,
        )
    finally:
        await service.aclose()

    console.print(_trace_table(result.trace))
    if isinstance(result, GenerationFailure):
        console.print(f"[outcome.fail]{result.kind.value}[/outcome.fail]: {result.message}")
        if result.last_error:
            console.print(f"[log.debug]last error: {result.last_error}[/log.debug]")
        return EXIT_CONFIG if result.kind == FailureKind.CONFIG_ERROR else EXIT_FAILED

    payload = json.dumps(result.data, indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
        console.print(f"[outcome.ok]saved[/outcome.ok] {args.output}")
    else:
        print(payload)
    return EXIT_OK


async def run_providers(args: argparse.Namespace) -> int:
    service = StructuredGenerationService()
    try:
        groups = await service.describe_groups(fast_mode=args.fast)
    except ConfigError as e:
        console.print(f"[outcome.fail]Invalid provider groups[/outcome.fail]: {e}")
        return EXIT_CONFIG
    finally:
        await service.aclose()
    if not groups:
        console.print("[outcome.fail]No providers configured[/outcome.fail] (set OPENROUTER_API_KEY or OLLAMA_ENDPOINT)")
        return EXIT_CONFIG
    for i, group in enumerate(groups, start=1):
        console.print(f"[primary]group {i}[/primary]  " + "  →  ".join(group))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="structgen", description="Resilient structured JSON generation")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Generate one JSON object from a prompt")
    gen.add_argument("prompt")
    gen.add_argument("--require", action="append", metavar="KEY", help="Required top-level key (repeatable)")
    gen.add_argument(
        "--require-array", action="append", metavar="KEY", help="Required non-empty array key (repeatable)"
    )
    gen.add_argument("--fast", action="store_true", help="Fast mode: tighter deadline and output size")
    gen.add_argument("--timeout", type=float, default=None, help="Total deadline in seconds")
    gen.add_argument("--items", type=int, default=None, help="Expected item count (scales output tokens)")
    gen.add_argument("--output", default=None, help="Write JSON to this file instead of stdout")

    prov = sub.add_parser("providers", help="Show the provider cascade")
    prov.add_argument("--fast", action="store_true")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging("DEBUG" if args.debug else settings.observability.log_level)
    if settings.observability.metrics_enabled:
        obs_metrics.start_server(settings.observability.metrics_port)
    if args.command == "generate":
        return asyncio.run(run_generate(args))
    return asyncio.run(run_providers(args))


if __name__ == "__main__":
    sys.exit(main())
