"""
Prometheus metrics for the structured generation pipeline.

All metrics are no-op when observability.metrics_enabled is False.
Exposes track_attempt, record_attempt, record_group_fallback, record_repair_call,
generation_started/completed, start_server.
"""

from __future__ import annotations

import contextlib
import threading
import time
from typing import Any

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    start_http_server as prometheus_start_http_server,
)


def _enabled() -> bool:
    try:
        from structgen.config import get_settings
        return bool(get_settings().observability.metrics_enabled)
    except Exception:
        return False


# Lazy registry: only create metrics when enabled and first used
_metrics_created = False


def _ensure_metrics() -> bool:
    global _metrics_created
    if _metrics_created or not _enabled():
        return _metrics_created
    _create_metrics()
    _metrics_created = True
    return True


def _create_metrics() -> None:
    """Create all Prometheus metrics (called once when enabled)."""
    _attempt_duration = Histogram(
        "generation_attempt_duration_seconds",
        "Provider attempt latency",
        ["provider", "model"],
        buckets=[0.5, 1, 2, 5, 10, 30, 60],
    )
    _attempt_outcomes = Counter(
        "generation_attempts_total",
        "Provider attempts by outcome and fault category",
        ["provider", "outcome", "fault"],
    )
    _group_fallback = Counter(
        "generation_group_fallback_total",
        "Cascade moved on to the next provider group",
        ["from_group", "reason"],
    )
    _repair_calls = Counter(
        "generation_repair_calls_total",
        "Secondary JSON repair calls",
        ["status"],
    )
    _generation_duration = Histogram(
        "generation_duration_seconds",
        "End-to-end generation duration",
        ["status"],
        buckets=[1, 5, 15, 30, 60, 120, 300],
    )
    _generation_outcomes = Counter(
        "generation_requests_total",
        "Generation requests by final status",
        ["status"],
    )
    _active_generations = Gauge(
        "active_generations",
        "Number of generation requests currently running",
        [],
    )

    # Store on module for access from MetricsCollector
    _registry = {
        "attempt_duration": _attempt_duration,
        "attempt_outcomes": _attempt_outcomes,
        "group_fallback": _group_fallback,
        "repair_calls": _repair_calls,
        "generation_duration": _generation_duration,
        "generation_outcomes": _generation_outcomes,
        "active_generations": _active_generations,
    }
    setattr(_MetricsCollector, "_registry", _registry)


class _MetricsCollector:
    """Collector that delegates to Prometheus when enabled, no-op otherwise."""

    _registry: dict[str, Any] = {}

    def _get(self, name: str) -> Any:
        _ensure_metrics()
        return self._registry.get(name)

    # --- Attempts ---
    @contextlib.asynccontextmanager
    async def track_attempt(self, provider: str = "", model: str = ""):
        h = self._get("attempt_duration")
        start = time.perf_counter()
        try:
            yield
        finally:
            if h:
                h.labels(
                    provider=provider or "unknown",
                    model=(model or "unknown")[:64],
                ).observe(time.perf_counter() - start)

    def record_attempt(self, provider: str, outcome: str, fault: str = "") -> None:
        c = self._get("attempt_outcomes")
        if c:
            c.labels(
                provider=provider or "unknown",
                outcome=outcome or "unknown",
                fault=fault or "none",
            ).inc()

    def record_group_fallback(self, from_group: int, reason: str) -> None:
        c = self._get("group_fallback")
        if c:
            c.labels(from_group=str(from_group), reason=reason or "unknown").inc()

    def record_repair_call(self, status: str) -> None:
        """status: repaired/failed/skipped."""
        c = self._get("repair_calls")
        if c:
            c.labels(status=status or "unknown").inc()

    # --- Requests ---
    def generation_started(self) -> None:
        g = self._get("active_generations")
        if g:
            g.inc()

    def generation_completed(self, status: str, duration_seconds: float) -> None:
        g = self._get("active_generations")
        if g:
            g.dec()
        d = self._get("generation_duration")
        c = self._get("generation_outcomes")
        if d and duration_seconds >= 0:
            d.labels(status=status or "unknown").observe(duration_seconds)
        if c:
            c.labels(status=status or "unknown").inc()

    def start_server(self, port: int = 8000) -> None:
        if not _enabled():
            return
        _ensure_metrics()

        def run() -> None:
            prometheus_start_http_server(port, addr="0.0.0.0")

        t = threading.Thread(target=run, daemon=True)
        t.start()


metrics = _MetricsCollector()
