"""Observability: Prometheus metrics for the structured generation pipeline."""

from structgen.observability.metrics import metrics

__all__ = ["metrics"]
