"""Metrics and the generic per-stage observer."""

from fibra.observability.metrics import Counter, Histogram, MetricsRegistry, get_metrics_registry
from fibra.observability.stage import (
    FAILURE,
    SUCCESS,
    MetricsStageObserver,
    StageObservation,
    StageObserver,
    observe_stage,
)

__all__ = [
    "FAILURE",
    "SUCCESS",
    "Counter",
    "Histogram",
    "MetricsRegistry",
    "MetricsStageObserver",
    "StageObservation",
    "StageObserver",
    "get_metrics_registry",
    "observe_stage",
]
