"""Generic stage observer.

Every pipeline stage and scheduled workflow reports through a single
:class:`StageObserver`, keyed by stage name, instead of one collector
interface per stage. Each invocation yields exactly one outcome
(``success`` or ``failure``) and one duration.

Example::

    observer = MetricsStageObserver(registry)
    async with observer.observe("download", ctx) as obs:
        outcome = await downloader.download(document_id, ctx)
        if outcome.failed:
            obs.fail(outcome.reason)

Metrics written per stage:

    <stage>_invocations_total
    <stage>_outcomes_total{outcome="success"|"failure"}
    <stage>_duration_seconds
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Protocol

from fibra.core.logging import get_logger
from fibra.execution.context import JobContext
from fibra.observability.metrics import MetricsRegistry, get_metrics_registry

logger = get_logger(__name__)

SUCCESS = "success"
FAILURE = "failure"


class StageObserver(Protocol):
    """Receives one outcome per stage invocation."""

    def record(
        self,
        stage: str,
        ctx: JobContext,
        outcome: str,
        duration: float,
        **fields: Any,
    ) -> None: ...


class StageObservation:
    """Outcome holder for one invocation; the first outcome set wins."""

    def __init__(self, stage: str, ctx: JobContext):
        self.stage = stage
        self.ctx = ctx
        self.outcome: str | None = None
        self.fields: dict[str, Any] = {}
        self.started = time.perf_counter()

    def succeed(self, **fields: Any) -> None:
        if self.outcome is None:
            self.outcome = SUCCESS
            self.fields.update(fields)

    def fail(self, reason: str | None = None, **fields: Any) -> None:
        if self.outcome is None:
            self.outcome = FAILURE
            if reason is not None:
                self.fields["reason"] = reason
            self.fields.update(fields)

    @property
    def duration(self) -> float:
        return time.perf_counter() - self.started


class MetricsStageObserver:
    """StageObserver backed by the in-process metrics registry and structlog."""

    def __init__(self, registry: MetricsRegistry | None = None):
        self.registry = registry or get_metrics_registry()

    def record(
        self,
        stage: str,
        ctx: JobContext,
        outcome: str,
        duration: float,
        **fields: Any,
    ) -> None:
        self.registry.counter(f"{stage}_invocations_total").inc()
        self.registry.counter(f"{stage}_outcomes_total").inc(outcome=outcome)
        self.registry.histogram(f"{stage}_duration_seconds").observe(duration)

        log = logger.info if outcome == SUCCESS else logger.warning
        log(
            f"{stage}.{outcome}",
            job_run_id=ctx.job_run_id,
            queue=ctx.queue,
            correlation_id=ctx.correlation_id,
            duration_seconds=round(duration, 4),
            **fields,
        )

    def outcomes(self, stage: str) -> dict[str, float]:
        """Outcome counts for *stage* (test and CLI helper)."""
        counter = self.registry.counter(f"{stage}_outcomes_total")
        return {
            SUCCESS: counter.value(outcome=SUCCESS),
            FAILURE: counter.value(outcome=FAILURE),
        }

    @asynccontextmanager
    async def observe(self, stage: str, ctx: JobContext) -> AsyncIterator[StageObservation]:
        async with observe_stage(self, stage, ctx) as obs:
            yield obs


@asynccontextmanager
async def observe_stage(
    observer: StageObserver, stage: str, ctx: JobContext
) -> AsyncIterator[StageObservation]:
    """Record exactly one outcome for the enclosed block.

    An exception marks the invocation failed (unless an outcome was already
    set) and propagates unchanged.
    """
    obs = StageObservation(stage, ctx)
    try:
        yield obs
    except BaseException as e:
        obs.fail(error_type=type(e).__name__, error=str(e))
        raise
    else:
        obs.succeed()
    finally:
        observer.record(stage, ctx, obs.outcome or FAILURE, obs.duration, **obs.fields)


__all__ = [
    "FAILURE",
    "SUCCESS",
    "MetricsStageObserver",
    "StageObservation",
    "StageObserver",
    "observe_stage",
]
