"""Job scheduling contract.

Stages never call each other directly: a finished stage enqueues the next
one through a :class:`JobScheduler`. The scheduler implementation (a
broker, a database queue, the in-memory queue used in tests) is an
infrastructure concern.

Queue names used by fibra::

    reports            discovery batch
    download           fetch one document
    parse              parse one document
    facts              extract facts for one document
    distributions      reconcile distributions
    portfolio-recalc   recalculate one user's portfolio
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from fibra.core.periods import utcnow
from fibra.execution.context import JobContext

QUEUE_REPORTS = "reports"
QUEUE_DOWNLOAD = "download"
QUEUE_PARSE = "parse"
QUEUE_FACTS = "facts"
QUEUE_DISTRIBUTIONS = "distributions"
QUEUE_PORTFOLIO_RECALC = "portfolio-recalc"


@dataclass
class Job:
    """A unit of work waiting on a queue."""

    queue: str
    payload: dict[str, Any]
    correlation_id: str
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempt: int = 1
    enqueued_at: datetime = field(default_factory=utcnow)

    @property
    def document_id(self) -> str | None:
        return self.payload.get("document_id")


@runtime_checkable
class JobScheduler(Protocol):
    async def enqueue(self, queue: str, payload: dict[str, Any], ctx: JobContext) -> Job:
        """Schedule *payload* on *queue*, carrying ``ctx.correlation_id``."""
        ...


@runtime_checkable
class JobQueue(JobScheduler, Protocol):
    """A scheduler the job runner can also drain."""

    async def dequeue(self) -> Job | None:
        """Next pending job, or None when the queue is empty."""
        ...

    async def requeue(self, job: Job) -> Job:
        """Put *job* back for another attempt."""
        ...


async def enqueue_recalculation(
    scheduler: JobScheduler, user_id: str, reason: str, ctx: JobContext
) -> Job:
    return await scheduler.enqueue(
        QUEUE_PORTFOLIO_RECALC, {"user_id": user_id, "reason": reason}, ctx
    )


__all__ = [
    "QUEUE_DISTRIBUTIONS",
    "QUEUE_DOWNLOAD",
    "QUEUE_FACTS",
    "QUEUE_PARSE",
    "QUEUE_PORTFOLIO_RECALC",
    "QUEUE_REPORTS",
    "Job",
    "JobQueue",
    "JobScheduler",
    "enqueue_recalculation",
]
