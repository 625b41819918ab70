"""Dead letters for jobs that failed for good.

A job lands here when its error is not retryable or its attempts are used
up. The entry keeps the job itself (queue, payload, correlation id) next to
the error, so an operator can read why it failed and put it back on its
queue once the cause is fixed::

    entry = dlq.add(job, ctx, error)
    ...
    await dlq.replay(entry.id, scheduler, ctx)   # fresh job, attempt 1
    dlq.resolve(other.id, by="ops")              # give up on it
"""

from __future__ import annotations

import traceback
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from fibra.core.errors import FibraError, ValidationError
from fibra.core.logging import get_logger
from fibra.core.periods import utcnow
from fibra.execution.context import JobContext
from fibra.execution.queue import Job, JobScheduler

logger = get_logger(__name__)


@dataclass
class DeadLetter:
    id: str
    job_id: str
    queue: str
    payload: dict[str, Any]
    correlation_id: str
    job_run_id: str
    attempts: int
    error_type: str
    message: str
    trace: str
    failed_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
    replays: int = 0
    resolved_at: datetime | None = None
    resolved_by: str | None = None

    @property
    def open(self) -> bool:
        return self.resolved_at is None

    def summary(self) -> dict[str, Any]:
        """Operator view without the traceback."""
        return {
            "id": self.id,
            "queue": self.queue,
            "payload": self.payload,
            "correlation_id": self.correlation_id,
            "attempts": self.attempts,
            "error_type": self.error_type,
            "message": self.message,
            "failed_at": self.failed_at.isoformat(),
            "replays": self.replays,
            "resolved_by": self.resolved_by,
        }


class DeadLetterQueue:
    """In-process dead letter store, oldest first."""

    def __init__(self):
        self._entries: dict[str, DeadLetter] = {}

    def add(self, job: Job, ctx: JobContext, error: BaseException) -> DeadLetter:
        entry = DeadLetter(
            id=str(uuid.uuid4()),
            job_id=job.job_id,
            queue=job.queue,
            payload=dict(job.payload),
            correlation_id=job.correlation_id,
            job_run_id=ctx.job_run_id,
            attempts=job.attempt,
            error_type=type(error).__name__,
            message=str(error),
            trace="".join(traceback.format_exception(error)),
            failed_at=utcnow(),
            details=error.to_dict() if isinstance(error, FibraError) else {},
        )
        self._entries[entry.id] = entry
        logger.warning(
            "dlq.added",
            dlq_id=entry.id,
            queue=entry.queue,
            attempts=entry.attempts,
            error_type=entry.error_type,
        )
        return entry

    def get(self, dlq_id: str) -> DeadLetter | None:
        return self._entries.get(dlq_id)

    def pending(self, queue: str | None = None) -> list[DeadLetter]:
        return [e for e in self._entries.values() if e.open and (queue is None or e.queue == queue)]

    async def replay(self, dlq_id: str, scheduler: JobScheduler, ctx: JobContext) -> Job:
        """Enqueue the dead job's payload again and close the entry."""
        entry = self._entries.get(dlq_id)
        if entry is None or not entry.open:
            raise ValidationError("No open dead letter with that id", field="dlq_id", value=dlq_id)
        job = await scheduler.enqueue(entry.queue, dict(entry.payload), ctx)
        entry.replays += 1
        entry.resolved_at = utcnow()
        entry.resolved_by = f"replay:{job.job_id}"
        logger.info("dlq.replayed", dlq_id=dlq_id, queue=entry.queue, job_id=job.job_id)
        return job

    def resolve(self, dlq_id: str, by: str | None = None) -> bool:
        entry = self._entries.get(dlq_id)
        if entry is None or not entry.open:
            return False
        entry.resolved_at = utcnow()
        entry.resolved_by = by
        return True

    def by_queue(self) -> dict[str, int]:
        """Open entries per queue."""
        return dict(Counter(e.queue for e in self._entries.values() if e.open))

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["DeadLetter", "DeadLetterQueue"]
