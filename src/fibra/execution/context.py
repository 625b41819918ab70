"""
Job context - the explicit identity and lifetime of one stage invocation.

Every stage, reconciler run and recalculation receives a :class:`JobContext`
as an argument. It carries the job run id, the queue the job came from and
the caller's correlation id, plus a :class:`CancellationToken` and an I/O
deadline. Nothing is read from thread-local or task-local globals; logging
context is bound from the object for the span of a call.

ARCHITECTURE
────────────
::

    JobContext(job_run_id, queue, correlation_id, token, io_timeout)
      ├── .child(queue=...)       ─ same correlation, new job run id
      ├── .guard(awaitable, op)   ─ cancellation check + deadline
      ├── .check_cancelled()      ─ raise OperationCancelledError
      └── .log_context(**extra)   ─ structlog LogContext

Example::

    ctx = JobContext.new("download", correlation_id=request_id)
    async with ctx.log_context(document_id=doc.document_id):
        result = await ctx.guard(fetcher.fetch(url, ctx), "fetch")
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from fibra.core.errors import FetchTimeoutError, OperationCancelledError
from fibra.core.logging import LogContext

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation shared by a job and everything it awaits."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class JobContext:
    """Identity and lifetime of one job invocation.

    Attributes:
        job_run_id: Unique id of this attempt
        queue: Queue / stage name (``reports``, ``download``, ``parse``, ...)
        correlation_id: Id shared by every job spawned from one request
        token: Cancellation token; a cancelled token fails the next guarded call
        io_timeout: Seconds any single external await may take (None = no limit)
        attempt: 1-based attempt number for retried jobs
    """

    job_run_id: str
    queue: str
    correlation_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    io_timeout: float | None = 30.0
    attempt: int = 1
    started_at: float = field(default_factory=time.monotonic)

    @classmethod
    def new(
        cls,
        queue: str,
        *,
        correlation_id: str | None = None,
        io_timeout: float | None = 30.0,
        token: CancellationToken | None = None,
    ) -> JobContext:
        return cls(
            job_run_id=str(uuid.uuid4()),
            queue=queue,
            correlation_id=correlation_id or str(uuid.uuid4()),
            token=token or CancellationToken(),
            io_timeout=io_timeout,
        )

    def child(self, queue: str) -> JobContext:
        """Context for a job enqueued by this one; shares correlation and token."""
        return JobContext(
            job_run_id=str(uuid.uuid4()),
            queue=queue,
            correlation_id=self.correlation_id,
            token=self.token,
            io_timeout=self.io_timeout,
        )

    def retry(self) -> JobContext:
        """Context for the next attempt of the same job."""
        return JobContext(
            job_run_id=str(uuid.uuid4()),
            queue=self.queue,
            correlation_id=self.correlation_id,
            token=self.token,
            io_timeout=self.io_timeout,
            attempt=self.attempt + 1,
        )

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def check_cancelled(self) -> None:
        if self.token.cancelled:
            raise OperationCancelledError(
                f"Job {self.job_run_id} cancelled: {self.token.reason}"
            ).with_context(stage=self.queue, job_run_id=self.job_run_id)

    async def guard(self, awaitable: Awaitable[T], operation: str = "operation") -> T:
        """Await *awaitable* under the job's deadline, failing fast if cancelled."""
        if self.token.cancelled and inspect.iscoroutine(awaitable):
            awaitable.close()
        self.check_cancelled()
        try:
            if self.io_timeout is None:
                return await awaitable
            async with asyncio.timeout(self.io_timeout):
                return await awaitable
        except TimeoutError as e:
            raise FetchTimeoutError(
                f"Operation '{operation}' timed out after {self.io_timeout}s",
                cause=e,
            ).with_context(stage=self.queue, job_run_id=self.job_run_id) from e

    def log_context(self, **extra: Any) -> LogContext:
        return LogContext(
            job_run_id=self.job_run_id,
            queue=self.queue,
            correlation_id=self.correlation_id,
            **extra,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_run_id": self.job_run_id,
            "queue": self.queue,
            "correlation_id": self.correlation_id,
            "attempt": self.attempt,
        }


__all__ = ["CancellationToken", "JobContext"]
