"""Job runner - drains a :class:`JobQueue` with bounded concurrency.

Each job runs with a fresh :class:`JobContext` (new job run id, the job's
correlation id, the runner's cancellation token). Jobs that carry a
``document_id`` hold that document's lock for their whole run, so one
document never has two stages in flight.

Failure handling::

    retryable error, attempts left   → requeued with attempt + 1
    anything else                    → dead-lettered
    cancellation                     → counted, not retried

Usage::

    runner = PipelineRunner(queue, handlers={"download": pipeline.run_download, ...})
    summary = await runner.run_until_idle()
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fibra.core.errors import OperationCancelledError, PipelineError, is_retryable
from fibra.core.logging import get_logger
from fibra.core.settings import FibraSettings, get_settings
from fibra.execution.context import CancellationToken, JobContext
from fibra.execution.dlq import DeadLetterQueue
from fibra.execution.queue import Job, JobQueue

logger = get_logger(__name__)

Handler = Callable[[dict[str, Any], JobContext], Awaitable[Any]]


@dataclass
class RunSummary:
    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    cancelled: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "cancelled": self.cancelled,
        }


class PipelineRunner:
    def __init__(
        self,
        queue: JobQueue,
        handlers: Mapping[str, Handler],
        dlq: DeadLetterQueue | None = None,
        settings: FibraSettings | None = None,
        token: CancellationToken | None = None,
    ):
        self.queue = queue
        self.handlers = dict(handlers)
        self.settings = settings or get_settings()
        self.dlq = dlq or DeadLetterQueue()
        self.token = token or CancellationToken()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()

    @asynccontextmanager
    async def _document_lock(self, document_id: str) -> AsyncIterator[None]:
        """Hold *document_id*'s lock. The lock is dropped once nobody holds or waits on it."""
        lock = self._locks.setdefault(document_id, asyncio.Lock())
        self._lock_users[document_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[document_id] -= 1
            if not self._lock_users[document_id]:
                del self._lock_users[document_id]
                del self._locks[document_id]

    async def run_until_idle(self) -> RunSummary:
        """Process jobs until the queue is empty and nothing is in flight."""
        summary = RunSummary()
        semaphore = asyncio.Semaphore(self.settings.pipeline_concurrency)
        in_flight: set[asyncio.Task] = set()

        async def _guarded(job: Job) -> None:
            try:
                await self._run_job(job, summary)
            finally:
                semaphore.release()

        while not self.token.cancelled:
            job = await self.queue.dequeue()
            if job is None:
                if not in_flight:
                    break
                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                in_flight -= done
                continue
            await semaphore.acquire()
            in_flight.add(asyncio.create_task(_guarded(job)))

        if in_flight:
            await asyncio.gather(*in_flight)

        logger.info("runner.idle", **summary.to_dict())
        return summary

    async def _run_job(self, job: Job, summary: RunSummary) -> None:
        ctx = JobContext(
            job_run_id=str(uuid.uuid4()),
            queue=job.queue,
            correlation_id=job.correlation_id,
            token=self.token,
            io_timeout=self.settings.io_timeout_seconds,
            attempt=job.attempt,
        )
        summary.processed += 1
        handler = self.handlers.get(job.queue)

        async with AsyncExitStack() as stack:
            if job.document_id:
                await stack.enter_async_context(self._document_lock(job.document_id))
            try:
                if handler is None:
                    raise PipelineError(f"No handler registered for queue {job.queue}")
                await handler(job.payload, ctx)
                summary.succeeded += 1
            except OperationCancelledError:
                summary.cancelled += 1
                logger.info("runner.job_cancelled", job_id=job.job_id, queue=job.queue)
            except Exception as e:
                if is_retryable(e) and job.attempt < self.settings.stage_max_attempts:
                    job.attempt += 1
                    await self.queue.requeue(job)
                    summary.retried += 1
                    logger.info(
                        "runner.job_requeued",
                        job_id=job.job_id,
                        queue=job.queue,
                        attempt=job.attempt,
                        error=str(e),
                    )
                else:
                    self.dlq.add(job, ctx, e)
                    summary.dead_lettered += 1


__all__ = ["Handler", "PipelineRunner", "RunSummary"]
