"""Job execution primitives: context, cancellation, queues, runner, crawl delays, retry, DLQ."""

from fibra.execution.context import CancellationToken, JobContext
from fibra.execution.dlq import DeadLetter, DeadLetterQueue
from fibra.execution.queue import Job, JobQueue, JobScheduler, enqueue_recalculation
from fibra.execution.rate_limit import CrawlDelayLimiter
from fibra.execution.retry import ExponentialBackoff, retry_async
from fibra.execution.runner import PipelineRunner, RunSummary

__all__ = [
    "CancellationToken",
    "CrawlDelayLimiter",
    "DeadLetter",
    "DeadLetterQueue",
    "ExponentialBackoff",
    "Job",
    "JobContext",
    "JobQueue",
    "JobScheduler",
    "PipelineRunner",
    "RunSummary",
    "enqueue_recalculation",
    "retry_async",
]
