"""Stage jobs for the document-to-facts pipeline.

Each ``run_*`` method is a queue handler (``payload, ctx``) that calls one
service, records one :class:`DocumentJobEvent` per document touched,
reports one outcome to the :class:`StageObserver` and enqueues the next
stage::

    reports  ──► download ──► parse ──► facts ──► (security metrics, kpi recalcs)

Failures are recorded as a failed job event and re-raised so the runner
can retry or dead-letter the job.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fibra.core.errors import ParseError
from fibra.core.logging import get_logger
from fibra.core.periods import Clock, SystemClock
from fibra.core.protocols import HoldersDirectory, SecurityMetricsWriter
from fibra.documents.discovery import DocumentDiscoveryService
from fibra.documents.download import DocumentDownloadService
from fibra.documents.facts import FactsExtractionService
from fibra.documents.models import (
    DiscoveryBatchResult,
    DocumentJobEvent,
    DownloadOutcome,
    FactsOutcome,
    ParseOutcome,
)
from fibra.documents.parser import DocumentParserService
from fibra.documents.ports import DocumentRepository
from fibra.execution.context import JobContext
from fibra.execution.queue import (
    QUEUE_DOWNLOAD,
    QUEUE_FACTS,
    QUEUE_PARSE,
    QUEUE_REPORTS,
    JobScheduler,
    enqueue_recalculation,
)
from fibra.observability.stage import MetricsStageObserver, StageObserver, observe_stage

logger = get_logger(__name__)

RECALC_REASON_KPI = "kpi"


class DocumentPipeline:
    def __init__(
        self,
        repository: DocumentRepository,
        scheduler: JobScheduler,
        discovery: DocumentDiscoveryService,
        downloader: DocumentDownloadService,
        parser: DocumentParserService,
        facts: FactsExtractionService,
        observer: StageObserver | None = None,
        metrics_writer: SecurityMetricsWriter | None = None,
        holders: HoldersDirectory | None = None,
        clock: Clock | None = None,
    ):
        self.repository = repository
        self.scheduler = scheduler
        self.discovery = discovery
        self.downloader = downloader
        self.parser = parser
        self.facts = facts
        self.observer = observer or MetricsStageObserver()
        self.metrics_writer = metrics_writer
        self.holders = holders
        self.clock = clock or SystemClock()

    def handlers(self) -> dict[str, Any]:
        """Queue name to handler mapping for :class:`PipelineRunner`."""
        return {
            QUEUE_REPORTS: self.run_discovery,
            QUEUE_DOWNLOAD: self.run_download,
            QUEUE_PARSE: self.run_parse,
            QUEUE_FACTS: self.run_facts,
        }

    async def run_discovery(self, payload: dict[str, Any], ctx: JobContext) -> DiscoveryBatchResult:
        since = payload.get("since")
        if isinstance(since, str):
            since = datetime.fromisoformat(since)

        async with ctx.log_context(), observe_stage(self.observer, "discovery", ctx) as obs:
            result = await self.discovery.discover(ctx, since=since, domains=payload.get("domains"))
            for document in result.new_documents:
                await self._event(ctx, document.document_id, QUEUE_REPORTS, "queued", True,
                                  details=document.url)
                await self.scheduler.enqueue(QUEUE_DOWNLOAD, {"document_id": document.document_id}, ctx)
            obs.succeed(new=result.new_count, existing=result.existing,
                        skipped_by_robots=result.skipped_by_robots)
        return result

    async def run_download(self, payload: dict[str, Any], ctx: JobContext) -> DownloadOutcome:
        document_id = payload["document_id"]
        started = self.clock.now()
        async with ctx.log_context(document_id=document_id), \
                observe_stage(self.observer, "download", ctx) as obs:
            try:
                outcome = await self.downloader.download(document_id, ctx)
            except Exception as e:
                await self._event(ctx, document_id, QUEUE_DOWNLOAD, "failed", False,
                                  started=started, details=str(e))
                raise
            await self._event(ctx, document_id, QUEUE_DOWNLOAD, outcome.status.value, True,
                              started=started, details=outcome.reason, content_hash=outcome.hash)
            if outcome.advances:
                await self.scheduler.enqueue(QUEUE_PARSE, {"document_id": document_id}, ctx)
            obs.succeed(status=outcome.status.value)
        return outcome

    async def run_parse(self, payload: dict[str, Any], ctx: JobContext) -> ParseOutcome:
        document_id = payload["document_id"]
        started = self.clock.now()
        async with ctx.log_context(document_id=document_id), \
                observe_stage(self.observer, "parse", ctx) as obs:
            try:
                outcome = await self.parser.parse(document_id, ctx)
            except Exception as e:
                await self._event(ctx, document_id, QUEUE_PARSE, "failed", False,
                                  started=started, details=str(e))
                raise

            if outcome.requires_retry:
                await self._event(ctx, document_id, QUEUE_PARSE, "failed", False,
                                  started=started, details=outcome.reason)
                raise ParseError(outcome.reason or "parse failed", retryable=True).with_context(
                    document_id=document_id, stage=QUEUE_PARSE
                )

            if outcome.ignored:
                await self._event(ctx, document_id, QUEUE_PARSE, "failed", False,
                                  started=started, details=outcome.reason)
                raise ParseError(outcome.reason or "parse failed").with_context(
                    document_id=document_id, stage=QUEUE_PARSE
                )

            status = "skipped" if outcome.skipped else "parsed"
            await self._event(ctx, document_id, QUEUE_PARSE, status, outcome.success,
                              started=started, details=outcome.reason,
                              parser_version=self.parser.parser_version)
            if outcome.success and not outcome.skipped:
                await self.scheduler.enqueue(QUEUE_FACTS, {"document_id": document_id}, ctx)
            obs.succeed(status=status, ocr_used=outcome.ocr_used)
        return outcome

    async def run_facts(self, payload: dict[str, Any], ctx: JobContext) -> FactsOutcome:
        document_id = payload["document_id"]
        started = self.clock.now()
        async with ctx.log_context(document_id=document_id), \
                observe_stage(self.observer, "facts", ctx) as obs:
            try:
                outcome = await self.facts.extract(document_id, ctx)
            except Exception as e:
                await self._event(ctx, document_id, QUEUE_FACTS, "failed", False,
                                  started=started, details=str(e))
                raise

            record = outcome.record
            await self._event(
                ctx, document_id, QUEUE_FACTS,
                "extracted" if outcome.created else "unchanged", True,
                started=started,
                details=f"score={record.score} current={outcome.is_current}",
                content_hash=record.hash,
                parser_version=record.parser_version,
            )
            if outcome.created and outcome.is_current and not record.requires_review:
                await self._publish(outcome, ctx)
            obs.succeed(score=record.score, requires_review=record.requires_review)
        return outcome

    async def _publish(self, outcome: FactsOutcome, ctx: JobContext) -> None:
        record = outcome.record
        if self.metrics_writer is not None:
            await ctx.guard(self.metrics_writer.update_facts(record.ticker, record, ctx),
                            "security_metrics.update_facts")
        if self.holders is not None:
            users = await ctx.guard(self.holders.users_holding(record.ticker, ctx), "holders.lookup")
            for user_id in users:
                await enqueue_recalculation(self.scheduler, user_id, RECALC_REASON_KPI, ctx)
            logger.info("facts.recalculations_enqueued", ticker=record.ticker, users=len(users))

    async def _event(
        self,
        ctx: JobContext,
        document_id: str,
        stage: str,
        status: str,
        success: bool,
        started: datetime | None = None,
        details: str | None = None,
        content_hash: str | None = None,
        parser_version: str | None = None,
    ) -> None:
        now = self.clock.now()
        await self.repository.add_job_event(
            DocumentJobEvent(
                job_run_id=ctx.job_run_id,
                document_id=document_id,
                stage=stage,
                status=status,
                success=success,
                started_at=started or now,
                completed_at=now,
                details=details,
                hash=content_hash,
                parser_version=parser_version,
                correlation_id=ctx.correlation_id,
            )
        )


__all__ = ["DocumentPipeline", "RECALC_REASON_KPI"]
