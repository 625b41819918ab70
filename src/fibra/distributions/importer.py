"""Dividend feed importer.

Pulls the market-data dividend series for every active ticker and stores
new events as ``imported`` distribution records (confidence 0.5) for the
reconciler to verify. Feed calls are retried with exponential backoff;
a ticker whose feed keeps failing is counted and skipped.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from fibra.core.errors import OperationCancelledError
from fibra.core.logging import get_logger
from fibra.core.periods import Clock, SystemClock
from fibra.core.settings import FibraSettings, get_settings
from fibra.distributions.models import (
    DistributionRecord,
    DistributionStatus,
    DistributionType,
    DividendEvent,
    ImportSummary,
    round_amount,
)
from fibra.distributions.ports import DistributionRepository, DividendFeed
from fibra.execution.context import JobContext
from fibra.execution.retry import ExponentialBackoff, retry_async
from fibra.observability.metrics import MetricsRegistry, get_metrics_registry

logger = get_logger(__name__)

IMPORTED_CONFIDENCE = 0.5


class DistributionImporter:
    def __init__(
        self,
        repository: DistributionRepository,
        feed: DividendFeed,
        settings: FibraSettings | None = None,
        clock: Clock | None = None,
        registry: MetricsRegistry | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        source_name: str = "feed",
    ):
        self.repository = repository
        self.feed = feed
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.registry = registry or get_metrics_registry()
        self.sleep = sleep or asyncio.sleep
        self.source_name = source_name

    def _backoff(self) -> ExponentialBackoff:
        return ExponentialBackoff(
            attempts=self.settings.import_max_attempts,
            base_delay=self.settings.import_base_delay_seconds,
            transient_only=False,
        )

    async def import_all(self, ctx: JobContext) -> ImportSummary:
        summary = ImportSummary()
        for ticker in await self.repository.active_tickers():
            ctx.check_cancelled()
            try:
                events = await self._fetch(ticker, ctx)
            except OperationCancelledError:
                raise
            except Exception as e:
                summary.failed += 1
                self.registry.counter("dividends_pull_failures_total").inc(ticker=ticker)
                logger.error("dividends.pull_failed", ticker=ticker, error_type=type(e).__name__, error=str(e))
                continue

            if not events:
                summary.warnings[ticker] = "empty"
                logger.warning("dividends.pull_empty", ticker=ticker)
                continue

            imported, duplicates = await self._store(ticker, events)
            summary.imported += imported
            summary.duplicates += duplicates
            logger.info("dividends.pull_completed", ticker=ticker, imported=imported, duplicates=duplicates)

        logger.info("dividends.import_completed", **summary.to_dict())
        return summary

    async def _fetch(self, ticker: str, ctx: JobContext) -> list[DividendEvent]:
        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning(
                "dividends.pull_retry",
                ticker=ticker,
                attempt=attempt,
                delay=round(delay, 2),
                error=str(error),
            )

        return await retry_async(
            lambda: ctx.guard(self.feed.fetch(ticker, ctx), f"feed {ticker}"),
            self._backoff(),
            on_retry=on_retry,
            sleep=self.sleep,
        )

    async def _store(self, ticker: str, events: list[DividendEvent]) -> tuple[int, int]:
        imported = duplicates = 0
        for event in events:
            if event.gross_amount <= 0:
                continue
            gross = round_amount(event.gross_amount)
            if await self.repository.exists(ticker, event.pay_date, gross):
                duplicates += 1
                continue
            now = self.clock.now()
            await self.repository.insert(
                DistributionRecord(
                    ticker=ticker,
                    pay_date=event.pay_date,
                    ex_date=event.ex_date,
                    gross_per_cbfi=gross,
                    currency=event.currency,
                    source=self.source_name,
                    confidence=IMPORTED_CONFIDENCE,
                    type=DistributionType.DIVIDEND,
                    status=DistributionStatus.IMPORTED,
                    created_at=now,
                    updated_at=now,
                )
            )
            imported += 1
        return imported, duplicates


__all__ = ["DistributionImporter"]
