"""Distribution reconciler.

Cross-checks ``imported`` distribution records against the official source
and settles each one:

==========================================================  ===========
Situation                                                   Result
==========================================================  ===========
official payment in the pay-date window, amount within       verified
``amount_tolerance`` (relative)
matched official amount <= 0                                 ignored
several official payments in the window summing to the       verified +
imported amount                                              siblings
official / imported ~= integer k >= 2 and prior verified     split
history shows the imported amount is pre-action
no official payment and pay date older than                  ignored
``grace_period_days``
anything else                                                left imported
==========================================================  ===========

Only ``imported`` records are read, so verified records are never
revisited. Yields are recomputed for every ticker that changed, and users
holding it get a ``distribution`` recalculation.
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from statistics import median
from typing import Any

from fibra.core.errors import OperationCancelledError
from fibra.core.finance.adjustments import CbfiAdjustment, CorporateAction
from fibra.core.logging import get_logger
from fibra.core.periods import Clock, SystemClock, period_tag_for
from fibra.core.protocols import HoldersDirectory, SecurityCatalog, SecurityMetricsWriter
from fibra.core.settings import FibraSettings, get_settings
from fibra.distributions.models import (
    DistributionRecord,
    DistributionStatus,
    DistributionType,
    OfficialDistributionRecord,
    ReconciliationSummary,
    TickerResult,
    round_amount,
)
from fibra.distributions.ports import (
    DistributionMetricsWriter,
    DistributionRepository,
    OfficialDistributionSource,
)
from fibra.execution.context import JobContext
from fibra.execution.queue import JobScheduler, enqueue_recalculation
from fibra.observability.metrics import MetricsRegistry, get_metrics_registry
from fibra.observability.stage import MetricsStageObserver, StageObserver, observe_stage

logger = get_logger(__name__)

VERIFIED_CONFIDENCE = 0.9
SPLIT_CONFIDENCE = 0.7
RECALC_REASON_DISTRIBUTION = "distribution"


def yield_of(amount: Decimal, price: Decimal | None) -> Decimal | None:
    if price is None or price <= 0 or amount <= 0:
        return None
    return (amount / price).quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)


class DistributionReconciler:
    def __init__(
        self,
        repository: DistributionRepository,
        official: OfficialDistributionSource,
        catalog: SecurityCatalog,
        scheduler: JobScheduler,
        metrics_writer: DistributionMetricsWriter | None = None,
        security_writer: SecurityMetricsWriter | None = None,
        holders: HoldersDirectory | None = None,
        settings: FibraSettings | None = None,
        clock: Clock | None = None,
        observer: StageObserver | None = None,
        registry: MetricsRegistry | None = None,
    ):
        self.repository = repository
        self.official = official
        self.catalog = catalog
        self.scheduler = scheduler
        self.metrics_writer = metrics_writer
        self.security_writer = security_writer
        self.holders = holders
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.registry = registry or get_metrics_registry()
        self.observer = observer or MetricsStageObserver(self.registry)

    async def run(self, payload: dict[str, Any], ctx: JobContext) -> ReconciliationSummary:
        """Queue handler for ``distributions`` jobs."""
        return await self.reconcile(ctx)

    async def reconcile(self, ctx: JobContext) -> ReconciliationSummary:
        summary = ReconciliationSummary()
        async with ctx.log_context(), observe_stage(self.observer, "reconcile", ctx) as obs:
            pending = await self.repository.list_by_status(DistributionStatus.IMPORTED)
            by_ticker: dict[str, list[DistributionRecord]] = {}
            for record in pending:
                by_ticker.setdefault(record.ticker.upper(), []).append(record)

            users: set[str] = set()
            for ticker in sorted(by_ticker):
                ctx.check_cancelled()
                result = await self._reconcile_ticker_isolated(ticker, by_ticker[ticker], ctx)
                summary.add(result)
                users.update(result.holders)

            for user_id in sorted(users):
                await enqueue_recalculation(self.scheduler, user_id, RECALC_REASON_DISTRIBUTION, ctx)
            summary.recalculations_enqueued = len(users)

            obs.succeed(**summary.to_dict())
        logger.info("reconcile.completed", **summary.to_dict())
        return summary

    async def _reconcile_ticker_isolated(
        self, ticker: str, records: list[DistributionRecord], ctx: JobContext
    ) -> TickerResult:
        """Settle, recompute yields and find holders for one ticker.

        Nothing raised here leaves the ticker except cancellation. Records
        already settled before a failure stay counted, and their yields are
        still recomputed unless the yield step itself was what failed.
        """
        self.registry.counter("reconcile_ticker_attempts_total").inc(ticker=ticker)
        result = TickerResult(ticker, imported=len(records))
        settled = False
        try:
            await self.reconcile_ticker(ticker, records, ctx, result)
            settled = True
            if result.changed:
                await self._publish(ticker, result, ctx)
        except OperationCancelledError:
            raise
        except Exception as e:
            self._ticker_failed(result, e)
            if not settled and result.changed:
                try:
                    await self._publish(ticker, result, ctx)
                except OperationCancelledError:
                    raise
                except Exception as publish_error:
                    logger.error(
                        "reconcile.publish_failed",
                        ticker=ticker,
                        error_type=type(publish_error).__name__,
                        error=str(publish_error),
                    )
        return result

    def _ticker_failed(self, result: TickerResult, error: Exception) -> None:
        self.registry.counter("reconcile_ticker_failures_total").inc(ticker=result.ticker)
        result.error = str(error)
        logger.error(
            "reconcile.ticker_failed",
            ticker=result.ticker,
            error_type=type(error).__name__,
            error=str(error),
            verified=result.verified,
            ignored=result.ignored,
            split=result.split,
        )

    async def _publish(self, ticker: str, result: TickerResult, ctx: JobContext) -> None:
        await self.recompute_yields(ticker, ctx)
        result.yields_recomputed = True
        if self.holders is not None:
            result.holders.update(
                await ctx.guard(self.holders.users_holding(ticker, ctx), "holders.lookup")
            )

    async def reconcile_ticker(
        self,
        ticker: str,
        records: list[DistributionRecord],
        ctx: JobContext,
        result: TickerResult | None = None,
    ) -> TickerResult:
        """Settle every imported record of *ticker*, counting into *result* as it goes."""
        result = result if result is not None else TickerResult(ticker, imported=len(records))
        earliest = min(r.pay_date for r in records)
        since = earliest - timedelta(days=max(self.settings.official_lookback_days, self.settings.pay_date_window_days))
        official = await ctx.guard(self.official.get_official(ticker, since, ctx), f"official {ticker}")
        prior = await self.repository.list_verified_since(ticker, date.min)

        for record in sorted(records, key=lambda r: r.pay_date):
            window = self._in_window(record, official)

            match = self._best_match(record, window)
            if match is not None:
                if match.gross_per_cbfi <= 0:
                    await self._set_status(record, DistributionStatus.IGNORED)
                    result.ignored += 1
                else:
                    await self._verify(record, match)
                    result.verified += 1
                continue

            payments = self._multi_payment(record, window)
            if payments:
                await self._verify(record, payments[0])
                for payment in payments[1:]:
                    await self.repository.insert(self._sibling(record, payment))
                    result.siblings += 1
                result.verified += 1
                logger.info("reconcile.multi_payment", ticker=ticker, record_id=record.id, payments=len(payments))
                continue

            adjustment = self._split(record, window, prior)
            if adjustment is not None:
                record.split_factor = adjustment.ratio
                record.confidence = SPLIT_CONFIDENCE
                await self._set_status(record, DistributionStatus.SPLIT)
                result.split += 1
                result.adjustments.append(adjustment)
                logger.info(
                    "reconcile.split",
                    ticker=ticker,
                    record_id=record.id,
                    ratio=str(adjustment.ratio),
                    action=adjustment.describe(),
                )
                continue

            age = (self.clock.now().date() - record.pay_date).days
            if not window and age > self.settings.grace_period_days:
                await self._set_status(record, DistributionStatus.IGNORED)
                result.ignored += 1
                continue

            result.unresolved += 1
            logger.warning(
                "reconcile.unresolved",
                ticker=ticker,
                record_id=record.id,
                pay_date=record.pay_date.isoformat(),
                gross=str(record.gross_per_cbfi),
                candidates=len(window),
            )

        return result

    def _in_window(
        self, record: DistributionRecord, official: list[OfficialDistributionRecord]
    ) -> list[OfficialDistributionRecord]:
        days = self.settings.pay_date_window_days
        return [
            o for o in official
            if o.ticker.upper() == record.ticker.upper() and abs((o.pay_date - record.pay_date).days) <= days
        ]

    def _tolerance(self, amount: Decimal) -> Decimal:
        return abs(amount) * self.settings.amount_tolerance

    def _best_match(
        self, record: DistributionRecord, window: list[OfficialDistributionRecord]
    ) -> OfficialDistributionRecord | None:
        tolerance = self._tolerance(record.gross_per_cbfi)
        candidates = sorted(window, key=lambda o: abs(o.gross_per_cbfi - record.gross_per_cbfi))
        for candidate in candidates:
            if abs(candidate.gross_per_cbfi - record.gross_per_cbfi) <= tolerance:
                return candidate
        return None

    def _multi_payment(
        self, record: DistributionRecord, window: list[OfficialDistributionRecord]
    ) -> list[OfficialDistributionRecord]:
        payments = [o for o in window if o.gross_per_cbfi > 0]
        if len(payments) < 2:
            return []
        total = sum((o.gross_per_cbfi for o in payments), Decimal(0))
        if abs(total - record.gross_per_cbfi) <= self._tolerance(record.gross_per_cbfi):
            return sorted(payments, key=lambda o: (o.pay_date, -o.gross_per_cbfi))
        return []

    def _split(
        self,
        record: DistributionRecord,
        window: list[OfficialDistributionRecord],
        prior: list[DistributionRecord],
    ) -> CbfiAdjustment | None:
        """Integer-ratio check confirmed by the ticker's verified history."""
        if record.gross_per_cbfi <= 0:
            return None
        history = [
            p.gross_per_cbfi for p in prior
            if p.pay_date < record.pay_date and p.gross_per_cbfi > 0 and p.id != record.id
        ]
        if not history:
            return None
        typical = Decimal(median(history))

        for candidate in window:
            if candidate.gross_per_cbfi <= 0:
                continue
            ratio = candidate.gross_per_cbfi / record.gross_per_cbfi
            k = ratio.to_integral_value(rounding=ROUND_HALF_UP)
            # tolerance scales with k: cent rounding of both amounts grows the ratio error
            if k < 2 or abs(ratio - k) > self.settings.split_ratio_tolerance * k:
                continue
            pre_action = abs(typical - record.gross_per_cbfi) <= self._tolerance(record.gross_per_cbfi)
            scaled = abs(candidate.gross_per_cbfi - k * typical) <= self._tolerance(candidate.gross_per_cbfi)
            if pre_action or scaled:
                return CbfiAdjustment(
                    ticker=record.ticker,
                    effective_date=candidate.pay_date,
                    ratio=Decimal(int(k)),
                    action=CorporateAction.SPLIT,
                    evidence={
                        "record_id": record.id,
                        "imported": str(record.gross_per_cbfi),
                        "official": str(candidate.gross_per_cbfi),
                        "typical_prior": str(typical),
                    },
                )
        return None

    async def _verify(self, record: DistributionRecord, official: OfficialDistributionRecord) -> None:
        record.pay_date = official.pay_date
        record.ex_date = official.ex_date
        record.gross_per_cbfi = round_amount(official.gross_per_cbfi)
        record.currency = official.currency
        record.source = official.source
        record.type = DistributionType.normalize(official.type)
        record.period_tag = official.period_tag or period_tag_for(official.pay_date)
        record.confidence = VERIFIED_CONFIDENCE
        await self._set_status(record, DistributionStatus.VERIFIED)

    def _sibling(self, record: DistributionRecord, official: OfficialDistributionRecord) -> DistributionRecord:
        now = self.clock.now()
        return record.clone(
            pay_date=official.pay_date,
            ex_date=official.ex_date,
            gross_per_cbfi=round_amount(official.gross_per_cbfi),
            source=official.source,
            type=DistributionType.normalize(official.type),
            period_tag=official.period_tag or period_tag_for(official.pay_date),
            status=DistributionStatus.VERIFIED,
            confidence=VERIFIED_CONFIDENCE,
            created_at=now,
            updated_at=now,
        )

    async def _set_status(self, record: DistributionRecord, status: DistributionStatus) -> None:
        record.status = status
        record.updated_at = self.clock.now()
        await self.repository.update(record)

    async def recompute_yields(self, ticker: str, ctx: JobContext) -> tuple[Decimal | None, Decimal | None]:
        """TTM and forward yield from verified dividends and the last known price."""
        today = self.clock.now().date()
        verified = await self.repository.list_verified_since(ticker, today - timedelta(days=365))
        dividends = [r for r in verified if r.type == DistributionType.DIVIDEND and r.gross_per_cbfi > 0]

        ttm = forward = None
        if dividends:
            price = await ctx.guard(self.catalog.get_last_known_price(ticker, ctx), "catalog.last_price")
            ttm = yield_of(sum((r.gross_per_cbfi for r in dividends), Decimal(0)), price)
            latest = max(dividends, key=lambda r: r.pay_date)
            forward = yield_of(latest.gross_per_cbfi * self.settings.distributions_per_year, price)

        if self.metrics_writer is not None:
            await ctx.guard(self.metrics_writer.set_yields(ticker, ttm, forward, ctx), "distribution_metrics.set_yields")
        if self.security_writer is not None:
            await ctx.guard(self.security_writer.update_yields(ticker, ttm, forward, ctx), "security_metrics.update_yields")
        logger.info(
            "reconcile.yields_computed",
            ticker=ticker,
            ttm_yield=str(ttm) if ttm is not None else None,
            forward_yield=str(forward) if forward is not None else None,
        )
        return ttm, forward


__all__ = ["DistributionReconciler", "RECALC_REASON_DISTRIBUTION", "yield_of"]
