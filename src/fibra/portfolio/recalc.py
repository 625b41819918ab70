"""Portfolio recalculation engine.

One recalculation per ``(user_id, reason, execution_date)``. The run is
claimed through the repository before any work; if another non-failed run
already owns the key the current snapshot is returned untouched. A failed
run may be retried under the same key.

The calculation itself runs inside a repository transaction. On failure the
transaction is rolled back (the previous snapshot stays current), the run
is marked failed, a dead-letter record with the exception type, message
and trace is written, and the exception propagates to the job runner.
"""

from __future__ import annotations

import time
import traceback
from datetime import date, datetime
from typing import Any

from fibra.core.errors import ValidationError
from fibra.core.logging import get_logger
from fibra.core.periods import Clock, SystemClock
from fibra.core.protocols import SecurityCatalog
from fibra.execution.context import JobContext
from fibra.observability.stage import MetricsStageObserver, StageObserver, observe_stage
from fibra.portfolio import returns
from fibra.portfolio.models import (
    REASON_MANUAL,
    PortfolioCashflow,
    PortfolioDeadLetterRecord,
    PortfolioJobRunRecord,
    PortfolioRecalcMetricsSnapshot,
    PortfolioValuation,
    PortfolioValuationPoint,
    RecalcResult,
    RunStatus,
)
from fibra.portfolio.ports import PortfolioRepository, transaction
from fibra.portfolio.valuation import value_portfolio

logger = get_logger(__name__)


class PortfolioRecalcEngine:
    def __init__(
        self,
        repository: PortfolioRepository,
        catalog: SecurityCatalog,
        clock: Clock | None = None,
        observer: StageObserver | None = None,
    ):
        self.repository = repository
        self.catalog = catalog
        self.clock = clock or SystemClock()
        self.observer = observer or MetricsStageObserver()

    async def run(self, payload: dict[str, Any], ctx: JobContext) -> RecalcResult:
        """Queue handler for ``portfolio-recalc`` jobs."""
        return await self.recalculate(payload.get("user_id", ""), payload.get("reason") or REASON_MANUAL, ctx)

    async def recalculate(
        self,
        user_id: str,
        reason: str,
        ctx: JobContext,
        execution_date: date | None = None,
    ) -> RecalcResult:
        if not user_id or not user_id.strip():
            raise ValidationError("user_id must be provided", field="user_id", value=user_id)
        reason = reason.strip().lower()

        started_at = self.clock.now()
        run = PortfolioJobRunRecord(
            job_run_id=ctx.job_run_id,
            user_id=user_id,
            reason=reason,
            execution_date=execution_date or started_at.date(),
            started_at=started_at,
        )

        async with ctx.log_context(user_id=user_id, reason=reason), \
                observe_stage(self.observer, "portfolio_recalc", ctx) as obs:
            owner = await self.repository.claim_job_run(run)
            if owner is not run:
                logger.info(
                    "portfolio_recalc.skipped",
                    existing_job_run_id=owner.job_run_id,
                    status=owner.status.value,
                    execution_date=run.execution_date.isoformat(),
                )
                obs.succeed(skipped=True)
                return RecalcResult(owner, await self.repository.get_current_metrics(user_id), skipped=True)

            timer = time.perf_counter()
            try:
                async with transaction(self.repository):
                    snapshot, positions = await self._calculate(user_id, reason, ctx)
                    await self.repository.save_current_metrics(snapshot)
                    await self.repository.append_metrics_history(snapshot)
            except Exception as e:
                await self._record_failure(run, e, time.perf_counter() - timer)
                raise

            run.status = RunStatus.SUCCEEDED
            run.positions_processed = positions
            run.metrics_updated = True
            run.duration_seconds = round(time.perf_counter() - timer, 6)
            run.completed_at = self.clock.now()
            await self.repository.save_job_run(run)

            logger.info(
                "portfolio_recalc.completed",
                positions=positions,
                value=str(snapshot.value),
                pnl=str(snapshot.pnl),
                twr=snapshot.time_weighted_return,
                mwr=snapshot.money_weighted_return,
            )
            obs.succeed(positions=positions)
            return RecalcResult(run, snapshot)

    async def _calculate(
        self, user_id: str, reason: str, ctx: JobContext
    ) -> tuple[PortfolioRecalcMetricsSnapshot, int]:
        ctx.check_cancelled()
        rows = await self.repository.get_positions(user_id)
        valuation = await value_portfolio(self.catalog, rows, ctx)
        history = await self.repository.get_valuation_history(user_id)
        cashflows = await self.repository.get_cashflow_history(user_id)
        now = self.clock.now()
        return self.build_snapshot(user_id, reason, valuation, history, cashflows, now, ctx.job_run_id), len(rows)

    @staticmethod
    def build_snapshot(
        user_id: str,
        reason: str,
        valuation: PortfolioValuation,
        history: list[PortfolioValuationPoint],
        cashflows: list[PortfolioCashflow],
        calculated_at: datetime,
        job_run_id: str | None = None,
    ) -> PortfolioRecalcMetricsSnapshot:
        """Combine the valuation with the return history.

        The current value is appended as the terminal valuation point when
        it is newer than the stored history.
        """
        points = sorted(history, key=lambda p: p.as_of)
        if points and points[-1].as_of < calculated_at:
            points.append(PortfolioValuationPoint(calculated_at, valuation.metrics.value))

        twr = returns.time_weighted_return(points, cashflows)
        mwr = returns.money_weighted_return(points, cashflows)
        days = returns.span_days(points)
        metrics = valuation.metrics
        return PortfolioRecalcMetricsSnapshot(
            user_id=user_id,
            invested=metrics.invested,
            value=metrics.value,
            pnl=metrics.pnl,
            calculated_at=calculated_at,
            yield_ttm=metrics.yield_ttm,
            yield_forward=metrics.yield_forward,
            time_weighted_return=twr,
            money_weighted_return=mwr,
            annualized_time_weighted_return=returns.annualize(twr, days),
            annualized_money_weighted_return=returns.annualize(mwr, days),
            job_run_id=job_run_id,
            reason=reason,
        )

    async def _record_failure(self, run: PortfolioJobRunRecord, error: Exception, elapsed: float) -> None:
        failed_at = self.clock.now()
        run.status = RunStatus.FAILED
        run.metrics_updated = False
        run.completed_at = failed_at
        run.duration_seconds = round(elapsed, 6)
        run.error_message = str(error)
        logger.error(
            "portfolio_recalc.failed",
            job_run_id=run.job_run_id,
            error_type=type(error).__name__,
            error=str(error),
        )
        try:
            await self.repository.save_job_run(run)
            await self.repository.record_dead_letter(
                PortfolioDeadLetterRecord(
                    job_run_id=run.job_run_id,
                    user_id=run.user_id,
                    reason=run.reason,
                    failed_at=failed_at,
                    exception_type=f"{type(error).__module__}.{type(error).__qualname__}",
                    message=str(error),
                    stack_trace="".join(traceback.format_exception(error)),
                )
            )
        except Exception as audit_error:
            logger.error(
                "portfolio_recalc.failure_audit_failed",
                job_run_id=run.job_run_id,
                error=str(audit_error),
                original_error=str(error),
            )


__all__ = ["PortfolioRecalcEngine"]
