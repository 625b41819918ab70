"""Tests for PortfolioRecalcEngine."""

from datetime import timedelta
from decimal import Decimal

import pytest

from fibra.core.errors import ValidationError
from fibra.execution.context import JobContext
from fibra.portfolio.models import PortfolioCashflow, PortfolioValuationPoint, RunStatus

USER = "user-1"


def _ctx() -> JobContext:
    return JobContext.new("portfolio-recalc", correlation_id="req-1")


class TestRecalculate:
    """Successful recalculation."""

    @pytest.mark.asyncio
    async def test_snapshot_is_saved(self, engine, portfolio_repo, funo_holding, clock, ctx):
        result = await engine.recalculate(USER, "upload", ctx)

        snapshot = result.snapshot
        assert not result.skipped
        assert snapshot.invested == Decimal("2450.00")
        assert snapshot.value == Decimal("2510.00")
        assert snapshot.pnl == Decimal("60.00")
        assert snapshot.calculated_at == clock.now()
        assert snapshot.job_run_id == ctx.job_run_id
        assert snapshot.reason == "upload"
        assert portfolio_repo.current[USER] == snapshot
        assert portfolio_repo.history[USER] == [snapshot]
        assert portfolio_repo.commits == 1

    @pytest.mark.asyncio
    async def test_job_run_is_recorded(self, engine, portfolio_repo, funo_holding, clock, ctx):
        result = await engine.recalculate(USER, "upload", ctx)

        run = portfolio_repo.job_runs[(USER, "upload", clock.now().date())]
        assert run is result.job_run
        assert run.status == RunStatus.SUCCEEDED
        assert run.positions_processed == 1
        assert run.metrics_updated
        assert run.completed_at == clock.now()
        assert run.duration_seconds >= 0

    @pytest.mark.asyncio
    async def test_reason_is_normalized(self, engine, portfolio_repo, funo_holding, ctx):
        result = await engine.recalculate(USER, "  KPI ", ctx)
        assert result.job_run.reason == "kpi"

    @pytest.mark.asyncio
    async def test_blank_user_is_rejected(self, engine, ctx):
        with pytest.raises(ValidationError):
            await engine.recalculate("  ", "upload", ctx)

    @pytest.mark.asyncio
    async def test_no_history_leaves_returns_empty(self, engine, funo_holding, ctx):
        snapshot = (await engine.recalculate(USER, "upload", ctx)).snapshot
        assert snapshot.time_weighted_return is None
        assert snapshot.money_weighted_return is None
        assert snapshot.annualized_time_weighted_return is None

    @pytest.mark.asyncio
    async def test_current_value_closes_the_history(self, engine, portfolio_repo, funo_holding, clock, ctx):
        year_ago = clock.now() - timedelta(days=365)
        portfolio_repo.valuations[USER] = [PortfolioValuationPoint(year_ago, Decimal("2000"))]
        portfolio_repo.cashflows[USER] = [PortfolioCashflow(year_ago, Decimal("2000"))]

        snapshot = (await engine.recalculate(USER, "upload", ctx)).snapshot

        assert snapshot.time_weighted_return == pytest.approx(0.255)
        assert snapshot.money_weighted_return == pytest.approx(0.255, abs=1e-6)
        assert snapshot.annualized_time_weighted_return == pytest.approx(0.255)
        assert snapshot.annualized_money_weighted_return == pytest.approx(0.255, abs=1e-6)

    @pytest.mark.asyncio
    async def test_stage_outcome_is_recorded(self, engine, observer, funo_holding, ctx):
        await engine.recalculate(USER, "upload", ctx)
        assert observer.outcomes("portfolio_recalc") == {"success": 1, "failure": 0}


class TestIdempotency:
    """One run per (user, reason, execution date)."""

    @pytest.mark.asyncio
    async def test_same_key_is_skipped(self, engine, portfolio_repo, funo_holding):
        first = await engine.recalculate(USER, "upload", _ctx())
        second = await engine.recalculate(USER, "upload", _ctx())

        assert second.skipped
        assert second.job_run.job_run_id == first.job_run.job_run_id
        assert second.snapshot == first.snapshot
        assert len(portfolio_repo.history[USER]) == 1

    @pytest.mark.asyncio
    async def test_other_reason_runs(self, engine, portfolio_repo, funo_holding):
        await engine.recalculate(USER, "upload", _ctx())
        result = await engine.recalculate(USER, "kpi", _ctx())

        assert not result.skipped
        assert len(portfolio_repo.history[USER]) == 2

    @pytest.mark.asyncio
    async def test_next_day_runs(self, engine, portfolio_repo, funo_holding, clock):
        await engine.recalculate(USER, "upload", _ctx())
        clock.advance(days=1)
        result = await engine.recalculate(USER, "upload", _ctx())
        assert not result.skipped
        assert len(portfolio_repo.job_runs) == 2


class TestFailure:
    """A failing calculation rolls back and is dead-lettered."""

    @pytest.mark.asyncio
    async def test_rollback_keeps_previous_snapshot(self, engine, portfolio_repo, funo_holding, catalog):
        previous = (await engine.recalculate(USER, "kpi", _ctx())).snapshot
        catalog.prices["FUNO11"] = Decimal("30")
        portfolio_repo.fail_on["append_metrics_history"] = RuntimeError("disk full")

        with pytest.raises(RuntimeError, match="disk full"):
            await engine.recalculate(USER, "distribution", _ctx())

        assert portfolio_repo.current[USER] == previous
        assert portfolio_repo.history[USER] == [previous]
        assert portfolio_repo.rollbacks == 1

    @pytest.mark.asyncio
    async def test_run_is_failed_and_dead_lettered(self, engine, portfolio_repo, funo_holding, clock):
        portfolio_repo.fail_on["get_positions"] = RuntimeError("positions unavailable")
        ctx = _ctx()

        with pytest.raises(RuntimeError):
            await engine.recalculate(USER, "upload", ctx)

        run = portfolio_repo.job_runs[(USER, "upload", clock.now().date())]
        assert run.status == RunStatus.FAILED
        assert not run.metrics_updated
        assert run.error_message == "positions unavailable"

        [letter] = portfolio_repo.dead_letters
        assert letter.job_run_id == ctx.job_run_id
        assert letter.user_id == USER
        assert letter.exception_type == "builtins.RuntimeError"
        assert letter.message == "positions unavailable"
        assert "RuntimeError" in letter.stack_trace

    @pytest.mark.asyncio
    async def test_failed_run_can_be_retried(self, engine, portfolio_repo, funo_holding, clock):
        portfolio_repo.fail_on["get_positions"] = RuntimeError("positions unavailable")
        with pytest.raises(RuntimeError):
            await engine.recalculate(USER, "upload", _ctx())

        result = await engine.recalculate(USER, "upload", _ctx())

        assert not result.skipped
        assert result.job_run.status == RunStatus.SUCCEEDED
        assert portfolio_repo.current[USER].value == Decimal("2510.00")

    @pytest.mark.asyncio
    async def test_failure_outcome_is_recorded(self, engine, observer, portfolio_repo, funo_holding, ctx):
        portfolio_repo.fail_on["get_positions"] = RuntimeError("boom")
        with pytest.raises(RuntimeError):
            await engine.recalculate(USER, "upload", ctx)
        assert observer.outcomes("portfolio_recalc")["failure"] == 1


class TestRunHandler:
    """PortfolioRecalcEngine.run as a queue handler."""

    @pytest.mark.asyncio
    async def test_payload(self, engine, funo_holding, ctx):
        result = await engine.run({"user_id": USER, "reason": "distribution"}, ctx)
        assert result.job_run.reason == "distribution"

    @pytest.mark.asyncio
    async def test_missing_reason_is_manual(self, engine, funo_holding, ctx):
        result = await engine.run({"user_id": USER}, ctx)
        assert result.job_run.reason == "manual"

    @pytest.mark.asyncio
    async def test_missing_user(self, engine, ctx):
        with pytest.raises(ValidationError):
            await engine.run({"reason": "kpi"}, ctx)
