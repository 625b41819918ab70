"""Transactional portfolio repository port."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date
from typing import Protocol, runtime_checkable

from fibra.core.logging import get_logger
from fibra.portfolio.models import (
    NormalizedRow,
    PortfolioCashflow,
    PortfolioDeadLetterRecord,
    PortfolioJobRunRecord,
    PortfolioRecalcMetricsSnapshot,
    PortfolioValuationPoint,
)

logger = get_logger(__name__)


@runtime_checkable
class PortfolioRepository(Protocol):
    async def begin(self) -> None: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...

    async def delete_user_portfolio(self, user_id: str) -> None: ...

    async def insert_trades(self, user_id: str, rows: list[NormalizedRow]) -> None: ...

    async def get_positions(self, user_id: str) -> list[NormalizedRow]:
        """Trades materialized into one row per ticker."""
        ...

    async def get_valuation_history(self, user_id: str) -> list[PortfolioValuationPoint]: ...

    async def get_cashflow_history(self, user_id: str) -> list[PortfolioCashflow]: ...

    async def get_job_run(
        self, user_id: str, reason: str, execution_date: date
    ) -> PortfolioJobRunRecord | None: ...

    async def claim_job_run(self, record: PortfolioJobRunRecord) -> PortfolioJobRunRecord:
        """Store *record* unless a non-failed run holds its key.

        Returns the run that owns the key afterwards: *record* itself when
        claimed, otherwise the existing run. A failed run is replaced.
        """
        ...

    async def save_job_run(self, record: PortfolioJobRunRecord) -> None: ...

    async def get_current_metrics(self, user_id: str) -> PortfolioRecalcMetricsSnapshot | None: ...

    async def save_current_metrics(self, snapshot: PortfolioRecalcMetricsSnapshot) -> None: ...

    async def append_metrics_history(self, snapshot: PortfolioRecalcMetricsSnapshot) -> None: ...

    async def record_dead_letter(self, record: PortfolioDeadLetterRecord) -> None: ...


@asynccontextmanager
async def transaction(repository: PortfolioRepository) -> AsyncIterator[PortfolioRepository]:
    """Commit on success, roll back on any exception and re-raise it."""
    await repository.begin()
    try:
        yield repository
    except BaseException:
        try:
            await repository.rollback()
        except Exception as rollback_error:
            logger.error("portfolio.rollback_failed", error=str(rollback_error))
        raise
    else:
        await repository.commit()


__all__ = ["PortfolioRepository", "transaction"]
