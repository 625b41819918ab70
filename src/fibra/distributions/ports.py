"""Ports consumed by the distribution importer and reconciler."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Protocol, runtime_checkable

from fibra.distributions.models import (
    DistributionRecord,
    DistributionStatus,
    DividendEvent,
    OfficialDistributionRecord,
)
from fibra.execution.context import JobContext


@runtime_checkable
class DistributionRepository(Protocol):
    async def active_tickers(self) -> list[str]: ...

    async def exists(self, ticker: str, pay_date: date, gross_per_cbfi: Decimal) -> bool: ...

    async def insert(self, record: DistributionRecord) -> None: ...

    async def update(self, record: DistributionRecord) -> None: ...

    async def list_by_status(self, status: DistributionStatus) -> list[DistributionRecord]: ...

    async def list_verified_since(self, ticker: str, since: date) -> list[DistributionRecord]:
        """Verified records with ``pay_date >= since``, oldest first."""
        ...


@runtime_checkable
class OfficialDistributionSource(Protocol):
    async def get_official(
        self, ticker: str, since: date, ctx: JobContext
    ) -> list[OfficialDistributionRecord]:
        """Official payments for *ticker* paid on or after *since*."""
        ...


@runtime_checkable
class DividendFeed(Protocol):
    """Market-data dividend series (unverified)."""

    async def fetch(self, ticker: str, ctx: JobContext) -> list[DividendEvent]: ...


@runtime_checkable
class DistributionMetricsWriter(Protocol):
    async def set_yields(
        self,
        ticker: str,
        ttm_yield: Decimal | None,
        forward_yield: Decimal | None,
        ctx: JobContext,
    ) -> None: ...


__all__ = [
    "DistributionMetricsWriter",
    "DistributionRepository",
    "DividendFeed",
    "OfficialDistributionSource",
]
