"""Replace a user's portfolio from an upload.

The previous trades are deleted and the new ones inserted in one
transaction; any failure rolls the user back to the previous portfolio.
After the commit the positions are valued immediately for the response and
an ``upload`` recalculation is enqueued for the full metrics.

Validation problems surface as :class:`ValidationError` (or its
:class:`PortfolioFileError` subclass). Anything else is logged and
re-raised as :class:`PortfolioServiceError` so internal details never leak
to the caller.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from fibra.core.errors import OperationCancelledError, PortfolioServiceError, ValidationError
from fibra.core.logging import get_logger
from fibra.core.periods import Clock, SystemClock
from fibra.core.protocols import SecurityCatalog
from fibra.execution.context import JobContext
from fibra.execution.queue import JobScheduler, enqueue_recalculation
from fibra.portfolio.file_parser import PortfolioFileParser
from fibra.portfolio.models import (
    REASON_UPLOAD,
    IssueSeverity,
    NormalizedRow,
    UploadPortfolioResponse,
    ValidationIssue,
)
from fibra.portfolio.ports import PortfolioRepository, transaction
from fibra.portfolio.valuation import value_portfolio

logger = get_logger(__name__)

SIX_PLACES = Decimal("0.000001")


def consolidate(rows: list[NormalizedRow]) -> tuple[list[NormalizedRow], int]:
    """Merge rows per upper-cased ticker; returns ``(rows, ignored)``.

    Rows with a blank ticker or a non-positive quantity or cost are dropped.
    Duplicates are merged with a quantity-weighted average cost.
    """
    qty: dict[str, Decimal] = {}
    cost: dict[str, Decimal] = {}
    ignored = 0
    for row in rows:
        ticker = row.ticker.strip().upper()
        if not ticker or row.qty <= 0 or row.avg_cost <= 0:
            ignored += 1
            continue
        qty[ticker] = qty.get(ticker, Decimal(0)) + row.qty
        cost[ticker] = cost.get(ticker, Decimal(0)) + row.qty * row.avg_cost

    merged = [
        NormalizedRow(
            ticker=ticker,
            qty=total,
            avg_cost=(cost[ticker] / total).quantize(SIX_PLACES, rounding=ROUND_HALF_UP),
        )
        for ticker, total in qty.items()
    ]
    return merged, ignored


class PortfolioReplaceService:
    def __init__(
        self,
        repository: PortfolioRepository,
        catalog: SecurityCatalog,
        scheduler: JobScheduler,
        clock: Clock | None = None,
        parser: PortfolioFileParser | None = None,
    ):
        self.repository = repository
        self.catalog = catalog
        self.scheduler = scheduler
        self.clock = clock or SystemClock()
        self.parser = parser or PortfolioFileParser()

    async def upload(
        self, user_id: str, content: bytes, filename: str, ctx: JobContext
    ) -> UploadPortfolioResponse:
        """Parse an uploaded file and replace the portfolio with its rows."""
        parsed = self.parser.parse(content, filename)
        response = await self.replace(user_id, parsed.rows, parsed.issues, ctx)
        if parsed.ignored_rows:
            return UploadPortfolioResponse(
                imported=response.imported,
                ignored=response.ignored + parsed.ignored_rows,
                errors=response.errors,
                positions=response.positions,
                metrics=response.metrics,
                request_id=response.request_id,
                issues=response.issues,
                received_at=response.received_at,
            )
        return response

    async def replace(
        self,
        user_id: str,
        rows: list[NormalizedRow],
        issues: list[ValidationIssue],
        ctx: JobContext,
    ) -> UploadPortfolioResponse:
        if not user_id or not user_id.strip():
            raise ValidationError("user_id must be provided", field="user_id", value=user_id)

        received_at = self.clock.now()
        async with ctx.log_context(user_id=user_id, request_id=ctx.correlation_id):
            try:
                return await self._replace(user_id, rows, issues, received_at, ctx)
            except (ValidationError, OperationCancelledError):
                raise
            except Exception as e:
                logger.error(
                    "portfolio_replace.failed",
                    error_type=type(e).__name__,
                    error=str(e),
                    exc_info=True,
                )
                raise PortfolioServiceError("internal error").with_context(
                    correlation_id=ctx.correlation_id
                ) from e

    async def _replace(
        self,
        user_id: str,
        rows: list[NormalizedRow],
        issues: list[ValidationIssue],
        received_at: datetime,
        ctx: JobContext,
    ) -> UploadPortfolioResponse:
        merged, ignored = consolidate(rows)
        errors = sum(1 for i in issues if i.severity == IssueSeverity.ERROR)

        ctx.check_cancelled()
        async with transaction(self.repository):
            await self.repository.delete_user_portfolio(user_id)
            await self.repository.insert_trades(user_id, merged)
            positions = await self.repository.get_positions(user_id)

        valuation = await value_portfolio(self.catalog, positions, ctx)
        await enqueue_recalculation(self.scheduler, user_id, REASON_UPLOAD, ctx)

        logger.info(
            "portfolio_replace.completed",
            imported=len(merged),
            ignored=ignored,
            errors=errors,
            value=str(valuation.metrics.value),
            missing_prices=valuation.missing_prices,
        )
        return UploadPortfolioResponse(
            imported=len(merged),
            ignored=ignored,
            errors=errors,
            positions=valuation.positions,
            metrics=valuation.metrics,
            request_id=ctx.correlation_id,
            issues=list(issues),
            received_at=received_at,
        )


__all__ = ["PortfolioReplaceService", "consolidate"]
