"""Position valuation.

Per position::

    invested = qty * avg_cost
    value    = qty * price          (price missing: last known price, else 0 and flagged)
    pnl      = value - invested
    weight   = value / total value  (0 when the total is 0)

Portfolio yields are value-weighted over positions that have both a value
and a yield.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from fibra.core.logging import get_logger
from fibra.core.protocols import SecurityCatalog
from fibra.execution.context import JobContext
from fibra.portfolio.models import NormalizedRow, PortfolioMetrics, PortfolioValuation, PositionSnapshot

logger = get_logger(__name__)

CENTS = Decimal("0.01")
SIX_PLACES = Decimal("0.000001")

Yields = tuple[Decimal | None, Decimal | None]


def q2(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def q6(value: Decimal) -> Decimal:
    return value.quantize(SIX_PLACES, rounding=ROUND_HALF_UP)


def value_positions(
    rows: list[NormalizedRow],
    prices: dict[str, Decimal | None],
    yields: dict[str, Yields] | None = None,
) -> PortfolioValuation:
    """Value *rows* at *prices*; a ticker absent from *prices* counts as missing."""
    yields = yields or {}
    drafts = []
    total_invested = Decimal(0)
    total_value = Decimal(0)

    for row in rows:
        ticker = row.ticker.strip().upper()
        price = prices.get(ticker)
        invested = row.qty * row.avg_cost
        value = row.qty * price if price is not None else Decimal(0)
        total_invested += invested
        total_value += value
        drafts.append((ticker, row, price, invested, value))

    positions = []
    ttm_num = fwd_num = ttm_den = fwd_den = Decimal(0)
    for ticker, row, price, invested, value in drafts:
        ttm, fwd = yields.get(ticker, (None, None))
        if value > 0 and ttm is not None:
            ttm_num += value * ttm
            ttm_den += value
        if value > 0 and fwd is not None:
            fwd_num += value * fwd
            fwd_den += value
        positions.append(
            PositionSnapshot(
                ticker=ticker,
                qty=row.qty,
                avg_cost=q6(row.avg_cost),
                invested=q2(invested),
                market_price=price,
                value=q2(value),
                pnl=q2(value - invested),
                weight=q6(value / total_value) if total_value > 0 else Decimal(0),
                yield_ttm=ttm,
                yield_forward=fwd,
                price_missing=price is None,
            )
        )

    positions.sort(key=lambda p: (-p.value, p.ticker))
    metrics = PortfolioMetrics(
        invested=q2(total_invested),
        value=q2(total_value),
        pnl=q2(total_value - total_invested),
        yield_ttm=q6(ttm_num / ttm_den) if ttm_den > 0 else None,
        yield_forward=q6(fwd_num / fwd_den) if fwd_den > 0 else None,
    )
    return PortfolioValuation(positions, metrics)


async def resolve_prices(
    catalog: SecurityCatalog, tickers: list[str], ctx: JobContext
) -> dict[str, Decimal | None]:
    """Current prices, falling back to the last known price per ticker."""
    if not tickers:
        return {}
    prices = dict(await ctx.guard(catalog.get_prices(tickers, ctx), "catalog.get_prices"))
    for ticker in tickers:
        if prices.get(ticker) is None:
            prices[ticker] = await ctx.guard(
                catalog.get_last_known_price(ticker, ctx), "catalog.last_known_price"
            )
            if prices[ticker] is None:
                logger.warning("valuation.price_missing", ticker=ticker)
    return prices


async def value_portfolio(
    catalog: SecurityCatalog, rows: list[NormalizedRow], ctx: JobContext
) -> PortfolioValuation:
    tickers = sorted({r.ticker.strip().upper() for r in rows})
    prices = await resolve_prices(catalog, tickers, ctx)
    yields = await ctx.guard(catalog.get_yields(tickers, ctx), "catalog.get_yields") if tickers else {}
    return value_positions(rows, prices, yields)


__all__ = ["q2", "q6", "resolve_prices", "value_portfolio", "value_positions"]
