"""Time-weighted and money-weighted returns.

Both are computed over the span of the valuation history and are None
with fewer than two valuation points or no cashflows.

TWR chains the sub-period returns between consecutive valuation points,
removing the cashflows that landed inside each sub-period::

    r_i = (V_i - CF_i - V_{i-1}) / V_{i-1}
    TWR = prod(1 + r_i) - 1

MWR is the rate r over the whole span that zeroes the net present value
of the investor's flows (opening value and deposits paid in, withdrawals
and the final value paid out), discounting each flow by
``(1 + r) ** (t / span)``. Newton-Raphson is tried first; bisection takes
over when it fails to converge.

Example:
    >>> annualize(0.10, 365)
    0.10000000000000009
"""

from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from datetime import datetime

from fibra.portfolio.models import PortfolioCashflow, PortfolioValuationPoint

NEWTON_MAX_ITERATIONS = 50
BISECTION_MAX_ITERATIONS = 200
TOLERANCE = 1e-9
LOWER_BOUND = -0.999999
UPPER_BOUND = 1e6


def _ordered(valuations: Sequence[PortfolioValuationPoint]) -> list[PortfolioValuationPoint]:
    return sorted(valuations, key=lambda v: v.as_of)


def span_days(valuations: Sequence[PortfolioValuationPoint]) -> float:
    if len(valuations) < 2:
        return 0.0
    ordered = _ordered(valuations)
    return (ordered[-1].as_of - ordered[0].as_of).total_seconds() / 86400


def time_weighted_return(
    valuations: Sequence[PortfolioValuationPoint],
    cashflows: Sequence[PortfolioCashflow],
) -> float | None:
    if len(valuations) < 2 or not cashflows:
        return None

    ordered = _ordered(valuations)
    growth = 1.0
    previous = ordered[0]
    for current in ordered[1:]:
        flows = sum(
            float(cf.amount) for cf in cashflows
            if previous.as_of < cf.timestamp <= current.as_of
        )
        if previous.value <= 0:
            previous = current
            continue
        start = float(previous.value)
        growth *= 1 + (float(current.value) - flows - start) / start
        previous = current
    return growth - 1


def _npv(flows: list[tuple[float, float]], rate: float) -> float:
    return sum(amount / (1 + rate) ** t for t, amount in flows)


def _npv_derivative(flows: list[tuple[float, float]], rate: float) -> float:
    return sum(-t * amount / (1 + rate) ** (t + 1) for t, amount in flows)


def _newton(f: Callable[[float], float], df: Callable[[float], float], guess: float) -> float | None:
    rate = guess
    for _ in range(NEWTON_MAX_ITERATIONS):
        value = f(rate)
        if abs(value) < TOLERANCE:
            return rate
        slope = df(rate)
        if slope == 0 or not math.isfinite(slope):
            return None
        rate -= value / slope
        if not math.isfinite(rate) or rate <= LOWER_BOUND:
            return None
    return None


def _bisect(f: Callable[[float], float], low: float, high: float) -> float | None:
    f_low, f_high = f(low), f(high)
    if f_low == 0:
        return low
    if f_high == 0:
        return high
    if f_low * f_high > 0:
        return None
    for _ in range(BISECTION_MAX_ITERATIONS):
        mid = (low + high) / 2
        f_mid = f(mid)
        if abs(f_mid) < TOLERANCE or (high - low) / 2 < TOLERANCE:
            return mid
        if f_low * f_mid < 0:
            high, f_high = mid, f_mid
        else:
            low, f_low = mid, f_mid
    return (low + high) / 2


def money_weighted_return(
    valuations: Sequence[PortfolioValuationPoint],
    cashflows: Sequence[PortfolioCashflow],
) -> float | None:
    if len(valuations) < 2 or not cashflows:
        return None

    ordered = _ordered(valuations)
    start: datetime = ordered[0].as_of
    span = (ordered[-1].as_of - start).total_seconds()
    if span <= 0:
        return None

    # Investor's view: the opening value is paid in like a deposit.
    flows = [(0.0, -float(ordered[0].value))]
    for cf in cashflows:
        if start < cf.timestamp <= ordered[-1].as_of:
            flows.append(((cf.timestamp - start).total_seconds() / span, -float(cf.amount)))
    flows.append((1.0, float(ordered[-1].value)))

    def f(rate: float) -> float:
        return _npv(flows, rate)

    def df(rate: float) -> float:
        return _npv_derivative(flows, rate)

    try:
        rate = _newton(f, df, 0.1)
    except (OverflowError, ZeroDivisionError):
        rate = None
    if rate is None:
        rate = _bisect(f, LOWER_BOUND, UPPER_BOUND)
    return rate


def annualize(rate: float | None, days: float) -> float | None:
    """``(1 + rate) ** (365 / days) - 1``; None when it cannot be computed."""
    if rate is None or days <= 0 or 1 + rate <= 0:
        return None
    try:
        return (1 + rate) ** (365 / days) - 1
    except OverflowError:
        return None


__all__ = ["annualize", "money_weighted_return", "span_days", "time_weighted_return"]
