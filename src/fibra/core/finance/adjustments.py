"""
CBFI corporate-action adjustments.

After a FIBRA splits its certificates, distributions paid before the
action are on the old per-CBFI basis. The reconciler reports each detected
action as a :class:`CbfiAdjustment`; anything comparing amounts across the
action date restates the older ones with :func:`restate_amount`.

    >>> from datetime import date
    >>> split = CbfiAdjustment("FUNO11", date(2024, 3, 1), Decimal(2))
    >>> split.restate(Decimal("0.50"), paid_on=date(2024, 1, 15))
    Decimal('0.25')
    >>> split.restate(Decimal("0.50"), paid_on=date(2024, 4, 15))
    Decimal('0.50')
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any


class CorporateAction(str, Enum):
    SPLIT = "split"
    REVERSE_SPLIT = "reverse_split"


@dataclass(frozen=True)
class CbfiAdjustment:
    """One corporate action for one ticker.

    ``ratio`` is new CBFIs per old CBFI: 2 for a 2-for-1 split, 0.5 for a
    1-for-2 reverse split. ``evidence`` records what the detection saw.
    """

    ticker: str
    effective_date: date
    ratio: Decimal
    action: CorporateAction = CorporateAction.SPLIT
    evidence: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.ratio <= 0:
            raise ValueError(f"adjustment ratio must be positive, got {self.ratio}")

    def applies_to(self, paid_on: date) -> bool:
        return paid_on < self.effective_date

    def restate(self, amount: Decimal, paid_on: date) -> Decimal:
        """Per-CBFI *amount* paid on *paid_on*, on the post-action basis."""
        return amount / self.ratio if self.applies_to(paid_on) else amount

    def describe(self) -> str:
        if self.action is CorporateAction.REVERSE_SPLIT:
            return f"{self.ticker} 1-for-{Decimal(1) / self.ratio:g} reverse split on {self.effective_date}"
        return f"{self.ticker} {self.ratio:g}-for-1 split on {self.effective_date}"


def restate_amount(amount: Decimal, paid_on: date, adjustments: Iterable[CbfiAdjustment]) -> Decimal:
    """Apply every action that took effect after *paid_on*."""
    for adjustment in sorted(adjustments, key=lambda a: a.effective_date):
        amount = adjustment.restate(amount, paid_on)
    return amount


def cumulative_ratio(adjustments: Iterable[CbfiAdjustment], since: date) -> Decimal:
    """Product of the ratios of actions effective after *since*."""
    total = Decimal(1)
    for adjustment in adjustments:
        if adjustment.applies_to(since):
            total *= adjustment.ratio
    return total


__all__ = ["CbfiAdjustment", "CorporateAction", "cumulative_ratio", "restate_amount"]
