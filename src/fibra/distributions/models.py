"""Distribution (dividend) records and reconciliation results."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from fibra.core.finance.adjustments import CbfiAdjustment
from fibra.core.periods import period_tag_for, utcnow

SIX_PLACES = Decimal("0.000001")


def round_amount(value: Decimal) -> Decimal:
    return value.quantize(SIX_PLACES, rounding=ROUND_HALF_UP)


class DistributionStatus(str, Enum):
    IMPORTED = "imported"
    VERIFIED = "verified"
    IGNORED = "ignored"
    SPLIT = "split"


class DistributionType(str, Enum):
    DIVIDEND = "dividend"
    CAPITAL_RETURN = "capital_return"
    OTHER = "other"

    @classmethod
    def normalize(cls, value: str | DistributionType | None) -> DistributionType:
        """Map free-form source labels onto a type."""
        if isinstance(value, DistributionType):
            return value
        key = (value or "").strip().lower().replace(" ", "").replace("_", "")
        if key in ("dividend", "dividendo", "distribution"):
            return cls.DIVIDEND
        if key in ("capitalreturn", "returnofcapital", "reembolsodecapital"):
            return cls.CAPITAL_RETURN
        return cls.OTHER


@dataclass
class DistributionRecord:
    ticker: str
    pay_date: date
    gross_per_cbfi: Decimal
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    ex_date: date | None = None
    currency: str = "MXN"
    period_tag: str | None = None
    source: str = ""
    confidence: float = 0.5
    type: DistributionType = DistributionType.DIVIDEND
    status: DistributionStatus = DistributionStatus.IMPORTED
    split_factor: Decimal | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.period_tag is None:
            self.period_tag = period_tag_for(self.pay_date)

    def clone(self, **changes: Any) -> DistributionRecord:
        return replace(self, id=uuid.uuid4().hex, **changes)


@dataclass(frozen=True)
class OfficialDistributionRecord:
    """Authoritative payment as published by the issuer or the exchange."""

    ticker: str
    pay_date: date
    gross_per_cbfi: Decimal
    ex_date: date | None = None
    currency: str = "MXN"
    type: str = "dividend"
    source: str = "official"
    period_tag: str | None = None


@dataclass(frozen=True)
class DividendEvent:
    """One row of the market-data dividend feed."""

    pay_date: date
    gross_amount: Decimal
    ex_date: date | None = None
    currency: str = "MXN"


@dataclass
class TickerResult:
    ticker: str
    imported: int = 0
    verified: int = 0
    ignored: int = 0
    split: int = 0
    siblings: int = 0
    unresolved: int = 0
    error: str | None = None
    adjustments: list[CbfiAdjustment] = field(default_factory=list)
    yields_recomputed: bool = False
    holders: set[str] = field(default_factory=set)

    @property
    def changed(self) -> bool:
        return bool(self.verified or self.ignored or self.split)


@dataclass
class ReconciliationSummary:
    imported: int = 0
    verified: int = 0
    ignored: int = 0
    split: int = 0
    failed: int = 0
    tickers: dict[str, TickerResult] = field(default_factory=dict)
    adjustments: list[CbfiAdjustment] = field(default_factory=list)
    recalculations_enqueued: int = 0

    def add(self, result: TickerResult) -> None:
        self.tickers[result.ticker] = result
        self.imported += result.imported
        # a failed ticker still reports what it settled before failing
        if result.error is not None:
            self.failed += 1
        self.verified += result.verified
        self.ignored += result.ignored
        self.split += result.split
        self.adjustments.extend(result.adjustments)

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": self.imported,
            "verified": self.verified,
            "ignored": self.ignored,
            "split": self.split,
            "failed": self.failed,
            "adjustments": len(self.adjustments),
            "recalculations_enqueued": self.recalculations_enqueued,
        }


@dataclass
class ImportSummary:
    imported: int = 0
    duplicates: int = 0
    failed: int = 0
    warnings: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": self.imported,
            "duplicates": self.duplicates,
            "failed": self.failed,
            "warnings": dict(self.warnings),
        }


__all__ = [
    "DistributionRecord",
    "DistributionStatus",
    "DistributionType",
    "DividendEvent",
    "ImportSummary",
    "OfficialDistributionRecord",
    "ReconciliationSummary",
    "TickerResult",
    "round_amount",
]
