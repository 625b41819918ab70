"""Portfolio records: trades, valuations, recalculation runs and snapshots.

Money is ``Decimal``; returns are ``float``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from fibra.core.periods import utcnow

REASON_UPLOAD = "upload"
REASON_KPI = "kpi"
REASON_DISTRIBUTION = "distribution"
REASON_MANUAL = "manual"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class NormalizedRow:
    """One trade line: ticker, quantity and average cost per CBFI."""

    ticker: str
    qty: Decimal
    avg_cost: Decimal


@dataclass(frozen=True)
class ValidationIssue:
    row_number: int
    field: str
    message: str
    severity: IssueSeverity = IssueSeverity.ERROR


@dataclass(frozen=True)
class PositionSnapshot:
    ticker: str
    qty: Decimal
    avg_cost: Decimal
    invested: Decimal
    market_price: Decimal | None
    value: Decimal
    pnl: Decimal
    weight: Decimal
    yield_ttm: Decimal | None = None
    yield_forward: Decimal | None = None
    price_missing: bool = False


@dataclass(frozen=True)
class PortfolioMetrics:
    invested: Decimal
    value: Decimal
    pnl: Decimal
    yield_ttm: Decimal | None = None
    yield_forward: Decimal | None = None


@dataclass(frozen=True)
class PortfolioValuation:
    positions: list[PositionSnapshot]
    metrics: PortfolioMetrics

    @property
    def missing_prices(self) -> list[str]:
        return [p.ticker for p in self.positions if p.price_missing]


@dataclass(frozen=True)
class PortfolioValuationPoint:
    as_of: datetime
    value: Decimal


@dataclass(frozen=True)
class PortfolioCashflow:
    """Deposit (positive) or withdrawal (negative)."""

    timestamp: datetime
    amount: Decimal


@dataclass(frozen=True)
class PortfolioRecalcMetricsSnapshot:
    user_id: str
    invested: Decimal
    value: Decimal
    pnl: Decimal
    calculated_at: datetime
    yield_ttm: Decimal | None = None
    yield_forward: Decimal | None = None
    time_weighted_return: float | None = None
    money_weighted_return: float | None = None
    annualized_time_weighted_return: float | None = None
    annualized_money_weighted_return: float | None = None
    job_run_id: str | None = None
    reason: str | None = None


@dataclass
class PortfolioJobRunRecord:
    job_run_id: str
    user_id: str
    reason: str
    execution_date: date
    started_at: datetime
    status: RunStatus = RunStatus.RUNNING
    positions_processed: int = 0
    metrics_updated: bool = False
    completed_at: datetime | None = None
    duration_seconds: float | None = None
    error_message: str | None = None

    @property
    def key(self) -> tuple[str, str, date]:
        return (self.user_id, self.reason, self.execution_date)


@dataclass(frozen=True)
class PortfolioDeadLetterRecord:
    job_run_id: str
    user_id: str
    reason: str
    failed_at: datetime
    exception_type: str
    message: str
    stack_trace: str | None = None


@dataclass(frozen=True)
class RecalcResult:
    job_run: PortfolioJobRunRecord
    snapshot: PortfolioRecalcMetricsSnapshot | None
    skipped: bool = False


@dataclass(frozen=True)
class ParsedPortfolio:
    rows: list[NormalizedRow]
    issues: list[ValidationIssue]
    processed_rows: int = 0
    ignored_rows: int = 0

    @property
    def error_count(self) -> int:
        return sum(1 for i in self.issues if i.severity == IssueSeverity.ERROR)


@dataclass(frozen=True)
class UploadPortfolioResponse:
    imported: int
    ignored: int
    errors: int
    positions: list[PositionSnapshot]
    metrics: PortfolioMetrics
    request_id: str
    issues: list[ValidationIssue] = field(default_factory=list)
    received_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": self.imported,
            "ignored": self.ignored,
            "errors": self.errors,
            "request_id": self.request_id,
            "positions": [
                {
                    "ticker": p.ticker,
                    "qty": str(p.qty),
                    "avg_cost": str(p.avg_cost),
                    "value": str(p.value),
                    "weight": str(p.weight),
                }
                for p in self.positions
            ],
            "metrics": {
                "invested": str(self.metrics.invested),
                "value": str(self.metrics.value),
                "pnl": str(self.metrics.pnl),
            },
        }


__all__ = [
    "REASON_DISTRIBUTION",
    "REASON_KPI",
    "REASON_MANUAL",
    "REASON_UPLOAD",
    "IssueSeverity",
    "NormalizedRow",
    "ParsedPortfolio",
    "PortfolioCashflow",
    "PortfolioDeadLetterRecord",
    "PortfolioJobRunRecord",
    "PortfolioMetrics",
    "PortfolioRecalcMetricsSnapshot",
    "PortfolioValuation",
    "PortfolioValuationPoint",
    "PositionSnapshot",
    "RecalcResult",
    "RunStatus",
    "UploadPortfolioResponse",
    "ValidationIssue",
]
