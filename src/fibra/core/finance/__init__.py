"""CBFI corporate-action adjustments."""

from fibra.core.finance.adjustments import CbfiAdjustment, CorporateAction, cumulative_ratio, restate_amount

__all__ = ["CbfiAdjustment", "CorporateAction", "cumulative_ratio", "restate_amount"]
