"""Portfolio upload, valuation and recalculation."""

from fibra.portfolio.file_parser import PortfolioFileParser
from fibra.portfolio.models import (
    NormalizedRow,
    PortfolioRecalcMetricsSnapshot,
    PortfolioValuation,
    UploadPortfolioResponse,
)
from fibra.portfolio.recalc import PortfolioRecalcEngine
from fibra.portfolio.replace import PortfolioReplaceService
from fibra.portfolio.valuation import value_positions

__all__ = [
    "NormalizedRow",
    "PortfolioFileParser",
    "PortfolioRecalcEngine",
    "PortfolioRecalcMetricsSnapshot",
    "PortfolioReplaceService",
    "PortfolioValuation",
    "UploadPortfolioResponse",
    "value_positions",
]
