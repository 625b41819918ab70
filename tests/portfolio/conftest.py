"""Fixtures for portfolio valuation, recalculation and upload tests."""

from __future__ import annotations

from decimal import Decimal

import pytest

from fibra.adapters.memory import InMemoryPortfolioRepository
from fibra.portfolio.file_parser import PortfolioFileParser
from fibra.portfolio.models import NormalizedRow
from fibra.portfolio.recalc import PortfolioRecalcEngine
from fibra.portfolio.replace import PortfolioReplaceService

USER = "user-1"


@pytest.fixture()
def portfolio_repo() -> InMemoryPortfolioRepository:
    return InMemoryPortfolioRepository()


@pytest.fixture()
def funo_holding(portfolio_repo, catalog) -> NormalizedRow:
    """100 FUNO11 at 24.50 with the market at 25.10."""
    row = NormalizedRow("FUNO11", Decimal(100), Decimal("24.50"))
    portfolio_repo.trades[USER] = [row]
    catalog.prices["FUNO11"] = Decimal("25.10")
    return row


@pytest.fixture()
def engine(portfolio_repo, catalog, clock, observer) -> PortfolioRecalcEngine:
    return PortfolioRecalcEngine(portfolio_repo, catalog, clock=clock, observer=observer)


@pytest.fixture()
def replace_service(portfolio_repo, catalog, job_queue, clock, settings) -> PortfolioReplaceService:
    return PortfolioReplaceService(
        portfolio_repo, catalog, job_queue, clock=clock, parser=PortfolioFileParser(settings)
    )
