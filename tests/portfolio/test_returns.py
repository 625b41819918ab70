"""Tests for time- and money-weighted returns."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from fibra.portfolio.models import PortfolioCashflow, PortfolioValuationPoint
from fibra.portfolio.returns import annualize, money_weighted_return, span_days, time_weighted_return

START = datetime(2023, 1, 1, tzinfo=UTC)


def _point(days: float, value: str) -> PortfolioValuationPoint:
    return PortfolioValuationPoint(START + timedelta(days=days), Decimal(value))


def _flow(days: float, amount: str) -> PortfolioCashflow:
    return PortfolioCashflow(START + timedelta(days=days), Decimal(amount))


# =============================================================================
# Time-weighted return
# =============================================================================


class TestTimeWeightedReturn:
    def test_needs_two_points(self):
        assert time_weighted_return([_point(0, "1000")], [_flow(0, "1000")]) is None

    def test_needs_cashflows(self):
        assert time_weighted_return([_point(0, "1000"), _point(30, "1100")], []) is None

    def test_single_period(self):
        twr = time_weighted_return([_point(0, "1000"), _point(30, "1100")], [_flow(0, "1000")])
        assert twr == pytest.approx(0.10)

    def test_deposits_are_removed_from_growth(self):
        points = [_point(0, "1000"), _point(30, "1600"), _point(60, "1760")]
        flows = [_flow(0, "1000"), _flow(30, "500")]
        assert time_weighted_return(points, flows) == pytest.approx(0.21)

    def test_points_are_ordered_by_date(self):
        points = [_point(60, "1760"), _point(0, "1000"), _point(30, "1600")]
        flows = [_flow(30, "500"), _flow(0, "1000")]
        assert time_weighted_return(points, flows) == pytest.approx(0.21)

    def test_zero_start_value_skips_sub_period(self):
        points = [_point(0, "0"), _point(30, "1000"), _point(60, "1100")]
        flows = [_flow(30, "1000")]
        assert time_weighted_return(points, flows) == pytest.approx(0.10)


# =============================================================================
# Money-weighted return
# =============================================================================


class TestMoneyWeightedReturn:
    def test_needs_two_points(self):
        assert money_weighted_return([_point(0, "1000")], [_flow(0, "1000")]) is None

    def test_zero_span(self):
        assert money_weighted_return([_point(0, "1000"), _point(0, "1100")], [_flow(0, "1")]) is None

    def test_without_interior_flows_matches_simple_growth(self):
        mwr = money_weighted_return([_point(0, "1000"), _point(365, "1100")], [_flow(0, "1000")])
        assert mwr == pytest.approx(0.10, abs=1e-6)

    def test_mid_period_deposit(self):
        points = [_point(0, "1000"), _point(365, "2100")]
        flows = [_flow(0, "1000"), _flow(182.5, "1000")]
        mwr = money_weighted_return(points, flows)
        assert mwr == pytest.approx(0.06703, abs=1e-4)

    def test_loss(self):
        mwr = money_weighted_return([_point(0, "1000"), _point(365, "800")], [_flow(0, "1000")])
        assert mwr == pytest.approx(-0.20, abs=1e-6)


# =============================================================================
# Annualization
# =============================================================================


class TestAnnualize:
    def test_one_year_is_unchanged(self):
        assert annualize(0.10, 365) == pytest.approx(0.10)

    def test_two_years(self):
        assert annualize(0.21, 730) == pytest.approx(0.10)

    @pytest.mark.parametrize(("rate", "days"), [(None, 365), (0.1, 0), (-1.0, 365), (-1.5, 365)])
    def test_undefined(self, rate, days):
        assert annualize(rate, days) is None

    def test_span_days(self):
        assert span_days([_point(10, "1"), _point(0, "1"), _point(45.5, "1")]) == pytest.approx(45.5)
        assert span_days([_point(0, "1")]) == 0.0
