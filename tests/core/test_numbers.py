"""Tests for locale-tolerant number parsing."""

from decimal import Decimal

import pytest

from fibra.core.numbers import parse_number


class TestParseNumber:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("18.20", Decimal("18.20")),
            ("18,20", Decimal("18.20")),
            ("1,234", Decimal("1234")),
            ("1,234.56", Decimal("1234.56")),
            ("1.234,56", Decimal("1234.56")),
            ("1.234.567", Decimal("1234567")),
            ("$ 24.50", Decimal("24.50")),
            ("35.2%", Decimal("35.2")),
            ("-0.5", Decimal("-0.5")),
            ("100.", Decimal("100")),
        ],
    )
    def test_formats(self, raw, expected):
        assert parse_number(raw) == expected

    @pytest.mark.parametrize("raw", ["", "   ", "abc", "1-2", "NaN", "Infinity"])
    def test_unparseable(self, raw):
        assert parse_number(raw) is None
