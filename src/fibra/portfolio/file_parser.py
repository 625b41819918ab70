"""Portfolio upload parser.

Reads a CSV of trades into :class:`NormalizedRow` objects. Headers are
matched case- and accent-insensitively against known aliases (Spanish
broker exports use ``Emisora``, ``Títulos``, ``Costo promedio``...). Row
problems become :class:`ValidationIssue` entries instead of exceptions;
only an unreadable file raises :class:`PortfolioFileError`.

Duplicate tickers are merged with a quantity-weighted average cost.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from pathlib import PurePath

from fibra.core.errors import PortfolioFileError
from fibra.core.logging import get_logger
from fibra.core.numbers import parse_number
from fibra.core.settings import FibraSettings, get_settings
from fibra.documents.classifier import fold_text
from fibra.portfolio.models import IssueSeverity, NormalizedRow, ParsedPortfolio, ValidationIssue

logger = get_logger(__name__)

TICKER, QTY, AVG_COST = "ticker", "qty", "avg_cost"

HEADER_ALIASES: dict[str, str] = {
    "fibra": TICKER,
    "ticker": TICKER,
    "emisora": TICKER,
    "cantidad": QTY,
    "titulos": QTY,
    "qty": QTY,
    "costopromedio": AVG_COST,
    "costoprom": AVG_COST,
    "ctopromedio": AVG_COST,
    "ctoprom": AVG_COST,
    "preciopromedio": AVG_COST,
    "avgcost": AVG_COST,
}

REQUIRED = (TICKER, QTY, AVG_COST)
SIX_PLACES = Decimal("0.000001")


def sanitize_header(header: str) -> str:
    return "".join(ch for ch in fold_text(header.strip()) if ch.isalnum())


@dataclass
class _Accumulator:
    qty: dict[str, Decimal] = field(default_factory=dict)
    cost: dict[str, Decimal] = field(default_factory=dict)

    def add(self, ticker: str, qty: Decimal, avg_cost: Decimal) -> bool:
        """Add a lot; returns True when *ticker* was already present."""
        seen = ticker in self.qty
        self.qty[ticker] = self.qty.get(ticker, Decimal(0)) + qty
        self.cost[ticker] = self.cost.get(ticker, Decimal(0)) + qty * avg_cost
        return seen

    def rows(self) -> list[NormalizedRow]:
        return [
            NormalizedRow(
                ticker=ticker,
                qty=qty,
                avg_cost=(self.cost[ticker] / qty).quantize(SIX_PLACES, rounding=ROUND_HALF_UP),
            )
            for ticker, qty in self.qty.items()
        ]


class PortfolioFileParser:
    def __init__(self, settings: FibraSettings | None = None):
        self.settings = settings or get_settings()

    def parse(self, content: bytes, filename: str) -> ParsedPortfolio:
        extension = PurePath(filename).suffix.lower()
        if not extension:
            raise PortfolioFileError(f"File '{filename}' has no extension", field="file", value=filename)
        if extension != ".csv":
            raise PortfolioFileError(f"Unsupported format '{extension}'", field="file", value=filename)
        if len(content) > self.settings.max_upload_bytes:
            raise PortfolioFileError(
                f"File exceeds the maximum size of {self.settings.max_upload_bytes} bytes",
                field="file",
                value=len(content),
            )
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError:
            text = content.decode("latin-1")

        result = self.parse_csv(text)
        logger.info(
            "portfolio_file.parsed",
            file=filename,
            bytes=len(content),
            rows=len(result.rows),
            ignored=result.ignored_rows,
            issues=len(result.issues),
        )
        return result

    def parse_csv(self, text: str) -> ParsedPortfolio:
        issues: list[ValidationIssue] = []
        reader = csv.reader(io.StringIO(text), delimiter=self._delimiter(text))

        header = next(reader, None)
        if header is None:
            issues.append(ValidationIssue(0, "", "The file is empty", IssueSeverity.WARNING))
            return ParsedPortfolio([], issues)

        mapping = self._map_headers(header, issues)
        if mapping is None:
            return ParsedPortfolio([], issues)

        acc = _Accumulator()
        processed = ignored = 0
        for row_number, values in enumerate(reader, start=2):
            if not any(v.strip() for v in values):
                issues.append(ValidationIssue(row_number, "", "Empty row ignored", IssueSeverity.WARNING))
                ignored += 1
                continue
            if processed >= self.settings.max_upload_rows:
                issues.append(ValidationIssue(
                    row_number, "", f"Row limit exceeded ({self.settings.max_upload_rows})"
                ))
                break
            processed += 1
            if not self._process_row(row_number, values, mapping, acc, issues):
                ignored += 1

        if processed == 0:
            issues.append(ValidationIssue(0, "", "The file has no data rows", IssueSeverity.WARNING))

        return ParsedPortfolio(acc.rows(), issues, processed_rows=processed, ignored_rows=ignored)

    @staticmethod
    def _delimiter(text: str) -> str:
        first_line = text.split("\n", 1)[0]
        return ";" if first_line.count(";") > first_line.count(",") else ","

    @staticmethod
    def _map_headers(header: list[str], issues: list[ValidationIssue]) -> dict[str, int] | None:
        mapping: dict[str, int] = {}
        for index, name in enumerate(header):
            canonical = HEADER_ALIASES.get(sanitize_header(name))
            if canonical and canonical not in mapping:
                mapping[canonical] = index

        missing = [name for name in REQUIRED if name not in mapping]
        for name in missing:
            issues.append(ValidationIssue(1, name, f"Required column '{name}' not found"))
        return None if missing else mapping

    def _process_row(
        self,
        row_number: int,
        values: list[str],
        mapping: dict[str, int],
        acc: _Accumulator,
        issues: list[ValidationIssue],
    ) -> bool:
        def cell(name: str) -> str:
            index = mapping[name]
            return values[index].strip() if index < len(values) else ""

        ticker = cell(TICKER).upper()
        ok = True
        if not ticker:
            issues.append(ValidationIssue(row_number, TICKER, "Ticker is required"))
            ok = False

        numbers: dict[str, Decimal] = {}
        for name in (QTY, AVG_COST):
            raw = cell(name)
            value = parse_number(raw) if raw else None
            if value is None:
                message = "Value is required" if not raw else "Value is not a valid number"
                issues.append(ValidationIssue(row_number, name, message))
                ok = False
            elif value <= 0:
                issues.append(ValidationIssue(row_number, name, "Value must be greater than zero"))
                ok = False
            else:
                numbers[name] = value

        if not ok:
            return False
        if acc.add(ticker, numbers[QTY], numbers[AVG_COST]):
            issues.append(ValidationIssue(
                row_number, TICKER, "Duplicate ticker; lots merged", IssueSeverity.WARNING
            ))
        return True


__all__ = ["HEADER_ALIASES", "PortfolioFileParser", "sanitize_header"]
