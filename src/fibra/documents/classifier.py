"""Keyword classifier for FIBRA filings.

Maps extracted text (Spanish or English) to a document kind, a ticker and
a period tag with a confidence score. Pure and synchronous.

Rules, first match wins:

====================================================  ===================  ====
Keywords                                              Kind                 Conf
====================================================  ===================  ====
"hecho relevante", "relevant event"                   HECHO_RELEVANTE      0.85
"aviso" + "distrib"                                   DISTRIBUTION_NOTICE  0.80
"presentaci", "investor presentation"                 PRESENTATION         0.75
"trimestre", "quarter", "financial results"           QUARTERLY            0.80
"informe anual", "reporte anual", "annual report"     ANNUAL_REPORT        0.75
(none)                                                OTHER                0.35
====================================================  ===================  ====

A recognised ticker lifts confidence to at least 0.6; a quarterly report
with a period tag lifts it to at least 0.9.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any

from fibra.core.periods import quarter_tag
from fibra.documents.models import ClassificationResult, DocumentKind

_TICKER = re.compile(r"\b(FIBRA[A-Z]{1,6}\d{0,2}|[A-Z]{3,7}\d{2})\b")
_QUARTER = re.compile(r"\b([1-4])\s*[TQ]\s*((?:20)?\d{2})\b")
_QUARTER_EN = re.compile(r"\bQ([1-4])\s*(?:of\s+)?((?:20)?\d{2})\b", re.IGNORECASE)
_QUARTER_WORDS = re.compile(
    r"\b(primer|segundo|tercer|cuarto|first|second|third|fourth)\s+"
    r"(?:trimestre|quarter)\s+(?:de(?:l)?\s+|of\s+)?(20\d{2})\b",
    re.IGNORECASE,
)
_YEAR = re.compile(r"\b(20\d{2})\b")

_ORDINALS = {
    "primer": 1, "first": 1,
    "segundo": 2, "second": 2,
    "tercer": 3, "third": 3,
    "cuarto": 4, "fourth": 4,
}

_RULES: list[tuple[tuple[str, ...], tuple[str, ...], DocumentKind, float]] = [
    # (any of, all of, kind, confidence)
    (("hecho relevante", "relevant event"), (), DocumentKind.HECHO_RELEVANTE, 0.85),
    (("aviso",), ("distrib",), DocumentKind.DISTRIBUTION_NOTICE, 0.8),
    (("presentaci", "investor presentation"), (), DocumentKind.PRESENTATION, 0.75),
    (("trimestre", "quarter", "financial results"), (), DocumentKind.QUARTERLY, 0.8),
    (("informe anual", "reporte anual", "annual report"), (), DocumentKind.ANNUAL_REPORT, 0.75),
]

_NOT_TICKERS = frozenset({"NAV", "NOI", "AFFO", "FFO", "LTV", "CBFI", "CBFIS", "USD", "MXN", "IFRS"})


def _strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def fold_text(text: str) -> str:
    """Lowercase and strip accents."""
    return _strip_accents(text).lower()


def find_ticker(text: str) -> str | None:
    for match in _TICKER.finditer(_strip_accents(text)):
        token = match.group(1)
        if token not in _NOT_TICKERS:
            return token
    return None


def find_period(text: str, kind: DocumentKind | None = None) -> str | None:
    match = _QUARTER.search(text)
    if match:
        return quarter_tag(int(match.group(1)), int(match.group(2)))
    match = _QUARTER_EN.search(text)
    if match:
        return quarter_tag(int(match.group(1)), int(match.group(2)))
    match = _QUARTER_WORDS.search(text)
    if match:
        return quarter_tag(_ORDINALS[match.group(1).lower()], int(match.group(2)))
    if kind == DocumentKind.ANNUAL_REPORT:
        year = _YEAR.search(text)
        if year:
            return f"FY{year.group(1)}"
    return None


class KeywordDocumentClassifier:
    """Default :class:`~fibra.documents.ports.DocumentClassifier`."""

    def classify(self, text: str, metadata: dict[str, Any] | None = None) -> ClassificationResult:
        metadata = metadata or {}
        haystack = fold_text(" ".join(filter(None, [metadata.get("title"), text])))

        kind, confidence = DocumentKind.OTHER, 0.35
        for any_of, all_of, rule_kind, rule_confidence in _RULES:
            if any(k in haystack for k in any_of) and all(k in haystack for k in all_of):
                kind, confidence = rule_kind, rule_confidence
                break

        ticker = metadata.get("ticker") or find_ticker(text)
        if ticker:
            ticker = ticker.upper()
            confidence = max(confidence, 0.6)

        period = metadata.get("period") or find_period(text, kind)
        if kind == DocumentKind.QUARTERLY and period:
            confidence = max(confidence, 0.9)

        return ClassificationResult(
            kind=kind,
            ticker=ticker,
            period_tag=period,
            confidence=round(confidence, 3),
        )


__all__ = ["KeywordDocumentClassifier", "find_period", "find_ticker", "fold_text"]
