"""
Root Typer application for the fibra CLI.

Offline helpers around the library: inspect settings, classify a report
and extract its facts, value a portfolio upload against given prices.
"""

from __future__ import annotations

import asyncio
import json
import sys
from decimal import Decimal
from pathlib import Path

import typer

from fibra.cli.utils import console, err_console, fail, render_table
from fibra.core.errors import FibraError
from fibra.core.logging import configure_logging
from fibra.core.numbers import parse_number
from fibra.core.settings import get_settings

app = typer.Typer(
    name="fibra",
    help="fibra: FIBRA document pipeline, distributions and portfolios.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import version as pkg_version

        typer.echo(f"fibra {pkg_version('fibra-spine')}")
        raise typer.Exit()


@app.callback()
def root(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """fibra CLI: classify reports, value portfolios, inspect settings."""
    settings = get_settings()
    configure_logging(
        level="DEBUG" if verbose else settings.log_level,
        json_format=settings.log_json,
        service=settings.service_name,
        stream=sys.stderr,
    )


@app.command("settings")
def show_settings(
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json, env"),
) -> None:
    """Show the effective configuration."""
    settings = get_settings()
    values = settings.model_dump(mode="json")

    if format == "json":
        console.print_json(json.dumps(values))
        return
    if format == "env":
        for key, value in sorted(values.items()):
            console.print(f"FIBRA_{key.upper()}={value}")
        return
    render_table("Settings", ["Setting", "Value"], sorted(values.items()))


def _read_text(path: Path, use_ocr: bool) -> tuple[str, bool]:
    if path.suffix.lower() in (".txt", ".md"):
        return path.read_text(encoding="utf-8"), False

    from fibra.adapters.pdf import PdfMinerTextExtractor, TesseractOcrProvider
    from fibra.execution.context import JobContext

    settings = get_settings()
    content = path.read_bytes()
    ctx = JobContext.new("cli", io_timeout=None)
    extraction = asyncio.run(PdfMinerTextExtractor(settings).extract(content, ctx))
    needs_ocr = not extraction.has_text or extraction.confidence < settings.ocr_confidence_threshold
    if use_ocr and needs_ocr:
        ocr = asyncio.run(TesseractOcrProvider(settings).recognize(content, ctx))
        if ocr.has_text:
            return ocr.text, True
    return extraction.text, False


@app.command("classify")
def classify(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="PDF or plain-text report"),
    ocr: bool = typer.Option(False, "--ocr", help="Fall back to OCR for scanned PDFs."),
    title: str | None = typer.Option(None, "--title", help="Document title used as a hint."),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    """Classify a report and extract its financial facts."""
    from fibra.documents.classifier import KeywordDocumentClassifier
    from fibra.documents.facts import extract_facts

    try:
        text, ocr_used = _read_text(file, ocr)
    except (FibraError, RuntimeError) as e:
        fail(str(e))

    result = KeywordDocumentClassifier().classify(text, {"title": title})
    facts = extract_facts(text)

    if as_json:
        console.print_json(json.dumps({
            "kind": result.kind.value,
            "ticker": result.ticker,
            "period_tag": result.period_tag,
            "confidence": result.confidence,
            "ocr_used": ocr_used,
            "facts": {k: str(v) if v is not None else None for k, v in facts.values.items()},
            "score": facts.score,
        }))
        return

    render_table(
        f"Classification: {file.name}",
        ["Kind", "Ticker", "Period", "Confidence", "OCR"],
        [(result.kind.value, result.ticker, result.period_tag, f"{result.confidence:.2f}", ocr_used)],
    )
    render_table(f"Facts (score {facts.score})", ["Fact", "Value"], facts.values.items())


def _parse_prices(values: list[str]) -> dict[str, Decimal]:
    prices: dict[str, Decimal] = {}
    for item in values:
        ticker, sep, raw = item.partition("=")
        price = parse_number(raw) if sep else None
        if not ticker.strip() or price is None:
            raise typer.BadParameter(f"expected TICKER=PRICE, got {item!r}", param_hint="--price")
        prices[ticker.strip().upper()] = price
    return prices


@app.command("portfolio")
def portfolio(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Portfolio CSV"),
    price: list[str] = typer.Option([], "--price", "-p", help="Market price as TICKER=PRICE (repeatable)."),
) -> None:
    """Validate a portfolio upload and value it at the given prices."""
    from fibra.portfolio.file_parser import PortfolioFileParser
    from fibra.portfolio.valuation import value_positions

    prices = _parse_prices(price)
    try:
        parsed = PortfolioFileParser(get_settings()).parse(file.read_bytes(), file.name)
    except FibraError as e:
        fail(e.message)

    valuation = value_positions(parsed.rows, prices)
    render_table(
        f"Portfolio: {file.name}",
        ["Ticker", "Qty", "Avg cost", "Price", "Invested", "Value", "P&L", "Weight"],
        [
            (p.ticker, p.qty, p.avg_cost, p.market_price, p.invested, p.value, p.pnl, p.weight)
            for p in valuation.positions
        ],
    )
    m = valuation.metrics
    console.print(f"[bold]Invested[/bold] {m.invested}  [bold]Value[/bold] {m.value}  [bold]P&L[/bold] {m.pnl}")
    if valuation.missing_prices:
        err_console.print(f"[yellow]No price for:[/yellow] {', '.join(valuation.missing_prices)}")
    if parsed.issues:
        render_table(
            "Issues",
            ["Row", "Field", "Severity", "Message"],
            [(i.row_number, i.field, i.severity.value, i.message) for i in parsed.issues],
        )
    if parsed.error_count:
        raise typer.Exit(code=2)


def main() -> None:
    app()


__all__ = ["app", "main"]
