"""
In-memory adapters for every fibra port.

Manifesto:
    Single-process runs, the CLI and the test suite need working
    repositories, queues and sources without a database or a network.

Records are deep-copied on the way in and out so callers see the same
isolation a database gives them: mutating a fetched record changes nothing
until it is written back with ``update``.

Tags:
    fibra, adapters, in-memory, testing
"""

from __future__ import annotations

import copy
from collections import deque
from collections.abc import Iterable
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

from fibra.core.errors import IntegrityError, NetworkError, StorageError
from fibra.core.periods import utcnow
from fibra.distributions.models import (
    DistributionRecord,
    DistributionStatus,
    DividendEvent,
    OfficialDistributionRecord,
    round_amount,
)
from fibra.documents.models import (
    DiscoveredDocument,
    DocumentBinary,
    DocumentFactsRecord,
    DocumentJobEvent,
    DocumentRecord,
    DocumentStatus,
    DocumentTextRecord,
    FactsHistoryRecord,
    FetchResponse,
    TextExtraction,
)
from fibra.execution.context import JobContext
from fibra.execution.queue import Job
from fibra.portfolio.models import (
    NormalizedRow,
    PortfolioCashflow,
    PortfolioDeadLetterRecord,
    PortfolioJobRunRecord,
    PortfolioRecalcMetricsSnapshot,
    PortfolioValuationPoint,
    RunStatus,
)

__all__ = [
    "FixedClock",
    "InMemoryDistributionRepository",
    "InMemoryDividendFeed",
    "InMemoryDocumentRepository",
    "InMemoryDocumentStorage",
    "InMemoryFactsRepository",
    "InMemoryHoldersDirectory",
    "InMemoryJobQueue",
    "InMemoryOfficialSource",
    "InMemoryPortfolioRepository",
    "InMemorySecurityCatalog",
    "InMemorySecurityMetrics",
    "StaticDocumentSource",
    "StaticFetcher",
    "StaticRobotsPolicy",
    "StaticTextExtractor",
]


class FixedClock:
    """Clock frozen at *now*; ``advance`` moves it forward."""

    def __init__(self, now: datetime | None = None):
        self._now = now or utcnow()

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


# =============================================================================
# DOCUMENTS
# =============================================================================


class InMemoryDocumentRepository:
    def __init__(self) -> None:
        self._documents: dict[str, DocumentRecord] = {}
        self._by_url: dict[str, str] = {}
        self._by_hash: dict[str, str] = {}
        self._texts: dict[str, list[DocumentTextRecord]] = {}
        self.events: list[DocumentJobEvent] = []

    def _index_hash(self, document: DocumentRecord) -> None:
        # First writer keeps the hash; later duplicates point back to it.
        if document.hash and document.hash not in self._by_hash:
            self._by_hash[document.hash] = document.document_id

    async def get(self, document_id: str) -> DocumentRecord | None:
        document = self._documents.get(document_id)
        return copy.deepcopy(document) if document else None

    async def get_by_url(self, url: str) -> DocumentRecord | None:
        document_id = self._by_url.get(url)
        return await self.get(document_id) if document_id else None

    async def get_by_hash(self, content_hash: str) -> DocumentRecord | None:
        document_id = self._by_hash.get(content_hash)
        return await self.get(document_id) if document_id else None

    async def add(self, document: DocumentRecord) -> DocumentRecord:
        if document.document_id in self._documents:
            raise IntegrityError(f"Document {document.document_id} already exists")
        if document.url in self._by_url:
            raise IntegrityError(f"URL already registered: {document.url}")
        self._documents[document.document_id] = copy.deepcopy(document)
        self._by_url[document.url] = document.document_id
        self._index_hash(document)
        return document

    async def update(self, document: DocumentRecord) -> DocumentRecord:
        if document.document_id not in self._documents:
            raise StorageError(f"Document {document.document_id} does not exist")
        document.updated_at = utcnow()
        self._documents[document.document_id] = copy.deepcopy(document)
        self._index_hash(document)
        return document

    async def list_by_status(self, status: DocumentStatus) -> list[DocumentRecord]:
        return [copy.deepcopy(d) for d in self._documents.values() if d.status == status]

    async def save_text(self, record: DocumentTextRecord) -> None:
        self._texts.setdefault(record.document_id, []).append(copy.deepcopy(record))

    async def get_latest_text(self, document_id: str) -> DocumentTextRecord | None:
        texts = self._texts.get(document_id)
        return copy.deepcopy(texts[-1]) if texts else None

    async def add_job_event(self, event: DocumentJobEvent) -> None:
        self.events.append(event)

    def all(self) -> list[DocumentRecord]:
        return [copy.deepcopy(d) for d in self._documents.values()]

    def text_history(self, document_id: str) -> list[DocumentTextRecord]:
        return list(self._texts.get(document_id, []))


class InMemoryDocumentStorage:
    def __init__(self) -> None:
        self._binaries: dict[str, DocumentBinary] = {}

    async def exists(self, content_hash: str) -> bool:
        return content_hash in self._binaries

    async def save(self, binary: DocumentBinary) -> bool:
        if binary.hash in self._binaries:
            return False
        self._binaries[binary.hash] = binary
        return True

    async def get(self, content_hash: str) -> DocumentBinary | None:
        return self._binaries.get(content_hash)

    def __len__(self) -> int:
        return len(self._binaries)


class InMemoryFactsRepository:
    def __init__(self) -> None:
        self._records: dict[str, DocumentFactsRecord] = {}
        self._history: list[FactsHistoryRecord] = []

    async def get_by_key(
        self, document_id: str, parser_version: str, content_hash: str
    ) -> DocumentFactsRecord | None:
        key = (document_id, parser_version, content_hash)
        for record in self._records.values():
            if record.idempotency_key == key:
                return copy.deepcopy(record)
        return None

    async def get_current(self, ticker: str, period_tag: str) -> DocumentFactsRecord | None:
        for record in self._records.values():
            if record.ticker == ticker and record.period_tag == period_tag and not record.is_superseded:
                return copy.deepcopy(record)
        return None

    async def save(self, record: DocumentFactsRecord) -> None:
        self._records[record.fact_id] = copy.deepcopy(record)

    async def mark_superseded(self, fact_id: str) -> None:
        record = self._records.get(fact_id)
        if record is None:
            raise StorageError(f"Facts record {fact_id} does not exist")
        record.is_superseded = True

    async def append_history(self, record: FactsHistoryRecord) -> None:
        self._history.append(record)

    async def list_for_period(self, ticker: str, period_tag: str) -> list[DocumentFactsRecord]:
        return [
            copy.deepcopy(r) for r in self._records.values()
            if r.ticker == ticker and r.period_tag == period_tag
        ]

    async def list_history(self, ticker: str, period_tag: str) -> list[FactsHistoryRecord]:
        return [h for h in self._history if h.ticker == ticker and h.period_tag == period_tag]


class StaticDocumentSource:
    """A source that yields a fixed list of candidates."""

    def __init__(self, domain: str, documents: Iterable[DiscoveredDocument] = (), error: Exception | None = None):
        self.domain = domain
        self.documents = list(documents)
        self.error = error
        self.calls = 0

    async def discover(self, since: datetime, ctx: JobContext) -> list[DiscoveredDocument]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [
            d for d in self.documents
            if d.published_at is None or d.published_at >= since
        ]


class StaticRobotsPolicy:
    """Allows everything except the listed URL prefixes."""

    def __init__(
        self,
        disallow: Iterable[str] = (),
        delays: dict[str, float] | None = None,
        default_delay: float = 0.0,
    ):
        self.disallow = tuple(disallow)
        self.delays = delays or {}
        self.default_delay = default_delay

    async def is_allowed(self, url: str, ctx: JobContext) -> bool:
        return not any(url.startswith(prefix) for prefix in self.disallow)

    async def crawl_delay(self, domain: str, ctx: JobContext) -> float:
        return self.delays.get(domain, self.default_delay)


class StaticFetcher:
    """Serves canned responses per URL; a queued exception is raised once."""

    def __init__(self, responses: dict[str, FetchResponse] | None = None):
        self.responses = dict(responses or {})
        self.errors: dict[str, deque[Exception]] = {}
        self.requests: list[tuple[str, str | None]] = []

    def serve(
        self,
        url: str,
        content: bytes,
        *,
        status_code: int = 200,
        content_type: str = "application/pdf",
        etag: str | None = None,
    ) -> None:
        self.responses[url] = FetchResponse(
            url=url,
            status_code=status_code,
            content=content,
            content_type=content_type,
            etag=etag,
            content_length=len(content),
        )

    def fail(self, url: str, error: Exception) -> None:
        self.errors.setdefault(url, deque()).append(error)

    async def fetch(self, url: str, ctx: JobContext, etag: str | None = None) -> FetchResponse:
        self.requests.append((url, etag))
        pending = self.errors.get(url)
        if pending:
            raise pending.popleft()
        response = self.responses.get(url)
        if response is None:
            return FetchResponse(url=url, status_code=404)
        if etag and response.etag == etag:
            return FetchResponse(url=url, status_code=304, etag=etag)
        return response


class StaticTextExtractor:
    """Text extractor or OCR provider returning canned text per content."""

    def __init__(self, default: TextExtraction | None = None):
        self.default = default or TextExtraction(text="")
        self.results: dict[bytes, TextExtraction] = {}
        self.calls = 0

    def register(self, content: bytes, text: str, *, confidence: float = 1.0,
                 pages: int = 1, is_image_based: bool = False) -> None:
        self.results[content] = TextExtraction(
            text=text, pages=pages, confidence=confidence, is_image_based=is_image_based
        )

    async def extract(self, content: bytes, ctx: JobContext) -> TextExtraction:
        self.calls += 1
        return self.results.get(content, self.default)

    async def recognize(self, content: bytes, ctx: JobContext) -> TextExtraction:
        return await self.extract(content, ctx)


# =============================================================================
# QUEUE
# =============================================================================


class InMemoryJobQueue:
    """FIFO queue shared by every stage; keeps a log of everything enqueued."""

    def __init__(self) -> None:
        self._pending: deque[Job] = deque()
        self.jobs: list[Job] = []

    async def enqueue(self, queue: str, payload: dict[str, Any], ctx: JobContext) -> Job:
        job = Job(queue=queue, payload=dict(payload), correlation_id=ctx.correlation_id)
        self._pending.append(job)
        self.jobs.append(job)
        return job

    async def dequeue(self) -> Job | None:
        return self._pending.popleft() if self._pending else None

    async def requeue(self, job: Job) -> Job:
        self._pending.append(job)
        return job

    @property
    def pending(self) -> list[Job]:
        return list(self._pending)

    def enqueued(self, queue: str) -> list[Job]:
        return [j for j in self.jobs if j.queue == queue]


# =============================================================================
# DISTRIBUTIONS AND SECURITIES
# =============================================================================


class InMemoryDistributionRepository:
    def __init__(self, tickers: Iterable[str] = ()):
        self.tickers = list(tickers)
        self._records: dict[str, DistributionRecord] = {}

    async def active_tickers(self) -> list[str]:
        if self.tickers:
            return list(self.tickers)
        return sorted({r.ticker for r in self._records.values()})

    async def exists(self, ticker: str, pay_date: date, gross_per_cbfi: Decimal) -> bool:
        gross = round_amount(gross_per_cbfi)
        return any(
            r.ticker == ticker and r.pay_date == pay_date and round_amount(r.gross_per_cbfi) == gross
            for r in self._records.values()
        )

    async def insert(self, record: DistributionRecord) -> None:
        if record.id in self._records:
            raise IntegrityError(f"Distribution {record.id} already exists")
        self._records[record.id] = copy.deepcopy(record)

    async def update(self, record: DistributionRecord) -> None:
        if record.id not in self._records:
            raise StorageError(f"Distribution {record.id} does not exist")
        self._records[record.id] = copy.deepcopy(record)

    async def list_by_status(self, status: DistributionStatus) -> list[DistributionRecord]:
        return [copy.deepcopy(r) for r in self._records.values() if r.status == status]

    async def list_verified_since(self, ticker: str, since: date) -> list[DistributionRecord]:
        records = [
            copy.deepcopy(r) for r in self._records.values()
            if r.ticker == ticker and r.status == DistributionStatus.VERIFIED and r.pay_date >= since
        ]
        return sorted(records, key=lambda r: r.pay_date)

    def all(self) -> list[DistributionRecord]:
        return [copy.deepcopy(r) for r in self._records.values()]


class InMemoryOfficialSource:
    def __init__(self, records: Iterable[OfficialDistributionRecord] = ()):
        self.records = list(records)

    async def get_official(
        self, ticker: str, since: date, ctx: JobContext
    ) -> list[OfficialDistributionRecord]:
        return [r for r in self.records if r.ticker == ticker and r.pay_date >= since]


class InMemoryDividendFeed:
    """Dividend series per ticker; ``failures`` makes the next N calls fail."""

    def __init__(self, events: dict[str, list[DividendEvent]] | None = None):
        self.events = dict(events or {})
        self.failures: dict[str, int] = {}
        self.calls: dict[str, int] = {}

    async def fetch(self, ticker: str, ctx: JobContext) -> list[DividendEvent]:
        self.calls[ticker] = self.calls.get(ticker, 0) + 1
        remaining = self.failures.get(ticker, 0)
        if remaining:
            self.failures[ticker] = remaining - 1
            raise NetworkError(f"feed unavailable for {ticker}")
        return list(self.events.get(ticker, []))


class InMemorySecurityCatalog:
    def __init__(
        self,
        prices: dict[str, Decimal] | None = None,
        last_known: dict[str, Decimal] | None = None,
        yields: dict[str, tuple[Decimal | None, Decimal | None]] | None = None,
    ):
        self.prices = dict(prices or {})
        self.last_known = dict(last_known or {})
        self.yields = dict(yields or {})

    async def get_prices(self, tickers: list[str], ctx: JobContext) -> dict[str, Decimal | None]:
        return {t: self.prices.get(t) for t in tickers}

    async def get_last_known_price(self, ticker: str, ctx: JobContext) -> Decimal | None:
        return self.prices.get(ticker) or self.last_known.get(ticker)

    async def get_yields(
        self, tickers: list[str], ctx: JobContext
    ) -> dict[str, tuple[Decimal | None, Decimal | None]]:
        return {t: self.yields.get(t, (None, None)) for t in tickers}


class InMemorySecurityMetrics:
    """Both security write-back ports: facts and yields per ticker."""

    def __init__(self) -> None:
        self.facts: dict[str, DocumentFactsRecord] = {}
        self.yields: dict[str, tuple[Decimal | None, Decimal | None]] = {}

    async def update_facts(self, ticker: str, facts: DocumentFactsRecord, ctx: JobContext) -> None:
        self.facts[ticker] = copy.deepcopy(facts)

    async def update_yields(
        self,
        ticker: str,
        ttm_yield: Decimal | None,
        forward_yield: Decimal | None,
        ctx: JobContext,
    ) -> None:
        self.yields[ticker] = (ttm_yield, forward_yield)

    async def set_yields(
        self,
        ticker: str,
        ttm_yield: Decimal | None,
        forward_yield: Decimal | None,
        ctx: JobContext,
    ) -> None:
        await self.update_yields(ticker, ttm_yield, forward_yield, ctx)


class InMemoryHoldersDirectory:
    def __init__(self, holders: dict[str, list[str]] | None = None):
        self.holders = dict(holders or {})

    async def users_holding(self, ticker: str, ctx: JobContext) -> list[str]:
        return list(self.holders.get(ticker, []))


# =============================================================================
# PORTFOLIO
# =============================================================================


class InMemoryPortfolioRepository:
    """Transactional portfolio store.

    ``begin`` snapshots the user-visible state and ``rollback`` restores it.
    Job runs and dead letters are written outside the transaction, the way
    an audit table with its own session would be. Setting
    ``fail_on[method] = exc`` makes that method raise *exc* once.
    """

    def __init__(self) -> None:
        self.trades: dict[str, list[NormalizedRow]] = {}
        self.valuations: dict[str, list[PortfolioValuationPoint]] = {}
        self.cashflows: dict[str, list[PortfolioCashflow]] = {}
        self.current: dict[str, PortfolioRecalcMetricsSnapshot] = {}
        self.history: dict[str, list[PortfolioRecalcMetricsSnapshot]] = {}
        self.job_runs: dict[tuple[str, str, date], PortfolioJobRunRecord] = {}
        self.dead_letters: list[PortfolioDeadLetterRecord] = []
        self.fail_on: dict[str, Exception] = {}
        self._snapshot: tuple | None = None
        self.commits = 0
        self.rollbacks = 0

    def _maybe_fail(self, method: str) -> None:
        error = self.fail_on.pop(method, None)
        if error is not None:
            raise error

    def _state(self) -> tuple:
        return copy.deepcopy((self.trades, self.current, self.history))

    async def begin(self) -> None:
        self._maybe_fail("begin")
        self._snapshot = self._state()

    async def commit(self) -> None:
        self._maybe_fail("commit")
        self._snapshot = None
        self.commits += 1

    async def rollback(self) -> None:
        self._maybe_fail("rollback")
        if self._snapshot is not None:
            self.trades, self.current, self.history = self._snapshot
            self._snapshot = None
        self.rollbacks += 1

    async def delete_user_portfolio(self, user_id: str) -> None:
        self._maybe_fail("delete_user_portfolio")
        self.trades.pop(user_id, None)

    async def insert_trades(self, user_id: str, rows: list[NormalizedRow]) -> None:
        self._maybe_fail("insert_trades")
        self.trades.setdefault(user_id, []).extend(rows)

    async def get_positions(self, user_id: str) -> list[NormalizedRow]:
        self._maybe_fail("get_positions")
        qty: dict[str, Decimal] = {}
        cost: dict[str, Decimal] = {}
        for row in self.trades.get(user_id, []):
            qty[row.ticker] = qty.get(row.ticker, Decimal(0)) + row.qty
            cost[row.ticker] = cost.get(row.ticker, Decimal(0)) + row.qty * row.avg_cost
        return [
            NormalizedRow(ticker, total, cost[ticker] / total)
            for ticker, total in sorted(qty.items())
            if total > 0
        ]

    async def get_valuation_history(self, user_id: str) -> list[PortfolioValuationPoint]:
        self._maybe_fail("get_valuation_history")
        return list(self.valuations.get(user_id, []))

    async def get_cashflow_history(self, user_id: str) -> list[PortfolioCashflow]:
        return list(self.cashflows.get(user_id, []))

    async def get_job_run(
        self, user_id: str, reason: str, execution_date: date
    ) -> PortfolioJobRunRecord | None:
        return self.job_runs.get((user_id, reason, execution_date))

    async def claim_job_run(self, record: PortfolioJobRunRecord) -> PortfolioJobRunRecord:
        existing = self.job_runs.get(record.key)
        if existing is not None and existing.status != RunStatus.FAILED:
            return existing
        self.job_runs[record.key] = record
        return record

    async def save_job_run(self, record: PortfolioJobRunRecord) -> None:
        self.job_runs[record.key] = record

    async def get_current_metrics(self, user_id: str) -> PortfolioRecalcMetricsSnapshot | None:
        return self.current.get(user_id)

    async def save_current_metrics(self, snapshot: PortfolioRecalcMetricsSnapshot) -> None:
        self._maybe_fail("save_current_metrics")
        self.current[snapshot.user_id] = snapshot

    async def append_metrics_history(self, snapshot: PortfolioRecalcMetricsSnapshot) -> None:
        self._maybe_fail("append_metrics_history")
        self.history.setdefault(snapshot.user_id, []).append(snapshot)

    async def record_dead_letter(self, record: PortfolioDeadLetterRecord) -> None:
        self.dead_letters.append(record)
