"""Records flowing through the document-to-facts pipeline.

Money-like fact values are ``Decimal``; confidences are ``float`` in
``[0, 1]``. Records are plain dataclasses owned by the repository ports;
services mutate them only through :mod:`fibra.documents.lifecycle`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from fibra.core.periods import utcnow


class DocumentKind(str, Enum):
    UNKNOWN = "unknown"
    HECHO_RELEVANTE = "hecho_relevante"
    QUARTERLY = "quarterly"
    PRESENTATION = "presentation"
    DISTRIBUTION_NOTICE = "distribution_notice"
    ANNUAL_REPORT = "annual_report"
    OTHER = "other"


class DocumentStatus(str, Enum):
    NEW = "new"
    DOWNLOAD_QUEUED = "download_queued"
    DOWNLOADED = "downloaded"
    PARSED = "parsed"
    FACTS_EXTRACTED = "facts_extracted"
    IGNORED = "ignored"
    SUPERSEDED = "superseded"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.IGNORED, DocumentStatus.SUPERSEDED)


@dataclass
class DocumentProvenance:
    """Where a document came from and how it was reached."""

    referer: str | None = None
    crawl_path: str | None = None
    robots_ok: bool = True
    etag: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def merge(self, other: DocumentProvenance | None) -> DocumentProvenance:
        """Overlay *other*; fields it leaves empty keep their current value."""
        if other is None:
            return replace(self, metadata=dict(self.metadata))
        return DocumentProvenance(
            referer=other.referer or self.referer,
            crawl_path=other.crawl_path or self.crawl_path,
            robots_ok=self.robots_ok and other.robots_ok,
            etag=other.etag or self.etag,
            metadata={**self.metadata, **other.metadata},
        )


@dataclass
class DocumentRecord:
    document_id: str
    url: str
    source_domain: str
    status: DocumentStatus = DocumentStatus.NEW
    kind: DocumentKind = DocumentKind.UNKNOWN
    ticker: str | None = None
    hash: str | None = None
    parser_version: str | None = None
    confidence: float = 0.0
    provenance: DocumentProvenance = field(default_factory=DocumentProvenance)
    discovered_at: datetime = field(default_factory=utcnow)
    published_at: datetime | None = None
    downloaded_at: datetime | None = None
    parsed_at: datetime | None = None
    content_type: str | None = None
    content_length: int | None = None
    ocr_used: bool = False
    pages: int | None = None
    period_tag: str | None = None
    failure_reason: str | None = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class DocumentBinary:
    """Downloaded bytes; content-addressed by ``hash``."""

    document_id: str
    hash: str
    content: bytes
    content_type: str
    content_length: int
    is_image_based: bool = False
    stored_at: datetime = field(default_factory=utcnow)


@dataclass
class DocumentTextRecord:
    document_id: str
    hash: str
    text: str
    tables: list[list[list[str]]] = field(default_factory=list)
    ocr_used: bool = False
    pages: int = 0
    parser_version: str = ""
    parsed_at: datetime = field(default_factory=utcnow)
    metrics: dict[str, float] = field(default_factory=dict)


FACT_FIELDS = ("nav_per_cbfi", "noi", "affo", "ltv", "occupancy", "dividends")


@dataclass
class DocumentFactsRecord:
    fact_id: str
    document_id: str
    ticker: str
    period_tag: str
    parser_version: str
    hash: str
    nav_per_cbfi: Decimal | None = None
    noi: Decimal | None = None
    affo: Decimal | None = None
    ltv: Decimal | None = None
    occupancy: Decimal | None = None
    dividends: Decimal | None = None
    score: int = 0
    confidence: float = 0.0
    quality: float = 0.0
    requires_review: bool = False
    is_superseded: bool = False
    source_url: str | None = None
    parsed_at: datetime = field(default_factory=utcnow)

    def values(self) -> dict[str, Decimal | None]:
        return {name: getattr(self, name) for name in FACT_FIELDS}

    @property
    def idempotency_key(self) -> tuple[str, str, str]:
        return (self.document_id, self.parser_version, self.hash)


@dataclass(frozen=True)
class FactsHistoryRecord:
    """Append-only audit copy of one extraction."""

    fact_id: str
    document_id: str
    ticker: str
    period_tag: str
    parser_version: str
    hash: str
    values: dict[str, Decimal | None]
    score: int
    confidence: float
    requires_review: bool
    became_current: bool
    recorded_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_facts(cls, facts: DocumentFactsRecord, became_current: bool) -> FactsHistoryRecord:
        return cls(
            fact_id=facts.fact_id,
            document_id=facts.document_id,
            ticker=facts.ticker,
            period_tag=facts.period_tag,
            parser_version=facts.parser_version,
            hash=facts.hash,
            values=facts.values(),
            score=facts.score,
            confidence=facts.confidence,
            requires_review=facts.requires_review,
            became_current=became_current,
        )


@dataclass(frozen=True)
class DocumentJobEvent:
    job_run_id: str
    document_id: str
    stage: str
    status: str
    success: bool
    started_at: datetime
    completed_at: datetime | None = None
    details: str | None = None
    hash: str | None = None
    parser_version: str | None = None
    correlation_id: str | None = None


# ── Stage inputs / outputs ───────────────────────────────────────────


@dataclass(frozen=True)
class DiscoveredDocument:
    """A candidate link yielded by a document source."""

    url: str
    title: str | None = None
    ticker_hint: str | None = None
    kind_hint: str | None = None
    published_at: datetime | None = None
    referer: str | None = None
    crawl_path: str | None = None
    hash: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class DiscoveryBatchResult:
    discovered: int = 0
    skipped_by_robots: int = 0
    existing: int = 0
    invalid: int = 0
    new_documents: list[DocumentRecord] = field(default_factory=list)
    applied_delays: dict[str, float] = field(default_factory=dict)
    failures_by_domain: dict[str, int] = field(default_factory=dict)

    @property
    def new_count(self) -> int:
        return len(self.new_documents)

    def to_dict(self) -> dict[str, Any]:
        return {
            "discovered": self.discovered,
            "skipped_by_robots": self.skipped_by_robots,
            "existing": self.existing,
            "invalid": self.invalid,
            "new": self.new_count,
            "applied_delays": dict(self.applied_delays),
            "failures_by_domain": dict(self.failures_by_domain),
        }


@dataclass(frozen=True)
class FetchResponse:
    """Raw outcome of an HTTP fetch, before the downloader interprets it."""

    url: str
    status_code: int
    content: bytes = b""
    content_type: str | None = None
    etag: str | None = None
    content_length: int | None = None
    truncated: bool = False


class DownloadStatus(str, Enum):
    DOWNLOADED = "downloaded"
    NOT_MODIFIED = "not_modified"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class DownloadOutcome:
    document_id: str
    status: DownloadStatus
    hash: str | None = None
    bytes_downloaded: int = 0
    duplicate_of: str | None = None
    reason: str | None = None

    @property
    def advances(self) -> bool:
        """True when the parse stage should run next."""
        return self.status == DownloadStatus.DOWNLOADED


@dataclass(frozen=True)
class TextExtraction:
    """Output of a text extractor or OCR provider."""

    text: str
    tables: list[list[list[str]]] = field(default_factory=list)
    pages: int = 0
    confidence: float = 1.0
    is_image_based: bool = False

    @property
    def has_text(self) -> bool:
        return bool(self.text and self.text.strip())


@dataclass(frozen=True)
class ClassificationResult:
    kind: DocumentKind
    ticker: str | None
    period_tag: str | None
    confidence: float


@dataclass(frozen=True)
class ParseOutcome:
    document_id: str
    success: bool
    requires_retry: bool = False
    reason: str | None = None
    ocr_used: bool = False
    pages: int = 0
    classification: ClassificationResult | None = None
    skipped: bool = False
    ignored: bool = False


@dataclass(frozen=True)
class FactsOutcome:
    record: DocumentFactsRecord
    created: bool
    is_current: bool
    superseded_fact_ids: tuple[str, ...] = ()
    superseded_document_ids: tuple[str, ...] = ()
