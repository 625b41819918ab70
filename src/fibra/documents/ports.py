"""Ports consumed by the document pipeline.

All I/O ports are async and receive the caller's :class:`JobContext` so
adapters can honour cancellation and deadlines. The classifier is pure
and synchronous.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from fibra.documents.models import (
    ClassificationResult,
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


@runtime_checkable
class DocumentRepository(Protocol):
    async def get(self, document_id: str) -> DocumentRecord | None: ...

    async def get_by_url(self, url: str) -> DocumentRecord | None: ...

    async def get_by_hash(self, content_hash: str) -> DocumentRecord | None:
        """The document that first stored bytes with this hash."""
        ...

    async def add(self, document: DocumentRecord) -> DocumentRecord: ...

    async def update(self, document: DocumentRecord) -> DocumentRecord: ...

    async def list_by_status(self, status: DocumentStatus) -> list[DocumentRecord]: ...

    async def save_text(self, record: DocumentTextRecord) -> None:
        """Store the latest text; earlier copies are retained as history."""
        ...

    async def get_latest_text(self, document_id: str) -> DocumentTextRecord | None: ...

    async def add_job_event(self, event: DocumentJobEvent) -> None: ...


@runtime_checkable
class DocumentStorage(Protocol):
    """Write-once, content-addressed binary store."""

    async def exists(self, content_hash: str) -> bool: ...

    async def save(self, binary: DocumentBinary) -> bool:
        """Store *binary*; returns False when the hash was already stored."""
        ...

    async def get(self, content_hash: str) -> DocumentBinary | None: ...


@runtime_checkable
class DocumentSource(Protocol):
    """One crawlable source domain (an exchange or issuer site)."""

    domain: str

    async def discover(self, since: datetime, ctx: JobContext) -> list[DiscoveredDocument]: ...


@runtime_checkable
class DocumentFetcher(Protocol):
    async def fetch(self, url: str, ctx: JobContext, etag: str | None = None) -> FetchResponse:
        """Fetch *url*; raise TransientError subclasses for network failures."""
        ...


@runtime_checkable
class RobotsPolicy(Protocol):
    async def is_allowed(self, url: str, ctx: JobContext) -> bool: ...

    async def crawl_delay(self, domain: str, ctx: JobContext) -> float: ...


@runtime_checkable
class PdfTextExtractor(Protocol):
    async def extract(self, content: bytes, ctx: JobContext) -> TextExtraction: ...


@runtime_checkable
class OcrProvider(Protocol):
    async def recognize(self, content: bytes, ctx: JobContext) -> TextExtraction: ...


@runtime_checkable
class DocumentClassifier(Protocol):
    def classify(self, text: str, metadata: dict[str, Any] | None = None) -> ClassificationResult: ...


@runtime_checkable
class FactsRepository(Protocol):
    async def get_by_key(
        self, document_id: str, parser_version: str, content_hash: str
    ) -> DocumentFactsRecord | None: ...

    async def get_current(self, ticker: str, period_tag: str) -> DocumentFactsRecord | None:
        """The single non-superseded record for a ticker and period."""
        ...

    async def save(self, record: DocumentFactsRecord) -> None: ...

    async def mark_superseded(self, fact_id: str) -> None: ...

    async def append_history(self, record: FactsHistoryRecord) -> None: ...

    async def list_for_period(self, ticker: str, period_tag: str) -> list[DocumentFactsRecord]: ...

    async def list_history(self, ticker: str, period_tag: str) -> list[FactsHistoryRecord]: ...


__all__ = [
    "DocumentClassifier",
    "DocumentFetcher",
    "DocumentRepository",
    "DocumentSource",
    "DocumentStorage",
    "FactsRepository",
    "OcrProvider",
    "PdfTextExtractor",
    "RobotsPolicy",
]
