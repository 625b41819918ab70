"""Helpers for driving documents through the pipeline stages."""

from __future__ import annotations

import uuid

import pytest

from fibra.documents.models import DocumentRecord, DocumentStatus

REPORT_URL = "https://www.bmv.com.mx/docs/funo11-1t2024.pdf"
REPORT_BYTES = b"%PDF-1.7 FUNO11 1T2024 quarterly report"


@pytest.fixture()
def queue_document(documents):
    """Add a DOWNLOAD_QUEUED document for *url*."""

    async def _queue(url: str = REPORT_URL, **fields) -> DocumentRecord:
        document = DocumentRecord(
            document_id=uuid.uuid4().hex,
            url=url,
            source_domain="www.bmv.com.mx",
            status=DocumentStatus.DOWNLOAD_QUEUED,
            **fields,
        )
        return await documents.add(document)

    return _queue


@pytest.fixture()
def ingest(queue_document, fetcher, extractor, downloader, parser, ctx):
    """Queue, download and parse a document whose text is *text*."""

    async def _ingest(
        text: str,
        content: bytes = REPORT_BYTES,
        url: str = REPORT_URL,
        confidence: float = 1.0,
        **fields,
    ) -> str:
        document = await queue_document(url, **fields)
        fetcher.serve(url, content)
        extractor.register(content, text, confidence=confidence)
        await downloader.download(document.document_id, ctx)
        await parser.parse(document.document_id, ctx)
        return document.document_id

    return _ingest
