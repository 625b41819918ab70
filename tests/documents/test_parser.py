"""Tests for DocumentParserService."""

import pytest

from fibra.adapters.memory import StaticTextExtractor
from fibra.core.errors import IntegrityError, ParseError, StorageError
from fibra.documents.models import (
    DocumentBinary,
    DocumentKind,
    DocumentRecord,
    DocumentStatus,
    TextExtraction,
)
from fibra.documents.parser import DocumentParserService

REPORT_URL = "https://www.bmv.com.mx/docs/funo11-1t2024.pdf"
REPORT_BYTES = b"%PDF-1.7 FUNO11 1T2024 quarterly report"
SCANNED_BYTES = b"%PDF-1.4 scanned pages"


class BrokenExtractor:
    async def extract(self, content, ctx):
        raise ParseError("Malformed PDF")


@pytest.fixture()
def downloaded(queue_document, fetcher, downloader, ctx):
    async def _downloaded(content: bytes = REPORT_BYTES, url: str = REPORT_URL) -> str:
        document = await queue_document(url)
        fetcher.serve(url, content)
        await downloader.download(document.document_id, ctx)
        return document.document_id

    return _downloaded


@pytest.fixture()
def ocr() -> StaticTextExtractor:
    return StaticTextExtractor()


@pytest.fixture()
def ocr_parser(documents, storage, extractor, ocr, settings, clock):
    return DocumentParserService(documents, storage, extractor, ocr=ocr, settings=settings, clock=clock)


class TestNeedsOcr:
    @pytest.mark.parametrize(
        ("extraction", "expected"),
        [
            (TextExtraction(text="NAV por CBFI 18.20", confidence=0.95), False),
            (TextExtraction(text="", confidence=1.0), True),
            (TextExtraction(text="   ", confidence=1.0), True),
            (TextExtraction(text="(cid:3)(cid:4)", confidence=0.1), True),
            (TextExtraction(text="text", confidence=1.0, is_image_based=True), True),
        ],
    )
    def test_needs_ocr(self, parser, extraction, expected):
        assert parser.needs_ocr(extraction) is expected


class TestParse:
    """DocumentParserService.parse."""

    @pytest.mark.asyncio
    async def test_parses_and_classifies(self, parser, downloaded, extractor, documents, funo_report_text,
                                         clock, ctx):
        document_id = await downloaded()
        extractor.register(REPORT_BYTES, funo_report_text, pages=12)

        outcome = await parser.parse(document_id, ctx)

        assert outcome.success
        assert not outcome.ocr_used
        assert outcome.classification.kind == DocumentKind.QUARTERLY
        stored = await documents.get(document_id)
        assert stored.status == DocumentStatus.PARSED
        assert stored.ticker == "FUNO11"
        assert stored.period_tag == "1T2024"
        assert stored.confidence == pytest.approx(0.9)
        assert stored.pages == 12
        assert stored.parser_version == "pdf-1.0"
        assert stored.parsed_at == clock.now()
        text = await documents.get_latest_text(document_id)
        assert text.hash == stored.hash
        assert "NAV por CBFI" in text.text
        assert text.metrics["confidence"] == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_ocr_fallback_for_scanned_pdf(self, ocr_parser, downloaded, extractor, ocr, documents,
                                                funo_report_text, ctx):
        document_id = await downloaded(SCANNED_BYTES)
        extractor.register(SCANNED_BYTES, "", confidence=0.0, is_image_based=True)
        ocr.register(SCANNED_BYTES, funo_report_text, confidence=0.82, is_image_based=True)

        outcome = await ocr_parser.parse(document_id, ctx)

        assert outcome.success
        assert outcome.ocr_used
        stored = await documents.get(document_id)
        assert stored.ocr_used
        assert (await documents.get_latest_text(document_id)).ocr_used

    @pytest.mark.asyncio
    async def test_low_confidence_text_layer_uses_better_ocr(self, ocr_parser, downloaded, extractor, ocr,
                                                             funo_report_text, ctx):
        document_id = await downloaded()
        extractor.register(REPORT_BYTES, "F(cid:1)NO11 garbled", confidence=0.2)
        ocr.register(REPORT_BYTES, funo_report_text, confidence=0.7)
        outcome = await ocr_parser.parse(document_id, ctx)
        assert outcome.ocr_used

    @pytest.mark.asyncio
    async def test_worse_ocr_keeps_direct_text(self, ocr_parser, downloaded, extractor, ocr,
                                               funo_report_text, ctx):
        document_id = await downloaded()
        extractor.register(REPORT_BYTES, funo_report_text, confidence=0.5)
        ocr.register(REPORT_BYTES, "noise", confidence=0.3)
        outcome = await ocr_parser.parse(document_id, ctx)
        assert outcome.success
        assert not outcome.ocr_used

    @pytest.mark.asyncio
    async def test_no_text_requires_retry_and_leaves_document(self, parser, downloaded, documents, ctx):
        document_id = await downloaded()

        outcome = await parser.parse(document_id, ctx)

        assert not outcome.success
        assert outcome.requires_retry
        stored = await documents.get(document_id)
        assert stored.status == DocumentStatus.DOWNLOADED
        assert await documents.get_latest_text(document_id) is None

    @pytest.mark.asyncio
    async def test_no_text_on_last_attempt_ignores_document(self, parser, downloaded, documents, settings, ctx):
        document_id = await downloaded()
        last = ctx.retry().retry()
        assert last.attempt == settings.stage_max_attempts

        outcome = await parser.parse(document_id, last)

        assert outcome.ignored
        assert not outcome.requires_retry
        stored = await documents.get(document_id)
        assert stored.status == DocumentStatus.IGNORED
        assert stored.failure_reason == "no usable text extracted"
        assert await documents.get_latest_text(document_id) is None

    @pytest.mark.asyncio
    async def test_extractor_parse_error_is_retryable_outcome(self, documents, storage, downloaded, settings,
                                                              clock, ctx):
        service = DocumentParserService(documents, storage, BrokenExtractor(), settings=settings, clock=clock)
        document_id = await downloaded()
        outcome = await service.parse(document_id, ctx)
        assert outcome.requires_retry

    @pytest.mark.asyncio
    async def test_same_parser_version_is_skipped(self, parser, downloaded, extractor, documents,
                                                  funo_report_text, ctx):
        document_id = await downloaded()
        extractor.register(REPORT_BYTES, funo_report_text)
        await parser.parse(document_id, ctx)

        outcome = await parser.parse(document_id, ctx)

        assert outcome.skipped
        assert outcome.success
        assert len(documents.text_history(document_id)) == 1

    @pytest.mark.asyncio
    async def test_new_parser_version_reparses(self, parser, downloaded, extractor, documents, storage,
                                               settings, clock, funo_report_text, ctx):
        document_id = await downloaded()
        extractor.register(REPORT_BYTES, funo_report_text)
        await parser.parse(document_id, ctx)

        upgraded = DocumentParserService(
            documents, storage, extractor,
            settings=settings.model_copy(update={"parser_version": "pdf-2.0"}), clock=clock,
        )
        outcome = await upgraded.parse(document_id, ctx)

        assert outcome.success and not outcome.skipped
        stored = await documents.get(document_id)
        assert stored.status == DocumentStatus.PARSED
        assert stored.parser_version == "pdf-2.0"
        assert [t.parser_version for t in documents.text_history(document_id)] == ["pdf-1.0", "pdf-2.0"]

    @pytest.mark.asyncio
    async def test_queued_document_is_skipped(self, parser, queue_document, ctx):
        document = await queue_document()
        outcome = await parser.parse(document.document_id, ctx)
        assert outcome.skipped
        assert not outcome.success


class TestIntegrity:
    async def _downloaded_record(self, documents, content_hash):
        document = DocumentRecord(
            document_id="doc-1",
            url=REPORT_URL,
            source_domain="www.bmv.com.mx",
            status=DocumentStatus.DOWNLOADED,
            hash=content_hash,
        )
        await documents.add(document)
        return document

    @pytest.mark.asyncio
    async def test_missing_binary(self, parser, documents, ctx):
        await self._downloaded_record(documents, "f" * 64)
        with pytest.raises(StorageError):
            await parser.parse("doc-1", ctx)

    @pytest.mark.asyncio
    async def test_tampered_binary(self, parser, documents, storage, ctx):
        await self._downloaded_record(documents, "a" * 64)
        await storage.save(DocumentBinary("doc-1", "a" * 64, b"other bytes", "application/pdf", 11))
        with pytest.raises(IntegrityError):
            await parser.parse("doc-1", ctx)
        assert (await documents.get("doc-1")).status == DocumentStatus.DOWNLOADED
