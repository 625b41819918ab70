"""Document parser.

Turns a downloaded binary into a :class:`DocumentTextRecord` and classifies
it. The direct text extractor runs first; OCR runs on the same bytes when
the extractor reports image-based content, no text, or a confidence below
``ocr_confidence_threshold``. The OCR result is used when it produced text
and is at least as confident as the direct extraction.

No usable text after both paths is a retryable failure and leaves the
document untouched, until the last allowed attempt: then a freshly
downloaded document is ignored with ``no usable text extracted``. A low
classification confidence is not a failure.
"""

from __future__ import annotations

from fibra.core.errors import DocumentNotFoundError, IntegrityError, ParseError, StorageError
from fibra.core.hashing import content_sha256
from fibra.core.logging import get_logger
from fibra.core.periods import Clock, SystemClock
from fibra.core.settings import FibraSettings, get_settings
from fibra.documents import lifecycle
from fibra.documents.classifier import KeywordDocumentClassifier
from fibra.documents.models import (
    DocumentKind,
    DocumentRecord,
    DocumentStatus,
    DocumentTextRecord,
    ParseOutcome,
    TextExtraction,
)
from fibra.documents.ports import (
    DocumentClassifier,
    DocumentRepository,
    DocumentStorage,
    OcrProvider,
    PdfTextExtractor,
)
from fibra.execution.context import JobContext

logger = get_logger(__name__)

_PARSEABLE = (DocumentStatus.DOWNLOADED, DocumentStatus.PARSED, DocumentStatus.FACTS_EXTRACTED)
NO_TEXT = "no usable text extracted"


class DocumentParserService:
    def __init__(
        self,
        repository: DocumentRepository,
        storage: DocumentStorage,
        extractor: PdfTextExtractor,
        ocr: OcrProvider | None = None,
        classifier: DocumentClassifier | None = None,
        settings: FibraSettings | None = None,
        clock: Clock | None = None,
    ):
        self.repository = repository
        self.storage = storage
        self.extractor = extractor
        self.ocr = ocr
        self.classifier = classifier or KeywordDocumentClassifier()
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()

    @property
    def parser_version(self) -> str:
        return self.settings.parser_version

    def needs_ocr(self, extraction: TextExtraction) -> bool:
        return (
            extraction.is_image_based
            or not extraction.has_text
            or extraction.confidence < self.settings.ocr_confidence_threshold
        )

    async def parse(self, document_id: str, ctx: JobContext) -> ParseOutcome:
        document = await self.repository.get(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)

        if document.status not in _PARSEABLE:
            return ParseOutcome(document_id, success=False, skipped=True,
                                reason=f"status {document.status.value}")

        if document.status != DocumentStatus.DOWNLOADED and document.parser_version == self.parser_version:
            logger.info("parse.already_parsed", document_id=document_id, parser_version=self.parser_version)
            return ParseOutcome(document_id, success=True, skipped=True, ocr_used=document.ocr_used,
                                pages=document.pages or 0)

        content = await self._load_content(document)

        extraction, ocr_used = await self._extract(content, document, ctx)
        if extraction is None or not extraction.has_text:
            if ctx.attempt >= self.settings.stage_max_attempts and document.status == DocumentStatus.DOWNLOADED:
                lifecycle.ignore(document, NO_TEXT)
                await self.repository.update(document)
                logger.warning("parse.no_text_ignored", document_id=document_id, attempts=ctx.attempt)
                return ParseOutcome(document_id, success=False, reason=NO_TEXT, ocr_used=ocr_used, ignored=True)
            logger.warning("parse.no_text", document_id=document_id, ocr_attempted=self.ocr is not None)
            return ParseOutcome(document_id, success=False, requires_retry=True,
                                reason=NO_TEXT, ocr_used=ocr_used)

        metadata = {"ticker": document.ticker, "title": document.provenance.metadata.get("title")}
        if document.period_tag:
            metadata["period"] = document.period_tag
        classification = self.classifier.classify(extraction.text, metadata)

        now = self.clock.now()
        await self.repository.save_text(
            DocumentTextRecord(
                document_id=document_id,
                hash=document.hash,
                text=extraction.text,
                tables=extraction.tables,
                ocr_used=ocr_used,
                pages=extraction.pages,
                parser_version=self.parser_version,
                parsed_at=now,
                metrics={
                    "confidence": round(classification.confidence, 3),
                    "extraction_confidence": round(extraction.confidence, 3),
                },
            )
        )

        if document.parser_version and document.parser_version != self.parser_version:
            logger.info(
                "parse.parser_version_changed",
                document_id=document_id,
                previous=document.parser_version,
                current=self.parser_version,
            )

        target = DocumentStatus.PARSED if document.status == DocumentStatus.DOWNLOADED else document.status
        lifecycle.transition(document, target)
        if classification.kind != DocumentKind.OTHER or document.kind == DocumentKind.UNKNOWN:
            document.kind = classification.kind
        document.ticker = classification.ticker or document.ticker
        document.period_tag = classification.period_tag or document.period_tag
        document.confidence = round(classification.confidence, 3)
        document.ocr_used = ocr_used
        document.pages = extraction.pages
        document.parser_version = self.parser_version
        document.parsed_at = now
        await self.repository.update(document)

        logger.info(
            "parse.completed",
            document_id=document_id,
            kind=document.kind.value,
            ticker=document.ticker,
            period_tag=document.period_tag,
            confidence=document.confidence,
            ocr_used=ocr_used,
        )
        return ParseOutcome(
            document_id,
            success=True,
            ocr_used=ocr_used,
            pages=extraction.pages,
            classification=classification,
        )

    async def _load_content(self, document: DocumentRecord) -> bytes:
        if not document.hash:
            raise IntegrityError(f"Document {document.document_id} has no content hash").with_context(
                document_id=document.document_id
            )
        binary = await self.storage.get(document.hash)
        if binary is None:
            raise StorageError(f"Binary {document.hash} missing from storage").with_context(
                document_id=document.document_id
            )
        if content_sha256(binary.content) != document.hash:
            raise IntegrityError(f"Stored content does not match hash {document.hash}").with_context(
                document_id=document.document_id
            )
        return binary.content

    async def _extract(
        self, content: bytes, document: DocumentRecord, ctx: JobContext
    ) -> tuple[TextExtraction | None, bool]:
        primary: TextExtraction | None
        try:
            primary = await ctx.guard(self.extractor.extract(content, ctx), "pdf.extract")
        except ParseError as e:
            logger.warning("parse.extractor_failed", document_id=document.document_id, error=str(e))
            primary = None

        if primary is not None and not self.needs_ocr(primary):
            return primary, False
        if self.ocr is None:
            return primary, False

        ocr_result = await ctx.guard(self.ocr.recognize(content, ctx), "ocr.recognize")
        if ocr_result.has_text and (
            primary is None or not primary.has_text or ocr_result.confidence >= primary.confidence
        ):
            logger.info(
                "parse.ocr_used",
                document_id=document.document_id,
                image_based=primary.is_image_based if primary else None,
                ocr_confidence=round(ocr_result.confidence, 3),
            )
            return ocr_result, True
        return primary, False


__all__ = ["DocumentParserService"]
