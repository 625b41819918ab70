"""Document downloader.

Fetches bytes for a queued document and decides what they mean:

===================  ==========================================  ============
Fetch result         Action                                      Outcome
===================  ==========================================  ============
304                  nothing stored, status unchanged            NOT_MODIFIED
404 / 410            document IGNORED ("gone")                   IGNORED
wrong content type   document IGNORED                            IGNORED
over size limit      document IGNORED                            IGNORED
5xx / timeout        TransientError raised, nothing mutated      (retry)
bytes, known hash    document SUPERSEDED as duplicate            DUPLICATE
bytes, new hash      binary stored once, document DOWNLOADED     DOWNLOADED
===================  ==========================================  ============

The per-domain crawl delay is acquired before every fetch, so retries
honour it as well.
"""

from __future__ import annotations

from urllib.parse import urlparse

from fibra.core.errors import DocumentNotFoundError, NetworkError
from fibra.core.hashing import content_sha256
from fibra.core.logging import get_logger
from fibra.core.periods import Clock, SystemClock
from fibra.core.settings import FibraSettings, get_settings
from fibra.documents import lifecycle
from fibra.documents.models import (
    DocumentBinary,
    DocumentProvenance,
    DocumentRecord,
    DocumentStatus,
    DownloadOutcome,
    DownloadStatus,
    FetchResponse,
)
from fibra.documents.ports import DocumentFetcher, DocumentRepository, DocumentStorage, RobotsPolicy
from fibra.execution.context import JobContext
from fibra.execution.rate_limit import CrawlDelayLimiter

logger = get_logger(__name__)

_DOWNLOADABLE = (DocumentStatus.DOWNLOAD_QUEUED, DocumentStatus.DOWNLOADED)
_PDF_MAGIC = b"%PDF"


def _media_type(content_type: str | None) -> str:
    return (content_type or "").split(";")[0].strip().lower()


class DocumentDownloadService:
    def __init__(
        self,
        repository: DocumentRepository,
        storage: DocumentStorage,
        fetcher: DocumentFetcher,
        robots: RobotsPolicy | None = None,
        limiter: CrawlDelayLimiter | None = None,
        settings: FibraSettings | None = None,
        clock: Clock | None = None,
    ):
        self.repository = repository
        self.storage = storage
        self.fetcher = fetcher
        self.robots = robots
        self.limiter = limiter or CrawlDelayLimiter()
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()

    async def download(self, document_id: str, ctx: JobContext) -> DownloadOutcome:
        document = await self.repository.get(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)

        if document.status not in _DOWNLOADABLE:
            logger.info(
                "download.skipped",
                document_id=document_id,
                status=document.status.value,
            )
            return DownloadOutcome(document_id, DownloadStatus.SKIPPED, hash=document.hash,
                                   reason=f"status {document.status.value}")

        if self.robots is not None:
            domain = urlparse(document.url).netloc.lower()
            delay = await ctx.guard(self.robots.crawl_delay(domain, ctx), "robots.crawl_delay")
            await self.limiter.acquire(domain, delay)

        response = await ctx.guard(
            self.fetcher.fetch(document.url, ctx, etag=document.provenance.etag),
            f"fetch {document.url}",
        )
        return await self._handle(document, response, ctx)

    async def _handle(
        self, document: DocumentRecord, response: FetchResponse, ctx: JobContext
    ) -> DownloadOutcome:
        status = response.status_code

        if status == 304:
            logger.info("download.not_modified", document_id=document.document_id)
            return DownloadOutcome(document.document_id, DownloadStatus.NOT_MODIFIED, hash=document.hash)

        if status in (404, 410):
            return await self._ignore(document, f"gone (HTTP {status})")

        if status == 429 or status >= 500:
            raise NetworkError(f"HTTP {status} fetching {document.url}").with_context(
                stage=ctx.queue,
                document_id=document.document_id,
                url=document.url,
                http_status=status,
            )

        if status >= 400:
            return await self._ignore(document, f"rejected (HTTP {status})")

        length = response.content_length if response.content_length is not None else len(response.content)
        if response.truncated or length > self.settings.max_download_bytes:
            return await self._ignore(document, f"too large ({length} bytes)")

        media_type = _media_type(response.content_type)
        if media_type not in self.settings.accepted_content_types:
            return await self._ignore(document, f"unexpected content type {media_type or 'none'}")
        if media_type == "application/octet-stream" and not response.content.startswith(_PDF_MAGIC):
            return await self._ignore(document, "unexpected content: not a PDF")

        if not response.content:
            raise NetworkError(f"Empty body fetching {document.url}").with_context(
                document_id=document.document_id, url=document.url
            )

        content_hash = content_sha256(response.content)

        if document.hash == content_hash:
            logger.info("download.unchanged", document_id=document.document_id, hash=content_hash)
            return DownloadOutcome(document.document_id, DownloadStatus.NOT_MODIFIED, hash=content_hash)

        owner = await self.repository.get_by_hash(content_hash)
        if owner is not None and owner.document_id != document.document_id:
            lifecycle.supersede(document, f"duplicate of {owner.document_id}")
            document.hash = content_hash
            await self.repository.update(document)
            logger.info(
                "download.duplicate",
                document_id=document.document_id,
                duplicate_of=owner.document_id,
                hash=content_hash,
            )
            return DownloadOutcome(
                document.document_id,
                DownloadStatus.DUPLICATE,
                hash=content_hash,
                bytes_downloaded=len(response.content),
                duplicate_of=owner.document_id,
                reason=f"duplicate of {owner.document_id}",
            )

        await self.storage.save(
            DocumentBinary(
                document_id=document.document_id,
                hash=content_hash,
                content=response.content,
                content_type=media_type,
                content_length=len(response.content),
            )
        )

        lifecycle.transition(document, DocumentStatus.DOWNLOADED)
        document.hash = content_hash
        document.content_type = media_type
        document.content_length = len(response.content)
        document.downloaded_at = self.clock.now()
        document.confidence = max(document.confidence, 0.5)
        document.provenance = document.provenance.merge(DocumentProvenance(etag=response.etag))
        await self.repository.update(document)

        logger.info(
            "download.completed",
            document_id=document.document_id,
            hash=content_hash,
            bytes=len(response.content),
        )
        return DownloadOutcome(
            document.document_id,
            DownloadStatus.DOWNLOADED,
            hash=content_hash,
            bytes_downloaded=len(response.content),
        )

    async def _ignore(self, document: DocumentRecord, reason: str) -> DownloadOutcome:
        lifecycle.ignore(document, reason)
        await self.repository.update(document)
        logger.info("download.ignored", document_id=document.document_id, reason=reason)
        return DownloadOutcome(document.document_id, DownloadStatus.IGNORED, reason=reason)


__all__ = ["DocumentDownloadService"]
