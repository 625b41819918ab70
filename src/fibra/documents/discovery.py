"""Document discovery.

Asks every configured :class:`DocumentSource` for candidate links published
since a cutoff and turns the genuinely new ones into ``DOWNLOAD_QUEUED``
documents. Robots rules are checked per URL; crawl delays are enforced per
domain by the shared :class:`CrawlDelayLimiter` and summed into the batch
result so callers can throttle the downloads that follow.

Domains are crawled concurrently. A failing domain is counted in
``failures_by_domain`` and never aborts the other domains.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Collection, Sequence
from datetime import datetime, timedelta
from urllib.parse import urlparse

from fibra.core.errors import OperationCancelledError
from fibra.core.logging import get_logger
from fibra.core.periods import Clock, SystemClock
from fibra.core.settings import FibraSettings, get_settings
from fibra.documents import lifecycle
from fibra.documents.models import (
    DiscoveredDocument,
    DiscoveryBatchResult,
    DocumentKind,
    DocumentProvenance,
    DocumentRecord,
    DocumentStatus,
)
from fibra.documents.ports import DocumentRepository, DocumentSource, RobotsPolicy
from fibra.execution.context import JobContext
from fibra.execution.rate_limit import CrawlDelayLimiter
from fibra.observability.metrics import MetricsRegistry, get_metrics_registry

logger = get_logger(__name__)


def kind_from_hint(hint: str | None) -> tuple[DocumentKind, float]:
    """Initial kind and confidence from a source's link hint."""
    if not hint:
        return DocumentKind.UNKNOWN, 0.4
    h = hint.lower()
    if "hr" in h or "relevante" in h:
        return DocumentKind.HECHO_RELEVANTE, 0.6
    if "distrib" in h:
        return DocumentKind.DISTRIBUTION_NOTICE, 0.5
    if "present" in h:
        return DocumentKind.PRESENTATION, 0.5
    if "anual" in h or "annual" in h:
        return DocumentKind.ANNUAL_REPORT, 0.5
    if "trim" in h or h == "q" or "quarter" in h:
        return DocumentKind.QUARTERLY, 0.5
    return DocumentKind.OTHER, 0.5


def _valid_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class DocumentDiscoveryService:
    """Discovers new documents across all configured sources."""

    def __init__(
        self,
        sources: Sequence[DocumentSource],
        repository: DocumentRepository,
        robots: RobotsPolicy,
        limiter: CrawlDelayLimiter | None = None,
        settings: FibraSettings | None = None,
        clock: Clock | None = None,
        registry: MetricsRegistry | None = None,
    ):
        self.sources = list(sources)
        self.repository = repository
        self.robots = robots
        self.limiter = limiter or CrawlDelayLimiter()
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.registry = registry or get_metrics_registry()

    async def discover(
        self,
        ctx: JobContext,
        since: datetime | None = None,
        domains: Collection[str] | None = None,
    ) -> DiscoveryBatchResult:
        """Run one discovery batch.

        Args:
            ctx: Job context of the ``reports`` job
            since: Only candidates published after this instant
                (default: ``discovery_lookback_days`` ago)
            domains: Restrict the batch to these source domains
        """
        since = since or self.clock.now() - timedelta(days=self.settings.discovery_lookback_days)
        wanted = {d.lower() for d in domains} if domains else None
        sources = [s for s in self.sources if wanted is None or s.domain.lower() in wanted]

        partials = await asyncio.gather(
            *(self._discover_source(source, since, ctx) for source in sources)
        )

        result = DiscoveryBatchResult()
        for partial in partials:
            result.discovered += partial.discovered
            result.skipped_by_robots += partial.skipped_by_robots
            result.existing += partial.existing
            result.invalid += partial.invalid
            result.new_documents.extend(partial.new_documents)
            for domain, delay in partial.applied_delays.items():
                result.applied_delays[domain] = result.applied_delays.get(domain, 0.0) + delay
            for domain, count in partial.failures_by_domain.items():
                result.failures_by_domain[domain] = result.failures_by_domain.get(domain, 0) + count

        logger.info("discovery.batch_completed", since=since.isoformat(), **result.to_dict())
        return result

    async def _discover_source(
        self, source: DocumentSource, since: datetime, ctx: JobContext
    ) -> DiscoveryBatchResult:
        result = DiscoveryBatchResult()
        domain = source.domain.lower()
        try:
            delay = await ctx.guard(self.robots.crawl_delay(domain, ctx), "robots.crawl_delay")
            await self.limiter.acquire(domain, delay)
            candidates = await ctx.guard(source.discover(since, ctx), f"discover {domain}")
            for candidate in candidates:
                ctx.check_cancelled()
                await self._consider(candidate, domain, result, ctx)
        except OperationCancelledError:
            raise
        except Exception as e:
            result.failures_by_domain[domain] = result.failures_by_domain.get(domain, 0) + 1
            self.registry.counter("discovery_domain_failures_total").inc(domain=domain)
            logger.warning(
                "discovery.domain_failed",
                domain=domain,
                error_type=type(e).__name__,
                error=str(e),
                job_run_id=ctx.job_run_id,
            )
        return result

    async def _consider(
        self,
        candidate: DiscoveredDocument,
        source_domain: str,
        result: DiscoveryBatchResult,
        ctx: JobContext,
    ) -> None:
        result.discovered += 1
        url = candidate.url.strip()
        if not _valid_url(url):
            result.invalid += 1
            logger.debug("discovery.invalid_url", url=url)
            return

        domain = urlparse(url).netloc.lower()
        if not await ctx.guard(self.robots.is_allowed(url, ctx), "robots.is_allowed"):
            result.skipped_by_robots += 1
            logger.info("discovery.robots_disallowed", url=url)
            return

        if await self.repository.get_by_url(url) is not None or (
            candidate.hash and await self.repository.get_by_hash(candidate.hash) is not None
        ):
            result.existing += 1
            return

        delay = await ctx.guard(self.robots.crawl_delay(domain, ctx), "robots.crawl_delay")
        result.applied_delays[domain] = result.applied_delays.get(domain, 0.0) + delay

        kind, confidence = kind_from_hint(candidate.kind_hint)
        document = DocumentRecord(
            document_id=uuid.uuid4().hex,
            url=url,
            source_domain=domain or source_domain,
            kind=kind,
            ticker=candidate.ticker_hint.upper() if candidate.ticker_hint else None,
            confidence=confidence,
            published_at=candidate.published_at,
            discovered_at=self.clock.now(),
            provenance=DocumentProvenance(
                referer=candidate.referer,
                crawl_path=candidate.crawl_path,
                robots_ok=True,
                metadata={
                    **candidate.metadata,
                    **({"title": candidate.title} if candidate.title else {}),
                },
            ),
        )
        lifecycle.transition(document, DocumentStatus.DOWNLOAD_QUEUED)
        await self.repository.add(document)
        result.new_documents.append(document)
        logger.info(
            "discovery.document_queued",
            document_id=document.document_id,
            url=url,
            kind=kind.value,
        )


__all__ = ["DocumentDiscoveryService", "kind_from_hint"]
