"""Tests for DocumentDiscoveryService."""

from datetime import UTC, datetime, timedelta

import pytest

from fibra.adapters.memory import StaticDocumentSource, StaticRobotsPolicy
from fibra.core.errors import NetworkError
from fibra.documents.discovery import DocumentDiscoveryService, kind_from_hint
from fibra.documents.models import DiscoveredDocument, DocumentKind, DocumentStatus

NOW = datetime(2024, 5, 2, 12, 0, tzinfo=UTC)


def _candidate(path: str, **kwargs) -> DiscoveredDocument:
    kwargs.setdefault("published_at", NOW - timedelta(days=1))
    return DiscoveredDocument(url=f"https://www.bmv.com.mx/docs/{path}", **kwargs)

class TestKindFromHint:
    @pytest.mark.parametrize(
        ("hint", "kind"),
        [
            (None, DocumentKind.UNKNOWN),
            ("HR", DocumentKind.HECHO_RELEVANTE),
            ("trimestral", DocumentKind.QUARTERLY),
            ("aviso de distribucion", DocumentKind.DISTRIBUTION_NOTICE),
            ("presentacion", DocumentKind.PRESENTATION),
            ("reporte anual", DocumentKind.ANNUAL_REPORT),
            ("otro", DocumentKind.OTHER),
        ],
    )
    def test_hints(self, hint, kind):
        assert kind_from_hint(hint)[0] == kind

class TestDiscover:
    """DocumentDiscoveryService.discover."""

    @pytest.mark.asyncio
    async def test_new_candidates_are_queued(self, discovery, source, documents, ctx):
        source.documents = [
            _candidate("a.pdf", ticker_hint="funo11", kind_hint="trimestral", title="1T2024",
                       referer="https://www.bmv.com.mx/emisoras/FUNO11"),
        ]
        result = await discovery.discover(ctx)

        assert result.discovered == 1
        assert result.new_count == 1
        [document] = documents.all()
        assert document.status == DocumentStatus.DOWNLOAD_QUEUED
        assert document.kind == DocumentKind.QUARTERLY
        assert document.ticker == "FUNO11"
        assert document.source_domain == "www.bmv.com.mx"
        assert document.provenance.referer == "https://www.bmv.com.mx/emisoras/FUNO11"
        assert document.provenance.metadata["title"] == "1T2024"
        assert document.discovered_at == NOW

    @pytest.mark.asyncio
    async def test_known_url_is_not_queued_twice(self, discovery, source, documents, ctx):
        source.documents = [_candidate("a.pdf")]
        await discovery.discover(ctx)
        result = await discovery.discover(ctx)
        assert result.existing == 1
        assert result.new_count == 0
        assert len(documents.all()) == 1

    @pytest.mark.asyncio
    async def test_known_hash_counts_as_existing(self, discovery, source, documents, queue_document, ctx):
        existing = await queue_document("https://mirror.test/a.pdf", hash="abc123")
        await documents.update(existing)
        source.documents = [_candidate("copy.pdf", hash="abc123")]
        result = await discovery.discover(ctx)
        assert result.existing == 1
        assert result.new_count == 0

    @pytest.mark.asyncio
    async def test_robots_disallowed_urls_are_skipped(self, discovery, source, robots, ctx):
        robots.disallow = ("https://www.bmv.com.mx/docs/private/",)
        source.documents = [_candidate("private/a.pdf"), _candidate("b.pdf")]
        result = await discovery.discover(ctx)
        assert result.skipped_by_robots == 1
        assert result.new_count == 1

    @pytest.mark.asyncio
    async def test_invalid_urls_are_counted(self, discovery, source, ctx):
        source.documents = [DiscoveredDocument(url="ftp://example.com/a.pdf", published_at=NOW),
                            DiscoveredDocument(url="not a url", published_at=NOW)]
        result = await discovery.discover(ctx)
        assert result.invalid == 2
        assert result.new_count == 0

    @pytest.mark.asyncio
    async def test_lookback_excludes_old_candidates(self, discovery, source, ctx):
        source.documents = [_candidate("old.pdf", published_at=NOW - timedelta(days=30))]
        result = await discovery.discover(ctx)
        assert result.discovered == 0

    @pytest.mark.asyncio
    async def test_explicit_since(self, discovery, source, ctx):
        source.documents = [_candidate("old.pdf", published_at=NOW - timedelta(days=30))]
        result = await discovery.discover(ctx, since=NOW - timedelta(days=60))
        assert result.new_count == 1

    @pytest.mark.asyncio
    async def test_crawl_delays_are_summed_per_domain(self, source, documents, limiter, settings, clock,
                                                       registry, ctx):
        robots = StaticRobotsPolicy(delays={"www.bmv.com.mx": 2.0})
        service = DocumentDiscoveryService([source], documents, robots, limiter, settings, clock, registry)
        source.documents = [_candidate("a.pdf"), _candidate("b.pdf")]
        result = await service.discover(ctx)
        assert result.applied_delays == {"www.bmv.com.mx": pytest.approx(4.0)}

    @pytest.mark.asyncio
    async def test_failing_domain_does_not_abort_batch(self, source, documents, robots, limiter, settings,
                                                       clock, registry, ctx):
        broken = StaticDocumentSource("fibra-broken.test", error=NetworkError("unreachable"))
        source.documents = [_candidate("a.pdf")]
        service = DocumentDiscoveryService([broken, source], documents, robots, limiter, settings, clock,
                                           registry)
        result = await service.discover(ctx)

        assert result.new_count == 1
        assert result.failures_by_domain == {"fibra-broken.test": 1}
        counter = registry.counter("discovery_domain_failures_total")
        assert counter.value(domain="fibra-broken.test") == 1

    @pytest.mark.asyncio
    async def test_domain_filter(self, source, documents, robots, limiter, settings, clock, registry, ctx):
        other = StaticDocumentSource("fibrauno.mx", [DiscoveredDocument(url="https://fibrauno.mx/r.pdf")])
        source.documents = [_candidate("a.pdf")]
        service = DocumentDiscoveryService([source, other], documents, robots, limiter, settings, clock,
                                           registry)
        result = await service.discover(ctx, domains=["FIBRAUNO.MX"])

        assert source.calls == 0
        assert other.calls == 1
        assert [d.url for d in result.new_documents] == ["https://fibrauno.mx/r.pdf"]
