"""Tests for the httpx fetcher and robots.txt policy."""

import httpx
import pytest

from fibra.adapters.http import HttpDocumentFetcher, RobotsTxtPolicy
from fibra.core.errors import FetchTimeoutError, NetworkError

URL = "https://www.bmv.com.mx/docs/funo11-1t2024.pdf"
ROBOTS = """\
User-agent: *
Disallow: /private/
Crawl-delay: 2
"""


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# =============================================================================
# Fetcher
# =============================================================================


class TestHttpDocumentFetcher:
    @pytest.mark.asyncio
    async def test_downloads_body(self, settings, ctx):
        def handler(request):
            return httpx.Response(
                200, content=b"%PDF-1.4", headers={"content-type": "application/pdf", "etag": '"v1"'}
            )

        async with _client(handler) as client:
            response = await HttpDocumentFetcher(client, settings).fetch(URL, ctx)

        assert response.status_code == 200
        assert response.content == b"%PDF-1.4"
        assert response.content_type == "application/pdf"
        assert response.etag == '"v1"'
        assert response.content_length == 8
        assert not response.truncated

    @pytest.mark.asyncio
    async def test_sends_etag(self, settings, ctx):
        def handler(request):
            if request.headers.get("if-none-match") == '"v1"':
                return httpx.Response(304, headers={"etag": '"v1"'})
            return httpx.Response(200, content=b"%PDF")

        async with _client(handler) as client:
            response = await HttpDocumentFetcher(client, settings).fetch(URL, ctx, etag='"v1"')

        assert response.status_code == 304
        assert response.content == b""

    @pytest.mark.asyncio
    async def test_error_status_is_returned(self, settings, ctx):
        async with _client(lambda request: httpx.Response(503)) as client:
            response = await HttpDocumentFetcher(client, settings).fetch(URL, ctx)
        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_declared_size_over_limit(self, settings, ctx):
        small = settings.model_copy(update={"max_download_bytes": 10})
        async with _client(lambda request: httpx.Response(200, content=b"x" * 20)) as client:
            response = await HttpDocumentFetcher(client, small).fetch(URL, ctx)

        assert response.truncated
        assert response.content == b""
        assert response.content_length == 20

    @pytest.mark.asyncio
    async def test_streamed_size_over_limit(self, settings, ctx):
        async def chunks():
            yield b"x" * 8
            yield b"x" * 8
            yield b"x" * 8

        small = settings.model_copy(update={"max_download_bytes": 10})
        async with _client(lambda request: httpx.Response(200, content=chunks())) as client:
            response = await HttpDocumentFetcher(client, small).fetch(URL, ctx)

        assert response.truncated
        assert response.content_length is None

    @pytest.mark.asyncio
    async def test_timeout(self, settings, ctx):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        async with _client(handler) as client:
            with pytest.raises(FetchTimeoutError) as exc_info:
                await HttpDocumentFetcher(client, settings).fetch(URL, ctx)
        assert exc_info.value.retryable
        assert exc_info.value.context.url == URL

    @pytest.mark.asyncio
    async def test_connection_error(self, settings, ctx):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(NetworkError) as exc_info:
                await HttpDocumentFetcher(client, settings).fetch(URL, ctx)
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self, settings):
        client = _client(lambda request: httpx.Response(200))
        fetcher = HttpDocumentFetcher(client, settings)
        await fetcher.aclose()
        assert not client.is_closed
        await client.aclose()


# =============================================================================
# robots.txt
# =============================================================================


class TestRobotsTxtPolicy:
    @pytest.mark.asyncio
    async def test_rules_and_delay(self, settings, ctx):
        requests = []

        def handler(request):
            requests.append(str(request.url))
            return httpx.Response(200, text=ROBOTS)

        async with _client(handler) as client:
            policy = RobotsTxtPolicy(client, settings)
            assert await policy.is_allowed(URL, ctx)
            assert not await policy.is_allowed("https://www.bmv.com.mx/private/a.pdf", ctx)
            assert await policy.crawl_delay("WWW.BMV.COM.MX", ctx) == 2.0

        assert requests == ["https://www.bmv.com.mx/robots.txt"]

    @pytest.mark.asyncio
    async def test_missing_robots_allows_everything(self, settings, ctx):
        async with _client(lambda request: httpx.Response(404)) as client:
            policy = RobotsTxtPolicy(client, settings)
            assert await policy.is_allowed("https://www.bmv.com.mx/private/a.pdf", ctx)
            assert await policy.crawl_delay("www.bmv.com.mx", ctx) == settings.default_crawl_delay_seconds

    @pytest.mark.asyncio
    async def test_forbidden_robots_disallows_domain(self, settings, ctx):
        async with _client(lambda request: httpx.Response(403)) as client:
            assert not await RobotsTxtPolicy(client, settings).is_allowed(URL, ctx)

    @pytest.mark.asyncio
    async def test_unreachable_robots_allows_everything(self, settings, ctx):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            assert await RobotsTxtPolicy(client, settings).is_allowed(URL, ctx)
