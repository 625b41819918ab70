"""HTTP adapters: document fetcher and robots.txt policy over httpx.

Both share one ``httpx.AsyncClient`` configured with the crawler's user
agent. Network failures are translated into the fibra error hierarchy so
the job runner can decide on retries: connection problems become
:class:`NetworkError`, timeouts :class:`FetchTimeoutError`. HTTP status
codes are returned as-is in :class:`FetchResponse` and interpreted by the
download stage.
"""

from __future__ import annotations

from urllib import robotparser
from urllib.parse import urlparse

import httpx

from fibra.core.errors import FetchTimeoutError, NetworkError
from fibra.core.logging import get_logger
from fibra.core.settings import FibraSettings, get_settings
from fibra.documents.models import FetchResponse
from fibra.execution.context import JobContext

logger = get_logger(__name__)


def build_client(settings: FibraSettings | None = None) -> httpx.AsyncClient:
    settings = settings or get_settings()
    return httpx.AsyncClient(
        timeout=settings.download_timeout_seconds,
        headers={"User-Agent": settings.user_agent},
        follow_redirects=True,
        verify=True,
    )


class HttpDocumentFetcher:
    """Streams a document, stopping once ``max_download_bytes`` is exceeded."""

    def __init__(self, client: httpx.AsyncClient | None = None, settings: FibraSettings | None = None):
        self.settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = build_client(self.settings)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str, ctx: JobContext, etag: str | None = None) -> FetchResponse:
        headers = {"If-None-Match": etag} if etag else None
        try:
            async with self.client.stream("GET", url, headers=headers) as response:
                declared = response.headers.get("content-length")
                content_length = int(declared) if declared and declared.isdigit() else None
                if response.status_code != 200:
                    return FetchResponse(
                        url=url,
                        status_code=response.status_code,
                        content_type=response.headers.get("content-type"),
                        etag=response.headers.get("etag"),
                        content_length=content_length,
                    )
                if content_length is not None and content_length > self.settings.max_download_bytes:
                    return FetchResponse(url, response.status_code, content_length=content_length, truncated=True,
                                         content_type=response.headers.get("content-type"))

                body = bytearray()
                truncated = False
                async for chunk in response.aiter_bytes():
                    ctx.check_cancelled()
                    body.extend(chunk)
                    if len(body) > self.settings.max_download_bytes:
                        truncated = True
                        break

                logger.debug("http.fetched", url=url, status=response.status_code, bytes=len(body))
                return FetchResponse(
                    url=url,
                    status_code=response.status_code,
                    content=bytes(body),
                    content_type=response.headers.get("content-type"),
                    etag=response.headers.get("etag"),
                    content_length=len(body) if not truncated else content_length,
                    truncated=truncated,
                )
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(f"Timed out fetching {url}", cause=e).with_context(url=url) from e
        except httpx.RequestError as e:
            raise NetworkError(f"Request failed for {url}: {e}", cause=e).with_context(url=url) from e


class RobotsTxtPolicy:
    """robots.txt rules per domain, fetched once and cached.

    An unreachable or missing robots.txt allows everything. A 401/403 on
    robots.txt disallows the whole domain.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, settings: FibraSettings | None = None):
        self.settings = settings or get_settings()
        self._client = client
        self._parsers: dict[str, robotparser.RobotFileParser] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = build_client(self.settings)
        return self._client

    async def _parser(self, scheme: str, domain: str, ctx: JobContext) -> robotparser.RobotFileParser:
        parser = self._parsers.get(domain)
        if parser is not None:
            return parser

        parser = robotparser.RobotFileParser()
        robots_url = f"{scheme or 'https'}://{domain}/robots.txt"
        try:
            response = await ctx.guard(self.client.get(robots_url), "robots.fetch")
        except httpx.HTTPError as e:
            logger.warning("robots.unavailable", domain=domain, error=str(e))
            parser.parse([])
        else:
            if response.status_code in (401, 403):
                parser.disallow_all = True
            elif response.status_code >= 400:
                parser.parse([])
            else:
                parser.parse(response.text.splitlines())
        self._parsers[domain] = parser
        return parser

    async def is_allowed(self, url: str, ctx: JobContext) -> bool:
        parsed = urlparse(url)
        parser = await self._parser(parsed.scheme, parsed.netloc.lower(), ctx)
        return parser.can_fetch(self.settings.user_agent, url)

    async def crawl_delay(self, domain: str, ctx: JobContext) -> float:
        parser = await self._parser("https", domain.lower(), ctx)
        delay = parser.crawl_delay(self.settings.user_agent)
        if delay is None:
            return self.settings.default_crawl_delay_seconds
        return float(delay)


__all__ = ["HttpDocumentFetcher", "RobotsTxtPolicy", "build_client"]
