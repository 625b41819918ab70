"""
Shared pytest fixtures and configuration for fibra tests.

This module provides:
- Settings with fast, deterministic thresholds
- A frozen clock and a job context
- In-memory repositories, queue and sources for every port
- A fully wired document pipeline

Usage:
    Fixtures are auto-discovered by pytest. Use them as function arguments:

    async def test_something(pipeline, job_queue, ctx):
        ...
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from fibra.adapters.memory import (
    FixedClock,
    InMemoryDocumentRepository,
    InMemoryDocumentStorage,
    InMemoryFactsRepository,
    InMemoryHoldersDirectory,
    InMemoryJobQueue,
    InMemorySecurityCatalog,
    InMemorySecurityMetrics,
    StaticDocumentSource,
    StaticFetcher,
    StaticRobotsPolicy,
    StaticTextExtractor,
)
from fibra.core.settings import FibraSettings
from fibra.documents.discovery import DocumentDiscoveryService
from fibra.documents.download import DocumentDownloadService
from fibra.documents.facts import FactsExtractionService
from fibra.documents.parser import DocumentParserService
from fibra.documents.pipeline import DocumentPipeline
from fibra.execution.context import JobContext
from fibra.execution.rate_limit import CrawlDelayLimiter
from fibra.observability.metrics import MetricsRegistry
from fibra.observability.stage import MetricsStageObserver

NOW = datetime(2024, 5, 2, 12, 0, tzinfo=UTC)

FUNO_REPORT_TEXT = """\
FUNO11 Reporte de resultados del primer trimestre 1T2024
NAV por CBFI: 18.20
NOI: 4,512.3
AFFO: 3,100.5
LTV: 42.5%
Ocupación: 96.1%
Distribución por CBFI: 0.55
"""


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark all tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture()
def settings(tmp_path: Path) -> FibraSettings:
    """Settings isolated from the environment, with no backoff delays."""
    return FibraSettings(
        data_dir=tmp_path,
        import_base_delay_seconds=0.0,
        default_crawl_delay_seconds=0.0,
        pipeline_concurrency=2,
        stage_max_attempts=3,
        io_timeout_seconds=5.0,
    )


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture()
def ctx() -> JobContext:
    return JobContext.new("test", correlation_id="req-1", io_timeout=5.0)


@pytest.fixture()
def registry() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture()
def observer(registry: MetricsRegistry) -> MetricsStageObserver:
    return MetricsStageObserver(registry)


@pytest.fixture()
def job_queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture()
def funo_report_text() -> str:
    """Text layer of a FUNO11 first-quarter report."""
    return FUNO_REPORT_TEXT


# =============================================================================
# Document Fixtures
# =============================================================================


@pytest.fixture()
def documents() -> InMemoryDocumentRepository:
    return InMemoryDocumentRepository()


@pytest.fixture()
def storage() -> InMemoryDocumentStorage:
    return InMemoryDocumentStorage()


@pytest.fixture()
def facts_repo() -> InMemoryFactsRepository:
    return InMemoryFactsRepository()


@pytest.fixture()
def fetcher() -> StaticFetcher:
    return StaticFetcher()


@pytest.fixture()
def robots() -> StaticRobotsPolicy:
    return StaticRobotsPolicy()


@pytest.fixture()
def extractor() -> StaticTextExtractor:
    return StaticTextExtractor()


@pytest.fixture()
def source() -> StaticDocumentSource:
    return StaticDocumentSource("www.bmv.com.mx")


@pytest.fixture()
def limiter() -> CrawlDelayLimiter:
    async def no_sleep(_: float) -> None:
        return None

    return CrawlDelayLimiter(sleep=no_sleep)


@pytest.fixture()
def security_metrics() -> InMemorySecurityMetrics:
    return InMemorySecurityMetrics()


@pytest.fixture()
def holders() -> InMemoryHoldersDirectory:
    return InMemoryHoldersDirectory()


@pytest.fixture()
def catalog() -> InMemorySecurityCatalog:
    return InMemorySecurityCatalog()


@pytest.fixture()
def discovery(source, documents, robots, limiter, settings, clock, registry) -> DocumentDiscoveryService:
    return DocumentDiscoveryService([source], documents, robots, limiter, settings, clock, registry)


@pytest.fixture()
def downloader(documents, storage, fetcher, robots, limiter, settings, clock) -> DocumentDownloadService:
    return DocumentDownloadService(documents, storage, fetcher, robots, limiter, settings, clock)


@pytest.fixture()
def parser(documents, storage, extractor, settings, clock) -> DocumentParserService:
    return DocumentParserService(documents, storage, extractor, ocr=None, settings=settings, clock=clock)


@pytest.fixture()
def facts_service(documents, facts_repo, settings, clock) -> FactsExtractionService:
    return FactsExtractionService(documents, facts_repo, settings, clock)


@pytest.fixture()
def pipeline(
    documents,
    job_queue,
    discovery,
    downloader,
    parser,
    facts_service,
    observer,
    security_metrics,
    holders,
    clock,
) -> DocumentPipeline:
    return DocumentPipeline(
        documents,
        job_queue,
        discovery,
        downloader,
        parser,
        facts_service,
        observer=observer,
        metrics_writer=security_metrics,
        holders=holders,
        clock=clock,
    )
