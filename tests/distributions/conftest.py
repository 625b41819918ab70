"""Fixtures for the distribution importer and reconciler."""

from __future__ import annotations

import pytest

from fibra.adapters.memory import (
    InMemoryDistributionRepository,
    InMemoryDividendFeed,
    InMemoryOfficialSource,
)
from fibra.distributions.importer import DistributionImporter
from fibra.distributions.reconciler import DistributionReconciler


@pytest.fixture()
def distributions() -> InMemoryDistributionRepository:
    return InMemoryDistributionRepository()


@pytest.fixture()
def official() -> InMemoryOfficialSource:
    return InMemoryOfficialSource()


@pytest.fixture()
def feed() -> InMemoryDividendFeed:
    return InMemoryDividendFeed()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def importer(distributions, feed, settings, clock, registry, sleeps) -> DistributionImporter:
    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return DistributionImporter(distributions, feed, settings, clock, registry, sleep=record_sleep)


@pytest.fixture()
def reconciler(
    distributions, official, catalog, job_queue, security_metrics, holders, settings, clock, observer, registry
) -> DistributionReconciler:
    return DistributionReconciler(
        distributions,
        official,
        catalog,
        job_queue,
        metrics_writer=security_metrics,
        security_writer=security_metrics,
        holders=holders,
        settings=settings,
        clock=clock,
        observer=observer,
        registry=registry,
    )
