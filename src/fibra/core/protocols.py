"""
Cross-cutting ports shared by the pipeline, the reconciler and the
portfolio engine.

Package-specific ports live next to their consumers
(``fibra.documents.ports``, ``fibra.distributions.ports``,
``fibra.portfolio.ports``); only the collaborators that more than one
package writes to or reads from are defined here.

Architecture:
    ::

        protocols.py
        ├── SecurityCatalog        — last known price per ticker
        ├── SecurityMetricsWriter  — facts + yields written back per ticker
        └── HoldersDirectory       — which users hold a ticker

Guardrails:
    ❌ DON'T: Add implementation logic to protocol classes
    ✅ DO: Keep protocols pure contracts; implementations go in fibra.adapters

Tags:
    protocol, ports, contracts
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from fibra.documents.models import DocumentFactsRecord
    from fibra.execution.context import JobContext


@runtime_checkable
class SecurityCatalog(Protocol):
    """Price lookup for tracked securities."""

    async def get_prices(self, tickers: list[str], ctx: JobContext) -> dict[str, Decimal | None]:
        """Latest market price per ticker; missing tickers map to None."""
        ...

    async def get_last_known_price(self, ticker: str, ctx: JobContext) -> Decimal | None:
        """Most recent price ever recorded for *ticker*, however stale."""
        ...

    async def get_yields(
        self, tickers: list[str], ctx: JobContext
    ) -> dict[str, tuple[Decimal | None, Decimal | None]]:
        """``(ttm_yield, forward_yield)`` per ticker."""
        ...


@runtime_checkable
class SecurityMetricsWriter(Protocol):
    """Write-back of derived per-security metrics."""

    async def update_facts(self, ticker: str, facts: DocumentFactsRecord, ctx: JobContext) -> None:
        ...

    async def update_yields(
        self,
        ticker: str,
        ttm_yield: Decimal | None,
        forward_yield: Decimal | None,
        ctx: JobContext,
    ) -> None:
        ...


@runtime_checkable
class HoldersDirectory(Protocol):
    async def users_holding(self, ticker: str, ctx: JobContext) -> list[str]:
        ...


__all__ = ["HoldersDirectory", "SecurityCatalog", "SecurityMetricsWriter"]
