"""Settings for the fibra back office.

Every tunable the pipeline, the reconciler and the portfolio engine read
lives here, validated at startup and overridable through ``FIBRA_*``
environment variables or a ``.env`` file.

Manifesto:
    Thresholds that decide money outcomes (how close an imported dividend
    must be to the official one, when a new facts extraction displaces the
    current one) are configuration, not constants buried in services.

    - **Pydantic validation:** Type-checked at startup
    - **Environment-driven:** ``FIBRA_`` prefix, .env support
    - **Extra ignore:** Unknown env vars don't cause startup failures

Examples:
    >>> settings = FibraSettings(amount_tolerance=Decimal("0.02"))
    >>> settings.amount_tolerance
    Decimal('0.02')

Tags:
    settings, configuration, pydantic, environment
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FibraSettings(BaseSettings):
    """Effective configuration for all fibra components.

    Fields
    ──────
    log_level / log_json        : structlog configuration
    parser_version              : stamped on text/facts records
    max_download_bytes          : larger documents are ignored
    accepted_content_types      : anything else is ignored
    ocr_confidence_threshold    : below this the OCR provider is tried
    min_facts_score             : facts scoring lower require review
    review_confidence_threshold : classification confidence requiring review
    facts_tolerances            : per-field "materially different" deltas
    amount_tolerance            : relative tolerance for dividend matching
    pay_date_window_days        : +/- window around the imported pay date
    split_ratio_tolerance       : allowed |ratio - k| per unit of k (2% of the
                                  nearest integer ratio k, so 0.04 at k=2)
    grace_period_days           : unmatched records older than this are ignored
    """

    model_config = SettingsConfigDict(
        env_prefix="FIBRA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool | None = None
    service_name: str = "fibra"

    # ── Storage ──────────────────────────────────────────────────
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".fibra",
        description="Local data directory for stored binaries",
    )

    # ── Discovery / download ─────────────────────────────────────
    discovery_lookback_days: int = 7
    default_crawl_delay_seconds: float = 3.0
    user_agent: str = "fibra-spine/0.1 (+https://fibra.local/bot)"
    download_timeout_seconds: float = 120.0
    max_download_bytes: int = 20 * 1024 * 1024
    accepted_content_types: list[str] = Field(
        default_factory=lambda: ["application/pdf", "application/octet-stream"],
    )

    # ── Parsing / classification ─────────────────────────────────
    parser_version: str = "pdf-1.0"
    ocr_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    ocr_language: str = "spa+eng"
    ocr_psm: int = 3
    ocr_render_scale: float = 2.0
    pdf_min_alpha_ratio: float = 0.20
    pdf_max_non_ascii_ratio: float = 0.70

    # ── Facts ────────────────────────────────────────────────────
    min_facts_score: int = Field(default=3, ge=0, le=6)
    review_confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    facts_tolerances: dict[str, Decimal] = Field(
        default_factory=lambda: {
            "nav_per_cbfi": Decimal("0.01"),
            "noi": Decimal("0.5"),
            "affo": Decimal("0.5"),
            "ltv": Decimal("0.001"),
            "occupancy": Decimal("0.001"),
            "dividends": Decimal("0.0001"),
        },
    )

    # ── Distributions ────────────────────────────────────────────
    amount_tolerance: Decimal = Decimal("0.01")
    pay_date_window_days: int = 7
    split_ratio_tolerance: Decimal = Decimal("0.02")
    grace_period_days: int = 30
    distributions_per_year: int = 4
    official_lookback_days: int = 7
    import_max_attempts: int = Field(default=3, ge=1)
    import_base_delay_seconds: float = 1.0

    # ── Execution ────────────────────────────────────────────────
    pipeline_concurrency: int = Field(default=4, ge=1)
    stage_max_attempts: int = Field(default=3, ge=1)
    io_timeout_seconds: float = 30.0

    # ── Portfolio upload ─────────────────────────────────────────
    max_upload_bytes: int = 2 * 1024 * 1024
    max_upload_rows: int = 5000


@lru_cache(maxsize=1)
def get_settings() -> FibraSettings:
    """Return the process-wide settings (cached)."""
    return FibraSettings()


__all__ = ["FibraSettings", "get_settings"]
