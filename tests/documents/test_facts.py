"""Tests for facts extraction and supersession."""

from decimal import Decimal

import pytest

from fibra.core.errors import PipelineError
from fibra.documents.facts import UNKNOWN, extract_facts, normalize_value
from fibra.documents.models import DocumentFactsRecord, DocumentStatus

SECOND_URL = "https://fibrauno.mx/reportes/1T2024-v2.pdf"
SECOND_BYTES = b"%PDF-1.7 FUNO11 1T2024 restated"

# No classifier keyword: OTHER kind, confidence 0.6 from the ticker alone.
RESTATED_TEXT = """\
FUNO11 cifras 1T2024
NAV por CBFI: 18.50
NOI: 4,512.3
AFFO: 3,100.5
LTV: 42.5%
Ocupación: 96.1%
Distribución por CBFI: 0.55
"""


def _record(fact_id: str = "f1", confidence: float = 0.9, requires_review: bool = False,
            **values) -> DocumentFactsRecord:
    return DocumentFactsRecord(
        fact_id=fact_id,
        document_id=f"doc-{fact_id}",
        ticker="FUNO11",
        period_tag="1T2024",
        parser_version="pdf-1.0",
        hash=fact_id,
        confidence=confidence,
        requires_review=requires_review,
        **values,
    )


class TestExtractFacts:
    def test_report_text(self, funo_report_text):
        facts = extract_facts(funo_report_text)
        assert facts.values == {
            "nav_per_cbfi": Decimal("18.20"),
            "noi": Decimal("4512.3"),
            "affo": Decimal("3100.5"),
            "ltv": Decimal("0.425"),
            "occupancy": Decimal("0.961"),
            "dividends": Decimal("0.55"),
        }
        assert facts.score == 6

    def test_tables_take_precedence(self):
        tables = [[["Concepto", "Valor"], ["NAV por CBFI", "19.00"]]]
        facts = extract_facts("NAV por CBFI: 18.20", tables)
        assert facts.values["nav_per_cbfi"] == Decimal("19.00")

    def test_english_labels(self):
        facts = extract_facts("Occupancy 94.0%\nLoan-to-value 38%\nDividend 0.42")
        assert facts.values["occupancy"] == Decimal("0.94")
        assert facts.values["ltv"] == Decimal("0.38")
        assert facts.values["dividends"] == Decimal("0.42")

    def test_missing_fields_are_none(self):
        facts = extract_facts("NAV: 20.1")
        assert facts.score == 1
        assert facts.values["noi"] is None

    def test_empty_text(self):
        assert extract_facts("").score == 0


class TestNormalizeValue:
    @pytest.mark.parametrize(
        ("field", "raw", "expected"),
        [
            ("noi", Decimal("4512300000"), Decimal("4512.3")),
            ("noi", Decimal("4512.3"), Decimal("4512.3")),
            ("ltv", Decimal("42.5"), Decimal("0.425")),
            ("ltv", Decimal("0.425"), Decimal("0.425")),
            ("occupancy", Decimal("96.1"), Decimal("0.961")),
            ("nav_per_cbfi", Decimal("18.2000004"), Decimal("18.200000")),
        ],
    )
    def test_units(self, field, raw, expected):
        assert normalize_value(field, raw) == expected


class TestReplacementRule:
    def test_identical_values_are_not_material(self, facts_service):
        assert not facts_service.materially_different(_record(nav_per_cbfi=Decimal("18.20")),
                                                      _record(nav_per_cbfi=Decimal("18.205")))

    def test_delta_beyond_tolerance_is_material(self, facts_service):
        assert facts_service.materially_different(_record(nav_per_cbfi=Decimal("18.50")),
                                                  _record(nav_per_cbfi=Decimal("18.20")))

    def test_appearing_field_is_material(self, facts_service):
        assert facts_service.materially_different(_record(noi=Decimal("1")), _record())

    def test_review_never_displaces_clean(self, facts_service):
        assert not facts_service.should_replace(_record("new", confidence=1.0, requires_review=True),
                                                _record("cur", confidence=0.5))

    def test_clean_always_displaces_review(self, facts_service):
        assert facts_service.should_replace(_record("new", confidence=0.1),
                                            _record("cur", confidence=0.9, requires_review=True))

    def test_equal_confidence_replaces(self, facts_service):
        assert facts_service.should_replace(_record("new", confidence=0.9), _record("cur", confidence=0.9))

    def test_lower_confidence_same_values_keeps_current(self, facts_service):
        assert not facts_service.should_replace(_record("new", confidence=0.6), _record("cur", confidence=0.9))


class TestFactsExtractionService:
    """FactsExtractionService.extract."""

    @pytest.mark.asyncio
    async def test_extracts_current_record(self, facts_service, ingest, documents, facts_repo,
                                           funo_report_text, ctx):
        document_id = await ingest(funo_report_text)

        outcome = await facts_service.extract(document_id, ctx)

        record = outcome.record
        assert outcome.created and outcome.is_current
        assert record.ticker == "FUNO11"
        assert record.period_tag == "1T2024"
        assert record.nav_per_cbfi == Decimal("18.20")
        assert record.score == 6
        assert not record.requires_review
        assert record.quality == pytest.approx(0.9)
        assert (await documents.get(document_id)).status == DocumentStatus.FACTS_EXTRACTED
        assert (await facts_repo.get_current("FUNO11", "1T2024")).fact_id == record.fact_id
        [history] = await facts_repo.list_history("FUNO11", "1T2024")
        assert history.became_current

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, facts_service, ingest, facts_repo, funo_report_text, ctx):
        document_id = await ingest(funo_report_text)
        first = await facts_service.extract(document_id, ctx)

        second = await facts_service.extract(document_id, ctx)

        assert not second.created
        assert second.record.fact_id == first.record.fact_id
        assert len(await facts_repo.list_for_period("FUNO11", "1T2024")) == 1
        assert len(await facts_repo.list_history("FUNO11", "1T2024")) == 1

    @pytest.mark.asyncio
    async def test_material_change_from_same_parser_keeps_previous_document(
        self, facts_service, ingest, documents, facts_repo, funo_report_text, ctx
    ):
        old_id = await ingest(funo_report_text)
        old = await facts_service.extract(old_id, ctx)
        new_id = await ingest(RESTATED_TEXT, content=SECOND_BYTES, url=SECOND_URL)

        outcome = await facts_service.extract(new_id, ctx)

        assert outcome.is_current
        assert outcome.superseded_fact_ids == (old.record.fact_id,)
        assert outcome.superseded_document_ids == ()
        assert (await documents.get(old_id)).status == DocumentStatus.FACTS_EXTRACTED
        current = [r for r in await facts_repo.list_for_period("FUNO11", "1T2024") if not r.is_superseded]
        assert [r.fact_id for r in current] == [outcome.record.fact_id]

    @pytest.mark.asyncio
    async def test_identical_facts_from_second_document_keep_both_documents(
        self, facts_service, ingest, documents, funo_report_text, ctx
    ):
        old_id = await ingest(funo_report_text)
        await facts_service.extract(old_id, ctx)
        new_id = await ingest(funo_report_text, content=SECOND_BYTES, url=SECOND_URL)

        outcome = await facts_service.extract(new_id, ctx)

        assert outcome.is_current
        assert outcome.superseded_document_ids == ()
        assert (await documents.get(old_id)).status == DocumentStatus.FACTS_EXTRACTED
        assert (await documents.get(new_id)).status == DocumentStatus.FACTS_EXTRACTED

    @pytest.mark.asyncio
    async def test_newer_parser_with_different_facts_supersedes_previous_document(
        self, facts_service, ingest, documents, settings, funo_report_text, ctx
    ):
        old_id = await ingest(funo_report_text)
        old = await facts_service.extract(old_id, ctx)
        settings.parser_version = "pdf-1.1"
        new_id = await ingest(RESTATED_TEXT, content=SECOND_BYTES, url=SECOND_URL)

        outcome = await facts_service.extract(new_id, ctx)

        assert outcome.record.parser_version == "pdf-1.1"
        assert outcome.superseded_fact_ids == (old.record.fact_id,)
        assert outcome.superseded_document_ids == (old_id,)
        assert (await documents.get(old_id)).status == DocumentStatus.SUPERSEDED

    @pytest.mark.asyncio
    async def test_newer_parser_with_same_facts_keeps_previous_document(
        self, facts_service, ingest, documents, settings, funo_report_text, ctx
    ):
        old_id = await ingest(funo_report_text)
        await facts_service.extract(old_id, ctx)
        settings.parser_version = "pdf-1.1"
        new_id = await ingest(funo_report_text, content=SECOND_BYTES, url=SECOND_URL)

        outcome = await facts_service.extract(new_id, ctx)

        assert outcome.is_current
        assert outcome.superseded_document_ids == ()
        assert (await documents.get(old_id)).status == DocumentStatus.FACTS_EXTRACTED

    @pytest.mark.asyncio
    async def test_lower_confidence_duplicate_is_kept_as_history(self, facts_service, ingest, documents,
                                                                 facts_repo, funo_report_text, ctx):
        old_id = await ingest(funo_report_text)
        await facts_service.extract(old_id, ctx)
        same_values = RESTATED_TEXT.replace("18.50", "18.20")
        new_id = await ingest(same_values, content=SECOND_BYTES, url=SECOND_URL)

        outcome = await facts_service.extract(new_id, ctx)

        assert outcome.created
        assert not outcome.is_current
        assert (await documents.get(old_id)).status == DocumentStatus.FACTS_EXTRACTED
        assert (await facts_repo.get_current("FUNO11", "1T2024")).document_id == old_id

    @pytest.mark.asyncio
    async def test_review_record_does_not_displace_clean(self, facts_service, ingest, facts_repo,
                                                         funo_report_text, ctx):
        old_id = await ingest(funo_report_text)
        await facts_service.extract(old_id, ctx)
        sparse_id = await ingest("Reporte del primer trimestre 1T2024 FUNO11\nNAV por CBFI: 25.00",
                                 content=SECOND_BYTES, url=SECOND_URL)

        outcome = await facts_service.extract(sparse_id, ctx)

        assert outcome.record.requires_review
        assert not outcome.is_current
        assert (await facts_repo.get_current("FUNO11", "1T2024")).document_id == old_id

    @pytest.mark.asyncio
    async def test_unkeyed_document_is_stored_but_not_current(self, facts_service, ingest, facts_repo, ctx):
        document_id = await ingest("Convocatoria a asamblea\nNAV: 18.00")

        outcome = await facts_service.extract(document_id, ctx)

        assert outcome.record.ticker == UNKNOWN
        assert outcome.record.requires_review
        assert not outcome.is_current
        assert await facts_repo.get_current(UNKNOWN, UNKNOWN) is None

    @pytest.mark.asyncio
    async def test_requires_parsed_document(self, facts_service, queue_document, ctx):
        document = await queue_document()
        with pytest.raises(PipelineError):
            await facts_service.extract(document.document_id, ctx)
