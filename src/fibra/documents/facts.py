"""Facts extraction.

Derives up to six metrics from a parsed document's latest text record:

    nav_per_cbfi  NAV/CBFI, NAV por CBFI, NAV
    noi           NOI                          (millions)
    affo          AFFO, FFO                    (millions)
    ltv           LTV, loan-to-value           (fraction)
    occupancy     Ocupacion, Occupancy         (fraction)
    dividends     Dividendo(s), Distribucion por CBFI

Tables are searched before free text. The score is the number of populated
fields; ``requires_review`` is set when the score is under
``min_facts_score`` or the classification confidence is under
``review_confidence_threshold``.

Idempotence key is ``(document_id, parser_version, hash)``. For each
``(ticker, period_tag)`` at most one record is current; see
:meth:`FactsExtractionService.should_replace` for the supersession rule.
The displaced record's document is marked ``SUPERSEDED`` only when a
different parser version produced materially different facts.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from fibra.core.errors import DocumentNotFoundError, PipelineError
from fibra.core.hashing import compute_hash
from fibra.core.logging import get_logger
from fibra.core.numbers import parse_number
from fibra.core.periods import Clock, SystemClock
from fibra.core.settings import FibraSettings, get_settings
from fibra.documents import lifecycle
from fibra.documents.classifier import fold_text
from fibra.documents.models import (
    FACT_FIELDS,
    DocumentFactsRecord,
    DocumentRecord,
    DocumentStatus,
    DocumentTextRecord,
    FactsHistoryRecord,
    FactsOutcome,
)
from fibra.documents.ports import DocumentRepository, FactsRepository
from fibra.execution.context import JobContext

logger = get_logger(__name__)

UNKNOWN = "UNKNOWN"
SIX_PLACES = Decimal("0.000001")
_MILLION = Decimal(1_000_000)

# Ordered: the first pattern that yields a number wins.
FIELD_LABELS: dict[str, tuple[str, ...]] = {
    "nav_per_cbfi": (
        r"nav\s*(?:/|por|per)\s*cbfi",
        r"valor\s+(?:neto\s+)?(?:de\s+los\s+activos\s+)?por\s+cbfi",
        r"\bnav\b",
    ),
    "noi": (r"\bnoi\b", r"ingreso\s+neto\s+operativo"),
    "affo": (r"\baffo\b", r"\bffo\b"),
    "ltv": (r"\bltv\b", r"loan[\s-]to[\s-]value", r"nivel\s+de\s+endeudamiento"),
    "occupancy": (r"ocupacion", r"occupancy"),
    "dividends": (
        r"distribucion(?:es)?\s+por\s+cbfi",
        r"distribution\s+per\s+cbfi",
        r"dividendos?",
        r"dividends?",
    ),
}

_VALUE = r"(?P<value>[-+]?\d[\d.,]*)(?![\d.,]*[a-z])"
_GAP = r"[^-+\d\n]{0,40}?"
_NUMBER_CELL = re.compile(r"^\s*[$]?\s*[-+]?\d[\d.,]*\s*%?\s*$")


def normalize_value(field: str, value: Decimal) -> Decimal:
    """Bring a raw figure to the stored unit and round to 6 places."""
    if field in ("noi", "affo") and abs(value) > 100_000:
        value = value / _MILLION
    elif field in ("ltv", "occupancy") and value > 1:
        value = value / 100
    return value.quantize(SIX_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ExtractedFacts:
    values: dict[str, Decimal | None]

    @property
    def score(self) -> int:
        return sum(1 for v in self.values.values() if v is not None)


def _from_tables(tables: list[list[list[str]]], patterns: tuple[str, ...]) -> Decimal | None:
    for pattern in patterns:
        label = re.compile(pattern)
        for table in tables:
            for row in table:
                for i, cell in enumerate(row):
                    if not label.search(fold_text(cell or "")):
                        continue
                    for candidate in row[i + 1:]:
                        if candidate and _NUMBER_CELL.match(candidate):
                            value = parse_number(candidate)
                            if value is not None:
                                return value
    return None


def _from_text(text: str, patterns: tuple[str, ...]) -> Decimal | None:
    for pattern in patterns:
        match = re.search(f"(?:{pattern}){_GAP}{_VALUE}", text)
        if match:
            value = parse_number(match.group("value"))
            if value is not None:
                return value
    return None


def extract_facts(text: str, tables: list[list[list[str]]] | None = None) -> ExtractedFacts:
    """Pure extraction of the six metrics from text and tables."""
    folded = fold_text(text or "")
    values: dict[str, Decimal | None] = {}
    for field, patterns in FIELD_LABELS.items():
        raw = _from_tables(tables or [], patterns)
        if raw is None:
            raw = _from_text(folded, patterns)
        values[field] = normalize_value(field, raw) if raw is not None else None
    return ExtractedFacts(values)


class FactsExtractionService:
    def __init__(
        self,
        documents: DocumentRepository,
        facts: FactsRepository,
        settings: FibraSettings | None = None,
        clock: Clock | None = None,
    ):
        self.documents = documents
        self.facts = facts
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()

    async def extract(self, document_id: str, ctx: JobContext) -> FactsOutcome:
        document = await self.documents.get(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        if document.status not in (DocumentStatus.PARSED, DocumentStatus.FACTS_EXTRACTED):
            raise PipelineError(
                f"Document {document_id} is {document.status.value}, expected parsed"
            ).with_context(document_id=document_id, stage=ctx.queue)

        text = await self.documents.get_latest_text(document_id)
        if text is None:
            raise PipelineError(f"Document {document_id} has no text record").with_context(
                document_id=document_id, stage=ctx.queue
            )

        existing = await self.facts.get_by_key(document_id, text.parser_version, text.hash)
        if existing is not None:
            logger.info("facts.idempotent_hit", document_id=document_id, fact_id=existing.fact_id)
            await self._mark_extracted(document)
            return FactsOutcome(existing, created=False, is_current=not existing.is_superseded)

        record = self.build_record(document, text)
        outcome = await self._store(record)
        await self._mark_extracted(document)

        logger.info(
            "facts.extracted",
            document_id=document_id,
            fact_id=record.fact_id,
            ticker=record.ticker,
            period_tag=record.period_tag,
            score=record.score,
            requires_review=record.requires_review,
            is_current=outcome.is_current,
        )
        return outcome

    def build_record(self, document: DocumentRecord, text: DocumentTextRecord) -> DocumentFactsRecord:
        extracted = extract_facts(text.text, text.tables)
        confidence = float(text.metrics.get("confidence", document.confidence))
        keyed = bool(document.ticker and document.period_tag)
        score = extracted.score
        requires_review = (
            not keyed
            or score < self.settings.min_facts_score
            or confidence < self.settings.review_confidence_threshold
        )
        return DocumentFactsRecord(
            fact_id=compute_hash(document.document_id, text.parser_version, text.hash),
            document_id=document.document_id,
            ticker=document.ticker or UNKNOWN,
            period_tag=document.period_tag or UNKNOWN,
            parser_version=text.parser_version,
            hash=text.hash,
            score=score,
            confidence=round(confidence, 3),
            quality=round(score * confidence / len(FACT_FIELDS), 4),
            requires_review=requires_review,
            source_url=document.url,
            parsed_at=self.clock.now(),
            **extracted.values,
        )

    def materially_different(self, new: DocumentFactsRecord, current: DocumentFactsRecord) -> bool:
        """True when any field appeared, vanished, or moved beyond its tolerance."""
        tolerances = self.settings.facts_tolerances
        for name in FACT_FIELDS:
            a, b = getattr(new, name), getattr(current, name)
            if a is None and b is None:
                continue
            if a is None or b is None:
                return True
            if abs(a - b) > tolerances.get(name, Decimal(0)):
                return True
        return False

    def should_replace(self, new: DocumentFactsRecord, current: DocumentFactsRecord) -> bool:
        """Whether *new* becomes the current record in place of *current*.

        A record needing review never displaces a clean one; a clean record
        always displaces one needing review. Otherwise the new record wins
        with equal-or-higher confidence or materially different values.
        """
        if new.requires_review and not current.requires_review:
            return False
        if current.requires_review and not new.requires_review:
            return True
        return new.confidence >= current.confidence or self.materially_different(new, current)

    async def _store(self, record: DocumentFactsRecord) -> FactsOutcome:
        if record.ticker == UNKNOWN or record.period_tag == UNKNOWN:
            record.is_superseded = True
            await self.facts.save(record)
            await self.facts.append_history(FactsHistoryRecord.from_facts(record, became_current=False))
            return FactsOutcome(record, created=True, is_current=False)

        current = await self.facts.get_current(record.ticker, record.period_tag)
        superseded_facts: list[str] = []
        superseded_docs: list[str] = []

        if current is None or self.should_replace(record, current):
            if current is not None:
                await self.facts.mark_superseded(current.fact_id)
                superseded_facts.append(current.fact_id)
                if self._replaces_document(record, current):
                    if await self._supersede_document(current.document_id, record.document_id):
                        superseded_docs.append(current.document_id)
            record.is_superseded = False
        else:
            record.is_superseded = True

        await self.facts.save(record)
        await self.facts.append_history(
            FactsHistoryRecord.from_facts(record, became_current=not record.is_superseded)
        )
        return FactsOutcome(
            record,
            created=True,
            is_current=not record.is_superseded,
            superseded_fact_ids=tuple(superseded_facts),
            superseded_document_ids=tuple(superseded_docs),
        )

    def _replaces_document(self, new: DocumentFactsRecord, current: DocumentFactsRecord) -> bool:
        """A displaced document is retired only when a different parser produced different facts."""
        return (
            current.document_id != new.document_id
            and current.parser_version != new.parser_version
            and self.materially_different(new, current)
        )

    async def _supersede_document(self, document_id: str, replaced_by: str) -> bool:
        old = await self.documents.get(document_id)
        if old is None or not lifecycle.can_transition(old.status, DocumentStatus.SUPERSEDED):
            return False
        lifecycle.supersede(old, f"facts superseded by {replaced_by}")
        await self.documents.update(old)
        logger.info("facts.document_superseded", document_id=document_id, replaced_by=replaced_by)
        return True

    async def _mark_extracted(self, document: DocumentRecord) -> None:
        if document.status == DocumentStatus.PARSED:
            lifecycle.transition(document, DocumentStatus.FACTS_EXTRACTED)
            await self.documents.update(document)


__all__ = [
    "FIELD_LABELS",
    "ExtractedFacts",
    "FactsExtractionService",
    "extract_facts",
    "normalize_value",
    "parse_number",
]
