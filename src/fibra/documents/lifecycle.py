"""Document lifecycle state machine.

::

    NEW ──► DOWNLOAD_QUEUED ──► DOWNLOADED ──► PARSED ──► FACTS_EXTRACTED
     │            │                 │            │              │
     └────────────┴─────► IGNORED ◄─┘            │              │
                  │                 │            │              │
                  └─────────────────┴──► SUPERSEDED ◄───────────┘

Forward only. ``SUPERSEDED`` is reachable from a queued/downloaded
document whose bytes duplicate another document, and from any post-parse
state once a newer extraction replaces its facts. ``IGNORED`` and
``SUPERSEDED`` are terminal. Self transitions cover re-queueing, refresh
downloads and re-parses under a new parser version.
"""

from __future__ import annotations

from fibra.core.errors import InvalidTransitionError
from fibra.core.periods import utcnow
from fibra.documents.models import DocumentRecord, DocumentStatus

S = DocumentStatus

ALLOWED_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    S.NEW: frozenset({S.DOWNLOAD_QUEUED, S.IGNORED}),
    S.DOWNLOAD_QUEUED: frozenset({S.DOWNLOAD_QUEUED, S.DOWNLOADED, S.IGNORED, S.SUPERSEDED}),
    S.DOWNLOADED: frozenset({S.DOWNLOADED, S.PARSED, S.IGNORED, S.SUPERSEDED}),
    S.PARSED: frozenset({S.PARSED, S.FACTS_EXTRACTED, S.SUPERSEDED}),
    S.FACTS_EXTRACTED: frozenset({S.FACTS_EXTRACTED, S.SUPERSEDED}),
    S.IGNORED: frozenset(),
    S.SUPERSEDED: frozenset(),
}


def can_transition(current: DocumentStatus, target: DocumentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transition(
    document: DocumentRecord,
    target: DocumentStatus,
    reason: str | None = None,
) -> DocumentRecord:
    """Move *document* to *target* in place.

    Raises:
        InvalidTransitionError: if the state machine forbids the move
    """
    if not can_transition(document.status, target):
        raise InvalidTransitionError(document.document_id, document.status, target)
    document.status = target
    document.failure_reason = reason
    document.updated_at = utcnow()
    return document


def ignore(document: DocumentRecord, reason: str) -> DocumentRecord:
    return transition(document, DocumentStatus.IGNORED, reason)


def supersede(document: DocumentRecord, reason: str) -> DocumentRecord:
    return transition(document, DocumentStatus.SUPERSEDED, reason)


__all__ = ["ALLOWED_TRANSITIONS", "can_transition", "ignore", "supersede", "transition"]
