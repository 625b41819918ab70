"""
Deterministic hashing for deduplication.

Two kinds of hash are used:

- ``content_sha256`` - full SHA-256 of downloaded bytes. This is the
  document's content identity: two URLs serving the same PDF collapse to
  one document.
- ``compute_hash`` - truncated SHA-256 over a record's natural key, used to
  derive stable ids (facts ids, distribution ids) and idempotency keys.

Examples:
    >>> a = compute_hash("FUNO11", "2024-02-15", "0.5")
    >>> a == compute_hash("FUNO11", "2024-02-15", "0.5")
    True
    >>> len(content_sha256(b"%PDF-1.7"))
    64

Tags:
    hashing, deduplication, idempotency, content-addressing
"""

from __future__ import annotations

import hashlib


def compute_hash(*values, length: int = 32) -> str:
    """Hash values joined by ``|``; ``None`` becomes an empty string."""
    content = "|".join("" if v is None else str(v) for v in values)
    return hashlib.sha256(content.encode()).hexdigest()[:length]


def content_sha256(content: bytes) -> str:
    """Lowercase hex SHA-256 of raw content."""
    return hashlib.sha256(content).hexdigest()


__all__ = ["compute_hash", "content_sha256"]
