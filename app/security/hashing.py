"""
Deterministic SHA-256 helpers for ingestion idempotency keys.

An interaction's content hash is derived only from stable provider facts
(provider, provider id, occurrence time, interaction type) so re-syncing
the same message or event always lands on the same key.
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime

__all__ = [
    "compute_digest",
    "hash_interaction",
]


def compute_digest(*parts: str, namespace: str) -> str:
    """
    Compute a namespaced hex SHA-256 digest over the given parts.

    Args:
        parts: String components, joined with a unit separator.
        namespace: Logical namespace to avoid cross-field collisions.
    """
    scoped = "\x1f".join([namespace, *(part or "" for part in parts)])
    return hashlib.sha256(scoped.encode("utf-8")).hexdigest()


def _canonical_time(occurred_at: datetime) -> str:
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=UTC)
    return occurred_at.astimezone(UTC).isoformat(timespec="seconds")


def hash_interaction(
    provider: str, source_id: str, occurred_at: datetime, interaction_type: str
) -> str:
    """Idempotency key for an interaction; timezone-equivalent times hash equal."""
    return compute_digest(
        provider,
        source_id,
        _canonical_time(occurred_at),
        interaction_type,
        namespace="interaction",
    )
