"""
Domain subpackage for the ingestion feature.
"""

from .models import (
    BatchCounts,
    ContactCandidate,
    ContactIdentity,
    IdentityCandidate,
    IgnoredIdentifier,
    Interaction,
    Job,
    NewInteraction,
    NewRawEvent,
    NormalizationSummary,
    Participant,
    RawEvent,
    Resolution,
    SyncProgress,
    SyncSession,
)

__all__ = [
    "BatchCounts",
    "ContactCandidate",
    "ContactIdentity",
    "IdentityCandidate",
    "IgnoredIdentifier",
    "Interaction",
    "Job",
    "NewInteraction",
    "NewRawEvent",
    "NormalizationSummary",
    "Participant",
    "RawEvent",
    "Resolution",
    "SyncProgress",
    "SyncSession",
]
