"""
Domain models for the ingestion pipeline.

These lightweight dataclasses describe the rows the job queue, sync
tracker and identity resolver pass around. They avoid business logic so
they can be shared by repositories, services and job handlers.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# Job lifecycle: queued -> processing -> completed | queued (retry) | failed
JOB_QUEUED = "queued"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_STATUSES = (JOB_QUEUED, JOB_PROCESSING, JOB_COMPLETED, JOB_FAILED)
JOB_TERMINAL_STATUSES = frozenset({JOB_COMPLETED, JOB_FAILED})

# Job kinds; sync jobs are "sync_<service>"
KIND_NORMALIZE = "normalize"
KIND_EMBED = "embed"
KIND_INSIGHT = "insight"
SYNC_KIND_PREFIX = "sync_"

SESSION_IN_PROGRESS = "in_progress"
SESSION_COMPLETED = "completed"
SESSION_FAILED = "failed"
SESSION_CANCELLED = "cancelled"
SESSION_FINAL_STATUSES = frozenset({SESSION_COMPLETED, SESSION_FAILED})

EXTRACTION_PENDING = "pending"
EXTRACTION_EXTRACTED = "extracted"
EXTRACTION_IGNORED = "ignored"
EXTRACTION_FAILED = "failed"

IDENTITY_EMAIL = "email"
IDENTITY_PHONE = "phone"
IDENTITY_HANDLE = "handle"
IDENTITY_PROVIDER_ID = "provider_id"
IDENTITY_KINDS = (IDENTITY_EMAIL, IDENTITY_PHONE, IDENTITY_HANDLE, IDENTITY_PROVIDER_ID)

# Order in which sibling identities of one raw event are tried before creating a contact
MERGE_PRIORITY = (IDENTITY_EMAIL, IDENTITY_PHONE, IDENTITY_HANDLE)

RESOLUTION_MATCHED = "matched"
RESOLUTION_MERGED = "merged"
RESOLUTION_CREATED = "created"
RESOLUTION_IGNORED = "ignored"


def sync_kind(service: str) -> str:
    return f"{SYNC_KIND_PREFIX}{service}"


def service_from_kind(kind: str) -> str | None:
    if kind.startswith(SYNC_KIND_PREFIX) and len(kind) > len(SYNC_KIND_PREFIX):
        return kind[len(SYNC_KIND_PREFIX) :]
    return None


@dataclass(slots=True)
class Job:
    """Represents a jobs row."""

    id: str
    user_id: str
    kind: str
    status: str
    payload: dict[str, Any]
    attempts: int
    max_attempts: int
    batch_id: str | None = None
    last_error: str | None = None
    worker_id: str | None = None
    claimed_at: datetime | None = None
    run_after: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts >= self.max_attempts


@dataclass(slots=True)
class SyncProgress:
    total_items: int | None = None
    imported_items: int = 0
    processed_items: int = 0
    failed_items: int = 0
    percentage: int | None = None


@dataclass(slots=True)
class SyncSession:
    """Represents a sync_sessions row."""

    id: str
    user_id: str
    service: str
    status: str
    progress: SyncProgress
    preferences: dict[str, Any] = field(default_factory=dict)
    job_id: str | None = None
    cursor: str | None = None
    current_step: str | None = None
    error_details: dict[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_update_at: datetime | None = None


@dataclass(slots=True)
class BatchCounts:
    """Per-batch increments reported to a sync session."""

    imported: int = 0
    processed: int = 0
    failed: int = 0

    def __post_init__(self) -> None:
        if min(self.imported, self.processed, self.failed) < 0:
            raise ValueError("Batch counts cannot be negative")


@dataclass(slots=True)
class RawEvent:
    """Represents a raw_events row. The payload is never rewritten."""

    id: str
    user_id: str
    provider: str
    source_id: str
    payload: dict[str, Any]
    extraction_status: str = EXTRACTION_PENDING
    occurred_at: datetime | None = None
    contact_id: str | None = None
    batch_id: str | None = None
    sync_session_id: str | None = None
    extraction_error: str | None = None


@dataclass(slots=True)
class NewRawEvent:
    """Raw event as returned by an ingestion adapter, before it has an id."""

    provider: str
    source_id: str
    payload: dict[str, Any]
    occurred_at: datetime | None = None


@dataclass(slots=True)
class ContactIdentity:
    id: str
    user_id: str
    contact_id: str
    kind: str
    normalized_value: str
    confidence: float = 1.0
    created_at: datetime | None = None


@dataclass(slots=True)
class IgnoredIdentifier:
    user_id: str
    kind: str
    value: str
    reason: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class ContactCandidate:
    """Existing contact considered by the fuzzy name matcher."""

    id: str
    display_name: str | None


@dataclass(slots=True)
class IdentityCandidate:
    """One identity observed in a raw event, before normalization."""

    kind: str
    raw_value: str
    display_name: str | None = None


@dataclass(slots=True)
class Participant:
    """A person seen in a raw event, with every identity observed for them."""

    identities: list[IdentityCandidate]
    display_name: str | None = None
    role: str | None = None


@dataclass(slots=True)
class Resolution:
    """Outcome of resolving one identity."""

    status: str
    contact_id: str | None = None
    confidence: float = 0.0
    matched_by: str | None = None
    normalized_value: str | None = None

    @property
    def is_ignored(self) -> bool:
        return self.status == RESOLUTION_IGNORED


@dataclass(slots=True)
class Interaction:
    id: str
    user_id: str
    contact_id: str | None
    type: str
    occurred_at: datetime
    content_hash: str
    source: str | None = None
    source_id: str | None = None
    source_meta: dict[str, Any] = field(default_factory=dict)
    batch_id: str | None = None


@dataclass(slots=True)
class NewInteraction:
    user_id: str
    contact_id: str
    type: str
    occurred_at: datetime
    content_hash: str
    source: str
    source_id: str
    source_meta: dict[str, Any] = field(default_factory=dict)
    batch_id: str | None = None


@dataclass(slots=True)
class NormalizationSummary:
    """Counts produced by one pipeline run over a batch of raw events."""

    extracted: int = 0
    ignored: int = 0
    failed: int = 0
    retryable: int = 0
    interactions_created: int = 0
    contact_ids: list[str] = field(default_factory=list)
    interaction_ids: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.extracted + self.ignored + self.failed + self.retryable

    @property
    def settled(self) -> int:
        return self.extracted + self.ignored
