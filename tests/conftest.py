import asyncio
import copy
import dataclasses
import itertools
import math
from datetime import UTC, datetime, timedelta

import pytest

from app.features.ingestion.domain import (
    ContactCandidate,
    ContactIdentity,
    IgnoredIdentifier,
    Interaction,
    Job,
    RawEvent,
    SyncProgress,
    SyncSession,
)
from app.features.ingestion.domain.identifiers import normalize_display_name
from app.features.ingestion.domain.models import (
    EXTRACTION_FAILED,
    EXTRACTION_PENDING,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_QUEUED,
    SESSION_FAILED,
    SESSION_IN_PROGRESS,
)
from app.features.ingestion.services import (
    IdentityResolver,
    IgnoredIdentifierService,
    JobQueue,
    NormalizationPipeline,
    SyncSessionTracker,
)

USER_ID = "user-123"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeJobRepository:
    """In-memory jobs table; claim is atomic because nothing awaits mid-update."""

    def __init__(self, clock: FakeClock, sessions=None):
        self.clock = clock
        self.sessions = sessions
        self.jobs: dict[str, Job] = {}
        self._ids = itertools.count(1)

    async def create_job(self, user_id, kind, payload, batch_id, max_attempts):
        now = self.clock.now
        job = Job(
            id=f"job-{next(self._ids):04d}",
            user_id=user_id,
            kind=kind,
            status=JOB_QUEUED,
            payload=copy.deepcopy(payload),
            attempts=0,
            max_attempts=max_attempts,
            batch_id=batch_id,
            run_after=now,
            created_at=now,
            updated_at=now,
        )
        self.jobs[job.id] = job
        return dataclasses.replace(job)

    async def load_job(self, job_id):
        job = self.jobs.get(job_id)
        return dataclasses.replace(job) if job else None

    def _abandoned_before(self, seconds):
        return self.clock.now - timedelta(seconds=seconds)

    def _claimable(self, job, visibility_timeout_seconds):
        if job.status == JOB_QUEUED:
            return job.run_after is None or job.run_after <= self.clock.now
        if job.status == JOB_PROCESSING:
            return (
                job.attempts < job.max_attempts
                and job.claimed_at < self._abandoned_before(visibility_timeout_seconds)
            )
        return False

    async def claim_next(self, worker_id, visibility_timeout_seconds, kinds=None):
        await asyncio.sleep(0)
        candidates = sorted(
            (
                job
                for job in self.jobs.values()
                if self._claimable(job, visibility_timeout_seconds)
                and (not kinds or job.kind in kinds)
            ),
            key=lambda job: (job.created_at, job.id),
        )
        if not candidates:
            return None
        job = candidates[0]
        job.status = JOB_PROCESSING
        job.worker_id = worker_id
        job.claimed_at = self.clock.now
        job.attempts += 1
        job.updated_at = self.clock.now
        return dataclasses.replace(job)

    def _owned(self, job_id, worker_id):
        job = self.jobs.get(job_id)
        if job and job.status == JOB_PROCESSING and job.worker_id == worker_id:
            return job
        return None

    async def mark_completed(self, job_id, worker_id):
        job = self._owned(job_id, worker_id)
        if not job:
            return False
        job.status = "completed"
        job.last_error = None
        return True

    async def requeue(self, job_id, worker_id, error_message, delay_seconds):
        job = self._owned(job_id, worker_id)
        if not job or job.attempts >= job.max_attempts:
            return False
        job.status = JOB_QUEUED
        job.last_error = error_message
        job.worker_id = None
        job.claimed_at = None
        job.run_after = self.clock.now + timedelta(seconds=delay_seconds)
        return True

    async def mark_failed(self, job_id, worker_id, error_message):
        job = self._owned(job_id, worker_id)
        if not job:
            return False
        job.status = JOB_FAILED
        job.last_error = error_message
        return True

    async def fail_exhausted_abandoned(self, visibility_timeout_seconds):
        cutoff = self._abandoned_before(visibility_timeout_seconds)
        failed = 0
        for job in self.jobs.values():
            if (
                job.status == JOB_PROCESSING
                and job.attempts >= job.max_attempts
                and job.claimed_at < cutoff
            ):
                job.status = JOB_FAILED
                job.last_error = f"abandoned after {job.attempts} attempts"
                failed += 1
                if self.sessions is not None:
                    self.sessions.fail_owned_by(job.id, job.last_error)
        return failed

    async def count_abandoned(self, visibility_timeout_seconds):
        cutoff = self._abandoned_before(visibility_timeout_seconds)
        return sum(
            1
            for job in self.jobs.values()
            if job.status == JOB_PROCESSING
            and job.attempts < job.max_attempts
            and job.claimed_at < cutoff
        )

    async def list_jobs(
        self, user_id, *, statuses=None, kinds=None, batch_id=None, limit=50, offset=0
    ):
        jobs = [
            dataclasses.replace(job)
            for job in self.jobs.values()
            if job.user_id == user_id
            and (not statuses or job.status in statuses)
            and (not kinds or job.kind in kinds)
            and (not batch_id or job.batch_id == batch_id)
        ]
        return jobs[offset : offset + limit]

    async def count_jobs(self, user_id, batch_id=None):
        counts: dict[tuple[str, str], int] = {}
        for job in self.jobs.values():
            if job.user_id != user_id or (batch_id and job.batch_id != batch_id):
                continue
            counts[(job.status, job.kind)] = counts.get((job.status, job.kind), 0) + 1
        return [
            {"status": status, "kind": kind, "count": count}
            for (status, kind), count in counts.items()
        ]

    async def list_stuck_jobs(self, user_id, visibility_timeout_seconds, limit=10):
        cutoff = self._abandoned_before(visibility_timeout_seconds)
        return [
            dataclasses.replace(job)
            for job in self.jobs.values()
            if job.user_id == user_id and job.status == JOB_PROCESSING and job.claimed_at < cutoff
        ][:limit]

    def by_kind(self, kind):
        return [job for job in self.jobs.values() if job.kind == kind]


class FakeSyncSessionRepository:
    def __init__(self, raw_events=None, jobs=None):
        self.raw_events = raw_events
        self.jobs = jobs
        self.sessions: dict[str, SyncSession] = {}
        self._ids = itertools.count(1)

    @staticmethod
    def _percentage(progress: SyncProgress):
        if not progress.total_items:
            return progress.percentage
        current = min(100, math.floor(100 * progress.processed_items / progress.total_items))
        return max(progress.percentage or 0, current)

    def _copy(self, session):
        return copy.deepcopy(session) if session else None

    async def insert_in_progress(self, user_id, service, preferences, job_id):
        await asyncio.sleep(0)
        for session in self.sessions.values():
            if (
                session.user_id == user_id
                and session.service == service
                and session.status == SESSION_IN_PROGRESS
            ):
                return None
        session = SyncSession(
            id=f"session-{next(self._ids)}",
            user_id=user_id,
            service=service,
            status=SESSION_IN_PROGRESS,
            progress=SyncProgress(),
            preferences=dict(preferences),
            job_id=job_id,
        )
        self.sessions[session.id] = session
        return self._copy(session)

    async def get_session(self, session_id):
        return self._copy(self.sessions.get(session_id))

    async def get_active_session(self, user_id, service):
        for session in self.sessions.values():
            if (
                session.user_id == user_id
                and session.service == service
                and session.status == SESSION_IN_PROGRESS
            ):
                return self._copy(session)
        return None

    async def list_sessions(self, user_id, service=None, status=None, limit=20):
        return [
            self._copy(session)
            for session in self.sessions.values()
            if session.user_id == user_id
            and (not service or session.service == service)
            and (not status or session.status == status)
        ][:limit]

    async def increment_counters(self, session_id, imported, processed, failed):
        session = self.sessions.get(session_id)
        if session is None:
            return None
        progress = session.progress
        progress.imported_items += imported
        progress.processed_items += processed
        progress.failed_items += failed
        if progress.total_items is not None:
            progress.total_items = max(
                progress.total_items, progress.processed_items + progress.failed_items
            )
        progress.percentage = self._percentage(progress)
        return self._copy(session)

    async def raise_total(self, session_id, total):
        session = self.sessions.get(session_id)
        if session is None:
            return None
        progress = session.progress
        progress.total_items = max(
            progress.total_items or 0, total, progress.processed_items + progress.failed_items
        )
        progress.percentage = self._percentage(progress)
        return self._copy(session)

    async def report_settled(self, session_id):
        processed = failed = 0
        for event in self.raw_events.events.values():
            if (
                event.sync_session_id != session_id
                or event.extraction_status == EXTRACTION_PENDING
                or event.id in self.raw_events.counted
            ):
                continue
            self.raw_events.counted.add(event.id)
            if event.extraction_status == EXTRACTION_FAILED:
                failed += 1
            else:
                processed += 1
        return await self.increment_counters(session_id, 0, processed, failed)

    async def update_job_id(self, session_id, job_id):
        session = self.sessions.get(session_id)
        if session is None or session.status != SESSION_IN_PROGRESS:
            return False
        session.job_id = job_id
        return True

    async def fail_orphaned(self, session_id, error_details):
        session = self.sessions.get(session_id)
        if session is None or session.status != SESSION_IN_PROGRESS or self.jobs is None:
            return None
        owner = self.jobs.jobs.get(session.job_id)
        if owner is None or owner.status != JOB_FAILED:
            return None
        return await self.finish(session_id, SESSION_FAILED, error_details)

    def fail_owned_by(self, job_id, error):
        for session in self.sessions.values():
            if session.job_id == job_id and session.status == SESSION_IN_PROGRESS:
                session.status = SESSION_FAILED
                session.error_details = {**session.error_details, "error": error, "job_id": job_id}

    async def update_cursor(self, session_id, cursor):
        self.sessions[session_id].cursor = cursor

    async def update_step(self, session_id, step):
        self.sessions[session_id].current_step = step

    async def finish(self, session_id, status, error_details=None):
        session = self.sessions.get(session_id)
        if session is None or session.status != SESSION_IN_PROGRESS:
            return None
        session.status = status
        session.error_details = {**session.error_details, **(error_details or {})}
        return self._copy(session)

    async def get_status(self, session_id):
        session = self.sessions.get(session_id)
        return session.status if session else None


class FakeRawEventRepository:
    def __init__(self):
        self.events: dict[str, RawEvent] = {}
        self.errors: list[dict] = []
        self.counted: set[str] = set()
        self._ids = itertools.count(1)

    def add(
        self,
        user_id,
        provider,
        source_id,
        payload,
        batch_id=None,
        occurred_at=None,
        sync_session_id=None,
    ):
        event = RawEvent(
            id=f"raw-{next(self._ids)}",
            user_id=user_id,
            provider=provider,
            source_id=source_id,
            payload=payload,
            occurred_at=occurred_at,
            batch_id=batch_id,
            sync_session_id=sync_session_id,
        )
        self.events[event.id] = event
        return event

    def _find(self, user_id, provider, source_id):
        for event in self.events.values():
            if (event.user_id, event.provider, event.source_id) == (user_id, provider, source_id):
                return event
        return None

    async def store_page(self, user_id, events, batch_id, sync_session_id):
        inserted = batched = 0
        for new in events:
            existing = self._find(user_id, new.provider, new.source_id)
            if existing is None:
                event = self.add(
                    user_id, new.provider, new.source_id, new.payload, batch_id, new.occurred_at
                )
                event.sync_session_id = sync_session_id
                inserted += 1
                batched += 1
            elif existing.extraction_status == EXTRACTION_PENDING:
                existing.batch_id = batch_id
                existing.sync_session_id = sync_session_id
                batched += 1
        return inserted, batched

    async def load_pending(self, user_id, *, batch_id=None, raw_event_ids=None, limit=500):
        return [
            dataclasses.replace(event)
            for event in self.events.values()
            if event.user_id == user_id
            and event.extraction_status == EXTRACTION_PENDING
            and (not batch_id or event.batch_id == batch_id)
            and (not raw_event_ids or event.id in raw_event_ids)
        ][:limit]

    async def mark_extraction(self, raw_event_id, status, *, contact_id=None, error=None):
        event = self.events.get(raw_event_id)
        if event is None or event.extraction_status != EXTRACTION_PENDING:
            return False
        event.extraction_status = status
        event.contact_id = contact_id or event.contact_id
        event.extraction_error = error
        return True

    async def record_error(self, raw_event_id, user_id, provider, stage, error, context=None):
        self.errors.append(
            {"raw_event_id": raw_event_id, "stage": stage, "error": error, "context": context}
        )


class FakeContactIdentityRepository:
    """Unique (user, kind, value) with a yield between contact and identity insert."""

    def __init__(self):
        self.contacts: dict[str, dict] = {}
        self.identities: dict[tuple[str, str, str], ContactIdentity] = {}
        self._contact_ids = itertools.count(1)
        self._identity_ids = itertools.count(1)

    async def find_contact_id(self, user_id, kind, normalized_value):
        identity = self.identities.get((user_id, kind, normalized_value))
        return identity.contact_id if identity else None

    def _insert_identity(self, user_id, contact_id, kind, value, confidence):
        key = (user_id, kind, value)
        if key in self.identities:
            return None
        self.identities[key] = ContactIdentity(
            id=f"identity-{next(self._identity_ids)}",
            user_id=user_id,
            contact_id=contact_id,
            kind=kind,
            normalized_value=value,
            confidence=confidence,
        )
        return contact_id

    async def create_contact_with_identity(
        self, user_id, kind, normalized_value, *, display_name=None, source=None
    ):
        contact_id = f"contact-{next(self._contact_ids)}"
        await asyncio.sleep(0)
        if self._insert_identity(user_id, contact_id, kind, normalized_value, 1.0) is None:
            return None
        self.contacts[contact_id] = {
            "id": contact_id,
            "user_id": user_id,
            "display_name": display_name,
            "source": source,
            "insight_score": None,
        }
        return contact_id

    async def insert_identity(self, user_id, contact_id, kind, normalized_value, confidence=1.0):
        await asyncio.sleep(0)
        return self._insert_identity(user_id, contact_id, kind, normalized_value, confidence)

    async def fetch_name_candidates(self, user_id, name_patterns, limit):
        tokens = [pattern.strip("%").replace("\\", "") for pattern in name_patterns]
        matches = []
        for contact in self.contacts.values():
            name = normalize_display_name(contact["display_name"])
            if contact["user_id"] == user_id and name and any(t in name for t in tokens):
                matches.append(ContactCandidate(id=contact["id"], display_name=contact["display_name"]))
        return matches[:limit]

    async def list_identities(self, user_id, contact_id):
        return [
            identity
            for identity in self.identities.values()
            if identity.user_id == user_id and identity.contact_id == contact_id
        ]

    async def merge_contacts(self, user_id, from_contact_id, to_contact_id):
        for identity in self.identities.values():
            if identity.user_id == user_id and identity.contact_id == from_contact_id:
                identity.contact_id = to_contact_id
        self.contacts.pop(from_contact_id, None)

    async def update_insight_score(self, user_id, contact_id, score):
        self.contacts[contact_id]["insight_score"] = score


class FakeIgnoredIdentifierRepository:
    def __init__(self):
        self.entries: dict[tuple[str, str, str], IgnoredIdentifier] = {}

    async def is_ignored(self, user_id, kind, value):
        return (user_id, kind, value) in self.entries

    async def add(self, user_id, kind, value, reason):
        entry = IgnoredIdentifier(user_id=user_id, kind=kind, value=value, reason=reason)
        self.entries[(user_id, kind, value)] = entry
        return entry

    async def remove(self, user_id, kind, value):
        return self.entries.pop((user_id, kind, value), None) is not None

    async def list_identifiers(self, user_id, kind=None, limit=50, offset=0):
        entries = [
            entry
            for entry in self.entries.values()
            if entry.user_id == user_id and (not kind or entry.kind == kind)
        ]
        return entries[offset : offset + limit]


class FakeInteractionRepository:
    def __init__(self):
        self.interactions: dict[str, Interaction] = {}
        self._ids = itertools.count(1)

    async def insert_if_absent(self, interaction):
        for existing in self.interactions.values():
            if (existing.user_id, existing.content_hash) == (
                interaction.user_id,
                interaction.content_hash,
            ):
                return None
        row = Interaction(
            id=f"interaction-{next(self._ids)}",
            user_id=interaction.user_id,
            contact_id=interaction.contact_id,
            type=interaction.type,
            occurred_at=interaction.occurred_at,
            content_hash=interaction.content_hash,
            source=interaction.source,
            source_id=interaction.source_id,
            source_meta=interaction.source_meta,
            batch_id=interaction.batch_id,
        )
        self.interactions[row.id] = row
        return row.id

    async def list_for_batch(self, user_id, batch_id):
        return [
            i for i in self.interactions.values() if i.user_id == user_id and i.batch_id == batch_id
        ]

    async def list_by_ids(self, user_id, interaction_ids):
        return [
            i for i in self.interactions.values() if i.user_id == user_id and i.id in interaction_ids
        ]

    async def list_for_contact(self, user_id, contact_id, limit=50):
        return [
            i
            for i in self.interactions.values()
            if i.user_id == user_id and i.contact_id == contact_id
        ][:limit]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def job_repo(clock, session_repo):
    repo = FakeJobRepository(clock, sessions=session_repo)
    session_repo.jobs = repo
    return repo


@pytest.fixture
def queue(job_repo):
    return JobQueue(
        job_repo,
        max_attempts=5,
        retry_base_seconds=30,
        retry_max_seconds=3600,
        visibility_timeout_seconds=600,
    )


@pytest.fixture
def session_repo(raw_repo):
    return FakeSyncSessionRepository(raw_events=raw_repo)


@pytest.fixture
def tracker(session_repo, job_repo):
    return SyncSessionTracker(session_repo)


@pytest.fixture
def raw_repo():
    return FakeRawEventRepository()


@pytest.fixture
def identity_repo():
    return FakeContactIdentityRepository()


@pytest.fixture
def ignored_repo():
    return FakeIgnoredIdentifierRepository()


@pytest.fixture
def interaction_repo():
    return FakeInteractionRepository()


@pytest.fixture
def ignored_service(ignored_repo):
    return IgnoredIdentifierService(ignored_repo)


@pytest.fixture
def resolver(identity_repo, ignored_service):
    return IdentityResolver(
        identity_repo, ignored_service, fuzzy_threshold=0.88, fuzzy_candidate_limit=50
    )


@pytest.fixture
def pipeline(raw_repo, interaction_repo, resolver):
    return NormalizationPipeline(raw_repo, interaction_repo, resolver, batch_limit=500)
