import pytest

from app.db.helpers import DatabaseError
from app.features.ingestion.domain.errors import ExternalServiceTimeout, TransientJobError
from app.features.ingestion.domain.models import KIND_EMBED, KIND_INSIGHT, KIND_NORMALIZE
from app.features.ingestion.domain.payloads import validate_job_payload
from app.features.ingestion.jobs import (
    EmbedJobHandler,
    InsightJobHandler,
    JobContext,
    NormalizeJobHandler,
)
from app.features.ingestion.services import NormalizationPipeline, SyncSessionTracker

USER_ID = "user-123"


def gmail_payload(message_id, sender):
    return {"id": message_id, "from": sender, "to": "me@example.com", "internalDate": "1704110400000"}


def seed_session_batch(raw_repo, session_id):
    for message_id, payload in (
        ("m-1", gmail_payload("m-1", "alice@example.com")),
        ("m-2", gmail_payload("m-2", "bob@example.com")),
        ("m-3", {"id": "m-3", "from": "x@example.com"}),
    ):
        raw_repo.add(USER_ID, "gmail", message_id, payload, "b1", sync_session_id=session_id)


async def claim(queue, kind, payload):
    await queue.enqueue(USER_ID, kind, payload, batch_id=payload.get("batch_id"))
    job = await queue.claim_next("worker-1", kinds=[kind])
    return job, JobContext(worker_id="worker-1", payload=validate_job_payload(kind, job.payload))


@pytest.mark.asyncio
async def test_normalize_reports_counts_and_fans_out(queue, tracker, pipeline, raw_repo, job_repo):
    session_id = await tracker.start(USER_ID, "gmail")
    seed_session_batch(raw_repo, session_id)
    handler = NormalizeJobHandler(queue=queue, pipeline=pipeline, tracker=tracker)
    job, context = await claim(
        queue,
        KIND_NORMALIZE,
        {"batch_id": "b1", "sync_session_id": session_id, "owner_identifiers": ["me@example.com"]},
    )

    result = await handler(job, context)

    assert result["interactions_created"] == 2
    assert result["failed"] == 1

    progress = (await tracker.get(session_id)).progress
    assert progress.processed_items == 2
    assert progress.failed_items == 1

    [embed] = job_repo.by_kind(KIND_EMBED)
    assert embed.batch_id == "b1"
    assert len(embed.payload["interaction_ids"]) == 2
    [insight] = job_repo.by_kind(KIND_INSIGHT)
    assert len(insight.payload["contact_ids"]) == 2


@pytest.mark.asyncio
async def test_normalize_without_new_interactions_enqueues_nothing(
    queue, tracker, pipeline, job_repo
):
    handler = NormalizeJobHandler(queue=queue, pipeline=pipeline, tracker=tracker)
    job, context = await claim(queue, KIND_NORMALIZE, {"batch_id": "empty"})

    result = await handler(job, context)

    assert result["interactions_created"] == 0
    assert job_repo.by_kind(KIND_EMBED) == []
    assert job_repo.by_kind(KIND_INSIGHT) == []


@pytest.mark.asyncio
async def test_normalize_tolerates_missing_session(queue, tracker, pipeline, raw_repo):
    raw_repo.add(USER_ID, "gmail", "m-1", gmail_payload("m-1", "alice@example.com"), "b1")
    handler = NormalizeJobHandler(queue=queue, pipeline=pipeline, tracker=tracker)
    job, context = await claim(
        queue, KIND_NORMALIZE, {"batch_id": "b1", "sync_session_id": "session-gone"}
    )

    result = await handler(job, context)

    assert result["extracted"] == 1


class ReportFailsOnce:
    """Session store whose first settled-count report times out."""

    def __init__(self, repository):
        self.repository = repository
        self.failures = 1

    def __getattr__(self, name):
        return getattr(self.repository, name)

    async def report_settled(self, session_id):
        if self.failures:
            self.failures -= 1
            raise ExternalServiceTimeout("session store timed out", operation="report_settled")
        return await self.repository.report_settled(session_id)


@pytest.mark.asyncio
async def test_counts_survive_a_failed_report(queue, session_repo, pipeline, raw_repo, job_repo):
    tracker = SyncSessionTracker(ReportFailsOnce(session_repo))
    session_id = await tracker.start(USER_ID, "gmail")
    seed_session_batch(raw_repo, session_id)
    handler = NormalizeJobHandler(queue=queue, pipeline=pipeline, tracker=tracker)
    job, context = await claim(
        queue, KIND_NORMALIZE, {"batch_id": "b1", "sync_session_id": session_id}
    )

    with pytest.raises(ExternalServiceTimeout):
        await handler(job, context)
    progress = (await tracker.get(session_id)).progress
    assert (progress.processed_items, progress.failed_items) == (0, 0)

    # The retry finds nothing pending but still records the settled events
    result = await handler(job, context)

    assert result["extracted"] == 0
    progress = (await tracker.get(session_id)).progress
    assert (progress.processed_items, progress.failed_items) == (2, 1)
    assert len(job_repo.by_kind(KIND_EMBED)) == 1

    await handler(job, context)
    progress = (await tracker.get(session_id)).progress
    assert (progress.processed_items, progress.failed_items) == (2, 1)


class DownInteractions:
    async def insert_if_absent(self, interaction):
        raise DatabaseError("connection refused", operation="insert", recoverable=True)


@pytest.mark.asyncio
async def test_normalize_raises_transient_when_events_remain_pending(
    queue, tracker, raw_repo, resolver
):
    raw_repo.add(USER_ID, "gmail", "m-1", gmail_payload("m-1", "alice@example.com"), "b1")
    pipeline = NormalizationPipeline(raw_repo, DownInteractions(), resolver)
    handler = NormalizeJobHandler(queue=queue, pipeline=pipeline, tracker=tracker)
    job, context = await claim(queue, KIND_NORMALIZE, {"batch_id": "b1"})

    with pytest.raises(TransientJobError):
        await handler(job, context)


class RecordingEmbedder:
    def __init__(self):
        self.calls = []

    async def embed_interactions(self, user_id, interactions):
        self.calls.append([i.id for i in interactions])
        return len(interactions)


class ConstantScorer:
    async def score_contact(self, user_id, contact_id, interactions):
        return 0.5 + len(interactions)


async def seed_interactions(pipeline, raw_repo):
    raw_repo.add(USER_ID, "gmail", "m-1", gmail_payload("m-1", "alice@example.com"), "b1")
    raw_repo.add(USER_ID, "gmail", "m-2", gmail_payload("m-2", "bob@example.com"), "b1")
    return await pipeline.run(USER_ID, batch_id="b1")


@pytest.mark.asyncio
async def test_embed_handler_uses_batch_when_no_ids(queue, pipeline, raw_repo, interaction_repo):
    await seed_interactions(pipeline, raw_repo)
    embedder = RecordingEmbedder()
    handler = EmbedJobHandler(embedder, interaction_repo)
    job, context = await claim(queue, KIND_EMBED, {"batch_id": "b1"})

    assert await handler(job, context) == {"embedded": 2}
    assert len(embedder.calls[0]) == 2


@pytest.mark.asyncio
async def test_embed_handler_without_embedder_is_a_no_op(queue, interaction_repo):
    handler = EmbedJobHandler(None, interaction_repo)
    job, context = await claim(queue, KIND_EMBED, {"batch_id": "b1"})

    assert await handler(job, context) == {"skipped": True}


@pytest.mark.asyncio
async def test_insight_handler_stores_scores(
    queue, pipeline, raw_repo, interaction_repo, identity_repo
):
    summary = await seed_interactions(pipeline, raw_repo)
    handler = InsightJobHandler(ConstantScorer(), interaction_repo, identity_repo)
    job, context = await claim(queue, KIND_INSIGHT, {"contact_ids": summary.contact_ids})

    assert await handler(job, context) == {"scored": 2}
    assert {c["insight_score"] for c in identity_repo.contacts.values()} == {1.5}
