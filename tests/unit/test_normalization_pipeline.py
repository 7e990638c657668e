import pytest

from app.db.helpers import DatabaseError
from app.features.ingestion.domain.models import (
    EXTRACTION_EXTRACTED,
    EXTRACTION_FAILED,
    EXTRACTION_IGNORED,
    EXTRACTION_PENDING,
)
from app.features.ingestion.services import NormalizationPipeline

USER_ID = "user-123"


def gmail_payload(message_id, sender, to="me@example.com", epoch_ms="1704110400000"):
    return {"id": message_id, "from": sender, "to": to, "internalDate": epoch_ms, "subject": "Hi"}


@pytest.mark.asyncio
async def test_batch_creates_contacts_and_interactions(pipeline, raw_repo, interaction_repo):
    raw_repo.add(USER_ID, "gmail", "m-1", gmail_payload("m-1", "Alice <alice@example.com>"), "b1")
    raw_repo.add(USER_ID, "gmail", "m-2", gmail_payload("m-2", "bob@example.com"), "b1")

    summary = await pipeline.run(USER_ID, batch_id="b1", owner_identifiers=["me@example.com"])

    assert summary.extracted == 2
    assert summary.interactions_created == 2
    assert len(summary.contact_ids) == 2
    assert {e.extraction_status for e in raw_repo.events.values()} == {EXTRACTION_EXTRACTED}
    assert {i.type for i in interaction_repo.interactions.values()} == {"email"}


@pytest.mark.asyncio
async def test_owner_is_never_resolved_into_a_contact(pipeline, raw_repo, identity_repo):
    raw_repo.add(USER_ID, "gmail", "m-1", gmail_payload("m-1", "Me <ME@example.com>"), "b1")

    summary = await pipeline.run(USER_ID, batch_id="b1", owner_identifiers=["me@example.com"])

    assert summary.ignored == 1
    assert identity_repo.contacts == {}


@pytest.mark.asyncio
async def test_rerun_after_crash_creates_nothing_twice(
    pipeline, raw_repo, interaction_repo, identity_repo
):
    event = raw_repo.add(
        USER_ID, "gmail", "m-1", gmail_payload("m-1", "alice@example.com"), "b1"
    )
    await pipeline.run(USER_ID, batch_id="b1")

    # Simulate a crash before the job completed: the event is pending again
    raw_repo.events[event.id].extraction_status = EXTRACTION_PENDING
    summary = await pipeline.run(USER_ID, batch_id="b1")

    assert summary.extracted == 1
    assert summary.interactions_created == 0
    assert len(identity_repo.contacts) == 1
    assert len(interaction_repo.interactions) == 1


@pytest.mark.asyncio
async def test_malformed_event_fails_without_aborting_batch(pipeline, raw_repo):
    bad = raw_repo.add(USER_ID, "gmail", "m-bad", {"id": "m-bad", "from": "x@example.com"}, "b1")
    raw_repo.add(USER_ID, "gmail", "m-1", gmail_payload("m-1", "alice@example.com"), "b1")

    summary = await pipeline.run(USER_ID, batch_id="b1")

    assert summary.failed == 1
    assert summary.extracted == 1
    assert raw_repo.events[bad.id].extraction_status == EXTRACTION_FAILED
    assert "MalformedEventError" in raw_repo.events[bad.id].extraction_error
    assert raw_repo.errors[0]["raw_event_id"] == bad.id


@pytest.mark.asyncio
async def test_event_with_only_ignored_participants_is_ignored(
    pipeline, raw_repo, ignored_service
):
    await ignored_service.add(USER_ID, "email", "noreply@example.com")
    event = raw_repo.add(USER_ID, "gmail", "m-1", gmail_payload("m-1", "noreply@example.com"), "b1")

    summary = await pipeline.run(USER_ID, batch_id="b1", owner_identifiers=["me@example.com"])

    assert summary.ignored == 1
    assert raw_repo.events[event.id].extraction_status == EXTRACTION_IGNORED


@pytest.mark.asyncio
async def test_ignored_sender_is_ignored_even_without_owner_identifiers(
    pipeline, raw_repo, ignored_service, identity_repo, interaction_repo
):
    await ignored_service.add(USER_ID, "email", "noreply@service.com")
    event = raw_repo.add(
        USER_ID, "gmail", "m-1", gmail_payload("m-1", "noreply@service.com"), "b1"
    )

    summary = await pipeline.run(USER_ID, batch_id="b1")

    assert summary.ignored == 1
    assert summary.extracted == 0
    assert raw_repo.events[event.id].extraction_status == EXTRACTION_IGNORED
    assert identity_repo.contacts == {}
    assert interaction_repo.interactions == {}


@pytest.mark.asyncio
async def test_recipients_of_received_mail_are_not_contacts(pipeline, raw_repo, identity_repo):
    payload = {**gmail_payload("m-1", "alice@example.com"), "cc": "bob@example.com"}
    raw_repo.add(USER_ID, "gmail", "m-1", payload, "b1")

    await pipeline.run(USER_ID, batch_id="b1")

    assert [key[2] for key in identity_repo.identities] == ["alice@example.com"]


@pytest.mark.asyncio
async def test_mail_sent_by_owner_links_to_recipients(
    pipeline, raw_repo, identity_repo, interaction_repo
):
    recipients = ["Dana <dana@example.com>", "me@example.com"]
    payload = gmail_payload("m-1", "Me <me@example.com>", to=recipients)
    raw_repo.add(USER_ID, "gmail", "m-1", payload, "b1")

    summary = await pipeline.run(USER_ID, batch_id="b1", owner_identifiers=["me@example.com"])

    assert summary.extracted == 1
    assert [key[2] for key in identity_repo.identities] == ["dana@example.com"]
    [interaction] = interaction_repo.interactions.values()
    assert identity_repo.contacts[interaction.contact_id]["display_name"] == "Dana"


class FlakyInteractions:
    """Interaction store that is down for the first `failures` inserts."""

    def __init__(self, inner, failures):
        self.inner = inner
        self.failures = failures

    async def insert_if_absent(self, interaction):
        if self.failures:
            self.failures -= 1
            raise DatabaseError("connection lost", operation="insert", recoverable=True)
        return await self.inner.insert_if_absent(interaction)


@pytest.mark.asyncio
async def test_majority_transient_failures_stay_pending_for_retry(
    raw_repo, interaction_repo, resolver
):
    pipeline = NormalizationPipeline(raw_repo, FlakyInteractions(interaction_repo, 2), resolver)
    for n in range(3):
        raw_repo.add(USER_ID, "gmail", f"m-{n}", gmail_payload(f"m-{n}", f"p{n}@example.com"), "b1")

    summary = await pipeline.run(USER_ID, batch_id="b1")

    assert summary.retryable == 2
    assert summary.extracted == 1
    assert pipeline.should_retry(summary)
    statuses = sorted(e.extraction_status for e in raw_repo.events.values())
    assert statuses == [EXTRACTION_EXTRACTED, EXTRACTION_PENDING, EXTRACTION_PENDING]
    assert len(raw_repo.errors) == 2


@pytest.mark.asyncio
async def test_minority_transient_failures_are_settled_as_failed(
    raw_repo, interaction_repo, resolver
):
    pipeline = NormalizationPipeline(raw_repo, FlakyInteractions(interaction_repo, 1), resolver)
    for n in range(3):
        raw_repo.add(USER_ID, "gmail", f"m-{n}", gmail_payload(f"m-{n}", f"p{n}@example.com"), "b1")

    summary = await pipeline.run(USER_ID, batch_id="b1")

    assert summary.retryable == 0
    assert summary.failed == 1
    assert summary.extracted == 2
    assert EXTRACTION_PENDING not in {e.extraction_status for e in raw_repo.events.values()}


@pytest.mark.asyncio
async def test_final_attempt_settles_every_pending_event(raw_repo, interaction_repo, resolver):
    pipeline = NormalizationPipeline(raw_repo, FlakyInteractions(interaction_repo, 3), resolver)
    for n in range(3):
        raw_repo.add(USER_ID, "gmail", f"m-{n}", gmail_payload(f"m-{n}", f"p{n}@example.com"), "b1")

    summary = await pipeline.run(USER_ID, batch_id="b1", final_attempt=True)

    assert summary.failed == 3
    assert summary.retryable == 0
    assert {e.extraction_status for e in raw_repo.events.values()} == {EXTRACTION_FAILED}
