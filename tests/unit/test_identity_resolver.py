import asyncio

import pytest

from app.features.ingestion.domain import IdentityCandidate
from app.features.ingestion.domain.errors import InvalidIdentifierError
from app.features.ingestion.services.identity_resolver import name_patterns, name_similarity

USER_ID = "user-123"


def email(value, name=None):
    return IdentityCandidate("email", value, name)


def phone(value):
    return IdentityCandidate("phone", value)


@pytest.mark.asyncio
async def test_new_identity_creates_contact_then_matches(resolver, identity_repo):
    created = await resolver.resolve(USER_ID, email("Alice@Example.com", "Alice"))
    matched = await resolver.resolve(USER_ID, email("alice@example.com"))

    assert created.status == "created"
    assert matched.status == "matched"
    assert matched.contact_id == created.contact_id
    assert matched.confidence == 1.0
    assert len(identity_repo.contacts) == 1


@pytest.mark.asyncio
async def test_identities_are_scoped_per_user(resolver):
    mine = await resolver.resolve(USER_ID, email("alice@example.com"))
    theirs = await resolver.resolve("user-456", email("alice@example.com"))

    assert mine.contact_id != theirs.contact_id


@pytest.mark.asyncio
async def test_ignored_identifier_resolves_to_nothing(resolver, ignored_service, identity_repo):
    await ignored_service.add(USER_ID, "email", "NoReply@Example.com", reason="bot")

    resolution = await resolver.resolve(USER_ID, email("noreply@example.com"))

    assert resolution.is_ignored
    assert resolution.contact_id is None
    assert identity_repo.contacts == {}


@pytest.mark.asyncio
async def test_sibling_identity_pulls_new_email_onto_known_contact(resolver, identity_repo):
    known = await resolver.resolve(USER_ID, phone("+1 415 555 0100"))

    resolution = await resolver.resolve(
        USER_ID, email("alice@work.example"), related=[phone("(415) 555-0100")]
    )

    assert resolution.status == "merged"
    assert resolution.contact_id == known.contact_id
    assert resolution.matched_by == "phone"
    assert len(identity_repo.contacts) == 1
    assert await identity_repo.find_contact_id(USER_ID, "email", "alice@work.example") == (
        known.contact_id
    )


@pytest.mark.asyncio
async def test_email_siblings_are_tried_before_phone(resolver):
    by_email = await resolver.resolve(USER_ID, email("alice@example.com"))
    await resolver.resolve(USER_ID, phone("+442079460958"))

    resolution = await resolver.resolve(
        USER_ID,
        IdentityCandidate("handle", "@alice"),
        related=[phone("+442079460958"), email("alice@example.com")],
    )

    assert resolution.contact_id == by_email.contact_id
    assert resolution.matched_by == "email"


@pytest.mark.asyncio
async def test_close_display_name_merges_with_score(resolver, identity_repo):
    john = await resolver.resolve(USER_ID, email("john@example.com", "John Smith"))

    resolution = await resolver.resolve(USER_ID, email("jsmith@other.example", "Jon Smith"))

    assert resolution.status == "merged"
    assert resolution.contact_id == john.contact_id
    assert resolution.matched_by == "name"
    assert 0.88 <= resolution.confidence < 1.0


@pytest.mark.asyncio
async def test_distant_display_name_creates_new_contact(resolver):
    john = await resolver.resolve(USER_ID, email("john@example.com", "John Smith"))

    resolution = await resolver.resolve(USER_ID, email("jane@example.com", "Jane Smithers"))

    assert resolution.status == "created"
    assert resolution.contact_id != john.contact_id


@pytest.mark.asyncio
async def test_concurrent_resolution_yields_one_contact(resolver, identity_repo):
    results = await asyncio.gather(
        *(resolver.resolve(USER_ID, email("bob@example.com", "Bob")) for _ in range(5))
    )

    assert len({r.contact_id for r in results}) == 1
    assert len(identity_repo.contacts) == 1
    assert sum(1 for r in results if r.status == "created") == 1


@pytest.mark.asyncio
async def test_invalid_identifier_raises(resolver):
    with pytest.raises(InvalidIdentifierError):
        await resolver.resolve(USER_ID, email("nobody"))


@pytest.mark.asyncio
async def test_attach_identity_keeps_existing_owner(resolver):
    alice = await resolver.resolve(USER_ID, email("alice@example.com"))
    bob = await resolver.resolve(USER_ID, email("bob@example.com"))

    attached = await resolver.attach_identity(USER_ID, bob.contact_id, "email", "alice@example.com")

    assert attached.status == "matched"
    assert attached.contact_id == alice.contact_id


@pytest.mark.asyncio
async def test_merge_contacts_moves_identities(resolver):
    alice = await resolver.resolve(USER_ID, email("alice@example.com"))
    alias = await resolver.resolve(USER_ID, email("a.liddell@example.com"))

    survivor = await resolver.merge_contacts(USER_ID, alias.contact_id, alice.contact_id)
    identities = await resolver.list_identities(USER_ID, alice.contact_id)

    assert survivor == alice.contact_id
    assert {i.normalized_value for i in identities} == {
        "alice@example.com",
        "a.liddell@example.com",
    }
    with pytest.raises(ValueError):
        await resolver.merge_contacts(USER_ID, alice.contact_id, alice.contact_id)


def test_name_similarity_ignores_token_order():
    assert name_similarity("Smith John", "john smith") == 1.0
    assert name_similarity("", "john") == 0.0


def test_name_patterns_escape_like_wildcards():
    assert name_patterns("Ann_Marie O%Neil") == ["%ann\\_marie%", "%o\\%neil%"]
    assert name_patterns(None) == []
