"""
Normalization pipeline: raw events -> contacts + interactions.

Only pending raw events are loaded, and interactions are keyed by a
content hash, so re-running a batch after a crash creates nothing twice.
"""

from collections.abc import Iterable
from dataclasses import dataclass

from app.config import settings
from app.features.ingestion.domain import (
    NewInteraction,
    NormalizationSummary,
    Participant,
    RawEvent,
    Resolution,
)
from app.features.ingestion.domain.errors import (
    PERMANENT,
    InvalidIdentifierError,
    classify_error,
    describe_error,
)
from app.features.ingestion.domain.extraction import extract_event
from app.features.ingestion.domain.identifiers import normalize_identifier
from app.features.ingestion.domain.models import (
    EXTRACTION_EXTRACTED,
    EXTRACTION_FAILED,
    EXTRACTION_IGNORED,
    IDENTITY_KINDS,
)
from app.features.ingestion.repository import InteractionRepository, RawEventRepository
from app.features.ingestion.services.identity_resolver import IdentityResolver
from app.infrastructure.observability.logging import get_logger
from app.security.hashing import hash_interaction

logger = get_logger(__name__)

STAGE_NORMALIZE = "normalize"


@dataclass(slots=True)
class _EventOutcome:
    status: str
    contact_id: str | None = None
    interaction_id: str | None = None
    contact_ids: tuple[str, ...] = ()


def owner_identity_keys(owner_identifiers: Iterable[str]) -> set[tuple[str, str]]:
    """(kind, normalized value) pairs for the account owner's own identifiers."""
    keys: set[tuple[str, str]] = set()
    for raw in owner_identifiers:
        for kind in IDENTITY_KINDS:
            try:
                keys.add((kind, normalize_identifier(kind, raw)))
            except InvalidIdentifierError:
                continue
    return keys


class NormalizationPipeline:
    def __init__(
        self,
        raw_events=None,
        interactions=None,
        resolver: IdentityResolver | None = None,
        *,
        batch_limit: int | None = None,
    ):
        self.raw_events = raw_events or RawEventRepository()
        self.interactions = interactions or InteractionRepository()
        self.resolver = resolver or IdentityResolver()
        self.batch_limit = batch_limit or settings.NORMALIZE_BATCH_LIMIT

    async def run(
        self,
        user_id: str,
        *,
        batch_id: str | None = None,
        raw_event_ids: list[str] | None = None,
        owner_identifiers: Iterable[str] = (),
        limit: int | None = None,
        final_attempt: bool = False,
    ) -> NormalizationSummary:
        """
        Normalize the pending raw events of a batch (or an explicit id list).

        Events that hit a transient error stay pending and are counted as
        retryable. When they are the majority and attempts remain, they are
        left for the job retry; otherwise they are settled as failed so no
        event is stranded in pending.
        """
        events = await self.raw_events.load_pending(
            user_id,
            batch_id=batch_id,
            raw_event_ids=raw_event_ids,
            limit=limit or self.batch_limit,
        )
        summary = NormalizationSummary()
        if not events:
            logger.debug("No pending raw events", user_id=user_id, batch_id=batch_id)
            return summary

        owner_keys = owner_identity_keys(owner_identifiers)
        retryable: list[tuple[RawEvent, str]] = []
        touched: set[str] = set()

        for event in events:
            try:
                outcome = await self.process_event(event, owner_keys, batch_id)
            except Exception as e:
                message = describe_error(e)
                if classify_error(e) == PERMANENT:
                    await self._settle_failed(event, message)
                    summary.failed += 1
                else:
                    await self.raw_events.record_error(
                        event.id,
                        event.user_id,
                        event.provider,
                        STAGE_NORMALIZE,
                        message,
                        {"batch_id": batch_id},
                    )
                    retryable.append((event, message))
                continue

            if outcome.status == EXTRACTION_IGNORED:
                summary.ignored += 1
            else:
                summary.extracted += 1
            touched.update(outcome.contact_ids)
            if outcome.interaction_id:
                summary.interactions_created += 1
                summary.interaction_ids.append(outcome.interaction_id)

        summary.retryable = len(retryable)
        if retryable and (final_attempt or not self.should_retry(summary)):
            for event, message in retryable:
                await self._settle_failed(event, message, record=False)
            summary.failed += len(retryable)
            summary.retryable = 0

        summary.contact_ids = sorted(touched)
        logger.info(
            "Normalization batch finished",
            user_id=user_id,
            batch_id=batch_id,
            extracted=summary.extracted,
            ignored=summary.ignored,
            failed=summary.failed,
            retryable=summary.retryable,
            interactions_created=summary.interactions_created,
        )
        return summary

    @staticmethod
    def should_retry(summary: NormalizationSummary) -> bool:
        """A batch is retried when more than half of its events failed transiently."""
        return summary.total > 0 and summary.retryable * 2 > summary.total

    async def process_event(
        self,
        event: RawEvent,
        owner_keys: set[tuple[str, str]] | None = None,
        batch_id: str | None = None,
    ) -> _EventOutcome:
        extracted = extract_event(event)
        owner_keys = owner_keys or set()

        contact_ids = await self._resolve_all(event, extracted.participants, owner_keys)
        if (
            not contact_ids
            and extracted.recipients
            and any(self._is_owner(p, owner_keys) for p in extracted.participants)
        ):
            # Mail the owner sent: the people it went to are the contacts
            contact_ids = await self._resolve_all(event, extracted.recipients, owner_keys)

        if not contact_ids:
            await self.raw_events.mark_extraction(event.id, EXTRACTION_IGNORED)
            return _EventOutcome(status=EXTRACTION_IGNORED)
        primary = contact_ids[0]

        interaction_id = await self.interactions.insert_if_absent(
            NewInteraction(
                user_id=event.user_id,
                contact_id=primary,
                type=extracted.interaction_type,
                occurred_at=extracted.occurred_at,
                content_hash=hash_interaction(
                    event.provider,
                    event.source_id,
                    extracted.occurred_at,
                    extracted.interaction_type,
                ),
                source=event.provider,
                source_id=event.source_id,
                source_meta={**extracted.source_meta, "raw_event_id": event.id},
                batch_id=batch_id or event.batch_id,
            )
        )
        if interaction_id is None:
            logger.debug("Interaction already exists", raw_event_id=event.id)

        await self.raw_events.mark_extraction(event.id, EXTRACTION_EXTRACTED, contact_id=primary)
        return _EventOutcome(
            status=EXTRACTION_EXTRACTED,
            contact_id=primary,
            interaction_id=interaction_id,
            contact_ids=tuple(contact_ids),
        )

    async def _resolve_all(
        self,
        event: RawEvent,
        participants: list[Participant],
        owner_keys: set[tuple[str, str]],
    ) -> list[str]:
        """Contacts of the participants in order, without duplicates."""
        contact_ids: list[str] = []
        for participant in participants:
            contact_id = await self._resolve_participant(event, participant, owner_keys)
            if contact_id is not None and contact_id not in contact_ids:
                contact_ids.append(contact_id)
        return contact_ids

    @staticmethod
    def _is_owner(participant: Participant, owner_keys: set[tuple[str, str]]) -> bool:
        for identity in participant.identities:
            try:
                value = normalize_identifier(identity.kind, identity.raw_value)
            except InvalidIdentifierError:
                continue
            if (identity.kind, value) in owner_keys:
                return True
        return False

    async def _resolve_participant(
        self,
        event: RawEvent,
        participant: Participant,
        owner_keys: set[tuple[str, str]],
    ) -> str | None:
        """Resolve every identity of one participant; first resolved contact wins."""
        if self._is_owner(participant, owner_keys):
            # The account owner is never their own contact
            return None

        identities = []
        for identity in participant.identities:
            try:
                normalize_identifier(identity.kind, identity.raw_value)
            except InvalidIdentifierError:
                logger.debug("Skipping unparseable identity", raw_event_id=event.id, kind=identity.kind)
                continue
            identities.append(identity)

        contact_id: str | None = None
        for identity in identities:
            related = [other for other in identities if other is not identity]
            resolution: Resolution = await self.resolver.resolve(
                event.user_id,
                identity,
                related=related,
                display_name=participant.display_name,
                source=event.provider,
            )
            if resolution.is_ignored:
                continue
            if contact_id is None:
                contact_id = resolution.contact_id
        return contact_id

    async def _settle_failed(self, event: RawEvent, message: str, record: bool = True) -> None:
        await self.raw_events.mark_extraction(event.id, EXTRACTION_FAILED, error=message)
        if record:
            await self.raw_events.record_error(
                event.id, event.user_id, event.provider, STAGE_NORMALIZE, message
            )
