"""
Identity resolver.

Maps an identity seen in a raw event to exactly one contact per
(user, kind, normalized value):

1. ignored identifiers resolve to nothing
2. an existing identity row wins
3. sibling identities from the same event (email, then phone, then handle)
   that already belong to a contact pull this identity onto that contact
4. a close display-name match (bounded candidate scan) does the same,
   with the similarity score as confidence
5. otherwise a new contact is created

Creation is insert-or-fetch: two workers racing on the same new identity
both end up with the contact whose identity insert committed first.
"""

import difflib
from collections.abc import Iterable

from app.config import settings
from app.features.ingestion.domain import (
    ContactCandidate,
    ContactIdentity,
    IdentityCandidate,
    Resolution,
)
from app.features.ingestion.domain.errors import InvalidIdentifierError, TransientJobError
from app.features.ingestion.domain.identifiers import (
    normalize_display_name,
    normalize_identifier,
)
from app.features.ingestion.domain.models import (
    MERGE_PRIORITY,
    RESOLUTION_CREATED,
    RESOLUTION_IGNORED,
    RESOLUTION_MATCHED,
    RESOLUTION_MERGED,
)
from app.features.ingestion.repository import ContactIdentityRepository
from app.features.ingestion.services.ignored_identifier_service import IgnoredIdentifierService
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MATCHED_BY_NAME = "name"
# Fuzzy scores stay below an exact identity match
MAX_FUZZY_CONFIDENCE = 0.99


def name_similarity(left: str | None, right: str | None) -> float:
    """Similarity of two display names in [0, 1], tolerant of token order."""
    a = normalize_display_name(left)
    b = normalize_display_name(right)
    if not a or not b:
        return 0.0
    direct = difflib.SequenceMatcher(None, a, b).ratio()
    reordered = difflib.SequenceMatcher(
        None, " ".join(sorted(a.split())), " ".join(sorted(b.split()))
    ).ratio()
    return max(direct, reordered)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def name_patterns(display_name: str | None) -> list[str]:
    """LIKE patterns that pre-filter fuzzy candidates by first or last name token."""
    tokens = normalize_display_name(display_name).split()
    if not tokens:
        return []
    patterns = [f"%{_escape_like(tokens[0])}%"]
    if len(tokens) > 1:
        patterns.append(f"%{_escape_like(tokens[-1])}%")
    return patterns


class IdentityResolver:
    def __init__(
        self,
        identities=None,
        ignored: IgnoredIdentifierService | None = None,
        *,
        fuzzy_threshold: float | None = None,
        fuzzy_candidate_limit: int | None = None,
    ):
        self.identities = identities or ContactIdentityRepository()
        self.ignored = ignored or IgnoredIdentifierService()
        self.fuzzy_threshold = (
            fuzzy_threshold
            if fuzzy_threshold is not None
            else settings.IDENTITY_FUZZY_MATCH_THRESHOLD
        )
        self.fuzzy_candidate_limit = (
            fuzzy_candidate_limit
            if fuzzy_candidate_limit is not None
            else settings.IDENTITY_FUZZY_CANDIDATE_LIMIT
        )

    async def resolve(
        self,
        user_id: str,
        candidate: IdentityCandidate,
        related: Iterable[IdentityCandidate] = (),
        display_name: str | None = None,
        source: str | None = None,
    ) -> Resolution:
        """
        Resolve one identity to a contact.

        Raises:
            InvalidIdentifierError: the raw value cannot be normalized
        """
        kind = candidate.kind
        value = normalize_identifier(kind, candidate.raw_value)
        name = display_name or candidate.display_name

        if await self.ignored.is_ignored_normalized(user_id, kind, value):
            logger.debug("Identity ignored", user_id=user_id, kind=kind)
            return Resolution(status=RESOLUTION_IGNORED, normalized_value=value)

        contact_id = await self.identities.find_contact_id(user_id, kind, value)
        if contact_id:
            return Resolution(
                status=RESOLUTION_MATCHED,
                contact_id=contact_id,
                confidence=1.0,
                matched_by=kind,
                normalized_value=value,
            )

        sibling = await self._match_siblings(user_id, kind, value, related)
        if sibling:
            sibling_kind, sibling_contact_id = sibling
            return await self._attach(
                user_id, sibling_contact_id, kind, value, 1.0, sibling_kind
            )

        fuzzy = await self._match_name(user_id, name)
        if fuzzy:
            candidate_contact, score = fuzzy
            return await self._attach(
                user_id, candidate_contact.id, kind, value, score, MATCHED_BY_NAME
            )

        return await self._create(user_id, kind, value, name, source)

    async def attach_identity(
        self,
        user_id: str,
        contact_id: str,
        kind: str,
        raw_value: str,
        confidence: float = 1.0,
    ) -> Resolution:
        """Attach an identity to a known contact; an identity owned elsewhere stays put."""
        value = normalize_identifier(kind, raw_value)
        return await self._attach(user_id, contact_id, kind, value, confidence, kind)

    async def list_identities(self, user_id: str, contact_id: str) -> list[ContactIdentity]:
        return await self.identities.list_identities(user_id, contact_id)

    async def merge_contacts(
        self, user_id: str, from_contact_id: str, to_contact_id: str
    ) -> str:
        """Fold one contact into another; returns the surviving contact id."""
        if from_contact_id == to_contact_id:
            raise ValueError("Cannot merge a contact into itself")
        await self.identities.merge_contacts(user_id, from_contact_id, to_contact_id)
        return to_contact_id

    async def _match_siblings(
        self,
        user_id: str,
        kind: str,
        value: str,
        related: Iterable[IdentityCandidate],
    ) -> tuple[str, str] | None:
        by_kind: dict[str, list[IdentityCandidate]] = {}
        for other in related:
            by_kind.setdefault(other.kind, []).append(other)

        for sibling_kind in MERGE_PRIORITY:
            for other in by_kind.get(sibling_kind, []):
                try:
                    other_value = normalize_identifier(sibling_kind, other.raw_value)
                except InvalidIdentifierError:
                    continue
                if sibling_kind == kind and other_value == value:
                    continue
                if await self.ignored.is_ignored_normalized(user_id, sibling_kind, other_value):
                    continue
                contact_id = await self.identities.find_contact_id(
                    user_id, sibling_kind, other_value
                )
                if contact_id:
                    return sibling_kind, contact_id
        return None

    async def _match_name(
        self, user_id: str, display_name: str | None
    ) -> tuple[ContactCandidate, float] | None:
        patterns = name_patterns(display_name)
        if not patterns:
            return None

        candidates = await self.identities.fetch_name_candidates(
            user_id, patterns, self.fuzzy_candidate_limit
        )
        best: tuple[ContactCandidate, float] | None = None
        for candidate in candidates:
            score = name_similarity(display_name, candidate.display_name)
            if score >= self.fuzzy_threshold and (best is None or score > best[1]):
                best = (candidate, score)

        if best:
            logger.debug(
                "Fuzzy name match",
                user_id=user_id,
                contact_id=best[0].id,
                score=round(best[1], 3),
                candidates=len(candidates),
            )
            return best[0], min(best[1], MAX_FUZZY_CONFIDENCE)
        return None

    async def _attach(
        self,
        user_id: str,
        contact_id: str,
        kind: str,
        value: str,
        confidence: float,
        matched_by: str,
    ) -> Resolution:
        owner = await self.identities.insert_identity(user_id, contact_id, kind, value, confidence)
        if owner:
            logger.info(
                "Identity merged into contact",
                user_id=user_id,
                contact_id=owner,
                kind=kind,
                matched_by=matched_by,
            )
            return Resolution(
                status=RESOLUTION_MERGED,
                contact_id=owner,
                confidence=confidence,
                matched_by=matched_by,
                normalized_value=value,
            )

        # Another writer attached this identity first; theirs stands
        winner = await self._require_owner(user_id, kind, value)
        return Resolution(
            status=RESOLUTION_MATCHED,
            contact_id=winner,
            confidence=1.0,
            matched_by=kind,
            normalized_value=value,
        )

    async def _create(
        self,
        user_id: str,
        kind: str,
        value: str,
        display_name: str | None,
        source: str | None,
    ) -> Resolution:
        contact_id = await self.identities.create_contact_with_identity(
            user_id, kind, value, display_name=display_name, source=source
        )
        if contact_id:
            return Resolution(
                status=RESOLUTION_CREATED,
                contact_id=contact_id,
                confidence=1.0,
                matched_by=kind,
                normalized_value=value,
            )

        winner = await self._require_owner(user_id, kind, value)
        logger.info("Concurrent contact creation resolved", user_id=user_id, contact_id=winner)
        return Resolution(
            status=RESOLUTION_MATCHED,
            contact_id=winner,
            confidence=1.0,
            matched_by=kind,
            normalized_value=value,
        )

    async def _require_owner(self, user_id: str, kind: str, value: str) -> str:
        owner = await self.identities.find_contact_id(user_id, kind, value)
        if owner is None:
            # Conflicting row vanished (merge in flight); a retry will settle it
            raise TransientJobError(
                f"Identity {kind} conflicted but has no owner", operation="resolve_identity"
            )
        return owner
