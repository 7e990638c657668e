"""
Per-user denylist of identifiers that must never become contacts
(noreply senders, the user's own aliases, notification bots).
"""

from app.features.ingestion.domain import IgnoredIdentifier
from app.features.ingestion.domain.identifiers import normalize_identifier
from app.features.ingestion.repository import IgnoredIdentifierRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class IgnoredIdentifierService:
    def __init__(self, repository=None):
        self.repository = repository or IgnoredIdentifierRepository()

    async def add(
        self, user_id: str, kind: str, raw_value: str, reason: str | None = None
    ) -> IgnoredIdentifier:
        value = normalize_identifier(kind, raw_value)
        entry = await self.repository.add(user_id, kind, value, reason)
        logger.info("Identifier ignored", user_id=user_id, kind=kind, value=value)
        return entry

    async def remove(self, user_id: str, kind: str, raw_value: str) -> bool:
        value = normalize_identifier(kind, raw_value)
        removed = await self.repository.remove(user_id, kind, value)
        if removed:
            logger.info("Identifier un-ignored", user_id=user_id, kind=kind, value=value)
        return removed

    async def list_identifiers(
        self, user_id: str, kind: str | None = None, limit: int = 50, offset: int = 0
    ) -> list[IgnoredIdentifier]:
        return await self.repository.list_identifiers(user_id, kind, limit, offset)

    async def is_ignored(self, user_id: str, kind: str, raw_value: str) -> bool:
        return await self.is_ignored_normalized(
            user_id, kind, normalize_identifier(kind, raw_value)
        )

    async def is_ignored_normalized(self, user_id: str, kind: str, value: str) -> bool:
        return await self.repository.is_ignored(user_id, kind, value)
