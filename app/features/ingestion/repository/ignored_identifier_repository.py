"""
Postgres repository for the ignored-identifier denylist.

Lookups hit the (user_id, kind, value) primary key, so the resolver can
consult the list synchronously for every identity.
"""

from typing import Any

from app.db.helpers import execute_query, fetch_all, fetch_one
from app.features.ingestion.domain import IgnoredIdentifier
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class IgnoredIdentifierRepository:
    """Persistence helpers for ignored_identifiers."""

    @staticmethod
    def _row_to_identifier(row: dict) -> IgnoredIdentifier:
        return IgnoredIdentifier(
            user_id=str(row["user_id"]),
            kind=row["kind"],
            value=row["value"],
            reason=row.get("reason"),
            created_at=row.get("created_at"),
        )

    @staticmethod
    async def is_ignored(user_id: str, kind: str, value: str) -> bool:
        query = """
            SELECT 1 AS ignored
            FROM ignored_identifiers
            WHERE user_id = %s AND kind = %s AND value = %s
        """
        return await fetch_one(query, (user_id, kind, value)) is not None

    @staticmethod
    async def add(user_id: str, kind: str, value: str, reason: str | None) -> IgnoredIdentifier:
        query = """
            INSERT INTO ignored_identifiers (user_id, kind, value, reason)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (user_id, kind, value)
            DO UPDATE SET reason = COALESCE(EXCLUDED.reason, ignored_identifiers.reason)
            RETURNING user_id, kind, value, reason, created_at
        """
        row = await fetch_one(query, (user_id, kind, value, reason))
        return IgnoredIdentifierRepository._row_to_identifier(row)

    @staticmethod
    async def remove(user_id: str, kind: str, value: str) -> bool:
        query = """
            DELETE FROM ignored_identifiers
            WHERE user_id = %s AND kind = %s AND value = %s
        """
        return await execute_query(query, (user_id, kind, value)) > 0

    @staticmethod
    async def list_identifiers(
        user_id: str, kind: str | None = None, limit: int = 50, offset: int = 0
    ) -> list[IgnoredIdentifier]:
        query = """
            SELECT user_id, kind, value, reason, created_at
            FROM ignored_identifiers
            WHERE user_id = %s
        """
        params: list[Any] = [user_id]
        if kind:
            query += " AND kind = %s"
            params.append(kind)
        query += " ORDER BY created_at DESC LIMIT %s OFFSET %s"
        params.extend([limit, offset])

        rows = await fetch_all(query, tuple(params))
        return [IgnoredIdentifierRepository._row_to_identifier(row) for row in rows]
