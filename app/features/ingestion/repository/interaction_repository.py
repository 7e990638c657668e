"""
Repository helpers for canonical interactions.

(user_id, content_hash) is unique, so inserting the same provider item
twice yields one row and the second insert reports a no-op.
"""

from psycopg.types.json import Jsonb

from app.db.helpers import fetch_all, fetch_one
from app.features.ingestion.domain import Interaction, NewInteraction
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class InteractionRepository:
    """Raw SQL helpers for interactions."""

    INTERACTION_SELECT_COLUMNS = """
        id, user_id, contact_id, type, occurred_at, source, source_id,
        source_meta, content_hash, batch_id
    """

    @classmethod
    def _row_to_interaction(cls, row: dict) -> Interaction:
        return Interaction(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            contact_id=str(row["contact_id"]) if row.get("contact_id") else None,
            type=row["type"],
            occurred_at=row["occurred_at"],
            content_hash=row["content_hash"],
            source=row.get("source"),
            source_id=row.get("source_id"),
            source_meta=row.get("source_meta") or {},
            batch_id=str(row["batch_id"]) if row.get("batch_id") else None,
        )

    @classmethod
    async def insert_if_absent(cls, interaction: NewInteraction) -> str | None:
        """Insert unless the content hash exists; returns the new id or None."""
        query = """
            INSERT INTO interactions (
                user_id, contact_id, type, occurred_at, source, source_id,
                source_meta, content_hash, batch_id
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, content_hash) DO NOTHING
            RETURNING id
        """
        row = await fetch_one(
            query,
            (
                interaction.user_id,
                interaction.contact_id,
                interaction.type,
                interaction.occurred_at,
                interaction.source,
                interaction.source_id,
                Jsonb(interaction.source_meta),
                interaction.content_hash,
                interaction.batch_id,
            ),
        )
        return str(row["id"]) if row else None

    @classmethod
    async def list_for_batch(cls, user_id: str, batch_id: str) -> list[Interaction]:
        query = f"""
            SELECT {cls.INTERACTION_SELECT_COLUMNS}
            FROM interactions
            WHERE user_id = %s AND batch_id = %s
            ORDER BY occurred_at ASC
        """
        rows = await fetch_all(query, (user_id, batch_id))
        return [cls._row_to_interaction(row) for row in rows]

    @classmethod
    async def list_by_ids(cls, user_id: str, interaction_ids: list[str]) -> list[Interaction]:
        if not interaction_ids:
            return []
        query = f"""
            SELECT {cls.INTERACTION_SELECT_COLUMNS}
            FROM interactions
            WHERE user_id = %s AND id = ANY(%s)
        """
        rows = await fetch_all(query, (user_id, interaction_ids))
        return [cls._row_to_interaction(row) for row in rows]

    @classmethod
    async def list_for_contact(
        cls, user_id: str, contact_id: str, limit: int = 50
    ) -> list[Interaction]:
        query = f"""
            SELECT {cls.INTERACTION_SELECT_COLUMNS}
            FROM interactions
            WHERE user_id = %s AND contact_id = %s
            ORDER BY occurred_at DESC
            LIMIT %s
        """
        rows = await fetch_all(query, (user_id, contact_id, limit))
        return [cls._row_to_interaction(row) for row in rows]
