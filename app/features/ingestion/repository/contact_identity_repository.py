"""
Repository helpers for contact identity storage.

The unique (user_id, kind, normalized_value) constraint on
contact_identities is the single serialization point for deduplication:
inserts are attempted optimistically and a conflict means another worker
already owns the identity.
"""

import psycopg
from psycopg import Rollback

from app.db.helpers import DatabaseError, execute_query, execute_transaction, fetch_all, fetch_one
from app.db.pool import get_db_transaction
from app.features.ingestion.domain import ContactCandidate, ContactIdentity
from app.features.ingestion.domain.models import IDENTITY_EMAIL, IDENTITY_PHONE
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ContactIdentityRepository:
    """Persistence helpers for contacts and their identities."""

    IDENTITY_SELECT_COLUMNS = """
        id, user_id, contact_id, kind, normalized_value, confidence, created_at
    """

    @classmethod
    def _row_to_identity(cls, row: dict) -> ContactIdentity:
        return ContactIdentity(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            contact_id=str(row["contact_id"]),
            kind=row["kind"],
            normalized_value=row["normalized_value"],
            confidence=float(row["confidence"]),
            created_at=row.get("created_at"),
        )

    @classmethod
    async def find_contact_id(cls, user_id: str, kind: str, normalized_value: str) -> str | None:
        query = """
            SELECT contact_id
            FROM contact_identities
            WHERE user_id = %s AND kind = %s AND normalized_value = %s
        """
        row = await fetch_one(query, (user_id, kind, normalized_value))
        return str(row["contact_id"]) if row else None

    @classmethod
    async def create_contact_with_identity(
        cls,
        user_id: str,
        kind: str,
        normalized_value: str,
        *,
        display_name: str | None = None,
        source: str | None = None,
    ) -> str | None:
        """
        Create a contact and its first identity in one transaction.

        Returns:
            The new contact id, or None when another writer already holds the
            identity (the contact insert is rolled back).
        """
        contact_query = """
            INSERT INTO contacts (user_id, display_name, primary_email, primary_phone, source)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id
        """
        identity_query = """
            INSERT INTO contact_identities (user_id, contact_id, kind, normalized_value, confidence)
            VALUES (%s, %s, %s, %s, 1.0)
            ON CONFLICT (user_id, kind, normalized_value) DO NOTHING
            RETURNING contact_id
        """

        primary_email = normalized_value if kind == IDENTITY_EMAIL else None
        primary_phone = normalized_value if kind == IDENTITY_PHONE else None

        contact_id: str | None = None
        try:
            async with await get_db_transaction() as conn:
                cursor = await conn.execute(
                    contact_query, (user_id, display_name, primary_email, primary_phone, source)
                )
                contact_row = await cursor.fetchone()
                cursor = await conn.execute(
                    identity_query, (user_id, contact_row["id"], kind, normalized_value)
                )
                identity_row = await cursor.fetchone()
                if identity_row is None:
                    # Lost the race; drop the contact we just inserted
                    raise Rollback()
                contact_id = str(identity_row["contact_id"])
        except psycopg.Error as e:
            logger.error("Contact creation failed", user_id=user_id, kind=kind, error=str(e))
            raise DatabaseError(
                f"Contact creation failed: {e}",
                operation="create_contact_with_identity",
                recoverable=not isinstance(e, (psycopg.IntegrityError, psycopg.DataError)),
            ) from e

        if contact_id:
            logger.info("Contact created", user_id=user_id, contact_id=contact_id, kind=kind)
        return contact_id

    @classmethod
    async def insert_identity(
        cls,
        user_id: str,
        contact_id: str,
        kind: str,
        normalized_value: str,
        confidence: float = 1.0,
    ) -> str | None:
        """Attach an identity to a contact; None when the identity is already owned."""
        query = """
            INSERT INTO contact_identities (user_id, contact_id, kind, normalized_value, confidence)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (user_id, kind, normalized_value) DO NOTHING
            RETURNING contact_id
        """
        row = await fetch_one(query, (user_id, contact_id, kind, normalized_value, confidence))
        return str(row["contact_id"]) if row else None

    @classmethod
    async def fetch_name_candidates(
        cls, user_id: str, name_patterns: list[str], limit: int
    ) -> list[ContactCandidate]:
        """Contacts whose lowercased display name matches any LIKE pattern, bounded by limit."""
        if not name_patterns:
            return []

        query = """
            SELECT id, display_name
            FROM contacts
            WHERE user_id = %s
              AND display_name IS NOT NULL
              AND lower(display_name) LIKE ANY(%s)
            ORDER BY created_at ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (user_id, name_patterns, limit))
        return [
            ContactCandidate(id=str(row["id"]), display_name=row.get("display_name"))
            for row in rows
        ]

    @classmethod
    async def list_identities(cls, user_id: str, contact_id: str) -> list[ContactIdentity]:
        query = f"""
            SELECT {cls.IDENTITY_SELECT_COLUMNS}
            FROM contact_identities
            WHERE user_id = %s AND contact_id = %s
            ORDER BY created_at ASC
        """
        rows = await fetch_all(query, (user_id, contact_id))
        return [cls._row_to_identity(row) for row in rows]

    @classmethod
    async def merge_contacts(cls, user_id: str, from_contact_id: str, to_contact_id: str) -> None:
        """Move identities, interactions and raw events to the surviving contact."""
        params = (to_contact_id, user_id, from_contact_id)
        await execute_transaction(
            [
                (
                    "UPDATE contact_identities SET contact_id = %s "
                    "WHERE user_id = %s AND contact_id = %s",
                    params,
                ),
                (
                    "UPDATE interactions SET contact_id = %s "
                    "WHERE user_id = %s AND contact_id = %s",
                    params,
                ),
                (
                    "UPDATE raw_events SET contact_id = %s "
                    "WHERE user_id = %s AND contact_id = %s",
                    params,
                ),
                (
                    "DELETE FROM contacts WHERE user_id = %s AND id = %s",
                    (user_id, from_contact_id),
                ),
            ]
        )
        logger.info(
            "Contacts merged",
            user_id=user_id,
            from_contact_id=from_contact_id,
            to_contact_id=to_contact_id,
        )

    @classmethod
    async def update_insight_score(cls, user_id: str, contact_id: str, score: float) -> None:
        query = """
            UPDATE contacts
            SET insight_score = %s, insight_updated_at = NOW()
            WHERE user_id = %s AND id = %s
        """
        await execute_query(query, (score, user_id, contact_id))
