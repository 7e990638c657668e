"""
Repository helpers for raw events fetched from external services.

Payloads are written once and never rewritten; only the extraction status,
linked contact and batch assignment of pending rows change afterwards.
"""

from collections.abc import Iterable
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_all
from app.db.pool import get_db_transaction
from app.features.ingestion.domain import NewRawEvent, RawEvent
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RawEventRepository:
    """Raw SQL helpers for raw_events and raw_event_errors."""

    EVENT_SELECT_COLUMNS = """
        id, user_id, provider, source_id, payload, occurred_at, contact_id,
        batch_id, sync_session_id, extraction_status, extraction_error
    """

    @classmethod
    def _row_to_event(cls, row: dict) -> RawEvent:
        return RawEvent(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            provider=row["provider"],
            source_id=row["source_id"],
            payload=row.get("payload") or {},
            occurred_at=row.get("occurred_at"),
            contact_id=str(row["contact_id"]) if row.get("contact_id") else None,
            batch_id=str(row["batch_id"]) if row.get("batch_id") else None,
            sync_session_id=str(row["sync_session_id"]) if row.get("sync_session_id") else None,
            extraction_status=row["extraction_status"],
            extraction_error=row.get("extraction_error"),
        )

    @classmethod
    async def store_page(
        cls,
        user_id: str,
        events: Iterable[NewRawEvent],
        batch_id: str,
        sync_session_id: str | None,
    ) -> tuple[int, int]:
        """
        Store one fetched page under batch_id.

        Events seen before keep their payload; if still pending they move to
        this batch so the batch's normalize job picks them up.

        Returns:
            (newly inserted, total rows now pending in this batch from the page)
        """
        query = """
            INSERT INTO raw_events (
                user_id, provider, source_id, payload, occurred_at, batch_id, sync_session_id
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, provider, source_id)
            DO UPDATE SET
                batch_id = EXCLUDED.batch_id,
                sync_session_id = EXCLUDED.sync_session_id,
                updated_at = NOW()
            WHERE raw_events.extraction_status = 'pending'
            RETURNING (xmax = 0) AS inserted
        """

        inserted = 0
        batched = 0
        try:
            async with await get_db_transaction() as conn:
                for event in events:
                    cursor = await conn.execute(
                        query,
                        (
                            user_id,
                            event.provider,
                            event.source_id,
                            Jsonb(event.payload),
                            event.occurred_at,
                            batch_id,
                            sync_session_id,
                        ),
                    )
                    row = await cursor.fetchone()
                    if row is None:
                        continue
                    batched += 1
                    if row["inserted"]:
                        inserted += 1
        except psycopg.Error as e:
            logger.error("Raw event page store failed", user_id=user_id, error=str(e))
            raise DatabaseError(
                f"Raw event page store failed: {e}",
                operation="store_page",
                recoverable=not isinstance(e, (psycopg.IntegrityError, psycopg.DataError)),
            ) from e

        logger.info(
            "Raw event page stored",
            user_id=user_id,
            batch_id=batch_id,
            inserted=inserted,
            batched=batched,
        )
        return inserted, batched

    @classmethod
    async def load_pending(
        cls,
        user_id: str,
        *,
        batch_id: str | None = None,
        raw_event_ids: list[str] | None = None,
        limit: int = 500,
    ) -> list[RawEvent]:
        conditions = ["user_id = %s", "extraction_status = 'pending'"]
        params: list[Any] = [user_id]
        if batch_id:
            conditions.append("batch_id = %s")
            params.append(batch_id)
        if raw_event_ids:
            conditions.append("id = ANY(%s)")
            params.append(list(raw_event_ids))

        query = f"""
            SELECT {cls.EVENT_SELECT_COLUMNS}
            FROM raw_events
            WHERE {" AND ".join(conditions)}
            ORDER BY occurred_at ASC NULLS LAST, created_at ASC
            LIMIT %s
        """
        params.append(limit)

        rows = await fetch_all(query, tuple(params))
        return [cls._row_to_event(row) for row in rows]

    @classmethod
    async def mark_extraction(
        cls,
        raw_event_id: str,
        status: str,
        *,
        contact_id: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Settle a pending event. A second settle of the same event is a no-op."""
        query = """
            UPDATE raw_events
            SET extraction_status = %s,
                contact_id = COALESCE(%s, contact_id),
                extraction_error = %s,
                updated_at = NOW()
            WHERE id = %s AND extraction_status = 'pending'
        """
        truncated = error[:500] if error else None
        return await execute_query(query, (status, contact_id, truncated, raw_event_id)) > 0

    @classmethod
    async def record_error(
        cls,
        raw_event_id: str | None,
        user_id: str,
        provider: str,
        stage: str,
        error: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        query = """
            INSERT INTO raw_event_errors (raw_event_id, user_id, provider, stage, error, context)
            VALUES (%s, %s, %s, %s, %s, %s)
        """
        await execute_query(
            query,
            (raw_event_id, user_id, provider, stage, error[:2000], Jsonb(context or {})),
        )
        logger.warning(
            "Raw event error recorded",
            raw_event_id=raw_event_id,
            user_id=user_id,
            stage=stage,
            error=error[:200],
        )
