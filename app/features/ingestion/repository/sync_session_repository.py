"""
Postgres repository for sync_sessions progress tracking.

Counter updates are single-row UPDATEs with in-SQL arithmetic so several
normalize workers can report progress for the same session concurrently.
"""

from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import execute_query, fetch_all, fetch_one, fetch_val
from app.features.ingestion.domain import SyncProgress, SyncSession
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class SyncSessionRepository:
    """Persistence helpers for sync_sessions."""

    SESSION_SELECT_COLUMNS = """
        id, user_id, service, status, job_id, cursor, current_step,
        total_items, imported_items, processed_items, failed_items, progress_percentage,
        preferences, error_details, started_at, completed_at, last_update_at
    """

    @staticmethod
    def _percentage_expression(processed: str, total: str) -> str:
        # Percentage only moves forward and stays null until a total is known
        return f"""
            CASE
                WHEN {total} IS NULL OR {total} = 0 THEN progress_percentage
                ELSE GREATEST(
                    COALESCE(progress_percentage, 0),
                    LEAST(100, FLOOR(100.0 * {processed} / {total})::int)
                )
            END
        """

    @classmethod
    def _counter_assignments(cls, processed: str, failed: str) -> str:
        """
        SET clause adding processed/failed deltas.

        SET expressions see the pre-update row, so the new processed count and
        the raised total are spelled out wherever the percentage uses them.
        """
        new_processed = f"(processed_items + {processed})"
        new_total = f"""
            (CASE
                WHEN total_items IS NULL THEN NULL
                ELSE GREATEST(
                    total_items, processed_items + {processed} + failed_items + {failed}
                )
            END)
        """
        return f"""
            processed_items = {new_processed},
            failed_items = failed_items + {failed},
            total_items = {new_total},
            progress_percentage = {cls._percentage_expression(new_processed, new_total)}
        """

    @classmethod
    def _row_to_session(cls, row: dict | None) -> SyncSession | None:
        if not row:
            return None

        return SyncSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            service=row["service"],
            status=row["status"],
            progress=SyncProgress(
                total_items=row.get("total_items"),
                imported_items=row.get("imported_items") or 0,
                processed_items=row.get("processed_items") or 0,
                failed_items=row.get("failed_items") or 0,
                percentage=row.get("progress_percentage"),
            ),
            preferences=row.get("preferences") or {},
            job_id=str(row["job_id"]) if row.get("job_id") else None,
            cursor=row.get("cursor"),
            current_step=row.get("current_step"),
            error_details=row.get("error_details") or {},
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            last_update_at=row.get("last_update_at"),
        )

    @classmethod
    async def insert_in_progress(
        cls,
        user_id: str,
        service: str,
        preferences: dict[str, Any],
        job_id: str | None,
    ) -> SyncSession | None:
        """
        Insert an in_progress session; returns None when one already exists
        for (user_id, service), enforced by the partial unique index.
        """
        query = f"""
            INSERT INTO sync_sessions (user_id, service, status, preferences, job_id)
            VALUES (%s, %s, 'in_progress', %s, %s)
            ON CONFLICT (user_id, service) WHERE status = 'in_progress'
            DO NOTHING
            RETURNING {cls.SESSION_SELECT_COLUMNS}
        """
        row = await fetch_one(query, (user_id, service, Jsonb(preferences), job_id))
        return cls._row_to_session(row)

    @classmethod
    async def get_session(cls, session_id: str) -> SyncSession | None:
        query = f"SELECT {cls.SESSION_SELECT_COLUMNS} FROM sync_sessions WHERE id = %s"
        return cls._row_to_session(await fetch_one(query, (session_id,)))

    @classmethod
    async def get_active_session(cls, user_id: str, service: str) -> SyncSession | None:
        query = f"""
            SELECT {cls.SESSION_SELECT_COLUMNS}
            FROM sync_sessions
            WHERE user_id = %s AND service = %s AND status = 'in_progress'
        """
        return cls._row_to_session(await fetch_one(query, (user_id, service)))

    @classmethod
    async def list_sessions(
        cls,
        user_id: str,
        service: str | None = None,
        status: str | None = None,
        limit: int = 20,
    ) -> list[SyncSession]:
        conditions = ["user_id = %s"]
        params: list[Any] = [user_id]
        if service:
            conditions.append("service = %s")
            params.append(service)
        if status:
            conditions.append("status = %s")
            params.append(status)

        query = f"""
            SELECT {cls.SESSION_SELECT_COLUMNS}
            FROM sync_sessions
            WHERE {" AND ".join(conditions)}
            ORDER BY started_at DESC
            LIMIT %s
        """
        params.append(limit)
        rows = await fetch_all(query, tuple(params))
        return [cls._row_to_session(row) for row in rows]

    @classmethod
    async def increment_counters(
        cls, session_id: str, imported: int, processed: int, failed: int
    ) -> SyncSession | None:
        """Add batch counts in one statement."""
        query = f"""
            UPDATE sync_sessions
            SET imported_items = imported_items + %(imported)s,
                {cls._counter_assignments("%(processed)s", "%(failed)s")},
                last_update_at = NOW()
            WHERE id = %(session_id)s
            RETURNING {cls.SESSION_SELECT_COLUMNS}
        """
        row = await fetch_one(
            query,
            {
                "imported": imported,
                "processed": processed,
                "failed": failed,
                "session_id": session_id,
            },
        )
        return cls._row_to_session(row)

    @classmethod
    async def report_settled(cls, session_id: str) -> SyncSession | None:
        """
        Count the session's settled raw events that no report has counted yet.

        Marking the events and adding them to the counters is one statement,
        so a report that fails leaves the events uncounted for the next one.
        Returns None when the session does not exist.
        """
        query = f"""
            WITH counted AS (
                UPDATE raw_events
                SET counted_at = NOW()
                WHERE sync_session_id = %(session_id)s
                  AND counted_at IS NULL
                  AND extraction_status <> 'pending'
                RETURNING extraction_status
            ),
            totals AS (
                SELECT
                    COUNT(*) FILTER (WHERE extraction_status <> 'failed') AS processed,
                    COUNT(*) FILTER (WHERE extraction_status = 'failed') AS failed
                FROM counted
            )
            UPDATE sync_sessions
            SET {cls._counter_assignments("totals.processed", "totals.failed")},
                last_update_at = NOW()
            FROM totals
            WHERE sync_sessions.id = %(session_id)s
            RETURNING {cls.SESSION_SELECT_COLUMNS}
        """
        return cls._row_to_session(await fetch_one(query, {"session_id": session_id}))

    @classmethod
    async def raise_total(cls, session_id: str, total: int) -> SyncSession | None:
        """Set the discovered total; never below what is already settled."""
        new_total = "GREATEST(COALESCE(total_items, 0), %(total)s, processed_items + failed_items)"
        query = f"""
            UPDATE sync_sessions
            SET total_items = {new_total},
                progress_percentage = {cls._percentage_expression("processed_items", new_total)},
                last_update_at = NOW()
            WHERE id = %(session_id)s
            RETURNING {cls.SESSION_SELECT_COLUMNS}
        """
        row = await fetch_one(query, {"total": total, "session_id": session_id})
        return cls._row_to_session(row)

    @classmethod
    async def update_cursor(cls, session_id: str, cursor: str | None) -> None:
        query = """
            UPDATE sync_sessions
            SET cursor = %s, last_update_at = NOW()
            WHERE id = %s
        """
        await execute_query(query, (cursor, session_id))

    @classmethod
    async def update_step(cls, session_id: str, step: str) -> None:
        query = """
            UPDATE sync_sessions
            SET current_step = %s, last_update_at = NOW()
            WHERE id = %s
        """
        await execute_query(query, (step, session_id))

    @classmethod
    async def finish(
        cls, session_id: str, status: str, error_details: dict[str, Any] | None = None
    ) -> SyncSession | None:
        """Finalize an in_progress session; returns None if it was not in progress."""
        query = f"""
            UPDATE sync_sessions
            SET status = %s,
                completed_at = NOW(),
                error_details = error_details || %s,
                last_update_at = NOW()
            WHERE id = %s AND status = 'in_progress'
            RETURNING {cls.SESSION_SELECT_COLUMNS}
        """
        row = await fetch_one(query, (status, Jsonb(error_details or {}), session_id))
        return cls._row_to_session(row)

    @classmethod
    async def update_job_id(cls, session_id: str, job_id: str) -> bool:
        """Hand an in_progress session to the job now running it."""
        query = """
            UPDATE sync_sessions
            SET job_id = %s, last_update_at = NOW()
            WHERE id = %s AND status = 'in_progress'
        """
        return await execute_query(query, (job_id, session_id)) > 0

    @classmethod
    async def fail_orphaned(
        cls, session_id: str, error_details: dict[str, Any]
    ) -> SyncSession | None:
        """
        Fail an in_progress session whose owning job has terminally failed.

        Returns None when the session is not in progress or its job is alive.
        """
        query = f"""
            UPDATE sync_sessions
            SET status = 'failed',
                completed_at = NOW(),
                error_details = error_details || %s,
                last_update_at = NOW()
            WHERE id = %s
              AND status = 'in_progress'
              AND EXISTS (
                  SELECT 1 FROM jobs
                  WHERE jobs.id = sync_sessions.job_id AND jobs.status = 'failed'
              )
            RETURNING {cls.SESSION_SELECT_COLUMNS}
        """
        row = await fetch_one(query, (Jsonb(error_details), session_id))
        return cls._row_to_session(row)

    @classmethod
    async def get_status(cls, session_id: str) -> str | None:
        return await fetch_val("SELECT status FROM sync_sessions WHERE id = %s", (session_id,))
