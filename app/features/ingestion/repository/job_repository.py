"""
Persistence layer for the job queue.

Pure persistence: every state transition is a single conditional UPDATE so
concurrent workers never need a read-then-write. Business rules (retry
policy, classification) live in the JobQueue service.
"""

from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, fetch_val
from app.features.ingestion.domain import Job
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class JobRepositoryError(DatabaseError):
    """More specific exception for job store failures."""


class JobRepository:
    """Raw SQL helpers backing the job queue."""

    JOB_SELECT_COLUMNS = """
        id, user_id, kind, status, batch_id, payload, attempts, max_attempts,
        last_error, worker_id, claimed_at, run_after, created_at, updated_at
    """

    # Eligible: queued and due, or processing but abandoned past the visibility window
    CLAIMABLE_PREDICATE = """
        attempts < max_attempts
        AND (
            (status = 'queued' AND run_after <= NOW())
            OR (
                status = 'processing'
                AND claimed_at < NOW() - make_interval(secs => %s)
            )
        )
    """

    @classmethod
    def _row_to_job(cls, row: dict | None) -> Job | None:
        if not row:
            return None

        return Job(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            kind=row["kind"],
            status=row["status"],
            payload=row.get("payload") or {},
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            batch_id=str(row["batch_id"]) if row.get("batch_id") else None,
            last_error=row.get("last_error"),
            worker_id=row.get("worker_id"),
            claimed_at=row.get("claimed_at"),
            run_after=row.get("run_after"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @classmethod
    async def create_job(
        cls,
        user_id: str,
        kind: str,
        payload: dict[str, Any],
        batch_id: str | None,
        max_attempts: int,
    ) -> Job:
        """Insert a new job row (status=queued) and return the record."""

        query = f"""
            INSERT INTO jobs (user_id, kind, payload, batch_id, max_attempts, status)
            VALUES (%s, %s, %s, %s, %s, 'queued')
            RETURNING {cls.JOB_SELECT_COLUMNS}
        """

        row = await fetch_one(query, (user_id, kind, Jsonb(payload), batch_id, max_attempts))
        if not row:
            raise JobRepositoryError("Failed to create job", operation="create_job")

        return cls._row_to_job(row)

    @classmethod
    async def load_job(cls, job_id: str) -> Job | None:
        query = f"SELECT {cls.JOB_SELECT_COLUMNS} FROM jobs WHERE id = %s"
        row = await fetch_one(query, (job_id,))
        return cls._row_to_job(row)

    @classmethod
    async def claim_next(
        cls,
        worker_id: str,
        visibility_timeout_seconds: float,
        kinds: list[str] | None = None,
    ) -> Job | None:
        """
        Atomically move the oldest eligible job to processing for this worker.

        The inner SELECT skips rows locked by concurrent claimers and the outer
        UPDATE re-checks eligibility, so a row can only be claimed once.
        """

        kind_filter = "AND kind = ANY(%s)" if kinds else ""
        query = f"""
            UPDATE jobs
            SET status = 'processing',
                worker_id = %s,
                claimed_at = NOW(),
                attempts = attempts + 1,
                updated_at = NOW()
            WHERE id = (
                SELECT id
                FROM jobs
                WHERE {cls.CLAIMABLE_PREDICATE}
                  {kind_filter}
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                FOR UPDATE SKIP LOCKED
            )
              AND {cls.CLAIMABLE_PREDICATE}
            RETURNING {cls.JOB_SELECT_COLUMNS}
        """

        params: list[Any] = [worker_id, visibility_timeout_seconds]
        if kinds:
            params.append(list(kinds))
        params.append(visibility_timeout_seconds)

        row = await fetch_one(query, tuple(params))
        return cls._row_to_job(row)

    @classmethod
    async def mark_completed(cls, job_id: str, worker_id: str) -> bool:
        """Complete a job still owned by this worker."""

        query = """
            UPDATE jobs
            SET status = 'completed',
                last_error = NULL,
                updated_at = NOW()
            WHERE id = %s
              AND status = 'processing'
              AND worker_id = %s
        """
        return await execute_query(query, (job_id, worker_id)) > 0

    @classmethod
    async def requeue(
        cls, job_id: str, worker_id: str, error_message: str, delay_seconds: float
    ) -> bool:
        """Put an owned job back in the queue after a backoff delay."""

        query = """
            UPDATE jobs
            SET status = 'queued',
                last_error = %s,
                worker_id = NULL,
                claimed_at = NULL,
                run_after = NOW() + make_interval(secs => %s),
                updated_at = NOW()
            WHERE id = %s
              AND status = 'processing'
              AND worker_id = %s
              AND attempts < max_attempts
        """
        return await execute_query(query, (error_message, delay_seconds, job_id, worker_id)) > 0

    @classmethod
    async def mark_failed(cls, job_id: str, worker_id: str, error_message: str) -> bool:
        """Terminally fail an owned job, preserving the last error."""

        query = """
            UPDATE jobs
            SET status = 'failed',
                last_error = %s,
                updated_at = NOW()
            WHERE id = %s
              AND status = 'processing'
              AND worker_id = %s
        """
        return await execute_query(query, (error_message, job_id, worker_id)) > 0

    @classmethod
    async def fail_exhausted_abandoned(cls, visibility_timeout_seconds: float) -> int:
        """
        Abandoned jobs with no attempts left can never be reclaimed; fail them.

        In-progress sync sessions owned by those jobs are failed in the same
        statement so the next sync of their service can start.
        """

        query = """
            WITH exhausted AS (
                UPDATE jobs
                SET status = 'failed',
                    last_error = COALESCE(last_error || ' | ', '')
                        || 'abandoned after ' || attempts || ' attempts',
                    updated_at = NOW()
                WHERE status = 'processing'
                  AND attempts >= max_attempts
                  AND claimed_at < NOW() - make_interval(secs => %s)
                RETURNING id, attempts
            ),
            orphaned AS (
                UPDATE sync_sessions
                SET status = 'failed',
                    completed_at = NOW(),
                    error_details = sync_sessions.error_details || jsonb_build_object(
                        'error', 'owning job abandoned after ' || exhausted.attempts || ' attempts',
                        'job_id', exhausted.id::text
                    ),
                    last_update_at = NOW()
                FROM exhausted
                WHERE sync_sessions.job_id = exhausted.id
                  AND sync_sessions.status = 'in_progress'
                RETURNING sync_sessions.id
            )
            SELECT COUNT(*) AS failed FROM exhausted
        """
        return int(await fetch_val(query, (visibility_timeout_seconds,)) or 0)

    @classmethod
    async def count_abandoned(cls, visibility_timeout_seconds: float) -> int:
        query = """
            SELECT COUNT(*) AS abandoned
            FROM jobs
            WHERE status = 'processing'
              AND attempts < max_attempts
              AND claimed_at < NOW() - make_interval(secs => %s)
        """
        row = await fetch_one(query, (visibility_timeout_seconds,))
        return int(row["abandoned"]) if row else 0

    @classmethod
    async def list_jobs(
        cls,
        user_id: str,
        *,
        statuses: list[str] | None = None,
        kinds: list[str] | None = None,
        batch_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        conditions = ["user_id = %s"]
        params: list[Any] = [user_id]

        if statuses:
            conditions.append("status = ANY(%s)")
            params.append(list(statuses))
        if kinds:
            conditions.append("kind = ANY(%s)")
            params.append(list(kinds))
        if batch_id:
            conditions.append("batch_id = %s")
            params.append(batch_id)

        query = f"""
            SELECT {cls.JOB_SELECT_COLUMNS}
            FROM jobs
            WHERE {" AND ".join(conditions)}
            ORDER BY updated_at DESC
            LIMIT %s OFFSET %s
        """
        params.extend([limit, offset])

        rows = await fetch_all(query, tuple(params))
        return [cls._row_to_job(row) for row in rows]

    @classmethod
    async def count_jobs(cls, user_id: str, batch_id: str | None = None) -> list[dict]:
        """Counts grouped by (status, kind)."""

        query = """
            SELECT status, kind, COUNT(*) AS job_count
            FROM jobs
            WHERE user_id = %s
        """
        params: list[Any] = [user_id]
        if batch_id:
            query += " AND batch_id = %s"
            params.append(batch_id)
        query += " GROUP BY status, kind"

        rows = await fetch_all(query, tuple(params))
        return [
            {"status": row["status"], "kind": row["kind"], "count": int(row["job_count"])}
            for row in rows
        ]

    @classmethod
    async def list_stuck_jobs(
        cls, user_id: str, visibility_timeout_seconds: float, limit: int = 10
    ) -> list[Job]:
        query = f"""
            SELECT {cls.JOB_SELECT_COLUMNS}
            FROM jobs
            WHERE user_id = %s
              AND status = 'processing'
              AND claimed_at < NOW() - make_interval(secs => %s)
            ORDER BY claimed_at ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (user_id, visibility_timeout_seconds, limit))
        return [cls._row_to_job(row) for row in rows]
