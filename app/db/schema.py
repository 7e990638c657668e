# app/db/schema.py
"""
Idempotent DDL for the ingestion tables.

Applied by the worker on startup when DB_APPLY_SCHEMA_ON_START is set, or
by operators through `apply_schema()`. Every statement is safe to re-run.
"""

from app.db.pool import get_db_transaction
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_STATEMENTS: list[str] = [
    "CREATE EXTENSION IF NOT EXISTS pgcrypto",
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL,
        kind TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'queued'
            CHECK (status IN ('queued', 'processing', 'completed', 'failed')),
        batch_id UUID,
        payload JSONB NOT NULL DEFAULT '{}'::jsonb,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 5,
        last_error TEXT,
        worker_id TEXT,
        claimed_at TIMESTAMPTZ,
        run_after TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CHECK (attempts <= max_attempts)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS jobs_claimable_idx
        ON jobs (created_at)
        WHERE status IN ('queued', 'processing')
    """,
    "CREATE INDEX IF NOT EXISTS jobs_user_batch_idx ON jobs (user_id, batch_id)",
    """
    CREATE TABLE IF NOT EXISTS sync_sessions (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL,
        service TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'in_progress'
            CHECK (status IN ('in_progress', 'completed', 'failed', 'cancelled')),
        job_id UUID,
        cursor TEXT,
        current_step TEXT,
        total_items INTEGER,
        imported_items INTEGER NOT NULL DEFAULT 0,
        processed_items INTEGER NOT NULL DEFAULT 0,
        failed_items INTEGER NOT NULL DEFAULT 0,
        progress_percentage INTEGER,
        preferences JSONB NOT NULL DEFAULT '{}'::jsonb,
        error_details JSONB NOT NULL DEFAULT '{}'::jsonb,
        started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        completed_at TIMESTAMPTZ,
        last_update_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS sync_sessions_one_active_idx
        ON sync_sessions (user_id, service)
        WHERE status = 'in_progress'
    """,
    """
    CREATE TABLE IF NOT EXISTS contacts (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL,
        display_name TEXT,
        primary_email TEXT,
        primary_phone TEXT,
        source TEXT,
        insight_score DOUBLE PRECISION,
        insight_updated_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS contacts_user_name_idx ON contacts (user_id, lower(display_name))",
    """
    CREATE TABLE IF NOT EXISTS contact_identities (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL,
        contact_id UUID NOT NULL REFERENCES contacts (id) ON DELETE CASCADE,
        kind TEXT NOT NULL CHECK (kind IN ('email', 'phone', 'handle', 'provider_id')),
        normalized_value TEXT NOT NULL,
        confidence DOUBLE PRECISION NOT NULL DEFAULT 1.0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (user_id, kind, normalized_value)
    )
    """,
    "CREATE INDEX IF NOT EXISTS contact_identities_contact_idx ON contact_identities (contact_id)",
    """
    CREATE TABLE IF NOT EXISTS ignored_identifiers (
        user_id UUID NOT NULL,
        kind TEXT NOT NULL,
        value TEXT NOT NULL,
        reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (user_id, kind, value)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS raw_events (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL,
        provider TEXT NOT NULL,
        source_id TEXT NOT NULL,
        payload JSONB NOT NULL,
        occurred_at TIMESTAMPTZ,
        contact_id UUID,
        batch_id UUID,
        sync_session_id UUID,
        extraction_status TEXT NOT NULL DEFAULT 'pending'
            CHECK (extraction_status IN ('pending', 'extracted', 'ignored', 'failed')),
        extraction_error TEXT,
        counted_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (user_id, provider, source_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS raw_events_pending_idx
        ON raw_events (user_id, batch_id)
        WHERE extraction_status = 'pending'
    """,
    """
    CREATE INDEX IF NOT EXISTS raw_events_uncounted_idx
        ON raw_events (sync_session_id)
        WHERE counted_at IS NULL AND extraction_status <> 'pending'
    """,
    """
    CREATE TABLE IF NOT EXISTS raw_event_errors (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        raw_event_id UUID,
        user_id UUID NOT NULL,
        provider TEXT NOT NULL,
        stage TEXT NOT NULL,
        error TEXT NOT NULL,
        context JSONB,
        error_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS interactions (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL,
        contact_id UUID,
        type TEXT NOT NULL,
        occurred_at TIMESTAMPTZ NOT NULL,
        source TEXT,
        source_id TEXT,
        source_meta JSONB,
        content_hash TEXT NOT NULL,
        batch_id UUID,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (user_id, content_hash)
    )
    """,
    "CREATE INDEX IF NOT EXISTS interactions_batch_idx ON interactions (user_id, batch_id)",
]


async def apply_schema() -> int:
    """Apply every DDL statement in one transaction. Returns the statement count."""
    async with await get_db_transaction() as conn:
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(statement)

    logger.info("Ingestion schema applied", statement_count=len(SCHEMA_STATEMENTS))
    return len(SCHEMA_STATEMENTS)
