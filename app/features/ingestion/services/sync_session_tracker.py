"""
Sync session tracker.

One in-progress session per (user, service). Counters only grow and the
percentage never goes backwards. A finished session keeps its status but
still accepts counts from normalize jobs that were in flight.
"""

from typing import Any

from app.features.ingestion.domain import BatchCounts, SyncSession
from app.features.ingestion.domain.errors import (
    SyncSessionConflictError,
    SyncSessionNotFoundError,
)
from app.features.ingestion.domain.models import (
    SESSION_CANCELLED,
    SESSION_COMPLETED,
    SESSION_FAILED,
    SESSION_IN_PROGRESS,
)
from app.features.ingestion.repository import SyncSessionRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class SyncSessionTracker:
    def __init__(self, repository=None):
        self.repository = repository or SyncSessionRepository()

    async def start(
        self,
        user_id: str,
        service: str,
        preferences: dict[str, Any] | None = None,
        job_id: str | None = None,
    ) -> str:
        """
        Open a session for (user, service).

        A retried job that already owns the active session resumes it instead
        of conflicting with itself. An active session whose owning job has
        terminally failed is failed and replaced.

        Raises:
            SyncSessionConflictError: another sync for this service is running
        """
        # Two rounds cover a session that finished between our insert and lookup
        for _ in range(2):
            session = await self.repository.insert_in_progress(
                user_id, service, preferences or {}, job_id
            )
            if session:
                logger.info(
                    "Sync session started",
                    session_id=session.id,
                    user_id=user_id,
                    service=service,
                    job_id=job_id,
                )
                return session.id

            active = await self.repository.get_active_session(user_id, service)
            if active is None:
                continue
            if job_id and active.job_id == job_id:
                logger.info("Sync session resumed", session_id=active.id, job_id=job_id)
                return active.id
            stale = await self.repository.fail_orphaned(
                active.id, {"error": "owning job failed", "job_id": active.job_id}
            )
            if stale:
                logger.warning(
                    "Stale sync session failed",
                    session_id=active.id,
                    owner_job_id=active.job_id,
                    job_id=job_id,
                )
                continue
            raise SyncSessionConflictError(user_id, service, active.id)

        raise SyncSessionConflictError(user_id, service)

    async def record_batch(self, session_id: str, counts: BatchCounts) -> SyncSession | None:
        """
        Add one batch's counts.

        Normalize jobs report after the sync job has finished the session,
        so counters keep growing on finished sessions; nothing is dropped.

        Raises:
            SyncSessionNotFoundError: no such session
        """
        if not (counts.imported or counts.processed or counts.failed):
            return await self._require(session_id)
        session = await self.repository.increment_counters(
            session_id, counts.imported, counts.processed, counts.failed
        )
        if session is None:
            raise SyncSessionNotFoundError(session_id)
        return session

    async def report_settled(self, session_id: str) -> SyncSession:
        """
        Add every settled, not yet counted raw event of the session to its
        processed and failed counters.

        Safe to repeat: a report that failed is picked up by the next one.

        Raises:
            SyncSessionNotFoundError: no such session
        """
        session = await self.repository.report_settled(session_id)
        if session is None:
            raise SyncSessionNotFoundError(session_id)
        return session

    async def set_total(self, session_id: str, total_items: int) -> SyncSession | None:
        if total_items < 0:
            raise ValueError("total_items cannot be negative")
        session = await self._require(session_id)
        if session.status != SESSION_IN_PROGRESS:
            return session
        return await self.repository.raise_total(session_id, total_items)

    async def adopt(self, session_id: str, job_id: str) -> None:
        """Record job_id as the owner of an in-progress session it continues."""
        if await self.repository.update_job_id(session_id, job_id):
            logger.debug("Sync session adopted", session_id=session_id, job_id=job_id)

    async def set_step(self, session_id: str, step: str) -> None:
        await self.repository.update_step(session_id, step)

    async def set_cursor(self, session_id: str, cursor: str | None) -> None:
        await self.repository.update_cursor(session_id, cursor)

    async def finish(
        self,
        session_id: str,
        status: str,
        error_details: dict[str, Any] | None = None,
    ) -> SyncSession:
        """
        Move an in-progress session to completed or failed.

        Finishing an already finished session returns it unchanged.
        """
        if status not in (SESSION_COMPLETED, SESSION_FAILED):
            raise ValueError(f"Cannot finish a sync session as '{status}'")
        return await self._finalize(session_id, status, error_details)

    async def cancel(self, session_id: str, reason: str | None = None) -> SyncSession:
        details = {"reason": reason} if reason else None
        return await self._finalize(session_id, SESSION_CANCELLED, details)

    async def is_cancelled(self, session_id: str) -> bool:
        return await self.repository.get_status(session_id) == SESSION_CANCELLED

    async def get(self, session_id: str) -> SyncSession | None:
        return await self.repository.get_session(session_id)

    async def get_active(self, user_id: str, service: str) -> SyncSession | None:
        return await self.repository.get_active_session(user_id, service)

    async def list_sessions(
        self,
        user_id: str,
        service: str | None = None,
        status: str | None = None,
        limit: int = 20,
    ) -> list[SyncSession]:
        return await self.repository.list_sessions(user_id, service, status, limit)

    async def _finalize(
        self, session_id: str, status: str, error_details: dict[str, Any] | None
    ) -> SyncSession:
        session = await self.repository.finish(session_id, status, error_details)
        if session:
            logger.info(
                "Sync session finished",
                session_id=session_id,
                status=status,
                imported=session.progress.imported_items,
                processed=session.progress.processed_items,
                failed=session.progress.failed_items,
            )
            return session

        existing = await self._require(session_id)
        logger.debug(
            "Sync session already final",
            session_id=session_id,
            status=existing.status,
            requested=status,
        )
        return existing

    async def _require(self, session_id: str) -> SyncSession:
        session = await self.repository.get_session(session_id)
        if session is None:
            raise SyncSessionNotFoundError(session_id)
        return session
