"""
sync_<service> handler: pull pages from the provider adapter into raw_events.

Each stored page becomes its own batch with one normalize job. The cursor
is persisted after the page's normalize job is enqueued, so a crash
re-fetches at most one page and the re-fetched events join a new batch.
"""

import uuid

from app.features.ingestion.adapters import IngestionAdapter
from app.features.ingestion.domain import BatchCounts, Job
from app.features.ingestion.domain.errors import (
    PERMANENT,
    SyncSessionConflictError,
    SyncSessionNotFoundError,
    classify_error,
    describe_error,
)
from app.features.ingestion.domain.models import (
    KIND_NORMALIZE,
    SESSION_COMPLETED,
    SESSION_FAILED,
    SESSION_IN_PROGRESS,
)
from app.features.ingestion.jobs.handlers import JobContext
from app.features.ingestion.repository import RawEventRepository
from app.features.ingestion.services.job_queue import JobQueue
from app.features.ingestion.services.sync_session_tracker import SyncSessionTracker
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

STEP_FETCHING = "fetching"
STEP_DONE = "done"


class SyncJobHandler:
    def __init__(
        self,
        service: str,
        adapter: IngestionAdapter,
        *,
        queue: JobQueue,
        tracker: SyncSessionTracker,
        raw_events=None,
    ):
        self.service = service
        self.adapter = adapter
        self.queue = queue
        self.tracker = tracker
        self.raw_events = raw_events or RawEventRepository()

    async def __call__(self, job: Job, context: JobContext) -> dict:
        payload = context.payload
        session_id = payload.sync_session_id
        if session_id is None:
            try:
                session_id = await self.tracker.start(
                    job.user_id, self.service, payload.preferences, job_id=job.id
                )
            except SyncSessionConflictError as e:
                # Another job is already syncing this service
                logger.info(
                    "Sync skipped; session already running",
                    job_id=job.id,
                    service=self.service,
                    session_id=e.session_id,
                )
                return {"skipped": True, "session_id": e.session_id}

        session = await self.tracker.get(session_id)
        if session is None:
            raise SyncSessionNotFoundError(session_id)
        if session.status != SESSION_IN_PROGRESS:
            logger.info("Sync session not in progress", session_id=session_id, status=session.status)
            return {"skipped": True, "session_id": session_id}
        if session.job_id != job.id:
            await self.tracker.adopt(session_id, job.id)

        try:
            return await self._sync(job, context, session_id, session.cursor or payload.cursor)
        except Exception as e:
            if classify_error(e) == PERMANENT or job.is_final_attempt:
                await self._fail_session(job, session_id, e)
            raise

    async def on_failed(self, job: Job, error: BaseException) -> None:
        """
        Called by the runner once the job is terminally failed, including
        timeouts that cancelled the handler mid-page.
        """
        session_id = job.payload.get("sync_session_id")
        if session_id is None:
            active = await self.tracker.get_active(job.user_id, self.service)
            if active is None or active.job_id != job.id:
                return
            session_id = active.id
        await self._fail_session(job, session_id, error)

    async def _fail_session(self, job: Job, session_id: str, error: BaseException) -> None:
        await self.tracker.finish(
            session_id,
            SESSION_FAILED,
            {"error": describe_error(error), "job_id": job.id},
        )

    async def _sync(
        self, job: Job, context: JobContext, session_id: str, cursor: str | None
    ) -> dict:
        payload = context.payload
        owner_identifiers = list(payload.preferences.get("owner_identifiers", []))
        pages = 0
        await self.tracker.set_step(session_id, STEP_FETCHING)

        while True:
            if await self.tracker.is_cancelled(session_id):
                logger.info("Sync cancelled", session_id=session_id, pages=pages)
                return {"cancelled": True, "session_id": session_id, "pages": pages}

            if context.rate_limiter:
                await context.rate_limiter.acquire()
            page = await self.adapter.fetch_page(job.user_id, self.service, cursor)

            batch_id = str(uuid.uuid4())
            inserted, batched = await self.raw_events.store_page(
                job.user_id, page.raw_events, batch_id, session_id
            )
            if page.total_items is not None:
                await self.tracker.set_total(session_id, page.total_items)
            await self.tracker.record_batch(session_id, BatchCounts(imported=inserted))

            if batched:
                await self.queue.enqueue(
                    job.user_id,
                    KIND_NORMALIZE,
                    {
                        "batch_id": batch_id,
                        "sync_session_id": session_id,
                        "owner_identifiers": owner_identifiers,
                    },
                    batch_id=batch_id,
                )

            cursor = page.next_cursor
            await self.tracker.set_cursor(session_id, cursor)
            pages += 1
            logger.info(
                "Sync page stored",
                session_id=session_id,
                page=pages,
                fetched=len(page.raw_events),
                inserted=inserted,
                batch_id=batch_id if batched else None,
            )

            if cursor is None:
                break
            if payload.max_pages and pages >= payload.max_pages:
                # Continue in a follow-up job so one job never runs unbounded
                follow_up = await self.queue.enqueue(
                    job.user_id,
                    job.kind,
                    {
                        "sync_session_id": session_id,
                        "preferences": payload.preferences,
                        "max_pages": payload.max_pages,
                    },
                )
                return {"session_id": session_id, "pages": pages, "follow_up_job_id": follow_up}

        await self.tracker.set_step(session_id, STEP_DONE)
        await self.tracker.finish(session_id, SESSION_COMPLETED)
        return {"session_id": session_id, "pages": pages, "completed": True}
