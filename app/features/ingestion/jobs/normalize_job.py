"""
normalize handler: run the pipeline for one batch, report to the sync
session and fan out embed/insight work for what was created.
"""

from app.features.ingestion.domain import Job, NormalizationSummary
from app.features.ingestion.domain.errors import SyncSessionNotFoundError, TransientJobError
from app.features.ingestion.domain.models import KIND_EMBED, KIND_INSIGHT
from app.features.ingestion.domain.payloads import MAX_LIST_ITEMS
from app.features.ingestion.jobs.handlers import JobContext
from app.features.ingestion.services.job_queue import JobQueue
from app.features.ingestion.services.normalization_service import NormalizationPipeline
from app.features.ingestion.services.sync_session_tracker import SyncSessionTracker
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class NormalizeJobHandler:
    def __init__(
        self,
        *,
        queue: JobQueue,
        pipeline: NormalizationPipeline,
        tracker: SyncSessionTracker,
    ):
        self.queue = queue
        self.pipeline = pipeline
        self.tracker = tracker

    async def __call__(self, job: Job, context: JobContext) -> dict:
        payload = context.payload
        batch_id = payload.batch_id or job.batch_id

        summary = await self.pipeline.run(
            job.user_id,
            batch_id=batch_id,
            raw_event_ids=payload.raw_event_ids or None,
            owner_identifiers=payload.owner_identifiers,
            limit=payload.limit,
            final_attempt=job.is_final_attempt,
        )

        if summary.interactions_created:
            await self._enqueue_follow_ups(job, batch_id, summary)

        if payload.sync_session_id:
            # Counts every settled event not yet counted, so it is repeatable
            try:
                await self.tracker.report_settled(payload.sync_session_id)
            except SyncSessionNotFoundError:
                logger.warning(
                    "Sync session missing; batch counts not recorded",
                    job_id=job.id,
                    sync_session_id=payload.sync_session_id,
                )

        if summary.retryable:
            # Pending events are picked up again by the retry
            raise TransientJobError(
                f"{summary.retryable} of {summary.total} raw events failed transiently",
                operation="normalize",
            )

        return {
            "extracted": summary.extracted,
            "ignored": summary.ignored,
            "failed": summary.failed,
            "interactions_created": summary.interactions_created,
        }

    async def _enqueue_follow_ups(
        self, job: Job, batch_id: str | None, summary: NormalizationSummary
    ) -> None:
        interaction_ids = summary.interaction_ids
        if len(interaction_ids) > MAX_LIST_ITEMS and batch_id:
            # The batch id already selects every interaction of the batch
            interaction_ids = []
        for start in range(0, max(len(interaction_ids), 1), MAX_LIST_ITEMS):
            await self.queue.enqueue(
                job.user_id,
                KIND_EMBED,
                {
                    "batch_id": batch_id,
                    "interaction_ids": interaction_ids[start : start + MAX_LIST_ITEMS],
                },
                batch_id=batch_id,
            )

        contact_ids = summary.contact_ids
        for start in range(0, len(contact_ids), MAX_LIST_ITEMS):
            await self.queue.enqueue(
                job.user_id,
                KIND_INSIGHT,
                {"contact_ids": contact_ids[start : start + MAX_LIST_ITEMS], "batch_id": batch_id},
                batch_id=batch_id,
            )
