"""
embed and insight handlers. Both are no-ops when their collaborator is not
configured, so the pipeline runs end to end without them.
"""

from app.features.ingestion.adapters import InsightScorer, InteractionEmbedder
from app.features.ingestion.domain import Job
from app.features.ingestion.jobs.handlers import JobContext
from app.features.ingestion.repository import ContactIdentityRepository, InteractionRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EmbedJobHandler:
    def __init__(self, embedder: InteractionEmbedder | None = None, interactions=None):
        self.embedder = embedder
        self.interactions = interactions or InteractionRepository()

    async def __call__(self, job: Job, context: JobContext) -> dict:
        if self.embedder is None:
            logger.info("No embedder configured; skipping", job_id=job.id)
            return {"skipped": True}

        payload = context.payload
        if payload.interaction_ids:
            interactions = await self.interactions.list_by_ids(job.user_id, payload.interaction_ids)
        elif payload.batch_id:
            interactions = await self.interactions.list_for_batch(job.user_id, payload.batch_id)
        else:
            interactions = []

        if not interactions:
            return {"embedded": 0}

        embedded = await self.embedder.embed_interactions(job.user_id, interactions)
        logger.info("Interactions embedded", job_id=job.id, count=embedded)
        return {"embedded": embedded}


class InsightJobHandler:
    def __init__(self, scorer: InsightScorer | None = None, interactions=None, contacts=None):
        self.scorer = scorer
        self.interactions = interactions or InteractionRepository()
        self.contacts = contacts or ContactIdentityRepository()

    async def __call__(self, job: Job, context: JobContext) -> dict:
        if self.scorer is None:
            logger.info("No insight scorer configured; skipping", job_id=job.id)
            return {"skipped": True}

        scored = 0
        for contact_id in context.payload.contact_ids:
            interactions = await self.interactions.list_for_contact(job.user_id, contact_id)
            score = await self.scorer.score_contact(job.user_id, contact_id, interactions)
            await self.contacts.update_insight_score(job.user_id, contact_id, float(score))
            scored += 1

        logger.info("Contact insights scored", job_id=job.id, contacts=scored)
        return {"scored": scored}
