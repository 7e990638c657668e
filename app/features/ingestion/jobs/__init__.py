"""
Job handlers and runner for the ingestion pipeline.
"""

from app.features.ingestion.adapters import IngestionAdapter, InsightScorer, InteractionEmbedder
from app.features.ingestion.domain.models import (
    KIND_EMBED,
    KIND_INSIGHT,
    KIND_NORMALIZE,
    sync_kind,
)
from app.features.ingestion.services import (
    IdentityResolver,
    IgnoredIdentifierService,
    JobQueue,
    NormalizationPipeline,
    SyncSessionTracker,
    TokenBucket,
)

from .enrichment_jobs import EmbedJobHandler, InsightJobHandler
from .handlers import HandlerRegistry, JobContext, JobHandler
from .normalize_job import NormalizeJobHandler
from .runner import JobRunner, RunnerMetrics
from .sync_job import SyncJobHandler


def build_handler_registry(
    *,
    queue: JobQueue,
    tracker: SyncSessionTracker,
    pipeline: NormalizationPipeline,
    adapters: dict[str, IngestionAdapter] | None = None,
    embedder: InteractionEmbedder | None = None,
    insight_scorer: InsightScorer | None = None,
    raw_events=None,
    interactions=None,
    contacts=None,
) -> HandlerRegistry:
    registry = HandlerRegistry()
    for service, adapter in (adapters or {}).items():
        registry.register(
            sync_kind(service),
            SyncJobHandler(service, adapter, queue=queue, tracker=tracker, raw_events=raw_events),
        )
    registry.register(
        KIND_NORMALIZE, NormalizeJobHandler(queue=queue, pipeline=pipeline, tracker=tracker)
    )
    registry.register(KIND_EMBED, EmbedJobHandler(embedder, interactions))
    registry.register(KIND_INSIGHT, InsightJobHandler(insight_scorer, interactions, contacts))
    return registry


def build_runner(
    adapters: dict[str, IngestionAdapter] | None = None,
    *,
    embedder: InteractionEmbedder | None = None,
    insight_scorer: InsightScorer | None = None,
    **runner_options,
) -> JobRunner:
    """Wire the Postgres-backed services into a runner."""
    queue = JobQueue()
    tracker = SyncSessionTracker()
    resolver = IdentityResolver(ignored=IgnoredIdentifierService())
    registry = build_handler_registry(
        queue=queue,
        tracker=tracker,
        pipeline=NormalizationPipeline(resolver=resolver),
        adapters=adapters,
        embedder=embedder,
        insight_scorer=insight_scorer,
    )
    runner_options.setdefault("rate_limiter", TokenBucket())
    return JobRunner(queue, registry, **runner_options)


__all__ = [
    "EmbedJobHandler",
    "HandlerRegistry",
    "InsightJobHandler",
    "JobContext",
    "JobHandler",
    "JobRunner",
    "NormalizeJobHandler",
    "RunnerMetrics",
    "SyncJobHandler",
    "build_handler_registry",
    "build_runner",
]
