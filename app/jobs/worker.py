"""
Background worker entrypoint.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the matching coroutine:

    ingestion  run the job runner until SIGINT/SIGTERM, then drain and exit
    reclaim    run one abandoned-job sweep, check pool health and exit
"""

import asyncio
import os
import signal
import sys
from collections.abc import Awaitable, Callable

from app.config import settings
from app.db.pool import db_health_check, db_pool
from app.db.schema import apply_schema
from app.features.ingestion.adapters import load_adapters, load_object
from app.features.ingestion.jobs import build_runner
from app.features.ingestion.services import JobQueue
from app.infrastructure.observability.logging import get_logger, setup_logging

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


async def _startup() -> None:
    setup_logging(settings.LOG_LEVEL)
    await db_pool.initialize()
    if settings.DB_APPLY_SCHEMA_ON_START:
        await apply_schema()


def _install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            logger.debug("Signal handler unavailable", signal=sig.name)


async def run_ingestion_worker() -> None:
    """Run the pooled job runner until a stop signal arrives."""
    await _startup()
    try:
        runner = build_runner(
            load_adapters(settings.INGESTION_ADAPTERS),
            embedder=load_object(settings.EMBEDDER_PATH) if settings.EMBEDDER_PATH else None,
            insight_scorer=(
                load_object(settings.INSIGHT_SCORER_PATH) if settings.INSIGHT_SCORER_PATH else None
            ),
        )
        stop_event = asyncio.Event()
        _install_stop_handlers(stop_event)
        await runner.run(stop_event)
    finally:
        await db_pool.close()


async def run_reclaim_sweep() -> None:
    """Fail exhausted abandoned jobs once and report what is reclaimable."""
    await _startup()
    try:
        result = await JobQueue().reclaim_abandoned()
        logger.info("Reclaim sweep finished", **result)
        health = await db_health_check()
        if not health["healthy"]:
            logger.warning("Database pool unhealthy", **health)
    finally:
        await db_pool.close()


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "ingestion": run_ingestion_worker,
    "reclaim": run_reclaim_sweep,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "ingestion").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
