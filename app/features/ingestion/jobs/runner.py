"""
Job runner: a bounded pool of worker loops over the shared job store.

Each loop claims one job, validates its payload, dispatches it to the
registered handler under a timeout and settles it with complete/fail.
Workers hold no state between jobs, so any of them can die and be
replaced; abandoned claims are re-claimed after the visibility timeout.
"""

import asyncio
import os
import socket
import time
from datetime import datetime

from app.config import settings
from app.features.ingestion.domain import Job
from app.features.ingestion.domain.errors import (
    ExternalServiceTimeout,
    classify_error,
    describe_error,
)
from app.features.ingestion.domain.models import JOB_FAILED
from app.features.ingestion.domain.payloads import validate_job_payload
from app.features.ingestion.jobs.handlers import HandlerRegistry, JobContext
from app.features.ingestion.services.job_queue import JobQueue
from app.features.ingestion.services.token_bucket import TokenBucket
from app.infrastructure.observability.logging import bound_job_context, get_logger

logger = get_logger(__name__)


class RunnerMetrics:
    """Counters for one runner lifetime (or one drain)."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = datetime.utcnow()
        self.jobs_claimed = 0
        self.jobs_completed = 0
        self.jobs_retried = 0
        self.jobs_failed = 0
        self.jobs_lost = 0
        self.reclaim_sweeps = 0
        self.errors: list[dict] = []

    def record_completed(self, job: Job, duration_ms: float):
        self.jobs_completed += 1
        logger.debug("Job handler succeeded", job_id=job.id, kind=job.kind, duration_ms=duration_ms)

    def record_failure(self, job: Job, outcome: str, error: str):
        if outcome == "queued":
            self.jobs_retried += 1
        elif outcome == "failed":
            self.jobs_failed += 1
        else:
            self.jobs_lost += 1
        self.errors.append(
            {
                "job_id": job.id,
                "kind": job.kind,
                "outcome": outcome,
                "error": error,
                "timestamp": datetime.utcnow().isoformat(),
            }
        )
        # Keep memory bounded on long-lived workers
        del self.errors[:-100]

    def to_dict(self) -> dict:
        return {
            "start_time": self.start_time.isoformat(),
            "jobs_claimed": self.jobs_claimed,
            "jobs_completed": self.jobs_completed,
            "jobs_retried": self.jobs_retried,
            "jobs_failed": self.jobs_failed,
            "jobs_lost": self.jobs_lost,
            "reclaim_sweeps": self.reclaim_sweeps,
            "errors_count": len(self.errors),
        }


def default_worker_prefix() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class JobRunner:
    def __init__(
        self,
        queue: JobQueue,
        handlers: HandlerRegistry,
        *,
        concurrency: int | None = None,
        poll_interval_seconds: float | None = None,
        handler_timeout_seconds: float | None = None,
        reclaim_interval_seconds: float | None = None,
        rate_limiter: TokenBucket | None = None,
        worker_prefix: str | None = None,
    ):
        self.queue = queue
        self.handlers = handlers
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.poll_interval_seconds = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else settings.WORKER_POLL_INTERVAL_SECONDS
        )
        self.handler_timeout_seconds = (
            handler_timeout_seconds
            if handler_timeout_seconds is not None
            else settings.JOB_HANDLER_TIMEOUT_SECONDS
        )
        self.reclaim_interval_seconds = (
            reclaim_interval_seconds
            if reclaim_interval_seconds is not None
            else settings.WORKER_RECLAIM_INTERVAL_SECONDS
        )
        self.rate_limiter = rate_limiter
        self.worker_prefix = worker_prefix or default_worker_prefix()
        self.metrics = RunnerMetrics()

    def worker_id(self, index: int) -> str:
        return f"{self.worker_prefix}-{index}"

    async def run_once(self, worker_id: str) -> Job | None:
        """Claim and process a single job. Returns the job, or None when idle."""
        job = await self.queue.claim_next(worker_id)
        if job is None:
            return None

        self.metrics.jobs_claimed += 1
        with bound_job_context(job_id=job.id, kind=job.kind, worker_id=worker_id):
            await self._process(job, worker_id)
        return job

    async def _process(self, job: Job, worker_id: str) -> None:
        started = time.time()
        try:
            handler = self.handlers.resolve(job.kind)
            payload = validate_job_payload(job.kind, job.payload)
            context = JobContext(worker_id=worker_id, payload=payload, rate_limiter=self.rate_limiter)
            await asyncio.wait_for(handler(job, context), timeout=self.handler_timeout_seconds)
        except TimeoutError:
            error = ExternalServiceTimeout(
                f"Handler exceeded {self.handler_timeout_seconds}s", operation=job.kind
            )
            await self._settle_failure(job, error)
            return
        except Exception as e:
            await self._settle_failure(job, e)
            return

        duration_ms = round((time.time() - started) * 1000, 2)
        if await self.queue.complete(job):
            self.metrics.record_completed(job, duration_ms)
        else:
            self.metrics.jobs_lost += 1

    async def _settle_failure(self, job: Job, error: Exception) -> None:
        classification = classify_error(error)
        logger.warning(
            "Job handler failed",
            job_id=job.id,
            kind=job.kind,
            attempts=job.attempts,
            classification=classification,
            error=describe_error(error),
        )
        outcome = await self.queue.fail(job, error, classification)
        self.metrics.record_failure(job, outcome, describe_error(error))
        if outcome == JOB_FAILED:
            await self._notify_failed(job, error)

    async def _notify_failed(self, job: Job, error: Exception) -> None:
        """Let the handler clean up state it owns once its job is terminally failed."""
        if job.kind not in self.handlers:
            return
        on_failed = getattr(self.handlers.resolve(job.kind), "on_failed", None)
        if on_failed is None:
            return
        try:
            await on_failed(job, error)
        except Exception as e:
            logger.error(
                "Failed-job hook raised", job_id=job.id, kind=job.kind, error=describe_error(e)
            )

    async def drain(self, worker_id: str | None = None, max_jobs: int | None = None) -> dict:
        """Process jobs on one worker until none is claimable (or max_jobs ran)."""
        worker_id = worker_id or self.worker_id(0)
        processed = 0
        while max_jobs is None or processed < max_jobs:
            if await self.run_once(worker_id) is None:
                break
            processed += 1
        return {**self.metrics.to_dict(), "processed": processed}

    async def reclaim_once(self) -> dict[str, int]:
        self.metrics.reclaim_sweeps += 1
        return await self.queue.reclaim_abandoned()

    async def run(self, stop_event: asyncio.Event) -> dict:
        """
        Run worker loops and the reclaim sweep until stop_event is set.

        In-flight jobs finish before this returns; no new claims are made
        after the stop is requested.
        """
        logger.info(
            "Job runner starting",
            concurrency=self.concurrency,
            poll_interval_seconds=self.poll_interval_seconds,
            handler_timeout_seconds=self.handler_timeout_seconds,
            kinds=self.handlers.kinds(),
        )
        tasks = [
            asyncio.create_task(self._worker_loop(self.worker_id(index), stop_event))
            for index in range(self.concurrency)
        ]
        tasks.append(asyncio.create_task(self._reclaim_loop(stop_event)))
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()

        metrics = self.metrics.to_dict()
        logger.info("Job runner stopped", **metrics)
        return metrics

    async def _worker_loop(self, worker_id: str, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                job = await self.run_once(worker_id)
            except Exception as e:
                # Store unavailable; back off and keep the worker alive
                logger.error("Worker loop error", worker_id=worker_id, error=describe_error(e))
                job = None
            if job is None:
                await self._sleep_until_stopped(stop_event, self.poll_interval_seconds)

    async def _reclaim_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.reclaim_once()
            except Exception as e:
                logger.error("Reclaim sweep failed", error=describe_error(e))
            await self._sleep_until_stopped(stop_event, self.reclaim_interval_seconds)

    @staticmethod
    async def _sleep_until_stopped(stop_event: asyncio.Event, seconds: float) -> None:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except TimeoutError:
            pass
