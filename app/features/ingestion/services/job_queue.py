"""
Job queue service.

Owns the job state machine:

    queued -> processing -> completed
                         -> queued (transient failure, attempts left, after backoff)
                         -> failed (permanent failure or attempts exhausted)

`attempts` counts runs started and is incremented by the claim, so a job
whose handler keeps failing transiently runs exactly `max_attempts` times.
"""

from typing import Any

from app.config import settings
from app.features.ingestion.domain import Job
from app.features.ingestion.domain.errors import (
    PERMANENT,
    TRANSIENT,
    JobNotFoundError,
    classify_error,
    describe_error,
)
from app.features.ingestion.domain.models import JOB_FAILED, JOB_QUEUED
from app.features.ingestion.domain.payloads import validate_job_payload
from app.features.ingestion.repository import JobRepository
from app.infrastructure.observability.logging import get_logger, log_job_transition

logger = get_logger(__name__)

# Returned by fail() when the caller no longer owns the job
JOB_LOST = "lost"


class JobQueue:
    """Enqueue, claim and settle jobs against the durable job store."""

    def __init__(
        self,
        repository=None,
        *,
        max_attempts: int | None = None,
        retry_base_seconds: float | None = None,
        retry_max_seconds: float | None = None,
        visibility_timeout_seconds: float | None = None,
    ):
        policy = settings.get_retry_policy()
        self.repository = repository or JobRepository()
        self.max_attempts = max_attempts or policy["max_attempts"]
        self.retry_base_seconds = (
            retry_base_seconds if retry_base_seconds is not None else policy["base_seconds"]
        )
        self.retry_max_seconds = (
            retry_max_seconds if retry_max_seconds is not None else policy["max_seconds"]
        )
        self.visibility_timeout_seconds = (
            visibility_timeout_seconds
            if visibility_timeout_seconds is not None
            else settings.JOB_VISIBILITY_TIMEOUT_SECONDS
        )

    def backoff_seconds(self, attempts: int) -> float:
        """Capped exponential delay after the given number of runs."""
        exponent = max(attempts - 1, 0)
        return min(self.retry_max_seconds, self.retry_base_seconds * (2**exponent))

    async def enqueue(
        self,
        user_id: str,
        kind: str,
        payload: dict[str, Any] | None = None,
        batch_id: str | None = None,
        *,
        max_attempts: int | None = None,
    ) -> str:
        """
        Validate the payload and insert a queued job.

        Raises:
            InvalidJobPayloadError: unknown kind or malformed payload
        """
        parsed = validate_job_payload(kind, payload)
        job = await self.repository.create_job(
            user_id,
            kind,
            parsed.model_dump(mode="json", exclude_none=True),
            batch_id,
            max_attempts or self.max_attempts,
        )
        logger.info("Job enqueued", job_id=job.id, user_id=user_id, kind=kind, batch_id=batch_id)
        return job.id

    async def claim_next(self, worker_id: str, kinds: list[str] | None = None) -> Job | None:
        """Claim the oldest eligible job for this worker, or None if the queue is idle."""
        job = await self.repository.claim_next(worker_id, self.visibility_timeout_seconds, kinds)
        if job:
            logger.debug(
                "Job claimed",
                job_id=job.id,
                kind=job.kind,
                worker_id=worker_id,
                attempts=job.attempts,
            )
        return job

    async def complete(self, job: Job) -> bool:
        completed = await self.repository.mark_completed(job.id, job.worker_id)
        if completed:
            log_job_transition(job.id, job.kind, job.status, "completed", job.attempts)
        else:
            logger.warning(
                "Job completion ignored; claim no longer held",
                job_id=job.id,
                worker_id=job.worker_id,
            )
        return completed

    async def fail(
        self,
        job: Job,
        error: BaseException | str,
        classification: str | None = None,
    ) -> str:
        """
        Record a failed run.

        Returns:
            JOB_QUEUED when retried, JOB_FAILED when terminal, JOB_LOST when
            the claim had already passed to another worker.
        """
        if classification is None:
            classification = (
                classify_error(error) if isinstance(error, BaseException) else TRANSIENT
            )
        if classification not in (TRANSIENT, PERMANENT):
            raise ValueError(f"Unknown error classification '{classification}'")

        message = describe_error(error) if isinstance(error, BaseException) else str(error)[:500]

        if classification == TRANSIENT and job.attempts < job.max_attempts:
            delay = self.backoff_seconds(job.attempts)
            if await self.repository.requeue(job.id, job.worker_id, message, delay):
                log_job_transition(job.id, job.kind, job.status, JOB_QUEUED, job.attempts, message)
                logger.info(
                    "Job scheduled for retry",
                    job_id=job.id,
                    attempts=job.attempts,
                    max_attempts=job.max_attempts,
                    delay_seconds=delay,
                )
                return JOB_QUEUED
            logger.warning("Job retry ignored; claim no longer held", job_id=job.id)
            return JOB_LOST

        if await self.repository.mark_failed(job.id, job.worker_id, message):
            log_job_transition(job.id, job.kind, job.status, JOB_FAILED, job.attempts, message)
            return JOB_FAILED

        logger.warning("Job failure ignored; claim no longer held", job_id=job.id)
        return JOB_LOST

    async def reclaim_abandoned(self) -> dict[str, int]:
        """
        Sweep jobs whose worker vanished.

        Abandoned jobs with attempts left are re-claimable by claim_next as-is;
        the sweep fails the ones that have none left so they do not linger.
        """
        failed = await self.repository.fail_exhausted_abandoned(self.visibility_timeout_seconds)
        reclaimable = await self.repository.count_abandoned(self.visibility_timeout_seconds)
        if failed or reclaimable:
            logger.warning(
                "Abandoned jobs found",
                reclaimable=reclaimable,
                failed=failed,
                visibility_timeout_seconds=self.visibility_timeout_seconds,
            )
        return {"reclaimable": reclaimable, "failed": failed}

    async def retry_failed(self, job_id: str) -> str:
        """Re-enqueue a failed job as a fresh job; the failed row stays terminal."""
        job = await self.repository.load_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JOB_FAILED:
            raise ValueError(f"Job {job_id} is {job.status}; only failed jobs can be retried")

        new_job_id = await self.enqueue(job.user_id, job.kind, job.payload, job.batch_id)
        logger.info("Failed job re-enqueued", job_id=job_id, new_job_id=new_job_id)
        return new_job_id

    async def get_job(self, job_id: str) -> Job | None:
        return await self.repository.load_job(job_id)

    async def list_jobs(self, user_id: str, **filters) -> list[Job]:
        return await self.repository.list_jobs(user_id, **filters)
