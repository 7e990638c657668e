"""
Read-only queue summary for a user (optionally one batch).
"""

from typing import Any

from app.config import settings
from app.features.ingestion.domain.models import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_QUEUED,
    JOB_STATUSES,
)
from app.features.ingestion.repository import JobRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

HEALTH_HEALTHY = "healthy"
HEALTH_DEGRADED = "degraded"
HEALTH_UNHEALTHY = "unhealthy"

DEGRADED_FAILURE_RATE = 0.10
UNHEALTHY_FAILURE_RATE = 0.50


def assess_health(completed: int, failed: int, stuck: int) -> str:
    if stuck:
        return HEALTH_UNHEALTHY
    settled = completed + failed
    if not settled:
        return HEALTH_HEALTHY
    failure_rate = failed / settled
    if failure_rate > UNHEALTHY_FAILURE_RATE:
        return HEALTH_UNHEALTHY
    if failure_rate > DEGRADED_FAILURE_RATE:
        return HEALTH_DEGRADED
    return HEALTH_HEALTHY


class JobStatusService:
    def __init__(self, repository=None, *, visibility_timeout_seconds: float | None = None):
        self.repository = repository or JobRepository()
        self.visibility_timeout_seconds = (
            visibility_timeout_seconds
            if visibility_timeout_seconds is not None
            else settings.JOB_VISIBILITY_TIMEOUT_SECONDS
        )

    async def get_queue_status(self, user_id: str, batch_id: str | None = None) -> dict[str, Any]:
        rows = await self.repository.count_jobs(user_id, batch_id)

        by_status = {status: 0 for status in JOB_STATUSES}
        by_kind: dict[str, dict[str, int]] = {}
        for row in rows:
            by_status[row["status"]] = by_status.get(row["status"], 0) + row["count"]
            kind_counts = by_kind.setdefault(row["kind"], {})
            kind_counts[row["status"]] = kind_counts.get(row["status"], 0) + row["count"]

        stuck = await self.repository.list_stuck_jobs(user_id, self.visibility_timeout_seconds)
        if batch_id:
            stuck = [job for job in stuck if job.batch_id == batch_id]

        health = assess_health(by_status[JOB_COMPLETED], by_status[JOB_FAILED], len(stuck))
        if health != HEALTH_HEALTHY:
            logger.warning(
                "Job queue unhealthy" if health == HEALTH_UNHEALTHY else "Job queue degraded",
                user_id=user_id,
                batch_id=batch_id,
                failed=by_status[JOB_FAILED],
                stuck=len(stuck),
            )

        return {
            "user_id": user_id,
            "batch_id": batch_id,
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_kind": by_kind,
            "pending": by_status[JOB_QUEUED] + by_status[JOB_PROCESSING],
            "failed": by_status[JOB_FAILED],
            "stuck_jobs": [
                {
                    "id": job.id,
                    "kind": job.kind,
                    "worker_id": job.worker_id,
                    "claimed_at": job.claimed_at.isoformat() if job.claimed_at else None,
                    "attempts": job.attempts,
                }
                for job in stuck
            ],
            "health": health,
        }
