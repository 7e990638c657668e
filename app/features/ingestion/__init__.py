"""
Ingestion feature package.

This vertical slice keeps every layer of the ingestion pipeline co-located
(domain models, repositories, services, jobs) so the path from a provider
page to contacts and interactions can be followed in one place.
"""

# Re-export the primary building blocks for easy access.
from .domain.models import Job, RawEvent, SyncSession  # noqa: F401
from .jobs import JobRunner, build_runner  # noqa: F401
from .services import (  # noqa: F401
    IdentityResolver,
    JobQueue,
    JobStatusService,
    NormalizationPipeline,
    SyncSessionTracker,
)
