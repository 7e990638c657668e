"""
Service layer for the ingestion feature.
"""

from .identity_resolver import IdentityResolver
from .ignored_identifier_service import IgnoredIdentifierService
from .job_queue import JobQueue
from .job_status_service import JobStatusService
from .normalization_service import NormalizationPipeline
from .sync_session_tracker import SyncSessionTracker
from .token_bucket import TokenBucket

__all__ = [
    "IdentityResolver",
    "IgnoredIdentifierService",
    "JobQueue",
    "JobStatusService",
    "NormalizationPipeline",
    "SyncSessionTracker",
    "TokenBucket",
]
