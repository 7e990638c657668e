"""
Storage ports for the ingestion feature, one per table.
"""

from .contact_identity_repository import ContactIdentityRepository
from .ignored_identifier_repository import IgnoredIdentifierRepository
from .interaction_repository import InteractionRepository
from .job_repository import JobRepository, JobRepositoryError
from .raw_event_repository import RawEventRepository
from .sync_session_repository import SyncSessionRepository

__all__ = [
    "ContactIdentityRepository",
    "IgnoredIdentifierRepository",
    "InteractionRepository",
    "JobRepository",
    "JobRepositoryError",
    "RawEventRepository",
    "SyncSessionRepository",
]
