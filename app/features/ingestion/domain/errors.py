"""
Error taxonomy for the ingestion pipeline.

Transient errors are retried with backoff until the job runs out of
attempts; permanent errors fail the job immediately. Conflicts mean
another worker already did equivalent work and are handled as no-ops by
the caller, so they never reach the job runner.
"""

import asyncio

import psycopg
from pydantic import ValidationError

from app.db.helpers import DatabaseError

TRANSIENT = "transient"
PERMANENT = "permanent"


class IngestionError(Exception):
    """Base class for ingestion failures."""

    classification = TRANSIENT

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.operation = operation


class TransientJobError(IngestionError):
    """Retrying later can succeed (timeouts, rate limits, lock conflicts)."""

    classification = TRANSIENT


class RateLimitedError(TransientJobError):
    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, operation="rate_limit")
        self.retry_after = retry_after


class ExternalServiceTimeout(TransientJobError):
    """The external adapter did not answer in time."""


class PermanentJobError(IngestionError):
    """Retrying cannot fix this (malformed payload, revoked authorization)."""

    classification = PERMANENT


class InvalidJobPayloadError(PermanentJobError):
    def __init__(self, kind: str, message: str):
        super().__init__(f"Invalid payload for job kind '{kind}': {message}", operation="validate")
        self.kind = kind


class UnknownJobKindError(PermanentJobError):
    def __init__(self, kind: str):
        super().__init__(f"No handler registered for job kind '{kind}'", operation="dispatch")
        self.kind = kind


class AuthorizationRevokedError(PermanentJobError):
    """The user's grant for an external service is gone."""


class InvalidIdentifierError(PermanentJobError):
    def __init__(self, kind: str, raw_value: str):
        super().__init__(f"Cannot normalize {kind} identifier {raw_value!r}", operation="normalize")
        self.kind = kind


class SyncSessionConflictError(IngestionError):
    """An in-progress session already exists for this user and service."""

    def __init__(self, user_id: str, service: str, session_id: str | None = None):
        super().__init__(
            f"Sync already in progress for service '{service}'", operation="start_session"
        )
        self.user_id = user_id
        self.service = service
        self.session_id = session_id


class SyncSessionNotFoundError(PermanentJobError):
    def __init__(self, session_id: str):
        super().__init__(f"Sync session {session_id} not found", operation="sync_session")
        self.session_id = session_id


class JobNotFoundError(IngestionError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found", operation="load_job")
        self.job_id = job_id


_TRANSIENT_TYPES = (TimeoutError, asyncio.TimeoutError, ConnectionError, OSError)
_PERMANENT_TYPES = (ValidationError, ValueError, TypeError, KeyError, LookupError)


def classify_error(error: BaseException) -> str:
    """Map any exception raised by a handler to TRANSIENT or PERMANENT."""
    if isinstance(error, IngestionError):
        return error.classification
    if isinstance(error, DatabaseError):
        return TRANSIENT if error.recoverable else PERMANENT
    if isinstance(error, psycopg.OperationalError):
        return TRANSIENT
    if isinstance(error, (psycopg.IntegrityError, psycopg.DataError)):
        return PERMANENT
    if isinstance(error, _TRANSIENT_TYPES):
        return TRANSIENT
    if isinstance(error, _PERMANENT_TYPES):
        return PERMANENT
    # Unknown failures are retried; attempts are bounded by max_attempts
    return TRANSIENT


def describe_error(error: BaseException, limit: int = 500) -> str:
    message = str(error) or type(error).__name__
    return f"{type(error).__name__}: {message}"[:limit]
