"""
Job payload models.
Used by the job queue for input validation before a job reaches the store
and again by the runner before dispatch.
"""

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.config import settings
from app.features.ingestion.domain.errors import InvalidJobPayloadError
from app.features.ingestion.domain.models import (
    KIND_EMBED,
    KIND_INSIGHT,
    KIND_NORMALIZE,
    service_from_kind,
)

MAX_LIST_ITEMS = 500


class _PayloadModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SyncJobPayload(_PayloadModel):
    """Payload for sync_<service> jobs."""

    sync_session_id: str | None = Field(default=None, max_length=64)
    cursor: str | None = Field(default=None, max_length=4096, description="Resume point")
    preferences: dict[str, Any] = Field(default_factory=dict)
    max_pages: int | None = Field(default=None, ge=1, le=10_000)


class NormalizeJobPayload(_PayloadModel):
    """Payload for normalize jobs; either a batch id or explicit raw event ids."""

    batch_id: str | None = Field(default=None, max_length=64)
    raw_event_ids: list[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    sync_session_id: str | None = Field(default=None, max_length=64)
    owner_identifiers: list[str] = Field(
        default_factory=list,
        max_length=50,
        description="The account owner's own addresses; never resolved into contacts",
    )
    limit: int | None = Field(default=None, ge=1, le=5_000)


class EmbedJobPayload(_PayloadModel):
    batch_id: str | None = Field(default=None, max_length=64)
    interaction_ids: list[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)


class InsightJobPayload(_PayloadModel):
    contact_ids: list[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    batch_id: str | None = Field(default=None, max_length=64)


PAYLOAD_MODELS: dict[str, type[BaseModel]] = {
    KIND_NORMALIZE: NormalizeJobPayload,
    KIND_EMBED: EmbedJobPayload,
    KIND_INSIGHT: InsightJobPayload,
}


def payload_model_for(kind: str) -> type[BaseModel] | None:
    if service_from_kind(kind):
        return SyncJobPayload
    return PAYLOAD_MODELS.get(kind)


def validate_job_payload(kind: str, payload: dict[str, Any] | None) -> BaseModel:
    """
    Validate a job payload for its kind.

    Returns:
        The parsed payload model

    Raises:
        InvalidJobPayloadError: unknown kind, oversized or malformed payload
    """
    model = payload_model_for(kind)
    if model is None:
        raise InvalidJobPayloadError(kind, "unknown job kind")

    payload = payload or {}
    try:
        size = len(json.dumps(payload, default=str).encode("utf-8"))
    except (TypeError, ValueError) as e:
        raise InvalidJobPayloadError(kind, f"payload is not JSON serializable: {e}") from e

    if size > settings.JOB_MAX_PAYLOAD_BYTES:
        raise InvalidJobPayloadError(
            kind, f"payload is {size} bytes; limit is {settings.JOB_MAX_PAYLOAD_BYTES}"
        )

    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise InvalidJobPayloadError(kind, str(e)) from e
