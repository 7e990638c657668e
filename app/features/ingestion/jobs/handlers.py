"""
Job handler registry.

Handlers are async callables `handler(job, context)`. Sync jobs are
registered per service under "sync_<service>"; every other kind is
registered by its exact name.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from app.features.ingestion.domain import Job
from app.features.ingestion.domain.errors import UnknownJobKindError
from app.features.ingestion.services.token_bucket import TokenBucket


@dataclass(slots=True)
class JobContext:
    """Per-dispatch values handed to a handler alongside the claimed job."""

    worker_id: str
    payload: BaseModel
    rate_limiter: TokenBucket | None = None


JobHandler = Callable[[Job, JobContext], Awaitable[Any]]


class HandlerRegistry:
    def __init__(self, handlers: dict[str, JobHandler] | None = None):
        self._handlers: dict[str, JobHandler] = dict(handlers or {})

    def register(self, kind: str, handler: JobHandler) -> None:
        self._handlers[kind] = handler

    def resolve(self, kind: str) -> JobHandler:
        """
        Raises:
            UnknownJobKindError: nothing is registered for kind
        """
        handler = self._handlers.get(kind)
        if handler is None:
            raise UnknownJobKindError(kind)
        return handler

    def kinds(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, kind: str) -> bool:
        return kind in self._handlers
