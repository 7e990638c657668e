"""
Collaborator protocols the ingestion feature depends on.

Provider adapters fetch pages of raw events; the embedder and insight
scorer are optional downstream consumers. Concrete implementations are
wired by the worker from import paths in settings.
"""

import importlib
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from app.features.ingestion.domain import Interaction, NewRawEvent


@dataclass(slots=True)
class FetchedPage:
    raw_events: list[NewRawEvent] = field(default_factory=list)
    next_cursor: str | None = None
    total_items: int | None = None


@runtime_checkable
class IngestionAdapter(Protocol):
    async def fetch_page(self, user_id: str, service: str, cursor: str | None) -> FetchedPage:
        """Fetch one page; next_cursor=None means the sync is done."""
        ...


@runtime_checkable
class InteractionEmbedder(Protocol):
    async def embed_interactions(self, user_id: str, interactions: list[Interaction]) -> int: ...


@runtime_checkable
class InsightScorer(Protocol):
    async def score_contact(
        self, user_id: str, contact_id: str, interactions: list[Interaction]
    ) -> float: ...


def load_object(path: str) -> Any:
    """
    Import "package.module:attr" and instantiate it when it is a class.

    Raises:
        ValueError: malformed path
        ImportError / AttributeError: target missing
    """
    module_name, _, attr = path.strip().partition(":")
    if not module_name or not attr:
        raise ValueError(f"Expected 'module:attribute', got '{path}'")
    target = getattr(importlib.import_module(module_name), attr)
    return target() if isinstance(target, type) else target


def load_adapters(mapping: str) -> dict[str, IngestionAdapter]:
    """Parse "gmail=pkg.gmail:GmailAdapter,calendar=pkg.cal:CalendarAdapter"."""
    adapters: dict[str, IngestionAdapter] = {}
    for entry in filter(None, (part.strip() for part in (mapping or "").split(","))):
        service, sep, path = entry.partition("=")
        if not sep or not service.strip():
            raise ValueError(f"Expected 'service=module:attribute', got '{entry}'")
        adapter = load_object(path)
        if not isinstance(adapter, IngestionAdapter):
            raise TypeError(f"{path} does not implement fetch_page")
        adapters[service.strip().lower()] = adapter
    return adapters
