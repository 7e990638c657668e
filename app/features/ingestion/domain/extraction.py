"""
Pure extraction rules for raw event payloads.

Known providers:

    gmail     {"id", "threadId", "from", "to", "cc", "subject",
               "internalDate" (epoch ms) or "date" (RFC 2822)}
    calendar  {"id", "summary", "location", "start": {"dateTime" | "date"},
               "organizer": {...}, "attendees": [{"email", "displayName", "self"}]}

Any other provider uses the generic shape:

    {"id", "type", "occurredAt", "participants": [
        {"name", "email", "phone", "handle", "providerId", "role"}]}
"""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any

from app.features.ingestion.domain.errors import PermanentJobError
from app.features.ingestion.domain.models import (
    IDENTITY_EMAIL,
    IDENTITY_HANDLE,
    IDENTITY_PHONE,
    IDENTITY_PROVIDER_ID,
    IdentityCandidate,
    Participant,
    RawEvent,
)

PROVIDER_GMAIL = "gmail"
PROVIDER_CALENDAR = "calendar"

INTERACTION_EMAIL = "email"
INTERACTION_MEETING = "meeting"
INTERACTION_MESSAGE = "message"

_GENERIC_IDENTITY_FIELDS = (
    ("email", IDENTITY_EMAIL),
    ("phone", IDENTITY_PHONE),
    ("handle", IDENTITY_HANDLE),
    ("providerId", IDENTITY_PROVIDER_ID),
)


class MalformedEventError(PermanentJobError):
    """The raw payload lacks what is needed to build an interaction."""

    def __init__(self, message: str):
        super().__init__(message, operation="extract")


@dataclass(slots=True)
class ExtractedEvent:
    interaction_type: str
    occurred_at: datetime
    participants: list[Participant]
    source_meta: dict[str, Any] = field(default_factory=dict)
    # Gmail to/cc; resolved only when the owner sent the message
    recipients: list[Participant] = field(default_factory=list)


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=UTC)
    text = str(value).strip()
    try:
        return _as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    try:
        return _as_utc(parsedate_to_datetime(text))
    except (TypeError, ValueError):
        return None


def _address_participants(headers: list[str], role: str) -> list[Participant]:
    participants = []
    for name, address in getaddresses(headers):
        if not address:
            continue
        participants.append(
            Participant(
                identities=[IdentityCandidate(IDENTITY_EMAIL, address, name or None)],
                display_name=name or None,
                role=role,
            )
        )
    return participants


def _gmail(payload: dict[str, Any]) -> ExtractedEvent:
    occurred_at = None
    if payload.get("internalDate") not in (None, ""):
        try:
            occurred_at = datetime.fromtimestamp(int(payload["internalDate"]) / 1000, tz=UTC)
        except (TypeError, ValueError):
            occurred_at = None
    if occurred_at is None:
        occurred_at = _parse_timestamp(payload.get("date"))

    senders = _address_participants([str(v) for v in _as_list(payload.get("from"))], "from")
    recipients = _address_participants([str(v) for v in _as_list(payload.get("to"))], "to")
    recipients += _address_participants([str(v) for v in _as_list(payload.get("cc"))], "cc")

    return ExtractedEvent(
        interaction_type=INTERACTION_EMAIL,
        occurred_at=occurred_at,
        participants=senders,
        recipients=recipients,
        source_meta={
            "subject": payload.get("subject"),
            "threadId": payload.get("threadId"),
        },
    )


def _calendar_person(person: dict[str, Any], role: str) -> Participant | None:
    email = person.get("email")
    if not email:
        return None
    name = person.get("displayName") or person.get("name")
    return Participant(
        identities=[IdentityCandidate(IDENTITY_EMAIL, email, name)],
        display_name=name,
        role=role,
    )


def _calendar(payload: dict[str, Any]) -> ExtractedEvent:
    start = payload.get("start") or {}
    occurred_at = _parse_timestamp(start.get("dateTime"))
    if occurred_at is None and start.get("date"):
        try:
            day = date.fromisoformat(start["date"])
            occurred_at = datetime.combine(day, time.min, tzinfo=UTC)
        except ValueError:
            occurred_at = None

    participants = []
    organizer = payload.get("organizer")
    if isinstance(organizer, dict) and not organizer.get("self"):
        person = _calendar_person(organizer, "organizer")
        if person:
            participants.append(person)
    for attendee in _as_list(payload.get("attendees")):
        if not isinstance(attendee, dict) or attendee.get("self"):
            continue
        person = _calendar_person(attendee, "attendee")
        if person:
            participants.append(person)

    return ExtractedEvent(
        interaction_type=INTERACTION_MEETING,
        occurred_at=occurred_at,
        participants=participants,
        source_meta={
            "summary": payload.get("summary"),
            "location": payload.get("location"),
        },
    )


def _generic(payload: dict[str, Any]) -> ExtractedEvent:
    participants = []
    for person in _as_list(payload.get("participants")):
        if not isinstance(person, dict):
            continue
        name = person.get("name")
        identities = [
            IdentityCandidate(kind, str(person[key]), name)
            for key, kind in _GENERIC_IDENTITY_FIELDS
            if person.get(key)
        ]
        if identities:
            participants.append(
                Participant(identities=identities, display_name=name, role=person.get("role"))
            )

    return ExtractedEvent(
        interaction_type=str(payload.get("type") or INTERACTION_MESSAGE),
        occurred_at=_parse_timestamp(payload.get("occurredAt")),
        participants=participants,
        source_meta={"subject": payload.get("subject")} if payload.get("subject") else {},
    )


_EXTRACTORS = {
    PROVIDER_GMAIL: _gmail,
    PROVIDER_CALENDAR: _calendar,
}


def extract_event(event: RawEvent) -> ExtractedEvent:
    """
    Derive the interaction and participants for a raw event.

    For gmail only the sender is a participant; to/cc addresses are kept
    apart as recipients.

    Raises:
        MalformedEventError: the payload has no usable timestamp
    """
    if not isinstance(event.payload, dict):
        raise MalformedEventError(f"Raw event {event.id} payload is not an object")

    extracted = _EXTRACTORS.get(event.provider, _generic)(event.payload)
    if extracted.occurred_at is None and event.occurred_at is not None:
        extracted.occurred_at = _as_utc(event.occurred_at)
    if extracted.occurred_at is None:
        raise MalformedEventError(f"Raw event {event.id} has no occurrence time")

    extracted.source_meta = {k: v for k, v in extracted.source_meta.items() if v is not None}
    return extracted
