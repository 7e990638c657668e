"""
Identifier normalization shared by the resolver and the ignored list.

Both sides must normalize identically, otherwise an ignored address
would slip through under a different spelling.
"""

import re
from email.utils import parseaddr

from app.config import settings
from app.features.ingestion.domain.errors import InvalidIdentifierError
from app.features.ingestion.domain.models import (
    IDENTITY_EMAIL,
    IDENTITY_HANDLE,
    IDENTITY_KINDS,
    IDENTITY_PHONE,
    IDENTITY_PROVIDER_ID,
)

_NON_DIGITS = re.compile(r"\D")
_WHITESPACE = re.compile(r"\s+")
MIN_PHONE_DIGITS = 7
MAX_PHONE_DIGITS = 15


def normalize_email(raw_value: str) -> str:
    # Accept "Display Name <addr@host>" as well as bare addresses
    _, address = parseaddr(raw_value or "")
    value = (address or raw_value or "").strip().lower()
    if "@" not in value or value.startswith("@") or value.endswith("@"):
        raise InvalidIdentifierError(IDENTITY_EMAIL, raw_value)
    return value


def normalize_phone(raw_value: str, default_country_code: str | None = None) -> str:
    """Canonical +<digits> form; bare 10-digit national numbers get the default country code."""
    country_code = default_country_code or settings.IDENTITY_DEFAULT_COUNTRY_CODE
    digits = _NON_DIGITS.sub("", raw_value or "")
    if digits.startswith("00"):
        digits = digits[2:]
    if len(digits) == 10 and not (raw_value or "").strip().startswith("+"):
        digits = f"{country_code}{digits}"
    if not MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS:
        raise InvalidIdentifierError(IDENTITY_PHONE, raw_value)
    return f"+{digits}"


def normalize_handle(raw_value: str) -> str:
    value = (raw_value or "").strip().lower().lstrip("@")
    if not value:
        raise InvalidIdentifierError(IDENTITY_HANDLE, raw_value)
    return value


def normalize_provider_id(raw_value: str) -> str:
    value = (raw_value or "").strip()
    if not value:
        raise InvalidIdentifierError(IDENTITY_PROVIDER_ID, raw_value)
    return value


_NORMALIZERS = {
    IDENTITY_EMAIL: normalize_email,
    IDENTITY_PHONE: normalize_phone,
    IDENTITY_HANDLE: normalize_handle,
    IDENTITY_PROVIDER_ID: normalize_provider_id,
}


def normalize_identifier(kind: str, raw_value: str) -> str:
    """
    Normalize a raw identifier of the given kind.

    Raises:
        ValueError: unknown identity kind
        InvalidIdentifierError: value cannot be normalized
    """
    if kind not in IDENTITY_KINDS:
        raise ValueError(f"Unknown identity kind '{kind}'")
    return _NORMALIZERS[kind](raw_value)


def normalize_display_name(name: str | None) -> str:
    return _WHITESPACE.sub(" ", (name or "").strip().strip('"').strip("'")).lower()
