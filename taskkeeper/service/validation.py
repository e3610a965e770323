"""Field rules shared by signup, profile updates and task writes.

Each ``validate_*`` function returns the normalized value or raises
``ValueError`` with a short reason; services collect the reasons per field
into a single ``ValidationError``.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any, Callable, Dict, Mapping

from taskkeeper.service.errors import ValidationError

MIN_PASSWORD_LENGTH = 7
MAX_PASSWORD_LENGTH = 128
MAX_NAME_LENGTH = 128
MAX_DESCRIPTION_LENGTH = 4096

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def validate_name(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("name is required")
    name = normalize_unicode(value).strip()
    if not name:
        raise ValueError("name is required")
    if len(name) > MAX_NAME_LENGTH:
        raise ValueError(f"name must be at most {MAX_NAME_LENGTH} characters")
    return name


def validate_email(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("email is required")
    normalized = normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email is invalid")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("email is invalid")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("email is invalid")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("email is invalid")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("email is invalid")
    return normalized


def validate_password(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("password is required")
    password = value.strip()
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters"
        )
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if "password" in password.lower():
        raise ValueError('password cannot contain "password"')
    return password


def validate_description(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("description is required")
    description = value.strip()
    if not description:
        raise ValueError("description is required")
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValueError(
            f"description must be at most {MAX_DESCRIPTION_LENGTH} characters"
        )
    return description


def validate_completed(value: Any) -> bool:
    # bool only: "true", 1 and friends are rejected rather than coerced
    if not isinstance(value, bool):
        raise ValueError("completed must be a boolean")
    return value


def validate_fields(
    fields: Mapping[str, Any],
    validators: Dict[str, Callable[[Any], Any]],
) -> Dict[str, Any]:
    """Validate a partial update or a full create payload in one pass.

    Unknown names and invalid values are reported together in the raised
    ``ValidationError``'s ``fields`` detail.
    """
    errors: Dict[str, str] = {}
    cleaned: Dict[str, Any] = {}
    for name in fields:
        if name not in validators:
            errors[name] = "unknown field"
    for name, value in fields.items():
        validator = validators.get(name)
        if validator is None or name in errors:
            continue
        try:
            cleaned[name] = validator(value)
        except ValueError as exc:
            errors[name] = str(exc)
    if errors:
        raise ValidationError.for_fields(errors)
    return cleaned
