"""Record identity extraction used to correlate split updates."""

from __future__ import annotations

from typing import Mapping, Optional, Tuple

# Order matters: the first populated field wins.
IDENTITY_FIELDS: Tuple[str, ...] = ("id", "username", "email")


def extract_record_id(row: Optional[Mapping[str, object]]) -> Optional[str]:
    """Return the identity of `row`, or None when it has no usable field.

    Prefers the explicit identifier, then the unique username, then the
    unique email. Missing, ``None`` and blank values are skipped.
    """
    if not row:
        return None
    for field_name in IDENTITY_FIELDS:
        value = row.get(field_name)
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        elif not isinstance(value, (int, float)):
            continue
        return str(value)
    return None


def correlation_key(table: str, record_id: str) -> str:
    return f"{table}_{record_id}"


def email_marks_update(row: Optional[Mapping[str, object]]) -> bool:
    """Whether the row's email matches the demo update markers."""
    if not row:
        return False
    email = row.get("email")
    if not isinstance(email, str):
        return False
    return "updated_" in email or "mass_update_" in email


__all__ = [
    "IDENTITY_FIELDS",
    "correlation_key",
    "email_marks_update",
    "extract_record_id",
]
