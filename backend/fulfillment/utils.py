"""Shared utility helpers used across services."""
import re
from datetime import datetime, timezone

_NON_DIGITS = re.compile(r"\D")


def utcnow() -> datetime:
    """Return timezone-aware UTC now. Replaces deprecated datetime.utcnow()."""
    return datetime.now(timezone.utc)


def normalize_phone(phone: str | None) -> str:
    """
    Normalize a phone number to WhatsApp's digits-only E.164 form.
    Bare 10-digit Indian numbers get the 91 country code.
    """
    digits = _NON_DIGITS.sub("", phone or "")
    if len(digits) == 10:
        return f"91{digits}"
    return digits
